import asyncio

from job_queue import JobQueue


def test_jobs_run_and_are_counted():
    async def scenario():
        queue = JobQueue()
        await queue.start_workers(2)
        done = []

        async def job(value):
            await asyncio.sleep(0)
            done.append(value)

        async def broken():
            raise RuntimeError("boom")

        assert queue.submit("a", job, 1)
        assert queue.submit("b", job, 2)
        assert queue.submit("c", broken)
        await queue.join()
        status = queue.get_status()
        await queue.shutdown()
        return done, status

    done, status = asyncio.run(scenario())
    assert sorted(done) == [1, 2]
    assert status["completed_jobs"] == 2
    assert status["failed_jobs"] == 1
    assert status["inflight_jobs"] == 0


def test_same_job_id_is_not_enqueued_twice():
    async def scenario():
        queue = JobQueue()
        calls = []

        async def job():
            calls.append(1)

        first = queue.submit("same", job)
        second = queue.submit("same", job)
        inflight = queue.is_inflight("same")
        await queue.start_workers(1)
        await queue.join()
        await queue.shutdown()
        return first, second, inflight, calls, queue.is_inflight("same")

    first, second, inflight, calls, inflight_after = asyncio.run(scenario())
    assert (first, second) == (True, False)
    assert inflight is True
    assert calls == [1]
    assert inflight_after is False


def test_shutdown_stops_workers():
    async def scenario():
        queue = JobQueue()
        await queue.start_workers(3)
        await queue.shutdown()
        return queue.get_status()

    assert asyncio.run(scenario())["active_workers"] == 0


def test_submit_from_another_thread_reaches_the_workers():
    async def scenario():
        queue = JobQueue()
        await queue.start_workers(1)
        done = []

        async def job(value):
            done.append(value)

        loop = asyncio.get_running_loop()
        accepted = await loop.run_in_executor(None, queue.submit, "threaded", job, 7)
        await queue.join()
        status = queue.get_status()
        await queue.shutdown()
        return accepted, done, status, queue.is_inflight("threaded")

    accepted, done, status, inflight = asyncio.run(scenario())
    assert accepted is True
    assert done == [7]
    assert status["completed_jobs"] == 1
    assert inflight is False
