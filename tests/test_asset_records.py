import pytest

from asset_records import DerivedArtifacts, DerivedAssetRecord, InMemoryAssetRecordStore
from errors import InvalidTransition, NotFound
from image_codec import Palette
from processing_status import ProcessingStatus

ARTIFACTS = DerivedArtifacts(
    processed_key="derived/o/1/processed.png", processed_url="memory://blobs/derived/o/1/processed.png",
    optimized_key="derived/o/1/optimized.png", optimized_url="memory://blobs/derived/o/1/optimized.png",
    thumbnail_key="derived/o/1/thumbnail.webp", thumbnail_url="memory://blobs/derived/o/1/thumbnail.webp",
)


def new_record(owner_id="owner-1", raw_key="originals/owner-1/abc.jpg"):
    return DerivedAssetRecord(
        owner_id=owner_id,
        raw_key=raw_key,
        original_url=f"memory://blobs/{raw_key}",
        content_type="image/jpeg",
        byte_size=1234,
    )


def test_new_record_is_pending_without_derived_urls(records):
    record = records.create(new_record())
    status = records.get(record.id).to_status()

    assert status["status"] == "pending"
    assert status["progress"] == 10
    assert status["urls"]["original"].endswith("abc.jpg")
    assert status["urls"]["optimized"] is None
    assert status["urls"]["thumbnail"] is None


def test_commit_completed_sets_everything_at_once(records):
    record = records.create(new_record())
    records.mark_processing(record.id)
    palette = Palette("#ff0000", ["#00ff00", "#0000ff", "#111111", "#222222", "#333333"])

    completed = records.commit_completed(record.id, ARTIFACTS, 1600, 1200, palette, max_colors=5)

    assert completed.status == ProcessingStatus.COMPLETED
    assert completed.artifacts == ARTIFACTS
    assert completed.dominant_color == "#ff0000"
    assert completed.colors == ["#ff0000", "#00ff00", "#0000ff", "#111111", "#222222"]
    status = completed.to_status()
    assert status["urls"]["processed"] == ARTIFACTS.processed_url
    assert status["width"] == 1600


def test_mark_failed_clears_artifacts(records):
    record = records.create(new_record())
    records.mark_processing(record.id)
    failed = records.mark_failed(record.id, "ProcessingError", "boom")

    assert failed.artifacts is None
    assert failed.to_status()["error"] == {"kind": "ProcessingError", "message": "boom"}


def test_completed_is_terminal(records):
    record = records.create(new_record())
    records.mark_processing(record.id)
    records.commit_completed(record.id, ARTIFACTS, 10, 10, Palette("#000000"))

    with pytest.raises(InvalidTransition):
        records.mark_failed(record.id, "ProcessingError", "late failure")
    with pytest.raises(InvalidTransition):
        records.reset_pending(record.id)


def test_reset_pending_counts_attempts(records):
    record = records.create(new_record())
    records.mark_failed(record.id, "Timeout", "slow")
    reset = records.reset_pending(record.id)

    assert reset.status == ProcessingStatus.PENDING
    assert reset.attempts == 2
    assert reset.error_kind is None


def test_reads_return_copies(records):
    record = records.create(new_record())
    copy = records.get(record.id)
    copy.colors.append("#ffffff")
    copy.status = ProcessingStatus.COMPLETED

    assert records.get(record.id).status == ProcessingStatus.PENDING
    assert records.get(record.id).colors == []


def test_unknown_record_is_not_found(records):
    with pytest.raises(NotFound):
        records.get("missing")
    with pytest.raises(NotFound):
        records.mark_processing("missing")


def test_find_by_raw_key_is_scoped_to_owner(records):
    record = records.create(new_record("owner-1", "originals/owner-1/same.jpg"))
    assert records.find_by_raw_key("owner-1", "originals/owner-1/same.jpg").id == record.id
    assert records.find_by_raw_key("owner-2", "originals/owner-1/same.jpg") is None


def test_listing_and_stats():
    store = InMemoryAssetRecordStore()
    first = store.create(new_record("owner-1", "originals/owner-1/a.jpg"))
    second = store.create(new_record("owner-1", "originals/owner-1/b.jpg"))
    store.create(new_record("owner-2", "originals/owner-2/c.jpg"))
    store.mark_failed(second.id, "CorruptData", "bad bytes")

    assert {r.id for r in store.list_by_owner("owner-1")} == {first.id, second.id}
    assert [r.id for r in store.list_pending()][0] == first.id
    assert store.get_processing_stats("owner-1") == {
        "total": 2, "pending": 1, "processing": 0, "completed": 0, "failed": 1,
    }
    assert store.get_processing_stats()["total"] == 3
