import time

import pytest
from fastapi.testclient import TestClient

from conftest import garment_photo, make_completed_asset
from main import create_app


@pytest.fixture
def client(test_config, blob_store, records, snapshots, remover):
    app = create_app(test_config, blob_store=blob_store, remover=remover, records=records, snapshots=snapshots)
    with TestClient(app) as test_client:
        yield test_client


def wait_for_terminal(client, image_id, timeout=30.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        body = client.get(f"/wardrobe/{image_id}/status").json()
        if body["status"] in ("completed", "failed"):
            return body
        time.sleep(0.05)
    raise AssertionError(f"image {image_id} did not finish")


def upload(client, data, owner_id="owner-1", content_type="image/jpeg"):
    return client.post(
        "/wardrobe/upload",
        files={"file": ("shirt.jpg", data, content_type)},
        data={"owner_id": owner_id},
    )


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["queue"]["active_workers"] == 1
    assert body["model"]["backend"] == "border"


def test_upload_then_poll_until_completed(client):
    response = upload(client, garment_photo((400, 300)))
    assert response.status_code == 201
    body = response.json()
    assert body["processingStatus"] == "pending"

    status = wait_for_terminal(client, body["imageId"])
    assert status["status"] == "completed"
    assert status["progress"] == 100
    assert status["urls"]["thumbnail"].startswith("memory://blobs/derived/owner-1/")
    assert status["dominantColor"] == status["colors"][0]


def test_failed_upload_reports_error_and_can_be_retried(client):
    body = upload(client, b"this is not a photo").json()

    status = wait_for_terminal(client, body["imageId"])
    assert status["status"] == "failed"
    assert status["error"]["kind"] == "UnsupportedFormat"
    assert status["urls"]["optimized"] is None

    retry = client.post(f"/wardrobe/{body['imageId']}/retry")
    assert retry.status_code == 202
    assert wait_for_terminal(client, body["imageId"])["status"] == "failed"


def test_retry_of_completed_image_is_a_conflict(client):
    body = upload(client, garment_photo((64, 48))).json()
    wait_for_terminal(client, body["imageId"])

    response = client.post(f"/wardrobe/{body['imageId']}/retry")
    assert response.status_code == 409
    assert response.json()["error"] == "Conflict"


def test_rejects_unsupported_content_type(client):
    response = upload(client, b"GIF89a", content_type="image/gif")
    assert response.status_code == 415


def test_rejects_oversized_upload(client, test_config):
    response = upload(client, b"\xff" * (test_config.max_upload_bytes + 1))
    assert response.status_code == 413


def test_unknown_image_is_404(client):
    response = client.get("/wardrobe/nope/status")
    assert response.status_code == 404
    assert response.json()["error"] == "NotFound"


def test_status_for_another_owner_is_404(client):
    body = upload(client, garment_photo((64, 48))).json()
    assert client.get(f"/wardrobe/{body['imageId']}/status", params={"owner_id": "owner-2"}).status_code == 404


def test_list_and_stats(client):
    body = upload(client, garment_photo((64, 48))).json()
    wait_for_terminal(client, body["imageId"])

    images = client.get("/wardrobe", params={"owner_id": "owner-1"}).json()["images"]
    assert [image["imageId"] for image in images] == [body["imageId"]]
    stats = client.get("/wardrobe/stats", params={"owner_id": "owner-1"}).json()
    assert stats["completed"] == 1
    assert stats["total"] == 1


def layout_body(red, blue):
    return {
        "layers": [
            {"asset_id": red.id, "x": 0, "y": 0, "z_index": 0},
            {"asset_id": blue.id, "x": 50, "y": 50, "z_index": 1},
        ]
    }


@pytest.fixture
def garments(records, blob_store):
    red = make_completed_asset(records, blob_store, color=(255, 0, 0, 255))
    blue = make_completed_asset(records, blob_store, color=(0, 0, 255, 255))
    return red, blue


def test_snapshot_lifecycle(client, garments):
    red, blue = garments
    created = client.post("/snapshots", json={"owner_id": "owner-1", "layout": layout_body(red, blue)})
    assert created.status_code == 201
    snapshot = created.json()
    assert snapshot["generation"] == 1

    fetched = client.get(f"/snapshots/{snapshot['snapshotId']}").json()
    assert fetched["url"] == snapshot["url"]

    regenerated = client.post(f"/snapshots/{snapshot['snapshotId']}/regenerate").json()
    assert regenerated["generation"] == 2
    assert regenerated["url"] != snapshot["url"]

    check = client.post(f"/snapshots/{snapshot['snapshotId']}/needs-regeneration", json=layout_body(red, blue))
    assert check.json() == {"needsRegeneration": False}

    assert client.delete(f"/snapshots/{snapshot['snapshotId']}").status_code == 200
    assert client.delete(f"/snapshots/{snapshot['snapshotId']}").status_code == 404


def test_invalid_layout_is_422_with_reasons(client, garments):
    red, blue = garments
    body = layout_body(red, blue)
    body["layers"][1]["z_index"] = 0

    response = client.post("/snapshots", json={"owner_id": "owner-1", "layout": body})
    assert response.status_code == 422
    assert response.json()["error"] == "InvalidLayout"
    assert response.json()["reasons"]

    validation = client.post("/snapshots/validate", json=body).json()
    assert validation["valid"] is False


def test_batch_regenerate(client, garments):
    red, blue = garments
    snapshot = client.post("/snapshots", json={"owner_id": "owner-1", "layout": layout_body(red, blue)}).json()

    response = client.post("/snapshots/regenerate-batch", json={"snapshot_ids": [snapshot["snapshotId"], "missing"]})
    results = response.json()["results"]
    assert results[0]["snapshot"]["generation"] == 2
    assert results[1]["error"]["error"] == "NotFound"


@pytest.mark.parametrize("literal", ["NaN", "Infinity", "-Infinity"])
def test_non_finite_placement_is_422(client, garments, literal):
    red, _ = garments
    body = '{"layers": [{"asset_id": "%s", "x": 0, "y": 0, "z_index": 0, "rotation": %s}]}' % (red.id, literal)

    response = client.post("/snapshots/validate", content=body, headers={"content-type": "application/json"})
    assert response.status_code == 422
    assert response.json()["detail"][0]["loc"][-1] == "rotation"

    created = client.post(
        "/snapshots",
        content='{"owner_id": "owner-1", "layout": %s}' % body,
        headers={"content-type": "application/json"},
    )
    assert created.status_code == 422
