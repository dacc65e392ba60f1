import os

# Keep the module-level app in main cheap to import
os.environ.setdefault("BLOB_BACKEND", "memory")
os.environ.setdefault("BACKGROUND_REMOVER", "border")
os.environ.setdefault("MODEL_WARMUP_ON_STARTUP", "false")

from io import BytesIO

import pytest
from PIL import Image

from asset_records import DerivedArtifacts, DerivedAssetRecord, InMemoryAssetRecordStore
from background_removal import BorderColorBackgroundRemover
from blob_store import InMemoryBlobStore
from config import APIConfig
from derivation import DerivationOrchestrator, DerivationService, derived_key
from image_codec import Palette, PillowCodec
from job_queue import JobQueue
from snapshot_records import InMemorySnapshotStore


def garment_photo(size=(400, 300), garment=(200, 30, 30), backdrop=(255, 255, 255), fmt="JPEG") -> bytes:
    """A plain backdrop with a solid rectangular 'garment' in the middle."""
    width, height = size
    image = Image.new("RGB", size, backdrop)
    image.paste(garment, (width // 4, height // 4, 3 * width // 4, 3 * height // 4))
    buffer = BytesIO()
    image.save(buffer, format=fmt)
    return buffer.getvalue()


def solid_png(size=(100, 100), color=(255, 0, 0, 255)) -> bytes:
    buffer = BytesIO()
    Image.new("RGBA", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


def make_completed_asset(records, blob_store, owner_id="owner-1", size=(100, 100), color=(255, 0, 0, 255)):
    """Store an optimized PNG and commit a completed record pointing at it."""
    record = records.create(DerivedAssetRecord(
        owner_id=owner_id,
        raw_key=f"originals/{owner_id}/{color[0]:02x}{color[1]:02x}{color[2]:02x}-{size[0]}x{size[1]}.png",
        original_url="memory://blobs/original.png",
        content_type="image/png",
        byte_size=0,
    ))
    data = solid_png(size, color)
    keys = {variant: derived_key(owner_id, record.id, variant, "PNG")
            for variant in ("processed", "optimized", "thumbnail")}
    urls = {variant: blob_store.put(key, data, "image/png") for variant, key in keys.items()}
    artifacts = DerivedArtifacts(
        processed_key=keys["processed"], processed_url=urls["processed"],
        optimized_key=keys["optimized"], optimized_url=urls["optimized"],
        thumbnail_key=keys["thumbnail"], thumbnail_url=urls["thumbnail"],
    )
    records.mark_processing(record.id)
    hex_color = f"#{color[0]:02x}{color[1]:02x}{color[2]:02x}"
    return records.commit_completed(record.id, artifacts, size[0], size[1], Palette(hex_color, []))


@pytest.fixture
def test_config():
    return APIConfig(
        num_workers=1,
        cpu_threads=2,
        step_timeout_seconds=120.0,
        max_retries=3,
        canvas_width=200,
        canvas_height=200,
        background_remover="border",
        blob_backend="memory",
        model_warmup_on_startup=False,
    )


@pytest.fixture
def blob_store():
    return InMemoryBlobStore()


@pytest.fixture
def records():
    return InMemoryAssetRecordStore()


@pytest.fixture
def snapshots():
    return InMemorySnapshotStore()


@pytest.fixture
def codec():
    return PillowCodec()


@pytest.fixture
def remover():
    return BorderColorBackgroundRemover()


@pytest.fixture
def pipeline(test_config, blob_store, records, codec, remover):
    """Orchestrator and service sharing one queue; start workers inside a running loop."""
    queue = JobQueue()
    orchestrator = DerivationOrchestrator(records, blob_store, codec, remover, test_config)
    service = DerivationService(records, blob_store, codec, orchestrator, queue, test_config)
    return service
