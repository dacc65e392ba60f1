"""
Media derivation pipeline.

One uploaded photograph becomes three derived artifacts (full-size
background-removed PNG, optimized image, thumbnail) plus a colour
palette. The record only reaches `completed` after every artifact is
stored; any failure leaves it `failed` with no artifact references.
"""
import asyncio
import hashlib
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from PIL import Image

from asset_records import AssetRecordStore, DerivedArtifacts, DerivedAssetRecord
from background_removal import BackgroundRemover
from blob_store import BlobStore
from config import APIConfig, config
from errors import (Conflict, DecodeError, InvalidTransition, MediaError, NotFound, ProcessingError, StepTimeout,
                    StoreUnavailable)
from image_codec import CONTENT_TYPES, EXTENSIONS, ImageCodec, fit_within, normalize_format
from job_queue import JobQueue
from processing_status import ProcessingStatus

logger = logging.getLogger(__name__)

EXTENSION_BY_CONTENT_TYPE = {
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
}


@dataclass
class VariantSet:
    processed: bytes
    optimized: bytes
    thumbnail: bytes
    optimized_raster: Image.Image


def derived_key(owner_id: str, record_id: str, variant: str, fmt: str) -> str:
    return f"derived/{owner_id}/{record_id}/{variant}{EXTENSIONS[normalize_format(fmt)]}"


class DerivationOrchestrator:
    """Drives one record through decode, background removal, encode, palette and commit."""

    def __init__(self, records: AssetRecordStore, blob_store: BlobStore, codec: ImageCodec,
                 remover: BackgroundRemover, cfg: APIConfig = config,
                 executor: Optional[ThreadPoolExecutor] = None):
        self.records = records
        self.blob_store = blob_store
        self.codec = codec
        self.remover = remover
        self.config = cfg
        self.executor = executor or ThreadPoolExecutor(max_workers=cfg.cpu_threads, thread_name_prefix="derive")

    async def _run_step(self, step: str, func: Callable, *args) -> Any:
        """Run a blocking step on the executor, bounded by the step timeout."""
        loop = asyncio.get_running_loop()
        start = time.time()
        try:
            result = await asyncio.wait_for(
                loop.run_in_executor(self.executor, func, *args),
                timeout=self.config.step_timeout_seconds,
            )
        except asyncio.TimeoutError:
            raise StepTimeout(f"Step '{step}' exceeded {self.config.step_timeout_seconds}s")
        logger.info(f"⏱️ {step} completed in {time.time() - start:.2f}s")
        return result

    def _encode_variants(self, cutout: Image.Image) -> VariantSet:
        cfg = self.config
        processed = self.codec.encode(cutout, "PNG", max(cutout.size))

        optimized_size = fit_within(cutout.size, cfg.optimized_max_edge)
        optimized_raster = cutout if optimized_size == cutout.size else cutout.resize(optimized_size, Image.LANCZOS)
        optimized = self.codec.encode(optimized_raster, cfg.optimized_format, cfg.optimized_max_edge)
        thumbnail = self.codec.encode(optimized_raster, cfg.thumbnail_format, cfg.thumbnail_max_edge,
                                      quality=cfg.thumbnail_quality)
        return VariantSet(processed, optimized, thumbnail, optimized_raster)

    def _variant_formats(self) -> Dict[str, str]:
        return {
            "processed": "PNG",
            "optimized": self.config.optimized_format,
            "thumbnail": self.config.thumbnail_format,
        }

    def _store_variants(self, record: DerivedAssetRecord, variants: VariantSet, written: List[str],
                        abandoned: threading.Event) -> DerivedArtifacts:
        urls: Dict[str, str] = {}
        keys: Dict[str, str] = {}
        for variant, fmt in self._variant_formats().items():
            if abandoned.is_set():
                raise ProcessingError(f"Derivation for {record.id} was abandoned before storing {variant}")
            key = derived_key(record.owner_id, record.id, variant, fmt)
            urls[variant] = self.blob_store.put(key, getattr(variants, variant), CONTENT_TYPES[normalize_format(fmt)])
            keys[variant] = key
            written.append(key)
            if abandoned.is_set():
                # The job already failed and cleaned up while this write was in flight
                self._delete_blobs([key])
                raise ProcessingError(f"Derivation for {record.id} was abandoned while storing {variant}")
        return DerivedArtifacts(
            processed_key=keys["processed"], processed_url=urls["processed"],
            optimized_key=keys["optimized"], optimized_url=urls["optimized"],
            thumbnail_key=keys["thumbnail"], thumbnail_url=urls["thumbnail"],
        )

    async def process(self, record_id: str) -> Optional[DerivedAssetRecord]:
        """Run the full derivation for one record. Never raises for job failures."""
        try:
            record = self.records.mark_processing(record_id)
        except (NotFound, InvalidTransition) as e:
            logger.error(f"❌ Cannot start derivation for {record_id}: {e}")
            return None

        logger.info(f"Starting derivation for image {record_id} (owner {record.owner_id})")
        start = time.time()
        written: List[str] = []
        abandoned = threading.Event()
        try:
            raw = await self._run_step("fetch-original", self.blob_store.get, record.raw_key)
            raster = await self._run_step("decode", self.codec.decode, raw)
            cutout = await self._run_step("background-removal", self.remover.remove_background, raster)
            variants = await self._run_step("encode", self._encode_variants, cutout)
            palette = await self._run_step(
                "palette", self.codec.extract_palette, variants.optimized_raster, self.config.palette_size
            )
            artifacts = await self._run_step(
                "store-artifacts", self._store_variants, record, variants, written, abandoned
            )

            width, height = variants.optimized_raster.size
            # Status flips to completed in the same write as the artifact references
            completed = self.records.commit_completed(
                record_id, artifacts, width, height, palette, max_colors=self.config.palette_size
            )
            logger.info(f"✅ Derivation for {record_id} completed in {time.time() - start:.2f}s")
            return completed
        except MediaError as e:
            logger.error(f"❌ Derivation for {record_id} failed ({e.kind}): {e.message}")
            return self._fail(record, e.kind, e.message, written, abandoned)
        except Exception as e:
            logger.exception(f"❌ Derivation for {record_id} failed unexpectedly")
            return self._fail(record, "ProcessingError", str(e) or type(e).__name__, written, abandoned)

    def _delete_blobs(self, keys: List[str]) -> None:
        for key in keys:
            try:
                self.blob_store.delete(key)
            except NotFound:
                pass
            except StoreUnavailable as e:
                logger.warning(f"Could not remove partial artifact {key}: {e}")

    def _fail(self, record: DerivedAssetRecord, kind: str, message: str, written: List[str],
              abandoned: threading.Event) -> Optional[DerivedAssetRecord]:
        # A timed-out store step may still be running; it checks this flag after every write
        abandoned.set()
        keys = [derived_key(record.owner_id, record.id, variant, fmt)
                for variant, fmt in self._variant_formats().items()]
        self._delete_blobs(sorted(set(keys) | set(written)))
        record_id = record.id
        try:
            return self.records.mark_failed(record_id, kind, message)
        except (NotFound, InvalidTransition) as e:
            logger.error(f"Could not mark {record_id} as failed: {e}")
            return None


class DerivationService:
    """Submission, coalescing, resubmission and polling of derivation jobs."""

    def __init__(self, records: AssetRecordStore, blob_store: BlobStore, codec: ImageCodec,
                 orchestrator: DerivationOrchestrator, queue: JobQueue, cfg: APIConfig = config):
        self.records = records
        self.blob_store = blob_store
        self.codec = codec
        self.orchestrator = orchestrator
        self.queue = queue
        self.config = cfg
        self._lock = threading.Lock()

    def _enqueue(self, record: DerivedAssetRecord) -> bool:
        return self.queue.submit(record.id, self.orchestrator.process, record.id)

    def raw_key_for(self, owner_id: str, data: bytes, extension: str) -> str:
        digest = hashlib.sha256(data).hexdigest()
        return f"originals/{owner_id}/{digest}{extension}"

    def submit(self, owner_id: str, data: bytes, content_type: str) -> DerivedAssetRecord:
        """Store the original and schedule derivation. Returns a pending record immediately.

        Resubmitting the same bytes for the same owner coalesces onto the
        existing record instead of starting a second job.
        """
        try:
            fmt, width, height = self.codec.read_info(data)
            extension = EXTENSIONS[fmt]
        except DecodeError as e:
            # Surface through the job as a failed status
            logger.warning(f"Upload for {owner_id} is not a readable image: {e.message}")
            fmt, width, height = None, 0, 0
            extension = EXTENSION_BY_CONTENT_TYPE.get(content_type, ".bin")

        raw_key = self.raw_key_for(owner_id, data, extension)

        with self._lock:
            existing = self.records.find_by_raw_key(owner_id, raw_key)
            if existing is not None:
                if existing.status == ProcessingStatus.FAILED:
                    return self.resubmit(existing.id)
                if existing.status == ProcessingStatus.PENDING and not self.queue.is_inflight(existing.id):
                    self._enqueue(existing)
                logger.info(f"Coalesced upload onto existing image {existing.id} ({existing.status.value})")
                return existing

            original_url = self.blob_store.put(raw_key, data, CONTENT_TYPES.get(fmt, content_type))
            record = self.records.create(DerivedAssetRecord(
                owner_id=owner_id,
                raw_key=raw_key,
                original_url=original_url,
                content_type=content_type,
                byte_size=len(data),
                original_width=width,
                original_height=height,
            ))

        self._enqueue(record)
        logger.info(f"Image {record.id} recorded as pending ({len(data)} bytes)")
        return record

    def resubmit(self, record_id: str) -> DerivedAssetRecord:
        record = self.records.get(record_id)
        if record.status != ProcessingStatus.FAILED:
            raise Conflict(f"Only failed images can be retried (status is '{record.status.value}')")
        if record.attempts >= self.config.max_retries:
            raise Conflict(f"Max retries ({self.config.max_retries}) reached")
        record = self.records.reset_pending(record_id)
        self._enqueue(record)
        logger.info(f"Image {record_id} resubmitted (attempt {record.attempts})")
        return record

    def recover_pending(self, limit: int = 100) -> int:
        """Re-enqueue records left pending by a previous process."""
        count = 0
        for record in self.records.list_pending(limit):
            if self._enqueue(record):
                count += 1
        if count:
            logger.info(f"Re-enqueued {count} pending images")
        return count

    def get_record(self, record_id: str, owner_id: Optional[str] = None) -> DerivedAssetRecord:
        record = self.records.get(record_id)
        if owner_id is not None and record.owner_id != owner_id:
            raise NotFound(f"Image '{record_id}' not found")
        return record

    def get_status(self, record_id: str, owner_id: Optional[str] = None) -> dict:
        return self.get_record(record_id, owner_id).to_status()
