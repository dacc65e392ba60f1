"""
Outfit snapshot compositor.

Validates a render layout against completed garment assets, draws the
layers back-to-front onto a canvas and stores the result. Regeneration
writes the new artifact before swapping the record, so the record always
points at exactly one stored image.
"""
import hashlib
import json
import logging
import math
import time
import uuid
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from typing import Dict, List, Optional, Tuple

from PIL import Image, ImageColor

from asset_records import AssetRecordStore, DerivedAssetRecord, utcnow
from blob_store import BlobStore
from config import APIConfig, config
from errors import CompositionError, Conflict, InvalidLayout, MediaError, NotFound, StoreUnavailable
from image_codec import CONTENT_TYPES, EXTENSIONS, ImageCodec, normalize_format
from processing_status import ProcessingStatus
from snapshot_records import LayerPlacement, OutfitSnapshot, RenderLayout, SnapshotStore

logger = logging.getLogger(__name__)


def layout_checksum(layout: RenderLayout) -> str:
    """Stable checksum of a layout; layer order in the request does not matter."""
    data = layout.model_dump()
    data["layers"] = sorted(data["layers"], key=lambda layer: (layer["z_index"], layer["asset_id"]))
    payload = json.dumps(data, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(payload.encode()).hexdigest()[:16]


def rotated_bounds(layer: LayerPlacement, width: int, height: int) -> Tuple[float, float, float, float]:
    """(left, top, right, bottom) of a layer after scale and rotation about its centre."""
    scaled_w, scaled_h = width * layer.scale, height * layer.scale
    theta = math.radians(layer.rotation)
    bound_w = abs(scaled_w * math.cos(theta)) + abs(scaled_h * math.sin(theta))
    bound_h = abs(scaled_w * math.sin(theta)) + abs(scaled_h * math.cos(theta))
    cx, cy = layer.x + scaled_w / 2, layer.y + scaled_h / 2
    return cx - bound_w / 2, cy - bound_h / 2, cx + bound_w / 2, cy + bound_h / 2


class SnapshotCompositor:
    def __init__(self, records: AssetRecordStore, snapshots: SnapshotStore, blob_store: BlobStore,
                 codec: ImageCodec, cfg: APIConfig = config, executor: Optional[ThreadPoolExecutor] = None):
        self.records = records
        self.snapshots = snapshots
        self.blob_store = blob_store
        self.codec = codec
        self.config = cfg
        self.executor = executor or ThreadPoolExecutor(max_workers=cfg.cpu_threads, thread_name_prefix="compose")

    def canvas_size(self, layout: RenderLayout) -> Tuple[int, int]:
        return (layout.canvas_width or self.config.canvas_width,
                layout.canvas_height or self.config.canvas_height)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validation_errors(self, layout: RenderLayout) -> List[str]:
        """Every reason the layout cannot be rendered. Reads only."""
        errors = []
        if not layout.layers:
            return ["Layout has no layers"]
        if len(layout.layers) > self.config.max_layers:
            errors.append(f"Layout has {len(layout.layers)} layers, maximum is {self.config.max_layers}")

        duplicated = sorted(z for z, count in Counter(l.z_index for l in layout.layers).items() if count > 1)
        if duplicated:
            errors.append(f"Duplicate z_index values: {duplicated}")

        canvas_w, canvas_h = self.canvas_size(layout)
        for layer in layout.layers:
            if not all(math.isfinite(v) for v in (layer.x, layer.y, layer.scale, layer.rotation)):
                errors.append(f"Layer '{layer.asset_id}' has a non-finite position, scale or rotation")
                continue
            try:
                record = self.records.get(layer.asset_id)
            except NotFound:
                errors.append(f"Asset '{layer.asset_id}' does not exist")
                continue
            if record.status != ProcessingStatus.COMPLETED or record.artifacts is None:
                errors.append(f"Asset '{layer.asset_id}' is not completed (status '{record.status.value}')")
                continue
            if layer.scale > self.config.max_layer_scale:
                errors.append(f"Layer '{layer.asset_id}' scale {layer.scale} exceeds {self.config.max_layer_scale}")
                continue
            left, top, right, bottom = rotated_bounds(layer, record.width, record.height)
            if right <= 0 or bottom <= 0 or left >= canvas_w or top >= canvas_h:
                errors.append(f"Layer '{layer.asset_id}' lies outside the {canvas_w}x{canvas_h} canvas")
        return errors

    def is_valid_render_data(self, layout: RenderLayout) -> bool:
        return not self.validation_errors(layout)

    def needs_regeneration(self, snapshot_id: str, layout: RenderLayout) -> bool:
        snapshot = self.snapshots.get(snapshot_id)
        return layout_checksum(layout) != snapshot.checksum

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    def _prepare_layer(self, layer: LayerPlacement, record: DerivedAssetRecord) -> Tuple[Image.Image, Tuple[int, int]]:
        data = self.blob_store.get(record.artifacts.optimized_key)
        image = self.codec.decode(data)

        scaled_size = (max(1, round(image.width * layer.scale)), max(1, round(image.height * layer.scale)))
        if scaled_size != image.size:
            image = image.resize(scaled_size, Image.LANCZOS)
        center = (layer.x + scaled_size[0] / 2, layer.y + scaled_size[1] / 2)
        if layer.rotation % 360:
            image = image.rotate(layer.rotation, resample=Image.BICUBIC, expand=True)
        position = (round(center[0] - image.width / 2), round(center[1] - image.height / 2))
        return image, position

    def _render(self, layout: RenderLayout) -> Tuple[bytes, int, int]:
        start = time.time()
        width, height = self.canvas_size(layout)
        layers = sorted(layout.layers, key=lambda l: l.z_index)
        records: Dict[str, DerivedAssetRecord] = {l.asset_id: self.records.get(l.asset_id) for l in layers}

        try:
            # Independent layers load and transform in parallel, compositing stays in z order
            prepared = list(self.executor.map(lambda l: self._prepare_layer(l, records[l.asset_id]), layers))

            if layout.background_color:
                background = ImageColor.getrgb(layout.background_color) + (255,)
            else:
                background = (0, 0, 0, 0)
            canvas = Image.new("RGBA", (width, height), background)
            for image, position in prepared:
                # paste accepts negative offsets, alpha_composite needs equal sizes
                layer_canvas = Image.new("RGBA", (width, height), (0, 0, 0, 0))
                layer_canvas.paste(image, position)
                canvas = Image.alpha_composite(canvas, layer_canvas)

            data = self.codec.encode(canvas, self.config.snapshot_format, max(width, height))
        except StoreUnavailable:
            raise
        except (MediaError, OSError, ValueError) as e:
            raise CompositionError(f"Could not render snapshot: {e}") from e

        logger.info(f"⏱️ Rendered {len(layers)} layers at {width}x{height} in {time.time() - start:.2f}s")
        return data, width, height

    def _artifact_key(self, owner_id: str, snapshot_id: str, generation: int) -> str:
        ext = EXTENSIONS[normalize_format(self.config.snapshot_format)]
        return f"snapshots/{owner_id}/{snapshot_id}/{generation}-{uuid.uuid4().hex[:8]}{ext}"

    def _put_artifact(self, key: str, data: bytes) -> str:
        return self.blob_store.put(key, data, CONTENT_TYPES[normalize_format(self.config.snapshot_format)])

    def _discard(self, key: str) -> None:
        try:
            self.blob_store.delete(key)
        except NotFound:
            pass
        except StoreUnavailable as e:
            logger.warning(f"Orphaned snapshot artifact left at {key}: {e}")

    # ------------------------------------------------------------------
    # Snapshot lifecycle
    # ------------------------------------------------------------------

    def generate_outfit_snapshot(self, owner_id: str, layout: RenderLayout) -> OutfitSnapshot:
        errors = self.validation_errors(layout)
        if errors:
            raise InvalidLayout(reasons=errors)

        data, width, height = self._render(layout)
        snapshot_id = uuid.uuid4().hex
        key = self._artifact_key(owner_id, snapshot_id, 1)
        url = self._put_artifact(key, data)

        snapshot = OutfitSnapshot(
            id=snapshot_id,
            owner_id=owner_id,
            layout=layout,
            artifact_key=key,
            artifact_url=url,
            checksum=layout_checksum(layout),
            width=width,
            height=height,
        )
        try:
            snapshot = self.snapshots.create(snapshot)
        except MediaError:
            self._discard(key)
            raise
        logger.info(f"✅ Snapshot {snapshot_id} generated for {owner_id}")
        return snapshot

    def regenerate_snapshot(self, snapshot_id: str, layout: Optional[RenderLayout] = None) -> OutfitSnapshot:
        current = self.snapshots.get(snapshot_id)
        layout = layout or current.layout

        errors = self.validation_errors(layout)
        if errors:
            raise InvalidLayout(reasons=errors)

        data, width, height = self._render(layout)
        generation = current.generation + 1
        key = self._artifact_key(current.owner_id, snapshot_id, generation)
        url = self._put_artifact(key, data)

        updated = replace(
            current,
            layout=layout,
            artifact_key=key,
            artifact_url=url,
            checksum=layout_checksum(layout),
            width=width,
            height=height,
            generation=generation,
            generated_at=utcnow(),
        )
        try:
            updated = self.snapshots.replace(updated, expected_generation=current.generation)
        except (Conflict, NotFound):
            self._discard(key)
            raise

        # Old artifact goes only after the record points at the new one
        self._discard(current.artifact_key)
        logger.info(f"✅ Snapshot {snapshot_id} regenerated (generation {generation})")
        return updated

    def delete_snapshot(self, snapshot_id: str, attempts: int = 3) -> None:
        for _ in range(attempts):
            snapshot = self.snapshots.get(snapshot_id)
            try:
                # Only the version whose artifact we are about to release
                self.snapshots.delete(snapshot_id, expected_generation=snapshot.generation)
                break
            except Conflict:
                logger.info(f"Snapshot {snapshot_id} was regenerated during delete, re-reading")
        else:
            raise Conflict(f"Snapshot '{snapshot_id}' kept changing during delete")

        self._discard(snapshot.artifact_key)
        logger.info(f"Snapshot {snapshot_id} deleted (generation {snapshot.generation})")

    def batch_regenerate(self, snapshot_ids: List[str]) -> List[dict]:
        """Regenerate several snapshots in turn; one failure does not stop the rest."""
        results = []
        for snapshot_id in snapshot_ids:
            try:
                snapshot = self.regenerate_snapshot(snapshot_id)
                results.append({"id": snapshot_id, "snapshot": snapshot, "error": None})
            except MediaError as e:
                logger.error(f"❌ Batch regeneration of {snapshot_id} failed ({e.kind}): {e.message}")
                results.append({"id": snapshot_id, "snapshot": None, "error": e})
        return results
