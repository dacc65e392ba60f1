"""
Outfit snapshot records and their persistence.
"""
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from asset_records import utcnow
from errors import Conflict, NotFound


class LayerPlacement(BaseModel):
    """One garment layer: a completed asset drawn at a position on the canvas."""

    model_config = ConfigDict(allow_inf_nan=False)

    asset_id: str = Field(..., min_length=1)
    x: float
    y: float
    scale: float = Field(1.0, gt=0)
    z_index: int
    rotation: float = 0.0


class RenderLayout(BaseModel):
    layers: List[LayerPlacement] = Field(default_factory=list)
    canvas_width: Optional[int] = Field(None, gt=0, le=4096)
    canvas_height: Optional[int] = Field(None, gt=0, le=4096)
    background_color: Optional[str] = Field(None, pattern=r"^#[0-9a-fA-F]{6}$")


@dataclass
class OutfitSnapshot:
    owner_id: str
    layout: RenderLayout
    artifact_key: str
    artifact_url: str
    checksum: str
    width: int
    height: int
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    generation: int = 1
    generated_at: datetime = field(default_factory=utcnow)
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            "snapshotId": self.id,
            "ownerId": self.owner_id,
            "url": self.artifact_url,
            "publicId": self.artifact_key,
            "width": self.width,
            "height": self.height,
            "checksum": self.checksum,
            "generation": self.generation,
            "generatedAt": self.generated_at.isoformat(),
            "layout": self.layout.model_dump(),
        }


class SnapshotStore(ABC):
    @abstractmethod
    def create(self, snapshot: OutfitSnapshot) -> OutfitSnapshot:
        pass

    @abstractmethod
    def get(self, snapshot_id: str) -> OutfitSnapshot:
        pass

    @abstractmethod
    def replace(self, snapshot: OutfitSnapshot, expected_generation: int) -> OutfitSnapshot:
        """Swap in a new version if the stored generation still matches."""

    @abstractmethod
    def delete(self, snapshot_id: str, expected_generation: Optional[int] = None) -> None:
        """Remove a snapshot; with expected_generation, only if it is still that version."""

    @abstractmethod
    def list_by_owner(self, owner_id: str) -> List[OutfitSnapshot]:
        pass


class InMemorySnapshotStore(SnapshotStore):
    def __init__(self):
        self._snapshots: Dict[str, OutfitSnapshot] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _copy(snapshot: OutfitSnapshot) -> OutfitSnapshot:
        return replace(snapshot, layout=snapshot.layout.model_copy(deep=True))

    def create(self, snapshot: OutfitSnapshot) -> OutfitSnapshot:
        with self._lock:
            if snapshot.id in self._snapshots:
                raise Conflict(f"Snapshot '{snapshot.id}' already exists")
            self._snapshots[snapshot.id] = self._copy(snapshot)
        return self._copy(snapshot)

    def get(self, snapshot_id: str) -> OutfitSnapshot:
        with self._lock:
            snapshot = self._snapshots.get(snapshot_id)
            if snapshot is None:
                raise NotFound(f"Snapshot '{snapshot_id}' not found")
            return self._copy(snapshot)

    def replace(self, snapshot: OutfitSnapshot, expected_generation: int) -> OutfitSnapshot:
        with self._lock:
            current = self._snapshots.get(snapshot.id)
            if current is None:
                raise NotFound(f"Snapshot '{snapshot.id}' not found")
            if current.generation != expected_generation:
                raise Conflict(
                    f"Snapshot '{snapshot.id}' is at generation {current.generation}, expected {expected_generation}"
                )
            self._snapshots[snapshot.id] = self._copy(snapshot)
        return self._copy(snapshot)

    def delete(self, snapshot_id: str, expected_generation: Optional[int] = None) -> None:
        with self._lock:
            current = self._snapshots.get(snapshot_id)
            if current is None:
                raise NotFound(f"Snapshot '{snapshot_id}' not found")
            if expected_generation is not None and current.generation != expected_generation:
                raise Conflict(
                    f"Snapshot '{snapshot_id}' is at generation {current.generation}, expected {expected_generation}"
                )
            del self._snapshots[snapshot_id]

    def list_by_owner(self, owner_id: str) -> List[OutfitSnapshot]:
        with self._lock:
            snapshots = [self._copy(s) for s in self._snapshots.values() if s.owner_id == owner_id]
        return sorted(snapshots, key=lambda s: s.created_at, reverse=True)
