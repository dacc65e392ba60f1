"""
Derived asset records and their persistence.

Artifact references are written in a single commit together with the
`completed` status, so a reader either sees all of them or none.
"""
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from errors import NotFound
from image_codec import Palette
from processing_status import ProcessingStatus, check_transition, progress_for


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class DerivedArtifacts:
    """Blob keys and URLs of one completed derivation."""

    processed_key: str
    processed_url: str
    optimized_key: str
    optimized_url: str
    thumbnail_key: str
    thumbnail_url: str

    @property
    def keys(self) -> List[str]:
        return [self.processed_key, self.optimized_key, self.thumbnail_key]


@dataclass
class DerivedAssetRecord:
    owner_id: str
    raw_key: str
    original_url: str
    content_type: str
    byte_size: int
    original_width: int = 0
    original_height: int = 0
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: ProcessingStatus = ProcessingStatus.PENDING
    artifacts: Optional[DerivedArtifacts] = None
    width: Optional[int] = None
    height: Optional[int] = None
    dominant_color: Optional[str] = None
    colors: List[str] = field(default_factory=list)
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    attempts: int = 1
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_status(self) -> dict:
        """Polling view: status, progress and URLs (derived URLs only once completed)."""
        view = progress_for(self.status)
        artifacts = self.artifacts if self.status == ProcessingStatus.COMPLETED else None
        return {
            "imageId": self.id,
            "status": self.status.value,
            "currentStep": view.current_step,
            "progress": view.progress,
            "dominantColor": self.dominant_color,
            "colors": list(self.colors),
            "width": self.width,
            "height": self.height,
            "urls": {
                "original": self.original_url,
                "processed": artifacts.processed_url if artifacts else None,
                "optimized": artifacts.optimized_url if artifacts else None,
                "thumbnail": artifacts.thumbnail_url if artifacts else None,
            },
            "error": {"kind": self.error_kind, "message": self.error_message} if self.error_kind else None,
        }


class AssetRecordStore(ABC):
    """Create/read/update of derived asset records by id and by owner."""

    @abstractmethod
    def create(self, record: DerivedAssetRecord) -> DerivedAssetRecord:
        pass

    @abstractmethod
    def get(self, record_id: str) -> DerivedAssetRecord:
        pass

    @abstractmethod
    def find_by_raw_key(self, owner_id: str, raw_key: str) -> Optional[DerivedAssetRecord]:
        pass

    @abstractmethod
    def list_by_owner(self, owner_id: str) -> List[DerivedAssetRecord]:
        pass

    @abstractmethod
    def list_pending(self, limit: int = 10) -> List[DerivedAssetRecord]:
        pass

    @abstractmethod
    def mark_processing(self, record_id: str) -> DerivedAssetRecord:
        pass

    @abstractmethod
    def commit_completed(self, record_id: str, artifacts: DerivedArtifacts, width: int, height: int,
                         palette: Palette, max_colors: int = 5) -> DerivedAssetRecord:
        pass

    @abstractmethod
    def mark_failed(self, record_id: str, error_kind: str, error_message: str) -> DerivedAssetRecord:
        pass

    @abstractmethod
    def reset_pending(self, record_id: str) -> DerivedAssetRecord:
        pass

    def get_processing_stats(self, owner_id: Optional[str] = None) -> Dict[str, int]:
        records = self.list_by_owner(owner_id) if owner_id else self._all()
        result = {"total": 0, "pending": 0, "processing": 0, "completed": 0, "failed": 0}
        for record in records:
            result[record.status.value] += 1
            result["total"] += 1
        return result

    @abstractmethod
    def _all(self) -> List[DerivedAssetRecord]:
        pass


class InMemoryAssetRecordStore(AssetRecordStore):
    """Thread-safe record store. Reads return copies, never live objects."""

    def __init__(self):
        self._records: Dict[str, DerivedAssetRecord] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _copy(record: DerivedAssetRecord) -> DerivedAssetRecord:
        return replace(record, colors=list(record.colors))

    def create(self, record: DerivedAssetRecord) -> DerivedAssetRecord:
        with self._lock:
            self._records[record.id] = self._copy(record)
            return self._copy(record)

    def get(self, record_id: str) -> DerivedAssetRecord:
        with self._lock:
            record = self._records.get(record_id)
            if record is None:
                raise NotFound(f"Image '{record_id}' not found")
            return self._copy(record)

    def find_by_raw_key(self, owner_id: str, raw_key: str) -> Optional[DerivedAssetRecord]:
        with self._lock:
            for record in self._records.values():
                if record.owner_id == owner_id and record.raw_key == raw_key:
                    return self._copy(record)
        return None

    def list_by_owner(self, owner_id: str) -> List[DerivedAssetRecord]:
        with self._lock:
            records = [self._copy(r) for r in self._records.values() if r.owner_id == owner_id]
        return sorted(records, key=lambda r: r.created_at, reverse=True)

    def list_pending(self, limit: int = 10) -> List[DerivedAssetRecord]:
        with self._lock:
            records = [self._copy(r) for r in self._records.values() if r.status == ProcessingStatus.PENDING]
        return sorted(records, key=lambda r: r.created_at)[:limit]

    def _all(self) -> List[DerivedAssetRecord]:
        with self._lock:
            return [self._copy(r) for r in self._records.values()]

    def _update(self, record_id: str, target: ProcessingStatus,
                mutate: Callable[[DerivedAssetRecord], None]) -> DerivedAssetRecord:
        with self._lock:
            current = self._records.get(record_id)
            if current is None:
                raise NotFound(f"Image '{record_id}' not found")
            check_transition(current.status, target)
            updated = self._copy(current)
            mutate(updated)
            updated.status = target
            updated.updated_at = utcnow()
            self._records[record_id] = updated
            return self._copy(updated)

    def mark_processing(self, record_id: str) -> DerivedAssetRecord:
        def mutate(record):
            record.error_kind = None
            record.error_message = None

        return self._update(record_id, ProcessingStatus.PROCESSING, mutate)

    def commit_completed(self, record_id: str, artifacts: DerivedArtifacts, width: int, height: int,
                         palette: Palette, max_colors: int = 5) -> DerivedAssetRecord:
        def mutate(record):
            record.artifacts = artifacts
            record.width = width
            record.height = height
            record.dominant_color = palette.dominant
            record.colors = palette.colors[:max_colors]
            record.error_kind = None
            record.error_message = None

        return self._update(record_id, ProcessingStatus.COMPLETED, mutate)

    def mark_failed(self, record_id: str, error_kind: str, error_message: str) -> DerivedAssetRecord:
        def mutate(record):
            record.artifacts = None
            record.error_kind = error_kind
            record.error_message = error_message

        return self._update(record_id, ProcessingStatus.FAILED, mutate)

    def reset_pending(self, record_id: str) -> DerivedAssetRecord:
        def mutate(record):
            record.attempts += 1
            record.error_kind = None
            record.error_message = None

        return self._update(record_id, ProcessingStatus.PENDING, mutate)
