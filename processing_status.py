"""
Processing lifecycle of a derived asset record.

pending -> processing -> completed | failed, with failed -> pending for a
caller-initiated resubmission. Progress is derived from status only.
"""
from dataclasses import dataclass
from enum import Enum

from errors import InvalidTransition


class ProcessingStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


ALLOWED_TRANSITIONS = {
    ProcessingStatus.PENDING: {ProcessingStatus.PROCESSING, ProcessingStatus.FAILED},
    ProcessingStatus.PROCESSING: {ProcessingStatus.COMPLETED, ProcessingStatus.FAILED},
    ProcessingStatus.COMPLETED: set(),
    ProcessingStatus.FAILED: {ProcessingStatus.PENDING},
}


@dataclass(frozen=True)
class ProgressView:
    progress: int
    current_step: str


_PROGRESS = {
    ProcessingStatus.PENDING: ProgressView(10, "pending"),
    ProcessingStatus.PROCESSING: ProgressView(50, "background-removal"),
    ProcessingStatus.COMPLETED: ProgressView(100, "completed"),
    ProcessingStatus.FAILED: ProgressView(0, "failed"),
}


def progress_for(status: ProcessingStatus) -> ProgressView:
    return _PROGRESS[ProcessingStatus(status)]


def can_transition(current: ProcessingStatus, target: ProcessingStatus) -> bool:
    """Same-state writes are allowed so that retried steps stay idempotent."""
    current, target = ProcessingStatus(current), ProcessingStatus(target)
    return current == target or target in ALLOWED_TRANSITIONS[current]


def check_transition(current: ProcessingStatus, target: ProcessingStatus) -> ProcessingStatus:
    if not can_transition(current, target):
        raise InvalidTransition(f"Cannot move from '{ProcessingStatus(current).value}' to '{ProcessingStatus(target).value}'")
    return ProcessingStatus(target)


def is_terminal(status: ProcessingStatus) -> bool:
    return ProcessingStatus(status) in (ProcessingStatus.COMPLETED, ProcessingStatus.FAILED)
