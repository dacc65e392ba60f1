"""
Error kinds raised by the derivation pipeline and the snapshot compositor.
"""
from typing import List, Optional


class MediaError(Exception):
    """Base class for all errors raised by this service."""

    kind = "MediaError"

    def __init__(self, message: str = ""):
        super().__init__(message or self.kind)
        self.message = message or self.kind

    def to_dict(self) -> dict:
        return {"error": self.kind, "detail": self.message}


class DecodeError(MediaError):
    kind = "DecodeError"


class UnsupportedFormat(DecodeError):
    kind = "UnsupportedFormat"


class CorruptData(DecodeError):
    kind = "CorruptData"


class ProcessingError(MediaError):
    """Background removal or encode failure."""

    kind = "ProcessingError"


class StepTimeout(MediaError):
    """A pipeline step exceeded its time budget."""

    kind = "Timeout"


class InvalidLayout(MediaError):
    kind = "InvalidLayout"

    def __init__(self, message: str = "", reasons: Optional[List[str]] = None):
        super().__init__(message or "; ".join(reasons or []) or "Invalid layout")
        self.reasons = list(reasons or [])

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["reasons"] = self.reasons
        return data


class CompositionError(MediaError):
    kind = "CompositionError"


class StoreUnavailable(MediaError):
    kind = "StoreUnavailable"


class NotFound(MediaError):
    kind = "NotFound"


class Conflict(MediaError):
    kind = "Conflict"


class InvalidTransition(MediaError):
    kind = "InvalidTransition"
