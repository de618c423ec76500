"""
Change capture: harmonic model, durable log and tracked entities.
"""

from .harmonic import Harmonic, Operation, next_harmonic_id
from .log import CursorExpiredError, HarmonicLog, HarmonicLogError
from .tracker import (
    CaptureError,
    ChangeCapture,
    DuplicateTrackingError,
    TrackedEntity,
    UntrackedTableError,
)

__all__ = [
    "CaptureError",
    "ChangeCapture",
    "CursorExpiredError",
    "DuplicateTrackingError",
    "Harmonic",
    "HarmonicLog",
    "HarmonicLogError",
    "Operation",
    "TrackedEntity",
    "UntrackedTableError",
    "next_harmonic_id",
]
