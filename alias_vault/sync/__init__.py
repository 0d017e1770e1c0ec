"""Cross-device synchronization: append-only encrypted change log + replay."""

from .log import SyncLog
from .coordinator import SyncCoordinator

__all__ = [
    "SyncLog",
    "SyncCoordinator",
]
