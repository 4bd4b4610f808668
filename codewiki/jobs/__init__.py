"""Job coordination primitives."""

from .events import StatusBroadcaster
from .locks import RepoLockTable

__all__ = ["RepoLockTable", "StatusBroadcaster"]
