"""
Read side of the sync protocol: snapshots, catch-up and long-poll.
"""

from .snapshot import ChangeSet, Snapshot, SnapshotService

__all__ = ["ChangeSet", "Snapshot", "SnapshotService"]
