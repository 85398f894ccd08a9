"""Stable storage for a peer's Raft state and service snapshot."""

from __future__ import annotations

import threading


def _clone(data: bytes | bytearray | None) -> bytes:
    return bytes(data) if data else b""


class Persister:
    """Thread-safe holder of the persisted Raft state and snapshot.

    Everything handed in or out is copied, so callers can never mutate
    what has been saved.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._raftstate = b""
        self._snapshot = b""

    def copy(self) -> Persister:
        """Return a new persister holding the same state and snapshot."""
        with self._lock:
            clone = Persister()
            clone._raftstate = self._raftstate
            clone._snapshot = self._snapshot
            return clone

    def read_raft_state(self) -> bytes:
        with self._lock:
            return self._raftstate

    def raft_state_size(self) -> int:
        with self._lock:
            return len(self._raftstate)

    def save(self, raftstate: bytes | None, snapshot: bytes | None) -> None:
        """Save Raft state and snapshot together as one atomic action."""
        with self._lock:
            self._raftstate = _clone(raftstate)
            self._snapshot = _clone(snapshot)

    def save_raft_state(self, raftstate: bytes | None) -> None:
        with self._lock:
            self._raftstate = _clone(raftstate)

    def save_snapshot(self, snapshot: bytes | None) -> None:
        with self._lock:
            self._snapshot = _clone(snapshot)

    def read_snapshot(self) -> bytes:
        with self._lock:
            return self._snapshot

    def snapshot_size(self) -> int:
        with self._lock:
            return len(self._snapshot)