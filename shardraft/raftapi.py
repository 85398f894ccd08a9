"""The interface a Raft peer offers to its service, and the messages it applies."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable


@dataclass(frozen=True)
class ApplyMsg:
    """A committed command or an installed snapshot, delivered to the service.

    ``command_valid`` marks a newly committed log entry; ``snapshot_valid``
    marks a snapshot the service should install.
    """

    command_valid: bool = False
    command: Any = None
    command_index: int = 0

    snapshot_valid: bool = False
    snapshot: bytes = b""
    snapshot_term: int = 0
    snapshot_index: int = 0

    @classmethod
    def command_message(cls, command: Any, index: int) -> ApplyMsg:
        """Build a message carrying a committed command at ``index``."""
        return cls(command_valid=True, command=command, command_index=index)

    @classmethod
    def snapshot_message(cls, snapshot: bytes, term: int, index: int) -> ApplyMsg:
        """Build a message carrying a snapshot up to ``index`` in ``term``."""
        return cls(
            snapshot_valid=True,
            snapshot=bytes(snapshot),
            snapshot_term=term,
            snapshot_index=index,
        )


@runtime_checkable
class RaftPeer(Protocol):
    """What a Raft peer must expose to the service built on it."""

    def start(self, command: Any) -> tuple[int, int, bool]:
        """Begin agreement on ``command``; return (index, term, is_leader)."""

    def get_state(self) -> tuple[int, bool]:
        """Return the current term and whether this peer believes it leads."""

    def snapshot(self, index: int, snapshot: bytes) -> None:
        """Record that the service snapshotted everything up to ``index``."""

    def persist_bytes(self) -> int:
        """Return the size of the persisted Raft state in bytes."""

    def kill(self) -> None:
        """Stop the peer's long-running work."""