"""Timeline annotations for tests: points, intervals, continuous spans and fault state."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Iterable, Sequence

COLOR_INFO = "#FAFAFA"
COLOR_NEUTRAL = "#FFECB3"
COLOR_SUCCESS = "#C8E6C9"
COLOR_FAILURE = "#FFCDD2"
COLOR_FAULT = "#B3E5FC"
COLOR_USER = "#FFF176"

TAG_CHECKER = "$ Checker"
TAG_PARTITION = "$ Failure"
TAG_INFO = "$ Test Info"


def timestamp() -> int:
    """Nanoseconds since the Unix epoch."""
    return time.time_ns()


@dataclass(frozen=True)
class Annotation:
    """One entry on the timeline; ``end`` is 0 for a point in time."""

    tag: str
    start: int
    description: str
    details: str
    background_color: str
    end: int = 0


@dataclass(frozen=True)
class _Continuous:
    start: int
    desp: str
    details: str
    bgcolor: str

    def closed(self, tag: str, end: int) -> Annotation:
        return Annotation(tag, self.start, self.desp, self.details, self.bgcolor, end)


def _go_list(items: Iterable[int]) -> str:
    return "[" + " ".join(str(i) for i in items) + "]"


class AnnotationLog:
    """Collects annotations; a continuous annotation per tag lasts until replaced or ended."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._annotations: list[Annotation] = []
        self._continuous: dict[str, _Continuous] = {}
        self._finalized = False

    @property
    def finalized(self) -> bool:
        with self._lock:
            return self._finalized

    @property
    def annotations(self) -> list[Annotation]:
        """The annotations concluded so far (not the open continuous ones)."""
        with self._lock:
            return list(self._annotations)

    def point(self, tag: str, desp: str, details: str, bgcolor: str = COLOR_USER) -> None:
        with self._lock:
            self._annotations.append(Annotation(tag, timestamp(), desp, details, bgcolor))

    def interval(
        self, tag: str, start: int, desp: str, details: str, bgcolor: str = COLOR_USER
    ) -> None:
        with self._lock:
            self._annotations.append(
                Annotation(tag, start, desp, details, bgcolor, timestamp())
            )

    def continuous(self, tag: str, desp: str, details: str, bgcolor: str = COLOR_USER) -> None:
        """Open a continuous annotation for ``tag``, closing any previous one."""
        with self._lock:
            now = timestamp()
            previous = self._continuous.get(tag)
            if previous is not None:
                self._annotations.append(previous.closed(tag, now))
            self._continuous[tag] = _Continuous(now, desp, details, bgcolor)

    def continuous_end(self, tag: str) -> None:
        """Close the open continuous annotation for ``tag``, if there is one."""
        with self._lock:
            previous = self._continuous.pop(tag, None)
            if previous is not None:
                self._annotations.append(previous.closed(tag, timestamp()))

    def finalize(self, end: str) -> list[Annotation]:
        """Return every annotation, open ones closed now, followed by an ``end`` info point."""
        with self._lock:
            now = timestamp()
            result = list(self._annotations)
            result.extend(cont.closed(tag, now) for tag, cont in self._continuous.items())
            self._finalized = True
        result.append(Annotation(TAG_INFO, timestamp(), end, end, COLOR_INFO))
        return result

    def clear(self) -> None:
        with self._lock:
            self._annotations = []
            self._continuous = {}
            self._finalized = False


class FaultTracker:
    """Tracks which of ``nservers`` servers are connected or crashed and annotates changes."""

    def __init__(self, nservers: int, log: AnnotationLog) -> None:
        self._lock = threading.Lock()
        self.nservers = nservers
        self._log = log
        self._connected = [True] * nservers
        self._crashed = [False] * nservers
        self._checker_ts = 0
        self._checker_details = ""

    @property
    def connected(self) -> list[bool]:
        with self._lock:
            return list(self._connected)

    @property
    def crashed(self) -> list[bool]:
        with self._lock:
            return list(self._crashed)

    def checker_begin(self, details: str) -> None:
        with self._lock:
            self._checker_ts = timestamp()
            self._checker_details = details

    def checker_end(self, desp: str, details: str, color: str) -> None:
        """Record a checker result as an interval since the last begin, or as a point."""
        with self._lock:
            if self._checker_ts == 0:
                self._log.point(TAG_CHECKER, desp, details, color)
                return
            text = f"{self._checker_details}: {details}"
            self._log.interval(TAG_CHECKER, self._checker_ts, desp, text, color)
            self._checker_ts = 0

    def connection(self, connected: Sequence[bool]) -> None:
        with self._lock:
            connected = list(connected)
            if connected == self._connected:
                return
            if len(connected) != self.nservers:
                raise ValueError(f"expected {self.nservers} flags, got {len(connected)}")
            self._connected = connected
            self._annotate_fault()

    def two_partitions(self, p1: Sequence[int], p2: Sequence[int]) -> None:
        text = f"partition = {_go_list(p1)} {_go_list(p2)}"
        self._log.continuous(TAG_PARTITION, text, text, COLOR_FAULT)

    def clear_failure(self) -> None:
        with self._lock:
            self._crashed = [False] * self.nservers
            self._connected = [True] * self.nservers
            self._log.continuous_end(TAG_PARTITION)

    def shutdown(self, servers: Iterable[int]) -> None:
        with self._lock:
            changed = False
            for sid in servers:
                if not self._crashed[sid]:
                    changed = True
                self._crashed[sid] = True
            if changed:
                self._annotate_fault()

    def restart(self, servers: Iterable[int]) -> None:
        with self._lock:
            changed = False
            for sid in servers:
                if self._crashed[sid]:
                    changed = True
                self._crashed[sid] = False
            if changed:
                self._annotate_fault()

    def _annotate_fault(self) -> None:
        if all(self._connected) and not any(self._crashed):
            self._log.continuous_end(TAG_PARTITION)
            return
        conn: list[int] = []
        crashes: list[int] = []
        parts = ["partition = "]
        for sid, up in enumerate(self._connected):
            if self._crashed[sid]:
                crashes.append(sid)
            elif up:
                conn.append(sid)
            else:
                parts.append(f"[{sid}] ")
        if conn:
            parts.append(_go_list(conn))
        if crashes:
            parts.append(f" / crash = {_go_list(crashes)}")
        text = "".join(parts)
        self._log.continuous(TAG_PARTITION, text, text, COLOR_FAULT)