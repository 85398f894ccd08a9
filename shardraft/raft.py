"""A Raft consensus peer: leader election, log replication, persistence and snapshots.

Peers talk to each other through *ends*: objects with a
``call(method, args)`` method that delivers ``args`` to the named handler
on the remote peer (``"request_vote"``, ``"append_entries"`` or
``"install_snapshot"``). It returns the reply, or ``None`` if the request
or reply was lost.
"""

from __future__ import annotations

import enum
import logging
import math
import pickle
import queue
import random
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Protocol, Sequence

from shardraft.persister import Persister
from shardraft.raftapi import ApplyMsg

logger = logging.getLogger(__name__)

_TICK = 0.01


class _End(Protocol):
    def call(self, method: str, args: Any) -> Any: ...


@dataclass
class Entry:
    index: int
    term: int
    command: Any = None


class State(enum.Enum):
    INVALID = 0
    FOLLOWER = 1
    CANDIDATE = 2
    LEADER = 3


@dataclass(frozen=True)
class RequestVoteArgs:
    term: int
    candidate_id: int
    last_log_index: int
    last_log_term: int


@dataclass
class RequestVoteReply:
    term: int = 0
    vote_granted: bool = False


@dataclass(frozen=True)
class AppendEntriesArgs:
    term: int
    leader_id: int
    prev_log_index: int
    prev_log_term: int
    entries: list[Entry] = field(default_factory=list)
    leader_commit: int = 0


@dataclass
class AppendEntriesReply:
    term: int = 0
    success: bool = False
    xterm: int = 0
    xindex: int = 0
    xlen: int = 0


@dataclass(frozen=True)
class InstallSnapshotArgs:
    term: int
    leader_id: int
    last_included_index: int
    last_included_term: int
    data: bytes = b""


@dataclass
class InstallSnapshotReply:
    term: int = 0


def election_timeout() -> float:
    """A randomised election timeout in seconds, 0.7 to 1.0."""
    return (700 + random.randrange(300)) / 1000.0


def heartbeat_timeout() -> float:
    """The leader's heartbeat interval in seconds."""
    return 0.1


class Raft:
    """A single Raft peer. Build one with :func:`make_raft`."""

    def __init__(
        self,
        peers: Sequence[_End],
        me: int,
        persister: Persister,
        apply_queue: "queue.Queue[ApplyMsg | None]",
    ) -> None:
        self._lock = threading.Lock()
        self._apply_cond = threading.Condition(self._lock)
        self._replicate_conds = [threading.Condition(self._lock) for _ in peers]
        self._peers = list(peers)
        self._persister = persister
        self._me = me
        self._apply_queue = apply_queue
        self._dead = threading.Event()

        self._state = State.FOLLOWER
        self._election_deadline = time.monotonic() + election_timeout()
        self._heartbeat_deadline = time.monotonic() + heartbeat_timeout()

        self._current_term = 0
        self._voted_for = -1
        self._log: list[Entry] = [Entry(0, 0, None)]

        self._read_persist(persister.read_raft_state())
        self._commit_index = self._logbase()
        self._last_applied = self._logbase()

        self._next_index = [self._loglen()] * len(peers)
        self._match_index = [0] * len(peers)

    def _launch(self) -> None:
        threading.Thread(target=self._applier, daemon=True).start()
        threading.Thread(target=self._ticker, daemon=True).start()
        for peer in range(len(self._peers)):
            if peer != self._me:
                threading.Thread(target=self._replicator, args=(peer,), daemon=True).start()

    # ----- public interface -------------------------------------------------

    def get_state(self) -> tuple[int, bool]:
        """Return the current term and whether this peer believes it leads."""
        with self._lock:
            return self._current_term, self._state is State.LEADER

    def persist_bytes(self) -> int:
        with self._lock:
            return self._persister.raft_state_size()

    def snapshot(self, index: int, snapshot: bytes) -> None:
        """Trim the log through ``index``, which the service has snapshotted."""
        with self._lock:
            if index <= self._logbase() or index > self._loglen():
                return
            self._persister.save_snapshot(snapshot)
            self._logcut(index)

    def start(self, command: Any) -> tuple[int, int, bool]:
        """Append ``command`` if leader; return (index, term, is_leader)."""
        with self._lock:
            if self._state is not State.LEADER:
                return -1, self._current_term, False
            self._log.append(Entry(self._loglast().index + 1, self._current_term, command))
            self._persist_state()
            self._broadcast_locked(heartbeat=False)
            return self._loglast().index, self._current_term, True

    def kill(self) -> None:
        """Stop background work and close the apply queue with a ``None`` sentinel."""
        self._dead.set()
        with self._lock:
            self._apply_cond.notify_all()
            for cond in self._replicate_conds:
                cond.notify_all()
        self._apply_queue.put(None)

    def killed(self) -> bool:
        return self._dead.is_set()

    # ----- RPC handlers -----------------------------------------------------

    def _step_down_locked(self, term: int) -> None:
        self._current_term = term
        self._voted_for = -1
        self._persist_state()
        self._state = State.FOLLOWER

    def request_vote(self, args: RequestVoteArgs) -> RequestVoteReply:
        with self._lock:
            if self.killed():
                return RequestVoteReply()
            if args.term < self._current_term:
                return RequestVoteReply(self._current_term, False)
            if args.term > self._current_term:
                self._step_down_locked(args.term)
            if self._voted_for not in (-1, args.candidate_id):
                return RequestVoteReply(self._current_term, False)
            last = self._loglast()
            if args.last_log_term < last.term or (
                args.last_log_term == last.term and args.last_log_index < last.index
            ):
                return RequestVoteReply(self._current_term, False)
            self._voted_for = args.candidate_id
            self._persist_state()
            self._reset_election_timer()
            return RequestVoteReply(self._current_term, True)

    def append_entries(self, args: AppendEntriesArgs) -> AppendEntriesReply:
        with self._lock:
            if self.killed():
                return AppendEntriesReply()
            if args.term < self._current_term:
                return AppendEntriesReply(self._current_term, False)
            if args.term > self._current_term:
                self._step_down_locked(args.term)

            if args.prev_log_index >= self._loglen():
                self._reset_election_timer()
                return AppendEntriesReply(self._current_term, False, xlen=self._loglen())

            if args.prev_log_index < self._logbase():
                self._reset_election_timer()
                return AppendEntriesReply(self._current_term, False, 0, 0, 1)

            if args.prev_log_term != self._term(args.prev_log_index):
                xterm = self._term(args.prev_log_index)
                xindex = self._logbase()
                for i in range(args.prev_log_index, self._logbase() - 1, -1):
                    if i == self._logbase() or self._term(i - 1) != xterm:
                        xindex = i
                        break
                self._reset_election_timer()
                return AppendEntriesReply(
                    self._current_term, False, xterm, xindex, self._loglen()
                )

            self._reset_election_timer()
            self._state = State.FOLLOWER
            for entry in args.entries:
                if entry.index < self._loglen():
                    if self._term(entry.index) != entry.term:
                        self._log = self._log[: entry.index - self._logbase()]
                        self._log.append(entry)
                else:
                    self._log.append(entry)
            self._persist_state()
            if args.leader_commit > self._commit_index:
                self._commit_index = min(args.leader_commit, self._loglast().index)
                self._apply_cond.notify()
            return AppendEntriesReply(self._current_term, True)

    def install_snapshot(self, args: InstallSnapshotArgs) -> InstallSnapshotReply:
        with self._lock:
            if self.killed():
                return InstallSnapshotReply()
            if args.term < self._current_term:
                return InstallSnapshotReply(self._current_term)
            if args.term > self._current_term:
                self._step_down_locked(args.term)
            self._reset_election_timer()
            reply = InstallSnapshotReply(self._current_term)
            if args.last_included_index <= self._commit_index:
                return reply

            self._commit_index = max(self._commit_index, args.last_included_index)
            self._last_applied = max(self._last_applied, args.last_included_index)
            if (
                args.last_included_index < self._loglen()
                and self._term(args.last_included_index) == args.last_included_term
            ):
                self._logcut(args.last_included_index)
            else:
                self._log = [Entry(args.last_included_index, args.last_included_term, None)]
                self._persist_state()
            self._persister.save_snapshot(args.data)
            msg = ApplyMsg.snapshot_message(
                args.data, args.last_included_term, args.last_included_index
            )

        def deliver() -> None:
            if not self.killed():
                self._apply_queue.put(msg)

        threading.Thread(target=deliver, daemon=True).start()
        return reply

    # ----- reply handling (lock held) ---------------------------------------

    def _handle_vote_reply(self, args: RequestVoteArgs, reply: RequestVoteReply, votes: list[int]) -> None:
        if self._state is not State.CANDIDATE or args.term != self._current_term:
            return
        if reply.term > self._current_term:
            self._step_down_locked(reply.term)
            return
        if not reply.vote_granted:
            return
        votes[0] += 1
        if votes[0] > len(self._peers) // 2:
            self._state = State.LEADER
            self._next_index = [self._loglen()] * len(self._peers)
            self._match_index = [0] * len(self._peers)
            for peer, cond in enumerate(self._replicate_conds):
                if peer != self._me:
                    cond.notify()
            self._reset_heartbeat_timer()

    def _handle_append_reply(self, peer: int, args: AppendEntriesArgs, reply: AppendEntriesReply) -> None:
        if self._state is not State.LEADER or args.term != self._current_term:
            return
        if reply.term > self._current_term:
            self._step_down_locked(reply.term)
            self._reset_election_timer()
            return
        self._reset_heartbeat_timer()
        if reply.success:
            self._next_index[peer] = args.prev_log_index + len(args.entries) + 1
            self._match_index[peer] = self._next_index[peer] - 1
            self._advance_commit_index()
            return
        if reply.xlen < args.prev_log_index + 1:
            self._next_index[peer] = reply.xlen
            return
        for i in range(args.prev_log_index, self._logbase() - 1, -1):
            if i == self._logbase() or self._term(i - 1) == reply.xterm:
                self._next_index[peer] = i
                return
            if self._term(i - 1) < reply.xterm:
                break
        self._next_index[peer] = reply.xindex

    def _handle_snapshot_reply(self, peer: int, args: InstallSnapshotArgs, reply: InstallSnapshotReply) -> None:
        if self._state is not State.LEADER or args.term != self._current_term:
            return
        if reply.term > self._current_term:
            self._step_down_locked(reply.term)
            self._reset_election_timer()
            return
        self._next_index[peer] = args.last_included_index + 1
        self._match_index[peer] = args.last_included_index
        self._reset_heartbeat_timer()

    def _advance_commit_index(self) -> None:
        for n in range(self._loglen() - 1, self._commit_index, -1):
            if self._term(n) != self._current_term:
                continue
            count = 1 + sum(
                1 for i, m in enumerate(self._match_index) if i != self._me and m >= n
            )
            if count > len(self._peers) // 2:
                self._commit_index = n
                self._apply_cond.notify()
                break

    # ----- background work --------------------------------------------------

    def _ticker(self) -> None:
        while not self.killed():
            time.sleep(_TICK)
            now = time.monotonic()
            with self._lock:
                if now >= self._election_deadline:
                    self._election_deadline = math.inf
                    self._start_election_locked()
                if now >= self._heartbeat_deadline:
                    self._heartbeat_deadline = math.inf
                    self._broadcast_locked(heartbeat=True)

    def _start_election_locked(self) -> None:
        if self._state is State.LEADER:
            return
        self._current_term += 1
        self._voted_for = self._me
        self._persist_state()
        self._state = State.CANDIDATE
        self._reset_election_timer()
        votes = [1]
        for peer in range(len(self._peers)):
            if peer != self._me:
                threading.Thread(target=self._ask_vote, args=(peer, votes), daemon=True).start()

    def _ask_vote(self, peer: int, votes: list[int]) -> None:
        with self._lock:
            last = self._loglast()
            args = RequestVoteArgs(self._current_term, self._me, last.index, last.term)
        reply = self._peers[peer].call("request_vote", args)
        if reply is not None:
            with self._lock:
                self._handle_vote_reply(args, reply, votes)

    def _broadcast_locked(self, heartbeat: bool) -> None:
        if self._state is not State.LEADER:
            return
        self._reset_heartbeat_timer()
        for peer in range(len(self._peers)):
            if peer == self._me:
                continue
            if heartbeat:
                threading.Thread(target=self._replicate_once, args=(peer,), daemon=True).start()
            else:
                self._replicate_conds[peer].notify()

    def _applier(self) -> None:
        while not self.killed():
            with self._lock:
                while self._last_applied >= self._commit_index and not self.killed():
                    self._apply_cond.wait(0.1)
                if self.killed():
                    return
                commit = self._commit_index
                entries = self._log[self._last_applied + 1 - self._logbase(): commit + 1 - self._logbase()]
            for entry in entries:
                if self.killed():
                    return
                self._apply_queue.put(ApplyMsg.command_message(entry.command, entry.index))
            with self._lock:
                self._last_applied = max(self._last_applied, commit)

    def _replicator(self, peer: int) -> None:
        cond = self._replicate_conds[peer]
        while not self.killed():
            with self._lock:
                while (
                    self._state is not State.LEADER or self._next_index[peer] >= self._loglen()
                ) and not self.killed():
                    cond.wait(0.1)
            if self.killed():
                return
            self._replicate_once(peer)

    def _replicate_once(self, peer: int) -> None:
        with self._lock:
            if self._state is not State.LEADER:
                return
            nxt = self._next_index[peer]
            if nxt <= self._logbase():
                sargs = InstallSnapshotArgs(
                    self._current_term,
                    self._me,
                    self._logbase(),
                    self._term(self._logbase()),
                    self._persister.read_snapshot(),
                )
                aargs = None
            else:
                aargs = AppendEntriesArgs(
                    self._current_term,
                    self._me,
                    nxt - 1,
                    self._term(nxt - 1),
                    list(self._log[nxt - self._logbase():]),
                    self._commit_index,
                )
        if aargs is None:
            sreply = self._peers[peer].call("install_snapshot", sargs)
            if sreply is not None:
                with self._lock:
                    self._handle_snapshot_reply(peer, sargs, sreply)
        else:
            areply = self._peers[peer].call("append_entries", aargs)
            if areply is not None:
                with self._lock:
                    self._handle_append_reply(peer, aargs, areply)

    # ----- timers -----------------------------------------------------------

    def _reset_election_timer(self) -> None:
        self._election_deadline = time.monotonic() + election_timeout()

    def _reset_heartbeat_timer(self) -> None:
        self._heartbeat_deadline = time.monotonic() + heartbeat_timeout()

    # ----- persistence and log ----------------------------------------------

    def _persist_state(self) -> None:
        log = [(e.index, e.term, e.command) for e in self._log]
        self._persister.save_raft_state(pickle.dumps((self._current_term, self._voted_for, log)))

    def _read_persist(self, data: bytes) -> None:
        if not data:
            return
        try:
            term, voted_for, log = pickle.loads(data)
            entries = [Entry(i, t, c) for i, t, c in log]
        except Exception:  # corrupt state: start fresh, as on first boot
            logger.debug("could not decode persisted raft state")
            return
        self._current_term, self._voted_for, self._log = term, voted_for, entries

    def _logbase(self) -> int:
        return self._log[0].index

    def _loglast(self) -> Entry:
        return self._log[-1]

    def _loglen(self) -> int:
        return self._loglast().index + 1

    def _term(self, index: int) -> int:
        return self._log[index - self._logbase()].term

    def _logcut(self, index: int) -> None:
        self._log = list(self._log[index - self._logbase():])
        first = self._log[0]
        self._log[0] = Entry(first.index, first.term, None)
        self._persist_state()


def make_raft(
    peers: Sequence[_End],
    me: int,
    persister: Persister,
    apply_queue: "queue.Queue[ApplyMsg | None]",
) -> Raft:
    """Create a peer, restore its persisted state and start its background threads."""
    rf = Raft(peers, me, persister, apply_queue)
    rf._launch()
    return rf