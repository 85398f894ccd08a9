"""Clerk that sends key/value and shard-movement RPCs to one shard group."""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Callable, Protocol, Sequence

from shardraft.shardrpc import (
    DeleteShardArgs,
    Err,
    FreezeShardArgs,
    GetArgs,
    InstallShardArgs,
    PutArgs,
)

logger = logging.getLogger(__name__)

INTERVAL = 0.1
GET_TIMEOUT = 2.0
OP_TIMEOUT = 4.0


class _Clnt(Protocol):
    def call(self, server: str, method: str, args: Any) -> Any: ...


@dataclass
class Retry:
    """Records whether a request may have been sent more than once."""

    retried: bool = False

    def mark(self) -> None:
        self.retried = True


class GroupClerk:
    """Talks to the servers of group ``gid``, remembering the last leader.

    ``clnt.call(server, method, args)`` returns the reply, or ``None`` if
    the request or its reply was lost. A request that finds no leader
    before its deadline reports ``ERR_WRONG_GROUP``.
    """

    def __init__(
        self,
        clnt: _Clnt,
        gid: int,
        servers: Sequence[str],
        *,
        get_timeout: float = GET_TIMEOUT,
        op_timeout: float = OP_TIMEOUT,
        interval: float = INTERVAL,
    ) -> None:
        self._clnt = clnt
        self.gid = gid
        self.servers = list(servers)
        self._leader = -1
        self._get_timeout = get_timeout
        self._op_timeout = op_timeout
        self._interval = interval

    def _peer(self) -> int:
        if self._leader >= 0:
            return self._leader
        return random.randrange(len(self.servers))

    def _call(
        self,
        method: str,
        args: Any,
        timeout: float,
        on_retry: Callable[[], None] | None = None,
    ) -> Any:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            peer = self._peer()
            reply = self._clnt.call(self.servers[peer], method, args)
            if reply is None or reply.err is Err.ERR_WRONG_LEADER:
                self._leader = -1
                if on_retry is not None:
                    on_retry()
                time.sleep(self._interval)
                continue
            self._leader = peer
            logger.debug("GroupClerk%d.%s|End|args=%r|err=%s", self.gid, method, args, reply.err)
            return reply
        return None

    def get(self, key: str) -> tuple[str, int, Err]:
        reply = self._call("KVServer.Get", GetArgs(key), self._get_timeout)
        if reply is None:
            return "", 0, Err.ERR_WRONG_GROUP
        return reply.value, reply.version, reply.err

    def put(self, key: str, value: str, version: int, retry: Retry | None = None) -> Err:
        on_retry = retry.mark if retry is not None else None
        reply = self._call("KVServer.Put", PutArgs(key, value, version), self._op_timeout, on_retry)
        if reply is None:
            return Err.ERR_WRONG_GROUP
        return reply.err

    def freeze_shard(self, shard: int, num: int) -> tuple[bytes, int, Err]:
        reply = self._call("KVServer.FreezeShard", FreezeShardArgs(shard, num), self._op_timeout)
        if reply is None:
            return b"", 0, Err.ERR_WRONG_GROUP
        return reply.state, reply.num, reply.err

    def install_shard(self, shard: int, state: bytes, num: int) -> Err:
        reply = self._call(
            "KVServer.InstallShard", InstallShardArgs(shard, state, num), self._op_timeout
        )
        if reply is None:
            return Err.ERR_WRONG_GROUP
        return reply.err

    def delete_shard(self, shard: int, num: int) -> Err:
        reply = self._call("KVServer.DeleteShard", DeleteShardArgs(shard, num), self._op_timeout)
        if reply is None:
            return Err.ERR_WRONG_GROUP
        return reply.err