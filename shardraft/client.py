"""Clerk of the sharded key/value service: routes each key to the group holding its shard."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Protocol, Sequence

from shardraft.shardcfg import ShardConfig, key2shard
from shardraft.shardgrp_client import GroupClerk, Retry
from shardraft.shardrpc import Err

logger = logging.getLogger(__name__)

RETRY_DELAY = 0.1


class _Ctrler(Protocol):
    def query(self) -> ShardConfig: ...


class Clerk:
    """Gets and puts keys, refreshing the configuration when a group says it is the wrong one.

    ``sck.query()`` supplies the current configuration. Group clerks are
    built by ``group_clerk(gid, servers)``, or by default as
    ``GroupClerk(clnt, gid, servers)``.
    """

    def __init__(
        self,
        clnt: Any,
        sck: _Ctrler,
        *,
        group_clerk: Callable[[int, Sequence[str]], GroupClerk] | None = None,
        retry_delay: float = RETRY_DELAY,
    ) -> None:
        self._clnt = clnt
        self._sck = sck
        self._make_group_clerk = group_clerk or (lambda gid, srvs: GroupClerk(clnt, gid, srvs))
        self._retry_delay = retry_delay
        self._cfg: ShardConfig | None = None
        self._grp_clerks: dict[int, GroupClerk] = {}

    def _refresh(self, key: str) -> ShardConfig:
        if self._cfg is None:
            logger.debug("KVClerk|UpdateConfig|key=%s|shard=%d", key, key2shard(key))
            self._cfg = self._sck.query()
            self._grp_clerks = {}
        return self._cfg

    def _grp_clerk(self, key: str) -> GroupClerk:
        gid, srvs = self._refresh(key).gid_servers(key2shard(key))
        clerk = self._grp_clerks.get(gid)
        if clerk is None:
            clerk = self._make_group_clerk(gid, list(srvs or []))
            self._grp_clerks[gid] = clerk
        return clerk

    def get(self, key: str) -> tuple[str, int, Err]:
        """Return (value, version, err) for ``key``."""
        while True:
            value, version, err = self._grp_clerk(key).get(key)
            if err is Err.ERR_WRONG_GROUP:
                self._cfg = None
                time.sleep(self._retry_delay)
                continue
            return value, version, err

    def put(self, key: str, value: str, version: int) -> Err:
        """Store ``value`` under ``key`` if its version is ``version``.

        Returns ``ERR_MAYBE`` instead of ``ERR_VERSION`` when the request
        may have been sent more than once, since an earlier copy may have
        succeeded.
        """
        retry = Retry()
        while True:
            err = self._grp_clerk(key).put(key, value, version, retry)
            if err is Err.ERR_WRONG_GROUP:
                self._cfg = None
                retry.mark()
                time.sleep(self._retry_delay)
                continue
            if err is Err.ERR_VERSION and retry.retried:
                err = Err.ERR_MAYBE
            return err