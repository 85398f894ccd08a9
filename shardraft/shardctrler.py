"""Shard controller: stores configurations in a key/value server and moves shards."""

from __future__ import annotations

import logging
from typing import Any, Callable, Protocol, Sequence

from shardraft.shardcfg import NSHARDS, ShardConfig
from shardraft.shardgrp_client import GroupClerk
from shardraft.shardrpc import Err

logger = logging.getLogger(__name__)

CONFIG_KEY = "config"
NEXT_KEY = "next"


class _KV(Protocol):
    def get(self, key: str) -> tuple[str, int, Err]: ...

    def put(self, key: str, value: str, version: int) -> Err: ...


GroupClerkFactory = Callable[[int, Sequence[str]], GroupClerk]


class ShardCtrler:
    """Keeps the current configuration under ``"config"`` in ``kv``.

    A change in progress is recorded under ``"next"`` before any shard is
    moved, so that a later controller can finish it with
    :meth:`init_controller`. ``kv`` offers ``get(key)`` returning
    ``(value, version, err)`` and ``put(key, value, version)`` returning an
    :class:`Err`. Group clerks are built by ``group_clerk(gid, servers)``,
    or by default as ``GroupClerk(clnt, gid, servers)``.
    """

    def __init__(
        self,
        kv: _KV,
        clnt: Any = None,
        *,
        group_clerk: GroupClerkFactory | None = None,
    ) -> None:
        self._kv = kv
        self._clnt = clnt
        self._make_group_clerk = group_clerk or self._default_group_clerk
        self._grp_clerks: dict[int, GroupClerk] = {}

    def _default_group_clerk(self, gid: int, servers: Sequence[str]) -> GroupClerk:
        if self._clnt is None:
            raise RuntimeError("no client to reach shard groups with")
        return GroupClerk(self._clnt, gid, servers)

    # ----- public interface -------------------------------------------------

    def init_controller(self) -> None:
        """Finish a configuration change left unfinished by an earlier controller."""
        logger.info("ShardCtrler.InitController()|Start")
        new, new_version = self._get_next_config()
        if new is None:
            return
        old, old_version = self._get_cur_config()

        if not self._move_shards(old, new):
            logger.info("ShardCtrler.InitController()|Fail|To=%s", new)
            return

        if self._put_cur_config(new, old_version) is Err.ERR_VERSION:
            logger.info("ShardCtrler.InitController()|InProgress|To=%s", new)
            return

        self._delete_next_config(new_version)
        logger.info("ShardCtrler.InitController()|End|To=%s", new)

    def init_config(self, cfg: ShardConfig) -> None:
        """Store the first configuration at version 0."""
        text = cfg.to_json()
        while True:
            err = self._kv.put(CONFIG_KEY, text, 0)
            if err is Err.ERR_MAYBE:
                value, _, gerr = self._kv.get(CONFIG_KEY)
                if gerr is Err.OK and value == text:
                    break
                continue
            if err is Err.OK:
                break
        logger.info("ShardCtrler.InitConfig()|OK|Config=%s", text)

    def change_config_to(self, new: ShardConfig) -> None:
        """Move from the current configuration to ``new``, unless another change is pending."""
        old, old_version = self._get_cur_config()
        logger.info("ShardCtrler.ChangeConfigTo()|Start|From=%s|To=%s", old, new)

        pending, new_version = self._get_next_config()
        if pending is not None:
            logger.info("ShardCtrler.ChangeConfigTo()|InProgress|To=%s", new)
            return
        if self._put_next_config(new, new_version) is Err.ERR_VERSION:
            logger.info("ShardCtrler.ChangeConfigTo()|InProgress|To=%s", new)
            return
        new_version += 1

        if not self._move_shards(old, new):
            logger.info("ShardCtrler.ChangeConfigTo()|Fail|To=%s", new)
            return

        if self._put_cur_config(new, old_version) is Err.ERR_VERSION:
            logger.info("ShardCtrler.ChangeConfigTo()|InProgress|To=%s", new)
            return

        self._delete_next_config(new_version)
        logger.info("ShardCtrler.ChangeConfigTo()|End|To=%s", new)

    def query(self) -> ShardConfig:
        """Return the current configuration."""
        return self._get_cur_config()[0]

    # ----- shard movement ---------------------------------------------------

    def _clerk(self, gid: int, servers: Sequence[str] | None) -> GroupClerk:
        clerk = self._grp_clerks.get(gid)
        if clerk is None:
            clerk = self._make_group_clerk(gid, list(servers or []))
            self._grp_clerks[gid] = clerk
        return clerk

    def _move_shards(self, old: ShardConfig, new: ShardConfig) -> bool:
        logger.debug("ShardCtrler.moveShards()|From=%s|To=%s", old, new)
        for shard in range(NSHARDS):
            old_gid, old_srvs = old.gid_servers(shard)
            new_gid, new_srvs = new.gid_servers(shard)
            if old_gid == new_gid:
                continue
            old_clerk = self._clerk(old_gid, old_srvs)
            new_clerk = self._clerk(new_gid, new_srvs)

            state, _, err = old_clerk.freeze_shard(shard, new.num)
            if err is not Err.OK:
                logger.info("ShardCtrler.moveShards()|FreezeShard|Fail|shard=%d|err=%s", shard, err)
                return False
            err = new_clerk.install_shard(shard, state, new.num)
            if err is not Err.OK:
                logger.info("ShardCtrler.moveShards()|InstallShard|Fail|shard=%d|err=%s", shard, err)
                return False
            err = old_clerk.delete_shard(shard, new.num)
            if err is not Err.OK:
                logger.info("ShardCtrler.moveShards()|DeleteShard|Fail|shard=%d|err=%s", shard, err)
                return False
        return True

    # ----- stored configurations --------------------------------------------

    def _get_cur_config(self) -> tuple[ShardConfig, int]:
        value, version, err = self._kv.get(CONFIG_KEY)
        if err is not Err.OK:
            raise RuntimeError(f"ShardCtrler.getCurConfig()|Get|Fail|err={err.value}")
        return ShardConfig.from_json(value), version

    def _get_next_config(self) -> tuple[ShardConfig | None, int]:
        value, version, err = self._kv.get(NEXT_KEY)
        if err is Err.ERR_NO_KEY or value == "":
            return None, version
        if err is not Err.OK:
            raise RuntimeError(f"ShardCtrler.getNextConfig()|Fail|err={err.value}")
        return ShardConfig.from_json(value), version

    def _put_checked(self, key: str, value: str, version: int) -> Err:
        err = self._kv.put(key, value, version)
        if err is Err.ERR_MAYBE:
            stored, _, gerr = self._kv.get(key)
            if gerr is not Err.OK:
                raise RuntimeError(f"ShardCtrler: cannot read back {key!r}: {gerr.value}")
            err = Err.OK if stored == value else Err.ERR_VERSION
        logger.debug("ShardCtrler.put|key=%s|version=%d|err=%s", key, version, err)
        return err

    def _put_cur_config(self, cfg: ShardConfig, version: int) -> Err:
        return self._put_checked(CONFIG_KEY, cfg.to_json(), version)

    def _put_next_config(self, cfg: ShardConfig, version: int) -> Err:
        return self._put_checked(NEXT_KEY, cfg.to_json(), version)

    def _delete_next_config(self, version: int) -> Err:
        return self._put_checked(NEXT_KEY, "", version)