"""In-memory key/value state machine of one shard group, partitioned by shard."""

from __future__ import annotations

import logging
import pickle
from dataclasses import dataclass
from typing import Any, Callable

from shardraft.shardcfg import GID1, NSHARDS, NUM_FIRST, key2shard
from shardraft.shardrpc import (
    DeleteShardArgs,
    DeleteShardReply,
    Err,
    FreezeShardArgs,
    FreezeShardReply,
    GetArgs,
    GetReply,
    InstallShardArgs,
    InstallShardReply,
    PutArgs,
    PutReply,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Record:
    """A stored value and the number of times it has been written."""

    version: int = 0
    value: str = ""


def _encode_shard(data: dict[str, Record]) -> bytes:
    return pickle.dumps({key: (rec.version, rec.value) for key, rec in data.items()})


def _decode_shard(raw: Any) -> dict[str, Record]:
    if not isinstance(raw, dict):
        raise ValueError("shard data is not a mapping")
    return {str(key): Record(int(version), str(value)) for key, (version, value) in raw.items()}


class ShardMemoryKV:
    """Applies key/value and shard-movement operations for group ``gid``.

    Each shard carries the configuration number it was last changed in and
    whether this group currently serves it. Group ``GID1`` starts out
    serving every shard; any other group starts out serving none.
    """

    def __init__(self, gid: int, me: int) -> None:
        self.gid = gid
        self.me = me
        self._data: list[dict[str, Record]] = [{} for _ in range(NSHARDS)]
        self._shard_nums: list[int] = [NUM_FIRST] * NSHARDS
        self._shard_exts: list[bool] = [gid == GID1] * NSHARDS
        self._handlers: dict[type, Callable[[Any], Any]] = {
            GetArgs: self._do_get,
            PutArgs: self._do_put,
            FreezeShardArgs: self._do_freeze_shard,
            InstallShardArgs: self._do_install_shard,
            DeleteShardArgs: self._do_delete_shard,
        }

    def _tag(self) -> str:
        return f"ShardMemoryKV{self.gid}-{self.me}"

    def do_op(self, req: Any) -> Any:
        """Apply one request and return its reply."""
        handler = self._handlers.get(type(req))
        if handler is None:
            raise TypeError(f"{self._tag()}.DoOp()|UnknownOp|req={req!r}")
        return handler(req)

    def snapshot(self) -> bytes:
        """Serialise the whole state machine."""
        data = [{k: (r.version, r.value) for k, r in shard.items()} for shard in self._data]
        blob = pickle.dumps((data, list(self._shard_nums), list(self._shard_exts)))
        logger.debug("%s.Snapshot()|OK", self._tag())
        return blob

    def restore(self, buffer: bytes) -> None:
        """Replace the state with one produced by :meth:`snapshot`."""
        try:
            data, nums, exts = pickle.loads(buffer)
            shards = [_decode_shard(shard) for shard in data]
            nums = [int(n) for n in nums]
            exts = [bool(e) for e in exts]
        except Exception as exc:
            raise ValueError(f"{self._tag()}.Restore()|Fail") from exc
        if not (len(shards) == len(nums) == len(exts) == NSHARDS):
            raise ValueError(f"{self._tag()}.Restore()|Fail")
        self._data, self._shard_nums, self._shard_exts = shards, nums, exts
        logger.debug("%s.Restore()|OK", self._tag())

    # ----- dispatch ---------------------------------------------------------

    def _do_get(self, args: GetArgs) -> GetReply:
        value, version, err = self._get(args.key)
        return GetReply(value=value, version=version, err=err)

    def _do_put(self, args: PutArgs) -> PutReply:
        return PutReply(err=self._put(args.key, args.value, args.version))

    def _do_freeze_shard(self, args: FreezeShardArgs) -> FreezeShardReply:
        state, num, err = self._freeze_shard(args.shard, args.num)
        return FreezeShardReply(state=state, num=num, err=err)

    def _do_install_shard(self, args: InstallShardArgs) -> InstallShardReply:
        return InstallShardReply(err=self._install_shard(args.shard, args.state, args.num))

    def _do_delete_shard(self, args: DeleteShardArgs) -> DeleteShardReply:
        return DeleteShardReply(err=self._delete_shard(args.shard, args.num))

    # ----- operations -------------------------------------------------------

    def _get(self, key: str) -> tuple[str, int, Err]:
        shard = key2shard(key)
        if not self._shard_exts[shard]:
            logger.debug("%s.Get()|ErrWrongGroup|key=%s|shard=%d", self._tag(), key, shard)
            return "", 0, Err.ERR_WRONG_GROUP
        record = self._data[shard].get(key)
        if record is None:
            logger.debug("%s.Get()|ErrNoKey|key=%s|shard=%d", self._tag(), key, shard)
            return "", 0, Err.ERR_NO_KEY
        return record.value, record.version, Err.OK

    def _put(self, key: str, value: str, version: int) -> Err:
        shard = key2shard(key)
        if not self._shard_exts[shard]:
            logger.debug("%s.Put()|ErrWrongGroup|key=%s|shard=%d", self._tag(), key, shard)
            return Err.ERR_WRONG_GROUP
        data = self._data[shard]
        record = data.get(key)
        if record is None and version != 0:
            return Err.ERR_NO_KEY
        if record is not None and version != record.version:
            return Err.ERR_VERSION
        old_version = record.version if record is not None else 0
        data[key] = Record(version=old_version + 1, value=value)
        return Err.OK

    def _freeze_shard(self, shard: int, num: int) -> tuple[bytes, int, Err]:
        current = self._shard_nums[shard]
        if num < current:
            logger.debug(
                "%s.FreezeShard()|ErrWrongGroup|shard=%d|given_num=%d|current_num=%d",
                self._tag(), shard, num, current,
            )
            return b"", current, Err.ERR_WRONG_GROUP
        self._shard_nums[shard] = num
        self._shard_exts[shard] = False
        return _encode_shard(self._data[shard]), num, Err.OK

    def _install_shard(self, shard: int, state: bytes, num: int) -> Err:
        current = self._shard_nums[shard]
        if num < current:
            return Err.ERR_WRONG_GROUP
        if num == current:
            logger.debug("%s.InstallShard()|Repeat|shard=%d|num=%d", self._tag(), shard, num)
            return Err.OK
        self._shard_nums[shard] = num
        self._shard_exts[shard] = True
        if not state:
            self._data[shard] = {}
        else:
            try:
                self._data[shard] = _decode_shard(pickle.loads(state))
            except Exception:
                logger.debug("%s.InstallShard()|DecodeFail|shard=%d", self._tag(), shard)
        return Err.OK

    def _delete_shard(self, shard: int, num: int) -> Err:
        if num < self._shard_nums[shard]:
            return Err.ERR_WRONG_GROUP
        self._shard_nums[shard] = num
        self._data[shard] = {}
        return Err.OK