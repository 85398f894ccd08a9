"""Error codes and RPC argument/reply types for the sharded key/value service."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Err(str, Enum):
    """Outcome of a key/value or shard operation."""

    OK = "OK"
    ERR_NO_KEY = "ErrNoKey"
    ERR_VERSION = "ErrVersion"
    ERR_MAYBE = "ErrMaybe"
    ERR_WRONG_LEADER = "ErrWrongLeader"
    ERR_WRONG_GROUP = "ErrWrongGroup"


@dataclass(frozen=True)
class GetArgs:
    key: str


@dataclass
class GetReply:
    value: str = ""
    version: int = 0
    err: Err = Err.OK


@dataclass(frozen=True)
class PutArgs:
    key: str
    value: str
    version: int


@dataclass
class PutReply:
    err: Err = Err.OK


@dataclass(frozen=True)
class FreezeShardArgs:
    shard: int
    num: int


@dataclass
class FreezeShardReply:
    state: bytes = b""
    num: int = 0
    err: Err = Err.OK


@dataclass(frozen=True)
class InstallShardArgs:
    shard: int
    state: bytes
    num: int


@dataclass
class InstallShardReply:
    err: Err = Err.OK


@dataclass(frozen=True)
class DeleteShardArgs:
    shard: int
    num: int


@dataclass
class DeleteShardReply:
    err: Err = Err.OK