"""Shard configurations: which replica group serves each shard."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Iterable, Mapping

logger = logging.getLogger(__name__)

NSHARDS = 12
NUM_FIRST = 1
GID1 = 1

_FNV32_OFFSET = 0x811C9DC5
_FNV32_PRIME = 0x01000193

_JSON_ESCAPES = {
    "<": "\\u003c",
    ">": "\\u003e",
    "&": "\\u0026",
    "\u2028": "\\u2028",
    "\u2029": "\\u2029",
}


class ConfigError(Exception):
    """Raised for an inconsistent or malformed shard configuration."""


def key2shard(key: str) -> int:
    """Return the shard a key belongs to (32-bit FNV-1a modulo NSHARDS)."""
    h = _FNV32_OFFSET
    for byte in key.encode("utf-8"):
        h ^= byte
        h = (h * _FNV32_PRIME) & 0xFFFFFFFF
    return h % NSHARDS


def _default_shards() -> list[int]:
    return [0] * NSHARDS


@dataclass
class ShardConfig:
    """A numbered assignment of shards to groups, plus each group's servers."""

    num: int = 0
    shards: list[int] = field(default_factory=_default_shards)
    groups: dict[int, list[str]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if len(self.shards) != NSHARDS:
            raise ConfigError(f"expected {NSHARDS} shards, got {len(self.shards)}")

    def __str__(self) -> str:
        return self.to_json()

    def to_json(self) -> str:
        """Encode as compact JSON with the field names Num, Shards and Groups."""
        groups = {str(gid): srvs for gid, srvs in self.groups.items()}
        doc = {
            "Num": self.num,
            "Shards": list(self.shards),
            "Groups": dict(sorted(groups.items())),
        }
        text = json.dumps(doc, separators=(",", ":"), ensure_ascii=False)
        for char, escape in _JSON_ESCAPES.items():
            text = text.replace(char, escape)
        return text

    @classmethod
    def from_json(cls, s: str) -> ShardConfig:
        """Decode a configuration produced by :meth:`to_json`."""
        try:
            doc = json.loads(s)
        except json.JSONDecodeError as exc:
            raise ConfigError(f"Unmarshall err {exc}") from exc
        if not isinstance(doc, dict):
            raise ConfigError(f"Unmarshall err: not an object: {s!r}")
        try:
            shards = [int(g) for g in (doc.get("Shards") or [])][:NSHARDS]
            shards += [0] * (NSHARDS - len(shards))
            groups = {
                int(gid): list(srvs or [])
                for gid, srvs in (doc.get("Groups") or {}).items()
            }
            num = int(doc.get("Num") or 0)
        except (TypeError, ValueError, AttributeError) as exc:
            raise ConfigError(f"Unmarshall err {exc}") from exc
        return cls(num=num, shards=shards, groups=groups)

    def copy(self) -> ShardConfig:
        """Return a deep copy."""
        return ShardConfig(
            num=self.num,
            shards=list(self.shards),
            groups={gid: list(srvs) for gid, srvs in self.groups.items()},
        )

    def _analyze(self) -> tuple[int, int, int, int]:
        """Return (most-loaded gid, its count, least-loaded gid, its count)."""
        counts: dict[int, int] = {}
        for g in self.shards:
            counts[g] = counts.get(g, 0) + 1
        most_n, most_g = -1, -1
        least_n, least_g = 257, -1
        for g in sorted(self.groups):
            n = counts.get(g, 0)
            if n < least_n:
                least_n, least_g = n, g
            if n > most_n:
                most_n, most_g = n, g
        return most_g, most_n, least_g, least_n

    def rebalance(self) -> None:
        """Assign every shard to a live group, evening out the load in place."""
        if not self.groups:
            self.shards = _default_shards()
            return

        for s, g in enumerate(list(self.shards)):
            if g not in self.groups:
                self.shards[s] = self._analyze()[2]

        while True:
            most_g, most_n, least_g, least_n = self._analyze()
            if most_n < least_n + 2:
                break
            self.shards[self.shards.index(most_g)] = least_g

    def join(self, servers: Mapping[int, Iterable[str]]) -> bool:
        """Add groups; return False if a group is already present."""
        changed = False
        for gid, srvs in servers.items():
            srvs = list(srvs)
            if gid in self.groups:
                logger.info("re-Join %s", gid)
                return False
            for xgid, xservers in self.groups.items():
                for s in xservers:
                    if s in srvs:
                        raise ConfigError(
                            f"Join({gid}) puts server {s} in groups {xgid} and {gid}"
                        )
            self.groups[gid] = srvs
            changed = True
        if not changed:
            raise ConfigError("Join but no change")
        self.num += 1
        return True

    def leave(self, gids: Iterable[int]) -> bool:
        """Remove groups; return False if a group is not present."""
        changed = False
        for gid in gids:
            if gid not in self.groups:
                logger.info("Leave(%s) but not in config", gid)
                return False
            del self.groups[gid]
            changed = True
        if not changed:
            raise ConfigError("Leave but no change")
        self.num += 1
        return True

    def join_balance(self, servers: Mapping[int, Iterable[str]]) -> bool:
        if not self.join(servers):
            return False
        self.rebalance()
        return True

    def leave_balance(self, gids: Iterable[int]) -> bool:
        if not self.leave(gids):
            return False
        self.rebalance()
        return True

    def gid_servers(self, shard: int) -> tuple[int, list[str] | None]:
        """Return the gid owning ``shard`` and its servers (None if unknown)."""
        gid = self.shards[shard]
        return gid, self.groups.get(gid)

    def is_member(self, gid: int) -> bool:
        """Whether ``gid`` owns at least one shard."""
        return gid in self.shards

    def check_config(self, groups: Iterable[int]) -> None:
        """Raise ConfigError unless exactly ``groups`` are present and balanced."""
        groups = list(groups)
        if len(self.groups) != len(groups):
            raise ConfigError(f"wanted {len(groups)} groups, got {len(self.groups)}")

        for g in groups:
            if g not in self.groups:
                raise ConfigError(f"missing group {g}")

        if groups:
            for s, g in enumerate(self.shards):
                if g not in self.groups:
                    raise ConfigError(f"shard {s} -> invalid group {g}")

        counts: dict[int, int] = {}
        for g in self.shards:
            counts[g] = counts.get(g, 0) + 1
        loads = [counts.get(g, 0) for g in self.groups]
        low = min(loads, default=257)
        high = max(loads, default=0)
        if high > low + 1:
            raise ConfigError(f"max {high} too much larger than min {low}")