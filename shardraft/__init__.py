"""Raft consensus, shard configuration and a sharded key/value layer."""

__version__ = "0.1.0"