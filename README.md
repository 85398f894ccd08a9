# shardraft

Building blocks for a replicated, sharded key/value store, in pure Python
with no dependencies outside the standard library.

## Modules

- `shardraft.raft`: a Raft peer with leader election, log replication,
  persistence and snapshots. `make_raft(peers, me, persister, apply_queue)`
  builds a `Raft` and starts its background threads. Committed commands and
  installed snapshots are put on `apply_queue` as `ApplyMsg` values;
  `Raft.kill()` stops the peer and puts `None` on the queue.
  `Raft.start(command)` returns `(index, term, is_leader)` and
  `Raft.get_state()` returns `(term, is_leader)`.
- `shardraft.raftapi`: `ApplyMsg` and the `RaftPeer` protocol.
- `shardraft.persister`: `Persister`, a thread-safe in-memory store for a
  peer's Raft state and snapshot.
- `shardraft.shardcfg`: `ShardConfig`, an assignment of the `NSHARDS` (12)
  shards to replica groups, with `join_balance`, `leave_balance`,
  `rebalance`, `check_config` and JSON round trips (`to_json`,
  `from_json`). `key2shard(key)` gives a key's shard (32-bit FNV-1a).
  Inconsistent configurations raise `ConfigError`.
- `shardraft.shardrpc`: the `Err` codes and the argument/reply dataclasses
  for get, put, freeze-shard, install-shard and delete-shard requests.
- `shardraft.shardmemorykv`: `ShardMemoryKV`, a versioned key/value state
  machine partitioned by shard. `do_op(request)` applies one request and
  returns its reply; `snapshot()` and `restore(buffer)` save and load the
  whole state. Group `GID1` (1) starts out serving every shard, other
  groups serve none until a shard is installed.
- `shardraft.shardgrp_client`: `GroupClerk`, which sends requests to the
  servers of one group, remembers the last leader, and reports
  `Err.ERR_WRONG_GROUP` when no server answers before its deadline.
- `shardraft.shardctrler`: `ShardCtrler`, which keeps the current
  configuration in a key/value store and, on `change_config_to(new)`,
  moves each reassigned shard (freeze, install, delete). A pending change
  is recorded first, so `init_controller()` on a later controller can
  finish it. `init_config(cfg)` stores the first configuration and
  `query()` returns the current one.
- `shardraft.client`: `Clerk`, whose `get(key)` and `put(key, value,
  version)` route each key to the group owning its shard, refreshing the
  configuration whenever a group answers `ERR_WRONG_GROUP`.
- `shardraft.annotation`: `AnnotationLog` (point, interval and continuous
  timeline annotations) and `FaultTracker`, which records connection and
  crash changes of a set of servers as annotations.

## Examples

Shard configurations:

    from shardraft.shardcfg import ShardConfig, key2shard

    cfg = ShardConfig()
    cfg.join_balance({1: ["a", "b", "c"]})
    cfg.join_balance({2: ["d", "e", "f"]})
    cfg.check_config([1, 2])          # raises ConfigError if unbalanced

    gid, servers = cfg.gid_servers(key2shard("some-key"))
    restored = ShardConfig.from_json(cfg.to_json())

The key/value state machine:

    from shardraft.shardmemorykv import ShardMemoryKV
    from shardraft.shardrpc import GetArgs, PutArgs

    kv = ShardMemoryKV(gid=1, me=0)
    kv.do_op(PutArgs("k", "v", 0))    # PutReply(err=Err.OK)
    kv.do_op(GetArgs("k"))            # GetReply(value='v', version=1, err=Err.OK)
    kv.do_op(PutArgs("k", "w", 0))    # PutReply(err=Err.ERR_VERSION)

A new key is created with version 0; every later put must name the current
version, which each successful put increases by one.

Raft peers in one process. Each peer reaches the others through *ends*,
objects with `call(method, args)` that return the reply, or `None` if it
was lost:

    import queue
    from shardraft.persister import Persister
    from shardraft.raft import make_raft

    rafts = []

    class LocalEnd:
        def __init__(self, target):
            self.target = target

        def call(self, method, args):
            return getattr(rafts[self.target], method)(args)

    ends = [LocalEnd(i) for i in range(3)]
    queues = [queue.Queue() for _ in range(3)]
    rafts.extend(make_raft(ends, i, Persister(), queues[i]) for i in range(3))

    # once a leader is elected:
    # index, term, ok = leader.start("command")
    # queues[i].get() -> ApplyMsg(command_valid=True, command='command', ...)

## What the package does not do

There is no network transport: Raft peers, `GroupClerk`, `ShardCtrler`
and `Clerk` all take objects you supply to carry requests. There is no
server that runs `ShardMemoryKV` on top of Raft, and no standalone
key/value server for the controller to store its configuration in; these
must be provided by the caller. `AnnotationLog` collects annotations in
memory and does not write them to any file or visualisation.

## Tests

    pip install .[test]
    pytest