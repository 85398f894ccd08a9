from shardraft.shardcfg import GID1, NUM_FIRST, key2shard
from shardraft.shardgrp_client import GroupClerk, Retry
from shardraft.shardmemorykv import ShardMemoryKV
from shardraft.shardrpc import Err, GetArgs, GetReply, PutReply

OTHER_GID = GID1 + 1


class FakeClnt:
    """Routes calls to per-server handlers and records them."""

    def __init__(self, handlers):
        self.handlers = handlers
        self.calls = []

    def call(self, server, method, args):
        self.calls.append((server, method))
        return self.handlers[server](method, args)


def serving(kv):
    return lambda method, args: kv.do_op(args)


def not_leader(method, args):
    if method == "KVServer.Put":
        return PutReply(err=Err.ERR_WRONG_LEADER)
    return GetReply(err=Err.ERR_WRONG_LEADER)


def lost(method, args):
    return None


def fast_clerk(clnt, gid, servers):
    return GroupClerk(clnt, gid, servers, get_timeout=0.05, op_timeout=0.05, interval=0.001)


def test_put_get_through_leader():
    kv = ShardMemoryKV(GID1, 0)
    clnt = FakeClnt({"s0": not_leader, "s1": serving(kv)})
    ck = GroupClerk(clnt, GID1, ["s0", "s1"], interval=0.001)
    assert ck.put("k", "v", 0) is Err.OK
    value, version, err = ck.get("k")
    assert (value, err) == ("v", Err.OK)
    assert version == 1
    assert version == kv.do_op(GetArgs("k")).version


def test_leader_is_remembered():
    kv = ShardMemoryKV(GID1, 0)
    clnt = FakeClnt({"s0": not_leader, "s1": serving(kv)})
    ck = GroupClerk(clnt, GID1, ["s0", "s1"], interval=0.001)
    ck.put("k", "v", 0)
    clnt.calls.clear()
    for _ in range(5):
        ck.get("k")
    assert clnt.calls == [("s1", "KVServer.Get")] * 5


def test_retry_marked_after_wrong_leader():
    kv = ShardMemoryKV(GID1, 0)
    clnt = FakeClnt({"s0": not_leader, "s1": serving(kv)})
    ck = GroupClerk(clnt, GID1, ["s0", "s1"], interval=0.001)
    ck._leader = 0
    retry = Retry()
    assert ck.put("k", "v", 0, retry) is Err.OK
    assert retry.retried is True


def test_retry_not_marked_on_first_success():
    kv = ShardMemoryKV(GID1, 0)
    ck = GroupClerk(FakeClnt({"s0": serving(kv)}), GID1, ["s0"])
    retry = Retry()
    assert ck.put("k", "v", 0, retry) is Err.OK
    assert retry.retried is False


def test_unreachable_group_reports_wrong_group():
    ck = fast_clerk(FakeClnt({"s0": lost}), GID1, ["s0"])
    assert ck.get("k") == ("", 0, Err.ERR_WRONG_GROUP)
    assert ck.put("k", "v", 0) is Err.ERR_WRONG_GROUP
    assert ck.freeze_shard(0, NUM_FIRST) == (b"", 0, Err.ERR_WRONG_GROUP)
    assert ck.install_shard(0, b"", NUM_FIRST) is Err.ERR_WRONG_GROUP
    assert ck.delete_shard(0, NUM_FIRST) is Err.ERR_WRONG_GROUP


def test_shard_move_between_groups():
    src = ShardMemoryKV(GID1, 0)
    dst = ShardMemoryKV(OTHER_GID, 0)
    clnt = FakeClnt({"a0": serving(src), "b0": serving(dst)})
    src_ck = GroupClerk(clnt, GID1, ["a0"])
    dst_ck = GroupClerk(clnt, OTHER_GID, ["b0"])
    src_ck.put("k", "v", 0)
    _, version, _ = src_ck.get("k")
    shard = key2shard("k")
    num = NUM_FIRST + 1

    state, got_num, err = src_ck.freeze_shard(shard, num)
    assert (got_num, err) == (num, Err.OK)
    assert dst_ck.install_shard(shard, state, num) is Err.OK
    assert src_ck.delete_shard(shard, num) is Err.OK

    assert dst_ck.get("k") == ("v", version, Err.OK)
    assert src_ck.get("k")[2] is Err.ERR_WRONG_GROUP


def test_retry_mark():
    retry = Retry()
    assert retry.retried is False
    retry.mark()
    assert retry.retried is True