import pytest

from shardraft.shardcfg import (
    GID1,
    NSHARDS,
    ConfigError,
    ShardConfig,
    key2shard,
)


def assert_same_config(c1, c2):
    assert c1.num == c2.num
    assert c1.shards == c2.shards
    assert c1.groups == c2.groups


def test_basic():
    gid1, gid2 = 1, 2
    cfg = ShardConfig()
    cfg.check_config([])

    cfg.join_balance({gid1: ["x", "y", "z"]})
    cfg.check_config([gid1])

    cfg.join_balance({gid2: ["a", "b", "c"]})
    cfg.check_config([gid1, gid2])

    assert cfg.groups[gid1] == ["x", "y", "z"]
    assert cfg.groups[gid2] == ["a", "b", "c"]

    cfg.leave_balance([gid1])
    cfg.check_config([gid2])

    cfg.leave_balance([gid2])
    cfg.check_config([])


def test_first_join_assigns_everything():
    cfg = ShardConfig()
    assert cfg.join_balance({GID1: ["xxx"]}) is True
    assert cfg.num == 1
    assert cfg.shards[0] == GID1
    assert all(g == GID1 for g in cfg.shards)
    cfg.check_config([GID1])


def test_leave_all_unassigns():
    cfg = ShardConfig()
    cfg.join_balance({1: ["a"]})
    cfg.leave_balance([1])
    assert cfg.shards == [0] * NSHARDS
    assert cfg.num == 2


def test_rejoin_returns_false_without_bumping_num():
    cfg = ShardConfig()
    cfg.join_balance({1: ["a"]})
    assert cfg.join_balance({1: ["b"]}) is False
    assert cfg.num == 1
    assert cfg.groups[1] == ["a"]


def test_leave_absent_returns_false():
    cfg = ShardConfig()
    cfg.join_balance({1: ["a"]})
    assert cfg.leave_balance([5]) is False
    assert cfg.num == 1


def test_join_server_in_two_groups_raises():
    cfg = ShardConfig()
    cfg.join({1: ["a", "b"]})
    with pytest.raises(ConfigError):
        cfg.join({2: ["b"]})


def test_empty_join_and_leave_raise():
    cfg = ShardConfig()
    with pytest.raises(ConfigError):
        cfg.join({})
    with pytest.raises(ConfigError):
        cfg.leave([])


@pytest.mark.parametrize("ngroups", [1, 2, 3, 5, 7, 12, 13])
def test_rebalance_is_balanced(ngroups):
    cfg = ShardConfig()
    for gid in range(1, ngroups + 1):
        cfg.join_balance({gid: [f"s{gid}"]})
        cfg.check_config(list(range(1, gid + 1)))
    assert cfg.num == ngroups


def test_rebalance_moves_few_shards_on_join():
    cfg = ShardConfig()
    cfg.join_balance({1: ["a"]})
    cfg.join_balance({2: ["b"]})
    before = list(cfg.shards)
    cfg.join_balance({3: ["c"]})
    moved = sum(1 for x, y in zip(before, cfg.shards) if x != y)
    assert moved == NSHARDS // 3


def test_check_config_detects_imbalance():
    cfg = ShardConfig(num=1, shards=[1] * 11 + [2], groups={1: ["a"], 2: ["b"]})
    with pytest.raises(ConfigError):
        cfg.check_config([1, 2])


def test_check_config_detects_invalid_group():
    cfg = ShardConfig(num=1, shards=[1] * 11 + [9], groups={1: ["a"]})
    with pytest.raises(ConfigError):
        cfg.check_config([1])


def test_check_config_detects_missing_group():
    cfg = ShardConfig()
    cfg.join_balance({1: ["a"]})
    with pytest.raises(ConfigError):
        cfg.check_config([2])


def test_wrong_shard_count_raises():
    with pytest.raises(ConfigError):
        ShardConfig(shards=[0, 0])


def test_copy_is_deep():
    cfg = ShardConfig()
    cfg.join_balance({1: ["a"]})
    c = cfg.copy()
    assert_same_config(cfg, c)
    c.groups[1].append("z")
    c.join_balance({2: ["b"]})
    assert cfg.groups == {1: ["a"]}
    assert cfg.num == 1
    assert all(g == 1 for g in cfg.shards)


def test_json_format():
    cfg = ShardConfig()
    cfg.join_balance({GID1: ["xxx"]})
    assert cfg.to_json() == (
        '{"Num":1,"Shards":[1,1,1,1,1,1,1,1,1,1,1,1],"Groups":{"1":["xxx"]}}'
    )
    assert str(cfg) == cfg.to_json()


def test_json_round_trip():
    cfg = ShardConfig()
    for gid in (1, 2, 10):
        cfg.join_balance({gid: [f"server-{gid}-0", f"server-{gid}-1"]})
    back = ShardConfig.from_json(cfg.to_json())
    assert_same_config(cfg, back)


def test_json_group_keys_sorted_as_strings():
    cfg = ShardConfig()
    cfg.join_balance({2: ["b"]})
    cfg.join_balance({10: ["a"]})
    text = cfg.to_json()
    assert text.index('"10"') < text.index('"2"')


def test_json_escapes_html_characters():
    cfg = ShardConfig(groups={1: ["<a&b>"]})
    text = cfg.to_json()
    assert "<" not in text and "&" not in text
    assert ShardConfig.from_json(text).groups == {1: ["<a&b>"]}


def test_from_json_bad_input_raises():
    with pytest.raises(ConfigError):
        ShardConfig.from_json("not json")
    with pytest.raises(ConfigError):
        ShardConfig.from_json("[1,2]")


def test_from_json_null_groups():
    cfg = ShardConfig.from_json('{"Num":0,"Shards":null,"Groups":null}')
    assert cfg.groups == {}
    assert cfg.shards == [0] * NSHARDS


def test_gid_servers_and_membership():
    cfg = ShardConfig()
    cfg.join_balance({1: ["a", "b"]})
    assert cfg.gid_servers(0) == (1, ["a", "b"])
    assert cfg.is_member(1) is True
    assert cfg.is_member(2) is False
    empty = ShardConfig()
    assert empty.gid_servers(3) == (0, None)


def test_key2shard_empty_key_is_fnv_basis_mod_shards():
    assert key2shard("") == 0x811C9DC5 % NSHARDS


def test_key2shard_range_and_determinism():
    keys = [f"k{i}" for i in range(200)]
    shards = [key2shard(k) for k in keys]
    assert all(0 <= s < NSHARDS for s in shards)
    assert shards == [key2shard(k) for k in keys]
    assert len(set(shards)) == NSHARDS