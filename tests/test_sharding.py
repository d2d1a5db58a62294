import pytest

from bookservice_recommendations.core.sharding import (
    in_shard,
    legacy_in_shard,
    select_shard_members,
    shard_for_tick,
)


def test_shard_advances_every_cycle_fraction() -> None:
    picked = {tick: shard_for_tick(tick, 200, 10) for tick in range(200)}
    boundaries = {tick: shard for tick, shard in picked.items() if shard is not None}

    assert sorted(boundaries) == list(range(0, 200, 20))
    assert [boundaries[t] for t in sorted(boundaries)] == list(range(10))


def test_modulo_shards_partition_users() -> None:
    users = list(range(1, 101))
    seen = []
    for shard in range(10):
        seen.extend(select_shard_members(users, shard, 10))

    assert sorted(seen) == users
    assert in_shard(13, 3, 10)
    assert not in_shard(13, 4, 10)


def test_legacy_mode_keeps_bitwise_predicate() -> None:
    assert select_shard_members([1, 2, 3, 4], 0, 10, mode="legacy") == [1, 2, 3, 4]
    assert select_shard_members([1, 2, 3, 4], 1, 10, mode="legacy") == [2, 4]
    assert legacy_in_shard(4, 3)


def test_unknown_mode_rejected() -> None:
    with pytest.raises(ValueError):
        select_shard_members([1], 0, 10, mode="random")
