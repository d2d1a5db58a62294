from __future__ import annotations

from typing import Iterable, List, Optional

from bookservice_recommendations.core.models import UserId

SHARD_MODES = ("modulo", "legacy")


def ticks_per_shard(full_cycle_ticks: int, shard_count: int) -> int:
    return max(1, int(full_cycle_ticks) // max(1, int(shard_count)))


def shard_for_tick(interval_no: int, full_cycle_ticks: int, shard_count: int) -> Optional[int]:
    """
    Shard to revisit on this tick, or None between shard boundaries.

    The shard index advances once every full_cycle_ticks // shard_count ticks,
    so each shard comes up once per full cycle.
    """
    step = ticks_per_shard(full_cycle_ticks, shard_count)
    if interval_no % step != 0:
        return None
    return (interval_no // step) % max(1, int(shard_count))


def in_shard(user_id: UserId, shard: int, shard_count: int) -> bool:
    return user_id % max(1, int(shard_count)) == shard


def legacy_in_shard(user_id: UserId, shard: int) -> bool:
    # Bitwise test kept for parity with older deployments. Shard 0 matches everyone
    # and the shards overlap.
    return user_id & shard == 0


def select_shard_members(
    user_ids: Iterable[UserId],
    shard: int,
    shard_count: int,
    mode: str = "modulo",
) -> List[UserId]:
    if mode == "legacy":
        return [uid for uid in user_ids if legacy_in_shard(uid, shard)]
    if mode != "modulo":
        raise ValueError(f"Unknown shard mode: {mode!r} (expected one of {SHARD_MODES})")
    return [uid for uid in user_ids if in_shard(uid, shard, shard_count)]
