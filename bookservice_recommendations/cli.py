# bookservice_recommendations/cli.py
from __future__ import annotations

import argparse
import json
import logging
from typing import List, Optional

from rich.logging import RichHandler

from .config import build_config, load_dotenv
from .updater import RecommendationsUpdater


LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def _split_ids(s: Optional[str]) -> List[int]:
    out: List[int] = []
    for part in (s or "").split(","):
        part = part.strip()
        if not part:
            continue
        try:
            out.append(int(part))
        except ValueError as e:
            raise SystemExit(f"Invalid user id: {part!r}") from e
    return out


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="bookservice_recommendations",
        description="Background materializer for per-user book recommendations",
    )

    # Upstream services
    ap.add_argument("--repository-url", default=None, help="Book catalog service base URL")
    ap.add_argument("--reservations-url", default=None, help="Reservations service base URL")
    ap.add_argument("--timeout", dest="timeout_s", type=float, default=None, help="HTTP timeout seconds (unset = none)")
    ap.add_argument("--retries", type=int, default=None, help="Retry count for 429/5xx/network (0 = fail fast)")
    ap.add_argument("--rate-per-sec", type=float, default=None, help="Upstream request rate limit (0 disables)")
    ap.add_argument("--burst", type=int, default=None, help="Token bucket burst capacity")
    ap.add_argument("--fetch-concurrency", type=int, default=None, help="Parallel upstream fetches per tick")

    # Scheduling
    ap.add_argument("--interval", dest="interval_s", type=float, default=None, help="Seconds between ticks")
    ap.add_argument("--full-cycle-ticks", type=int, default=None, help="Ticks per full refresh cycle")
    ap.add_argument("--shard-count", type=int, default=None, help="Number of user shards per cycle")
    ap.add_argument("--shard-mode", choices=("modulo", "legacy"), default=None, help="User shard predicate")
    ap.add_argument("--recommendations-count", type=int, default=None, help="Books per recommendation list")

    # Run control
    ap.add_argument("--config", default=None, help="YAML config file (overrides environment)")
    ap.add_argument("--max-ticks", type=int, default=0, help="Stop after N ticks (0 = run until interrupted)")
    ap.add_argument("--user", default=None, help="Comma list of user ids to print recommendations for on exit")
    ap.add_argument("--log-level", default="info", help="Log level: debug, info, warning, error")
    return ap


CONFIG_FLAGS = (
    "repository_url",
    "reservations_url",
    "timeout_s",
    "retries",
    "rate_per_sec",
    "burst",
    "fetch_concurrency",
    "interval_s",
    "full_cycle_ticks",
    "shard_count",
    "shard_mode",
    "recommendations_count",
)


def main(argv: Optional[List[str]] = None) -> int:
    logger = logging.getLogger(__name__)
    args = build_parser().parse_args(argv)

    level = LOG_LEVELS.get(args.log_level.lower(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )

    used = load_dotenv(".env")
    if used:
        logger.info("loaded .env: %s", used)

    cfg = build_config(
        config_file=args.config,
        cli_overrides={k: getattr(args, k) for k in CONFIG_FLAGS},
    )
    logger.info("Catalog: %s | Reservations: %s", cfg.repository_url, cfg.reservations_url)
    logger.info(
        "Interval: %ss | full cycle: %s ticks | shards: %s (%s) | count: %s",
        cfg.interval_s,
        cfg.full_cycle_ticks,
        cfg.shard_count,
        cfg.shard_mode,
        cfg.recommendations_count,
    )

    updater = RecommendationsUpdater.from_config(cfg)
    provider = updater.provider()

    updater.start(max_ticks=args.max_ticks or None)
    try:
        while updater.is_running:
            updater.join(timeout=1.0)
    except KeyboardInterrupt:
        logger.info("Interrupted, stopping updater")
        updater.stop()
        updater.join(timeout=cfg.interval_s)

    logger.info("Updater stats: %s", updater.stats.snapshot_dict())
    if not updater.is_running:
        updater.close()

    for user_id in _split_ids(args.user):
        recs = provider.get_recommendations_for_user(user_id)
        print(json.dumps({"user_id": user_id, **recs.to_dict()}))

    if updater.failed:
        logger.error("Updater stopped on error: %r", updater.last_error)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
