from __future__ import annotations

import logging
import os
import shlex
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

from bookservice_recommendations.core.sharding import SHARD_MODES

logger = logging.getLogger(__name__)


def _env_assignment(line: str) -> Optional[Tuple[str, str]]:
    """Parse one `[export] KEY=value` line; None for blanks, comments and junk."""
    key, sep, raw = line.partition("=")
    key = key.strip()
    if key.startswith("export "):
        key = key[len("export ") :].strip()
    if not sep or not key or key.startswith("#"):
        return None
    # shell rules: quotes group, unquoted # starts a comment
    return key, " ".join(shlex.split(raw, comments=True, posix=True))


def read_env_file(path: Path) -> Dict[str, str]:
    values: Dict[str, str] = {}
    with path.open(encoding="utf-8") as fh:
        for lineno, line in enumerate(fh, start=1):
            try:
                parsed = _env_assignment(line)
            except ValueError as e:
                logger.warning("skipping env line | path=%s | line=%s | err=%s", path, lineno, e)
                continue
            if parsed:
                values[parsed[0]] = parsed[1]
    return values


def _dotenv_candidates(path: str) -> List[Path]:
    out: List[Path] = []
    if os.getenv("ENV_PATH"):
        out.append(Path(os.environ["ENV_PATH"]).expanduser())
    out.append(Path(path).expanduser())
    # checkout root, next to pyproject.toml
    out.append(Path(__file__).resolve().parent.parent / ".env")
    return [p.resolve() for p in out]


def load_dotenv(path: str = ".env") -> Optional[str]:
    """
    Export the first .env found (ENV_PATH, then `path`, then the checkout root).

    Variables already present in the environment win over the file.
    Returns the file used, or None.
    """
    for candidate in _dotenv_candidates(path):
        if not candidate.is_file():
            continue
        try:
            values = read_env_file(candidate)
        except OSError as e:
            logger.warning("could not read env file | path=%s | err=%s", candidate, e)
            return None
        for key, value in values.items():
            os.environ.setdefault(key, value)
        logger.debug("loaded env file | path=%s | keys=%s", candidate, len(values))
        return str(candidate)
    return None


# env var -> AppConfig field
ENV_KEYS = {
    "BOOKSERVICE_REPOSITORY_URL": "repository_url",
    "BOOKSERVICE_RESERVATIONS_URL": "reservations_url",
    "RECOMMENDATIONS_INTERVAL_SECONDS": "interval_s",
    "RECOMMENDATIONS_FULL_CYCLE_TICKS": "full_cycle_ticks",
    "RECOMMENDATIONS_SHARD_COUNT": "shard_count",
    "RECOMMENDATIONS_COUNT": "recommendations_count",
    "RECOMMENDATIONS_SHARD_MODE": "shard_mode",
    "UPSTREAM_TIMEOUT_SECONDS": "timeout_s",
    "UPSTREAM_RETRIES": "retries",
    "UPSTREAM_RATE_PER_SEC": "rate_per_sec",
    "UPSTREAM_BURST": "burst",
    "FETCH_CONCURRENCY": "fetch_concurrency",
}


@dataclass(frozen=True)
class AppConfig:
    repository_url: str = "http://localhost:8080"
    reservations_url: str = "http://localhost:8081"

    interval_s: float = 10.0
    full_cycle_ticks: int = 200
    shard_count: int = 10
    recommendations_count: int = 4
    shard_mode: str = "modulo"

    timeout_s: Optional[float] = None
    retries: int = 0
    rate_per_sec: float = 0.0
    burst: int = 1
    fetch_concurrency: int = 1

    def validate(self) -> None:
        for name in ("repository_url", "reservations_url"):
            url = getattr(self, name)
            if not (url.startswith("http://") or url.startswith("https://")):
                raise SystemExit(f"{name} must be an http(s) URL, got {url!r}.")
        if self.interval_s <= 0:
            raise SystemExit("interval_s must be positive.")
        if self.shard_count < 1:
            raise SystemExit("shard_count must be at least 1.")
        if self.full_cycle_ticks < self.shard_count:
            raise SystemExit("full_cycle_ticks must be >= shard_count.")
        if self.recommendations_count < 1:
            raise SystemExit("recommendations_count must be at least 1.")
        if self.shard_mode not in SHARD_MODES:
            raise SystemExit(f"shard_mode must be one of {SHARD_MODES}, got {self.shard_mode!r}.")
        if self.timeout_s is not None and self.timeout_s <= 0:
            raise SystemExit("timeout_s must be positive when set.")
        if self.retries < 0:
            raise SystemExit("retries cannot be negative.")
        if self.fetch_concurrency < 1:
            raise SystemExit("fetch_concurrency must be at least 1.")

    def with_overrides(self, overrides: Mapping[str, Any]) -> "AppConfig":
        known = {f.name: f for f in fields(self)}
        clean: Dict[str, Any] = {}
        for key, value in overrides.items():
            if value is None:
                continue
            if key not in known:
                raise SystemExit(f"Unknown config key: {key}")
            clean[key] = _coerce(key, value, getattr(self, key))
        return replace(self, **clean)


def _coerce(key: str, value: Any, current: Any) -> Any:
    try:
        if key == "timeout_s":
            return float(value) if str(value).strip() else None
        if isinstance(current, int):
            return int(value)
        if isinstance(current, float):
            return float(value)
    except (TypeError, ValueError) as e:
        raise SystemExit(f"Invalid value for {key}: {value!r}") from e
    return str(value)


def from_env(environ: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    env = os.environ if environ is None else environ
    return {field: env[name] for name, field in ENV_KEYS.items() if env.get(name, "").strip()}


def load_config_file(path: str) -> Dict[str, Any]:
    p = Path(path)
    try:
        data = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    except FileNotFoundError as e:
        raise SystemExit(f"Config file not found: {p}") from e
    except (OSError, yaml.YAMLError) as e:
        raise SystemExit(f"Failed to read config file: {p} ({e})") from e
    if not isinstance(data, dict):
        raise SystemExit(f"Config file must contain a mapping: {p}")
    logger.info("Loaded config file: %s", p)
    return data


def build_config(
    *,
    config_file: Optional[str] = None,
    cli_overrides: Optional[Mapping[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> AppConfig:
    """Defaults < environment < YAML file < CLI flags."""
    cfg = AppConfig().with_overrides(from_env(environ))
    if config_file:
        cfg = cfg.with_overrides(load_config_file(config_file))
    if cli_overrides:
        cfg = cfg.with_overrides(cli_overrides)
    cfg.validate()
    return cfg
