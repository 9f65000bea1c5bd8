from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

from .ssrf import FetchLimits

# Load environment variables from the repo root .env for local dev.
_HERE = Path(__file__).resolve()
_PROJECT_ROOT = _HERE.parents[1]
load_dotenv(_PROJECT_ROOT / ".env", override=False)

DEFAULT_USER_AGENT = "AgentabilityEvaluator/0.1 (+https://agentability.org)"


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


def _list_env(name: str) -> list[str]:
    raw = os.getenv(name, "").strip()
    return [v.strip() for v in raw.split(",") if v.strip()]


@dataclass(frozen=True)
class Settings:
    version: str = "0.1.0"
    user_agent: str = DEFAULT_USER_AGENT
    limits: FetchLimits = field(default_factory=FetchLimits)
    sample_interval_ms: int = 250
    eval_deadline_s: float = 8.0
    rate_limit: int = 10
    rate_window_s: int = 300
    cors_origins: tuple[str, ...] = ("http://localhost:3000", "http://localhost:5173")
    data_dir: str | None = None
    log_level: str = "INFO"
    ruleset_path: str | None = None


def load_settings() -> Settings:
    limits = FetchLimits(
        timeout_ms=max(1000, _int_env("AGENTABILITY_FETCH_TIMEOUT_MS", 15000)),
        connect_timeout_ms=max(500, _int_env("AGENTABILITY_CONNECT_TIMEOUT_MS", 5000)),
        max_bytes=max(1024, _int_env("AGENTABILITY_MAX_BYTES", 2 * 1024 * 1024)),
        max_redirects=max(0, _int_env("AGENTABILITY_MAX_REDIRECTS", 5)),
    )
    cors = _list_env("AGENTABILITY_CORS_ORIGINS")
    return Settings(
        version=os.getenv("AGENTABILITY_VERSION", "0.1.0"),
        user_agent=os.getenv("AGENTABILITY_USER_AGENT", DEFAULT_USER_AGENT),
        limits=limits,
        sample_interval_ms=max(0, _int_env("AGENTABILITY_SAMPLE_INTERVAL_MS", 250)),
        eval_deadline_s=max(0.0, _float_env("AGENTABILITY_EVAL_DEADLINE_S", 8.0)),
        rate_limit=max(1, _int_env("AGENTABILITY_RATE_LIMIT", 10)),
        rate_window_s=max(1, _int_env("AGENTABILITY_RATE_WINDOW_S", 300)),
        cors_origins=tuple(cors) if cors else Settings.cors_origins,
        data_dir=os.getenv("AGENTABILITY_DATA_DIR") or None,
        log_level=os.getenv("AGENTABILITY_LOG_LEVEL", "INFO").upper(),
        ruleset_path=os.getenv("AGENTABILITY_RULESET_PATH") or None,
    )
