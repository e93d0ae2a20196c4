from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv


# Load environment variables from the project root .env (local dev convenience).
_HERE = Path(__file__).resolve()
_PROJECT_ROOT = _HERE.parents[1]

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str, default: str) -> tuple[str, ...]:
    raw = os.getenv(name, default)
    return tuple(p.strip() for p in raw.split(",") if p.strip())


@dataclass(frozen=True)
class Settings:
    redis_url: str = "redis://localhost:6379/0"
    use_redis: bool = True
    queue_name: str = "authority-analysis"

    job_retries: int = 3
    backoff_s: int = 2
    keep_completed: int = 50
    keep_failed: int = 20
    job_timeout_s: int = 300
    low_priority_delay_s: float = 5.0
    local_delay_s: float = 0.1
    local_max_age_s: int = 60 * 60
    distributed_max_age_s: int = 7 * 24 * 60 * 60

    nav_timeouts_ms: tuple[int, ...] = (60000, 30000, 15000)
    nav_wait_until: tuple[str, ...] = ("networkidle", "load", "domcontentloaded")
    vitals_window_ms: int = 5000
    http_probe: bool = True
    probe_timeout_s: float = 15.0
    user_agent: str = DEFAULT_USER_AGENT

    gemini_api_key: str | None = None
    gemini_model: str = "gemini-2.5-flash"
    commentary_timeout_s: float = 30.0

    batch_pause_s: float = 1.0
    diagnostics: bool = False
    cors_origins: tuple[str, ...] = ("http://localhost:3000",)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv(_PROJECT_ROOT / ".env", override=False)
        timeouts = tuple(int(t) for t in _env_list("AUTHORITY_NAV_TIMEOUTS_MS", "60000,30000,15000"))
        waits = _env_list("AUTHORITY_NAV_WAIT_UNTIL", "networkidle,load,domcontentloaded")
        return cls(
            redis_url=os.getenv("REDIS_URL", cls.redis_url),
            use_redis=_env_bool("AUTHORITY_USE_REDIS", True),
            queue_name=os.getenv("AUTHORITY_QUEUE_NAME", cls.queue_name),
            job_retries=max(0, int(os.getenv("AUTHORITY_JOB_RETRIES", "3"))),
            backoff_s=max(0, int(os.getenv("AUTHORITY_BACKOFF_S", "2"))),
            keep_completed=max(1, int(os.getenv("AUTHORITY_KEEP_COMPLETED", "50"))),
            keep_failed=max(1, int(os.getenv("AUTHORITY_KEEP_FAILED", "20"))),
            job_timeout_s=max(1, int(os.getenv("AUTHORITY_JOB_TIMEOUT_S", "300"))),
            low_priority_delay_s=float(os.getenv("AUTHORITY_LOW_PRIORITY_DELAY_S", "5")),
            local_delay_s=float(os.getenv("AUTHORITY_LOCAL_DELAY_S", "0.1")),
            local_max_age_s=int(os.getenv("AUTHORITY_LOCAL_MAX_AGE_S", str(cls.local_max_age_s))),
            distributed_max_age_s=int(os.getenv("AUTHORITY_DISTRIBUTED_MAX_AGE_S", str(cls.distributed_max_age_s))),
            nav_timeouts_ms=timeouts or cls.nav_timeouts_ms,
            nav_wait_until=waits or cls.nav_wait_until,
            vitals_window_ms=int(os.getenv("AUTHORITY_VITALS_WINDOW_MS", "5000")),
            http_probe=_env_bool("AUTHORITY_HTTP_PROBE", True),
            probe_timeout_s=float(os.getenv("AUTHORITY_PROBE_TIMEOUT_S", "15")),
            user_agent=os.getenv("AUTHORITY_USER_AGENT", DEFAULT_USER_AGENT),
            gemini_api_key=os.getenv("GEMINI_API_KEY") or None,
            gemini_model=os.getenv("GEMINI_MODEL", cls.gemini_model),
            commentary_timeout_s=float(os.getenv("AUTHORITY_COMMENTARY_TIMEOUT_S", "30")),
            batch_pause_s=float(os.getenv("AUTHORITY_BATCH_PAUSE_S", "1.0")),
            diagnostics=_env_bool("AUTHORITY_DIAGNOSTICS", False),
            cors_origins=_env_list("AUTHORITY_CORS_ORIGINS", "http://localhost:3000"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )

    @property
    def analysis_deadline_s(self) -> float:
        """In-job budget for crawl and scoring.

        Ends early enough that the fallback result is recorded, and an in-flight
        commentary call can finish, before the queue's hard job timeout.
        """
        reserve = self.commentary_timeout_s + 5
        return max(1.0, self.job_timeout_s - reserve)

    def navigation_plan(self) -> list[tuple[str, int]]:
        """(wait condition, timeout) per attempt; the shorter list bounds the attempts."""
        return list(zip(self.nav_wait_until, self.nav_timeouts_ms))


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()
