import os
from functools import lru_cache

from dotenv import load_dotenv

load_dotenv()


class Settings:
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./actions.db")
    # Worker trigger protection (empty disables the check)
    WORKER_SECRET: str = os.getenv("WORKER_SECRET", "")
    WORKER_CANDIDATE_LIMIT: int = int(os.getenv("WORKER_CANDIDATE_LIMIT", "10"))
    # Retry/backoff: delay = base * 2 ** (attempts - 1)
    RETRY_BASE_DELAY_SECONDS: float = float(os.getenv("RETRY_BASE_DELAY_SECONDS", "2"))
    DEFAULT_MAX_ATTEMPTS: int = int(os.getenv("DEFAULT_MAX_ATTEMPTS", "5"))
    TICK_INTERVAL_SECONDS: float = float(os.getenv("TICK_INTERVAL_SECONDS", "5"))
    # run the in-process ticker from the app lifespan
    TICKER_ENABLED: bool = bool(int(os.getenv("TICKER_ENABLED", "0")))
    # Omega gate
    GATE_API_KEY: str = os.getenv("GATE_API_KEY", "")
    GATE_ALLOW_THRESHOLD: float = float(os.getenv("GATE_ALLOW_THRESHOLD", "0.85"))
    GATE_DENY_THRESHOLD: float = float(os.getenv("GATE_DENY_THRESHOLD", "0.5"))
    GATE_TIMESTAMP_WINDOW_SECONDS: int = int(os.getenv("GATE_TIMESTAMP_WINDOW_SECONDS", "300"))
    NONCE_MAX_ENTRIES: int = int(os.getenv("NONCE_MAX_ENTRIES", "10000"))
    # per-client limit on /gate/call (slowapi syntax)
    GATE_RATE_LIMIT: str = os.getenv("GATE_RATE_LIMIT", "120/minute")
    # Redis nonce store (SET NX EX)
    REDIS_NONCE_ENABLED: bool = bool(int(os.getenv("REDIS_NONCE_ENABLED", "0")))
    REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    REDIS_NONCE_PREFIX: str = os.getenv("REDIS_NONCE_PREFIX", "omega:nonce:")
    REDIS_RECONNECT_JITTER_MS: int = int(os.getenv("REDIS_RECONNECT_JITTER_MS", "250"))
    METRICS_PORT: int = int(os.getenv("METRICS_PORT", "0"))
    # Admin API token for proposal decisions
    ADMIN_TOKEN: str = os.getenv("ADMIN_TOKEN", "")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    LOG_FILE: str = os.getenv("LOG_FILE", "")
    SENTRY_DSN: str = os.getenv("SENTRY_DSN", "")
    ENV: str = os.getenv("ENV", "production")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
