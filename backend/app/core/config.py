import os
from functools import lru_cache
from pathlib import Path


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


class Settings:
    def __init__(self) -> None:
        self.app_env: str = os.getenv("APP_ENV", "development")
        self.log_level: str = os.getenv("LOG_LEVEL", "INFO")

        # Artifact store
        self.artifact_store: str = os.getenv("ARTIFACT_STORE", "filesystem")
        self.data_root: Path = Path(os.getenv("YSBA_DATA_ROOT", "data"))
        self.database_url: str = os.getenv("DATABASE_URL", "sqlite:///data/ysba.db")
        self.snapshot_keep: int = _env_int("YSBA_SNAPSHOT_KEEP", 5)
        self.error_log_keep: int = _env_int("YSBA_ERROR_LOG_KEEP", 10)

        # Unit catalog
        self.units_config: str = os.getenv("YSBA_UNITS_CONFIG", "")

        # Fetch / retry
        self.max_retries: int = _env_int("YSBA_MAX_RETRIES", 3)
        self.retry_base_delay: float = _env_float("YSBA_RETRY_BASE_DELAY", 2.0)
        self.retry_jitter: float = _env_float("YSBA_RETRY_JITTER", 0.1)
        self.unit_delay: float = _env_float("YSBA_UNIT_DELAY", 1.0)

        # Schedule
        self.run_interval_minutes: float = _env_float("YSBA_RUN_INTERVAL_MINUTES", 30.0)
        self.shutdown_timeout: float = _env_float("YSBA_SHUTDOWN_TIMEOUT", 300.0)
        self.run_worker_in_process: bool = _env_bool("RUN_WORKER_IN_PROCESS", False)

        # Derived artifacts
        self.recent_games_limit: int = _env_int("YSBA_RECENT_GAMES_LIMIT", 50)

        # Source
        self.standings_url: str = os.getenv(
            "YSBA_STANDINGS_URL", "https://www.yorksimcoebaseball.com/Club/xStanding.aspx"
        )
        self.schedule_url: str = os.getenv(
            "YSBA_SCHEDULE_URL", "https://www.yorksimcoebaseball.com/Club/xScheduleMM.aspx"
        )
        self.source_timezone: str = os.getenv("YSBA_SOURCE_TIMEZONE", "America/Toronto")
        self.request_timeout_ms: int = _env_int(
            "YSBA_REQUEST_TIMEOUT_MS", 60000 if self.app_env == "production" else 30000
        )
        self.headless: bool = _env_bool("YSBA_HEADLESS", True)
        self.user_agent: str = os.getenv(
            "YSBA_USER_AGENT",
            "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
            "AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
        )

        self.uvicorn_host: str = os.getenv("UVICORN_HOST", "0.0.0.0")
        self.uvicorn_port: int = _env_int("UVICORN_PORT", 8000)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
