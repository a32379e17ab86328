import pathlib
from datetime import timedelta

from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict


class DBSettings(BaseModel):
    sqlite_path: str = "shelfscan.sqlite"
    """Relative path to the sqlite database given the config directory. If absolute, it ignores the config dir location."""
    use_postgres: bool = False
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "shelfscan"
    postgres_user: str = "shelfscan"
    postgres_password: str = "password"
    postgres_ssl_mode: str = "prefer"

    # Connection Pool Configuration
    pool_size: int = 10
    """SQLAlchemy connection pool size (number of connections to maintain in pool)"""
    max_overflow: int = 20
    """Maximum number of overflow connections beyond pool_size"""
    pool_timeout: int = 30
    """Timeout (seconds) to wait for a connection from the pool"""
    pool_pre_ping: bool = True
    """Enable ping to detect stale connections before using them"""


class ApplicationSettings(BaseModel):
    debug: bool = False
    config_dir: str = "/config"
    log_level: str = "INFO"
    """Logging level (DEBUG, INFO, WARNING, ERROR)"""
    log_format: str = "text"
    """Log format: 'text' for human-readable, 'json' for machine-readable"""
    log_file: str | None = None
    """Optional log file path (relative to config_dir/logs/). If not set, logs to stdout only"""


class EnrichmentSettings(BaseModel):
    external_model_resource: str = "external-model"
    """Rate limiter resource name charged for every rating or summary call"""

    cache_ttl_days: int = 90
    """Days a record filled by the external model stays fresh"""

    fallback_ttl_seconds: int = 3600
    """Seconds a record holding fallback values stays fresh before a refresh is attempted"""

    external_call_timeout_seconds: float = 15.0
    """Upper bound for a single population attempt (one external call)"""

    def cache_ttl(self) -> timedelta:
        return timedelta(days=self.cache_ttl_days)

    def fallback_ttl(self) -> timedelta:
        return timedelta(seconds=self.fallback_ttl_seconds)


class RateLimitSettings(BaseModel):
    window_capacity: int = 60
    """Calls allowed per sliding window"""
    window_seconds: int = 60
    daily_limit: int = 15000
    """Calls allowed per rolling day"""
    alert_threshold: float = 0.8
    """Fraction of the daily limit at which a usage warning is logged (once per day)"""
    critical_threshold: float = 0.9
    """Fraction of the daily limit at which the usage alert is escalated to an error"""


class Settings(BaseSettings):
    model_config = SettingsConfigDict(  # pyright: ignore[reportUnannotatedClassAttribute]
        env_prefix="SHELFSCAN_",
        env_nested_delimiter="__",
        nested_model_default_partial_update=True,
        env_file=(".env.local", ".env"),
        extra="ignore",
    )

    db: DBSettings = DBSettings()
    app: ApplicationSettings = ApplicationSettings()
    enrichment: EnrichmentSettings = EnrichmentSettings()
    rate_limit: RateLimitSettings = RateLimitSettings()

    def get_sqlite_path(self):
        if self.db.sqlite_path.startswith("/") or self.db.sqlite_path == ":memory:":
            return self.db.sqlite_path
        return str(pathlib.Path(self.app.config_dir) / self.db.sqlite_path)
