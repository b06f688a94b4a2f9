"""Application configuration via environment variables."""

from pathlib import Path
from pydantic_settings import BaseSettings

PROJECT_ROOT = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    database_url: str = f"sqlite:///{PROJECT_ROOT / 'session_guard.db'}"
    log_level: str = "INFO"
    cors_origins: list[str] = ["http://localhost:5173"]  # Vite dev server

    # Session rules
    valid_durations: list[int] = [60, 240, 1440, 10080]  # 1h, 4h, 24h, 7d
    max_loss_limit_fraction: float = 0.30  # of account balance

    # Job scheduler
    loss_check_interval_seconds: float = 30.0
    expiration_max_attempts: int = 2
    loss_check_max_attempts: int = 2
    default_max_attempts: int = 3
    backoff_base_seconds: float = 2.0
    job_timeout_seconds: float = 20.0
    performance_delay_seconds: float = 5.0
    completed_job_retention_hours: int = 24
    failed_job_retention_days: int = 7

    # Cleanup sweeper
    cleanup_cron: str = "0 2 * * *"  # 02:00 UTC daily
    session_retention_days: int = 30

    # Loss monitoring
    loss_warning_lower_pct: float = 80.0
    loss_warning_upper_pct: float = 95.0

    # Analytics heuristics
    analytics_cache_ttl_seconds: float = 300.0
    analytics_cache_maxsize: int = 1024
    risk_free_rate: float = 0.02
    timing_min_sessions: int = 10
    timing_sample_size: int = 100
    prediction_min_matches: int = 5
    prediction_tolerance: float = 0.2
    prediction_sample_size: int = 50
    velocity_thresholds: list[float] = [10.0, 5.0, 2.0]  # trades per hour
    velocity_points: list[float] = [40.0, 20.0, 10.0]
    confidence_per_trade: float = 10.0
    long_session_minutes: list[int] = [480, 240]  # > 8h, > 4h
    long_session_points: list[float] = [10.0, 5.0]
    large_loss_limit: float = 5000.0
    large_loss_limit_points: float = 5.0

    # Order subsystem
    order_service_url: str = ""  # empty = mock mode
    order_service_timeout_seconds: float = 10.0

    # Telegram
    telegram_bot_token: str = ""
    telegram_chat_ids: list[int] = []

    model_config = {"env_prefix": "SG_", "env_file": ".env"}


settings = Settings()
