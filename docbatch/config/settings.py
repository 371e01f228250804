from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_env: str = "dev"
    log_level: str = "INFO"

    db_host: str = "host.docker.internal"
    db_port: int = 5432
    db_database: str = "docbatch"
    db_username: str = "docbatch"
    db_password: str = "secret"
    db_pool_min_size: int = 1
    db_pool_max_size: int = 10

    http_host: str = "0.0.0.0"
    http_port: int = 8080
    public_base_url: str = "http://localhost:8080"
    callback_secret: str = ""

    worker_endpoint: str = "http://localhost:5678/webhook/process-batch"
    worker_secret: str = ""
    dispatch_timeout_seconds: int = 90
    dispatch_max_attempts: int = 3
    dispatch_backoff_base_seconds: float = 2.0
    dispatch_progress_floor: int = 10
    artifact_progress: int = 85

    artifact_timeout_seconds: int = 30
    artifact_max_attempts: int = 3
    artifact_require_https: bool = True
    artifact_allowed_hosts: list[str] = []
    results_root: Path = Path("/app/results")

    admission_concurrency: int = 4

    payslip_max_file_mb: int = 10
    payslip_batch_cap: int = 20
    ledger_max_file_mb: int = 50
    ledger_batch_cap: int = 12

    watch_poll_seconds_single: float = 5.0
    watch_poll_seconds_all: float = 3.0
    watch_error_backoff_factor: int = 3
    progress_notify_step: int = 25

    history_max_per_page: int = 100
