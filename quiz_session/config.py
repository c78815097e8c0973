from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Client settings from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=False, extra="ignore"
    )

    # Application
    log_level: str = "INFO"

    # Session API
    api_base_url: str = "http://localhost:8000/api/v1"
    request_timeout: float = 10.0

    # Heartbeat / countdown (seconds)
    heartbeat_interval: float = 30.0
    practice_heartbeat_interval: float = 120.0
    heartbeat_failure_threshold: int = 3
    countdown_tick: float = 1.0

    # Sync queue
    sync_interval: float = 2.0
    sync_max_attempts: int = 4
    sync_backoff_base: float = 0.5
    sync_backoff_max: float = 8.0

    # Submit / flush
    submit_max_attempts: int = 4
    flush_timeout: float = 10.0
    pause_flush_timeout: float = 3.0
    abandon_flush_timeout: float = 2.0

    # Exam pauses when the server does not report a bound
    exam_default_max_pauses: int = 2

    # Local UI bridge
    bridge_host: str = "127.0.0.1"
    bridge_port: int = 8765


# Global settings instance
settings = Settings()
