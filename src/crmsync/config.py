from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///./crmsync.db"
    user_id: int = 1  # single-user MVP; multi-user: swap for session identity

    # Remote CRM
    remote_base_url: str = "https://api.pipedrive.com"
    remote_api_version: str = "v1"
    remote_api_token: str = ""  # fallback when the user row carries none
    remote_timeout_seconds: float = 30.0
    remote_max_retries: int = 3
    remote_retry_delay_seconds: float = 1.0
    remote_default_retry_after_seconds: float = 1.0
    remote_page_size: int = 100

    # Sync runs
    sync_batch_size: int = 50
    sync_max_batch_size: int = 500
    organization_refresh_hours: int = 24
    sync_hour: int = 3

    # Custom-field discovery
    field_mapping_ttl_seconds: int = 4 * 60 * 60
    field_key_sector: str = ""
    field_key_size: str = ""
    field_key_country: str = ""

    # Activity replication
    replication_max_attempts: int = 3
    replication_retry_delay_seconds: float = 2.0

    # Progress stream
    progress_poll_seconds: float = 1.0
    progress_stream_timeout_seconds: float = 300.0
    progress_retention_seconds: float = 60.0

    # Outbound sanitization limits
    max_name_length: int = 255
    max_email_length: int = 255
    max_phone_length: int = 50
    max_subject_length: int = 255
    max_note_length: int = 1000

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    @property
    def remote_api_url(self) -> str:
        return f"{self.remote_base_url.rstrip('/')}/{self.remote_api_version}"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
