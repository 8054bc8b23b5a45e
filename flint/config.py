from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    database_url: str = "sqlite:///./flint.db"

    # SnapTrade API credentials
    snaptrade_client_id: str = ""
    snaptrade_consumer_key: str = ""
    snaptrade_webhook_secret: str = ""
    snaptrade_connection_type: str = "trade-if-available"
    snaptrade_max_registration_suffix: int = 5

    # Teller API credentials (cert/key are PEM strings, line breaks optional)
    teller_environment: str = "sandbox"
    teller_base_url: str = "https://api.teller.io"
    teller_cert: str = ""
    teller_private_key: str = ""
    teller_webhook_secret: str = ""

    # Key material for secrets at rest
    encryption_master_key: str = "dev-master-key"
    encryption_salt: str = "flint-security-salt"

    # Outbound retry tunables
    retry_max_attempts: int = 3
    retry_base_delay_ms: int = 1000
    retry_max_delay_ms: int = 10000
    retry_jitter_ms: int = 500

    webhook_max_age_seconds: int = 180

    # Background holdings sync
    enable_background_sync: bool = True
    sync_interval_minutes: int = 15
    sync_initial_delay_seconds: int = 30
    sync_strike_threshold: int = 3
    sync_strike_window_minutes: int = 60
    sync_concurrency: int = 4

    @property
    def teller_uses_mtls(self) -> bool:
        return self.teller_environment.strip().lower() != "sandbox"


@lru_cache
def get_settings() -> Settings:
    return Settings()
