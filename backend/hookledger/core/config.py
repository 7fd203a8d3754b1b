from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

from hookledger.db.models import Provider


class Settings(BaseSettings):
    database_url: str = "sqlite:///./hookledger.db"
    redis_url: str = "redis://localhost:6379/0"

    # Shared secrets, one per provider family
    payments_webhook_secret: str = ""
    identity_webhook_secret: str = ""
    sms_auth_token: str = ""
    other_webhook_secret: str = ""

    # None disables the timestamp window on timestamped signatures
    signature_tolerance_seconds: int | None = None

    # Processing rows older than this are demoted to failed; 0 disables the sweep
    stale_processing_seconds: int = 900
    sweep_interval_seconds: int = 60

    max_body_bytes: int = 1_048_576

    log_level: str = "INFO"
    log_json: bool = False

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    def secret_for(self, provider: Provider) -> str:
        """Return the configured shared secret for ``provider`` (may be empty)."""
        return {
            Provider.PAYMENTS: self.payments_webhook_secret,
            Provider.IDENTITY: self.identity_webhook_secret,
            Provider.SMS: self.sms_auth_token,
            Provider.OTHER: self.other_webhook_secret,
        }[provider]


@lru_cache
def get_settings() -> Settings:
    return Settings()
