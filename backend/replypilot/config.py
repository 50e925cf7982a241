import json

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_ALLOWED_ORIGINS = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    "http://localhost:5173",
    "http://127.0.0.1:5173",
]

SUPPORTED_LANGUAGES = {"en", "da"}


class Settings(BaseSettings):
    database_url: str
    frontend_base_url: str = "http://localhost:3000"
    allowed_origins: list[str] = DEFAULT_ALLOWED_ORIGINS
    internal_api_token: str | None = None
    auto_create_tables: bool = False
    auto_run_migrations: bool = False
    log_level: str = "INFO"
    log_json: bool = True

    email_enabled: bool = True
    smtp_host: str | None = None
    smtp_port: int | None = None
    smtp_username: str | None = None
    smtp_password: str | None = None
    smtp_sender: str | None = None
    smtp_sender_name: str = "Replypilot"
    smtp_use_tls: bool = True
    smtp_timeout_seconds: float = 10.0

    delivery_max_attempts: int = 3
    delivery_retry_base_seconds: float = 1.0
    delivery_retry_factor: float = 2.0
    notification_language: str = "en"
    digest_max_events: int = 20
    digest_claim_stale_after_seconds: int = 300

    task_queue_enabled: bool = False
    task_queue_poll_interval_seconds: float = 1.0
    task_queue_max_attempts: int = 3
    task_queue_stale_after_seconds: int = 300
    # 0 leaves the digest sweep to scripts/enqueue_scheduled_jobs.py.
    digest_sweep_interval_seconds: int = 60

    sms_default_provider: str = "twilio"
    # False keeps customers without a configured provider from sending at all.
    sms_fallback_to_default_provider: bool = False
    sms_provider_timeout_seconds: float = 10.0
    circuit_breaker_threshold: int = 5
    circuit_breaker_reset_seconds: float = 60.0

    twilio_account_sid: str | None = None
    twilio_auth_token: str | None = None
    twilio_messaging_service_sid: str | None = None
    twilio_number_country: str = "DK"
    twilio_sms_webhook_url: str | None = None

    fonecloud_api_base_url: str | None = None
    fonecloud_token: str | None = None
    fonecloud_default_sender_id: str = "SMS"

    # `allowed_origins` supports comma-separated strings or JSON lists; disable pydantic-settings JSON decoding
    # so our validator can handle both formats.
    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        case_sensitive=False,
        enable_decoding=False,
        env_ignore_empty=True,
    )

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def parse_allowed_origins(cls, value):
        if value is None or value == "":
            return list(DEFAULT_ALLOWED_ORIGINS)

        if isinstance(value, str):
            try:
                parsed = json.loads(value)
                if isinstance(parsed, list):
                    return [origin for origin in parsed if origin]
            except json.JSONDecodeError:
                pass

            parsed = [origin.strip() for origin in value.split(",")]
            return [origin for origin in parsed if origin]

        if isinstance(value, (list, tuple)):
            return [origin for origin in value if origin]

        raise ValueError("allowed_origins must be a list or comma-separated string")

    @field_validator("notification_language", mode="before")
    @classmethod
    def parse_notification_language(cls, value):
        if value is None or value == "":
            return "en"
        lang = str(value).split(",")[0][:2].lower()
        if lang not in SUPPORTED_LANGUAGES:
            raise ValueError(f"notification_language must be one of {sorted(SUPPORTED_LANGUAGES)}")
        return lang

    @field_validator("sms_default_provider", mode="before")
    @classmethod
    def parse_sms_default_provider(cls, value):
        if value is None or value == "":
            return "twilio"
        return str(value).strip().lower()


settings = Settings()
