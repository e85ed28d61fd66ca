from functools import lru_cache
import json
from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _parse_list_value(value: str) -> list[str]:
    if not value:
        return []
    if isinstance(value, str):
        raw = value.strip()
        if raw == "":
            return []
        try:
            parsed = json.loads(raw)
            if isinstance(parsed, list):
                return [str(item).strip() for item in parsed if str(item).strip()]
        except ValueError:
            pass
        return [item.strip() for item in raw.split(",") if item.strip()]
    if isinstance(value, list):
        return [str(item).strip() for item in value if str(item).strip()]
    return []


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        extra="ignore",
        validate_by_name=True,
        populate_by_name=True,
    )
    database_url: str = ""

    jwt_secret: str = Field(
        default="",
        validation_alias=AliasChoices("JWT_SECRET", "AUTH_JWT_SECRET"),
    )
    jwt_audience: str = Field(
        default="authenticated",
        validation_alias=AliasChoices("JWT_AUDIENCE"),
    )
    jwks_url: str = Field(default="", validation_alias=AliasChoices("JWKS_URL"))
    # Compare token claims against the users table on every request.
    enforce_principal_freshness: bool = Field(
        default=True,
        validation_alias=AliasChoices("ENFORCE_PRINCIPAL_FRESHNESS"),
    )

    allow_direct_appointment_completion: bool = Field(
        default=False,
        validation_alias=AliasChoices("ALLOW_DIRECT_APPOINTMENT_COMPLETION"),
    )

    offer_follow_up_after_days: int = 7
    offer_escalation_after_days: int = 14
    offer_max_age_days: int = 30
    offer_max_follow_up_attempts: int = Field(
        default=3,
        validation_alias=AliasChoices("OFFER_MAX_FOLLOW_UP_ATTEMPTS", "OFFER_FOLLOW_UP_LIMIT"),
    )
    transition_max_retries: int = 3

    scheduler_timezone: str = "Europe/Copenhagen"
    scheduler_run_hour: int = 9
    scheduler_lease_seconds: int = 900
    appointment_reminder_run_hour: int = 6

    enable_recurring_jobs: bool = False
    enable_notification_outbox: bool = True
    enable_appointment_reminders: bool = True
    follow_up_worker_interval_seconds: int = 900
    reminder_worker_interval_seconds: int = 900
    notification_worker_interval_seconds: int = 30
    notification_worker_batch_size: int = 50
    notification_worker_max_attempts: int = 5

    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True
    smtp_from_email: str = ""

    app_base_url: str = Field(
        default="https://taklaget.app",
        validation_alias=AliasChoices("APP_BASE_URL", "PUBLIC_BASE_URL"),
    )

    docs_enabled: bool = Field(default=True)
    openapi_enabled: bool = Field(default=True)
    expose_error_details: bool = False

    cors_allow_origins: list[str] = Field(default_factory=list)
    cors_allow_methods: list[str] = Field(default_factory=lambda: [
        "GET",
        "POST",
        "PATCH",
        "DELETE",
        "OPTIONS",
    ])
    cors_allow_headers: list[str] = Field(default_factory=lambda: [
        "Authorization",
        "Content-Type",
        "Accept",
    ])

    @field_validator(
        "cors_allow_origins",
        "cors_allow_methods",
        "cors_allow_headers",
        mode="before",
    )
    @classmethod
    def _split_csv(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            if value.strip() == "":
                return []
            return _parse_list_value(value)
        return value

    @property
    def smtp_configured(self) -> bool:
        return bool(self.smtp_host and self.smtp_from_email)


@lru_cache
def get_settings() -> Settings:
    return Settings()
