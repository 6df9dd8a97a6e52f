from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application configuration read from environment variables."""

    app_name: str = Field(default="Deskline API")
    environment: str = Field(default="development")
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="%(levelname)s %(name)s %(message)s")

    # Database configuration
    database_url: str = Field(default="sqlite+aiosqlite:///./deskline.db")
    change_channel: str | None = Field(default=None)

    # Auth session tokens
    session_secret: str = Field(default="change-me")
    session_algorithm: str = Field(default="HS256")
    session_audience: str | None = Field(default="authenticated")

    # Identity bootstrap
    bootstrap_admin_emails: tuple[str, ...] = Field(default=("ti@grupoairslaid.com.br",))
    bootstrap_admin_prefixes: tuple[str, ...] = Field(default=("admin", "dev"))

    # Realtime sync
    sync_debounce_seconds: float = Field(default=0.25, ge=0)

    # E-mail alerts
    email_api_key: str | None = Field(default=None)
    email_api_url: str = Field(default="https://api.resend.com/emails")
    email_sender: str = Field(default="Help Desk <onboarding@resend.dev>")
    support_inbox: str | None = Field(default=None)

    # Ticket insights
    insights_api_key: str | None = Field(default=None)
    insights_api_url: str = Field(default="https://generativelanguage.googleapis.com/v1beta")
    insights_model: str = Field(default="gemini-2.5-flash")

    # Observability configuration
    otel_enabled: bool = Field(default=False)
    otel_service_name: str = Field(default="deskline-api")
    otel_exporter_otlp_endpoint: str | None = Field(default=None)
    otel_exporter_otlp_headers: str | None = Field(default=None)

    class Config:
        env_file = ".env"
        case_sensitive = False

    @field_validator("database_url")
    @classmethod
    def _use_async_driver(cls, value: str) -> str:
        for prefix in ("postgresql://", "postgres://"):
            if value.startswith(prefix):
                return "postgresql+asyncpg://" + value[len(prefix) :]
        return value


@lru_cache
def get_settings() -> Settings:
    """Return a cached instance of the application settings."""

    return Settings()
