from __future__ import annotations

from functools import lru_cache
from urllib.parse import quote_plus

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "ocfcore"
    log_level: str = "INFO"

    # Full database URL; takes precedence over the POSTGRES_* components.
    database: str | None = None
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "ocf"
    postgres_user: str = "ocf"
    postgres_password: str = "ocf"
    # Bound asyncpg pools for predictable latency under load.
    api_db_pool_size: int = 10
    api_db_max_overflow: int = 10

    # Deadline applied to every identity provider, payment processor and SMTP call.
    ext_call_timeout_ms: int = 5000

    # Identity provider connection; the provider owns users, passwords and token issuance.
    idp_endpoint: str = "http://localhost:8000"
    idp_client_id: str = ""
    idp_client_secret: str = ""
    idp_organization: str = "ocf"
    # PEM certificate (RS*) or shared secret (HS*) used to verify access tokens.
    idp_jwt_key: str = ""
    idp_jwt_algorithms: str = "RS256"

    # SMTP delivery; port 465 uses implicit TLS, other ports upgrade with STARTTLS.
    smtp_host: str = "localhost"
    smtp_port: int = 587
    smtp_username: str | None = None
    smtp_password: str | None = None
    smtp_from_email: str = "no-reply@localhost"
    smtp_from_name: str = "OCF"

    # Base URL for links embedded in outbound mail.
    frontend_url: str = "http://localhost:4000"
    email_verification_expiry_hours: int = 48
    # Resend limits are enforced silently to avoid account enumeration.
    email_verification_max_resends: int = 5
    email_verification_resend_cooldown_s: int = 120
    password_reset_expiry_hours: int = 1

    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""

    # Global feature-flag map; gates metric families independently of plan display features.
    feature_courses_enabled: bool = True
    feature_labs_enabled: bool = True
    feature_terminals_enabled: bool = True

    def database_url(self) -> str:
        # Resolve the async SQLAlchemy URL from DATABASE or the POSTGRES_* components.
        if self.database:
            url = self.database
            if url.startswith("postgres://"):
                url = "postgresql+asyncpg://" + url[len("postgres://"):]
            elif url.startswith("postgresql://"):
                url = "postgresql+asyncpg://" + url[len("postgresql://"):]
            return url
        return (
            f"postgresql+asyncpg://{quote_plus(self.postgres_user)}:{quote_plus(self.postgres_password)}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    def jwt_algorithms(self) -> list[str]:
        return [alg.strip() for alg in self.idp_jwt_algorithms.split(",") if alg.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
