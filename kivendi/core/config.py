from __future__ import annotations

from typing import Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_host: str = "0.0.0.0"
    app_port: int = 8080

    environment: Literal["development", "test", "production"] = "development"

    database_url: str
    sql_echo: bool = False

    jwt_secret: str = "change_me"
    jwt_expires_sec: int = 60 * 60 * 24 * 30

    # KKiaPay. Sandbox and production differ only in base URL.
    kkiapay_public_key: str = ""
    kkiapay_private_key: str = ""
    # Shared secret used to sign webhook bodies (X-KKiaPay-Signature)
    kkiapay_secret: str = ""
    kkiapay_sandbox: bool = False
    kkiapay_timeout_sec: float = 10.0
    # Whole verification, retries and back-off included
    kkiapay_verify_budget_sec: float = 30.0

    # Object storage for chat images
    aws_access_key_id: str = ""
    aws_secret_access_key: str = ""
    aws_s3_bucket: str = ""
    aws_region: str = "eu-west-3"

    # Firebase service-account JSON. Push is disabled when the file is missing.
    firebase_credentials_file: str = "firebase-credentials.json"

    # Used in email links
    frontend_url: str = "http://localhost:3000"
    cors_origins: str = "*"

    scheduler_enabled: bool = True
    boost_expiry_interval_hours: int = 1

    @model_validator(mode="after")
    def _no_sandbox_in_production(self) -> "Settings":
        if self.environment == "production" and self.kkiapay_sandbox:
            raise ValueError("KKIAPAY_SANDBOX must be false when ENVIRONMENT=production")
        return self

    @property
    def kkiapay_base_url(self) -> str:
        if self.kkiapay_sandbox:
            return "https://api-sandbox.kkiapay.me/api/v1"
        return "https://api.kkiapay.me/api/v1"

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


def mask_secret(value: str) -> str:
    """Show the first and last four characters of a secret for logs."""
    if not value:
        return "[NOT SET]"
    if len(value) <= 8:
        return "****"
    return f"{value[:4]}****{value[-4:]}"


settings = Settings()
