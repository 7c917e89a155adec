from __future__ import annotations

from pydantic import AnyHttpUrl, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    SHOPIFY_APP_API_KEY: str
    SHOPIFY_APP_API_SECRET: str
    SHOPIFY_APP_SCOPES: str
    SHOPIFY_APP_BASE_URL: AnyHttpUrl
    SHOPIFY_APP_DB_URL: str = "sqlite:///./product_variation_app.db"
    SHOPIFY_ADMIN_API_VERSION: str = "2025-10"
    SHOPIFY_REQUEST_TIMEOUT_SECONDS: float = 20.0
    SESSION_TOKEN_LEEWAY_SECONDS: int = 10
    OAUTH_STATE_TTL_SECONDS: int = 600

    VARIANT_METAFIELD_NAMESPACE: str = "custom"
    SYSTEM_SOURCE_METAFIELD_KEY: str = "system_source"
    SYSTEM_SOURCE_SKIP_VALUE: str = "node-admin"
    DESCRIPTION_METAFIELD_NAMESPACE: str = "productdata"
    DESCRIPTION_METAFIELD_KEY: str = "product_description"

    @field_validator("SHOPIFY_APP_SCOPES")
    @classmethod
    def validate_scopes(cls, value: str) -> str:
        scopes = [scope.strip() for scope in value.split(",") if scope.strip()]
        if not scopes:
            raise ValueError("SHOPIFY_APP_SCOPES must include at least one scope")
        return ",".join(scopes)

    @field_validator(
        "VARIANT_METAFIELD_NAMESPACE",
        "SYSTEM_SOURCE_METAFIELD_KEY",
        "DESCRIPTION_METAFIELD_NAMESPACE",
        "DESCRIPTION_METAFIELD_KEY",
    )
    @classmethod
    def validate_metafield_identifier(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("Metafield namespaces and keys cannot be empty")
        return cleaned

    @property
    def app_base_url(self) -> str:
        return str(self.SHOPIFY_APP_BASE_URL).rstrip("/")

    @property
    def admin_scopes_csv(self) -> str:
        return self.SHOPIFY_APP_SCOPES

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()
