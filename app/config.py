# app/config.py
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Literal


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_env: Literal["dev", "staging", "prod"] = "dev"
    log_level: str = "INFO"

    # Database
    expected_schema_version: str = "001_init.sql"  # Update on deploy when new migrations are added
    database_url: str | None = None
    pghost: str = "localhost"
    pgport: int = 5432
    pguser: str = "postgres"
    pgpassword: str = ""
    pgdatabase: str = "postgres"
    pg_pool_min: int = 2
    pg_pool_max: int = 20
    pg_connect_timeout: int = 5

    # Security
    admin_token: str | None = None  # Bearer token for the operator command API
    gateway_webhook_key: str | None = None  # Shared internal key the gateway sends as X-Internal-Key
    allowed_origins: list[str] = ["*"]
    metrics_token: str | None = None  # Optional token for /metrics, /health/detailed

    # Internal Network Access (for metrics/health endpoints when no token)
    internal_networks: str = "10.0.0.0/8,172.16.0.0/12,192.168.0.0/16,127.0.0.0/8,::1/128"
    # SECURITY: Only set to true if behind a trusted reverse proxy
    trust_proxy_headers: bool = False

    # Gateway (process holding the live messaging-network connections)
    gateway_base_url: str = "http://localhost:8002"
    gateway_api_token: str | None = None
    gateway_timeout_seconds: float = 30.0  # Upper bound for every backend -> gateway call
    gateway_connect_timeout_seconds: float = 5.0
    gateway_pool_limit: int = 20

    # Sessions
    qr_ttl_seconds: int = 60  # QR validity window when the gateway does not send one
    session_write_retries: int = 3  # Compare-and-swap attempts before giving up

    # Event application
    event_concurrency: int = 64  # Session groups applied in parallel per webhook batch

    # Monitoring & Feature Flags
    enable_metrics: bool = True
    enable_request_logging: bool = True

    @property
    def is_production(self) -> bool:
        return self.app_env == "prod"

    @property
    def is_staging(self) -> bool:
        return self.app_env == "staging"

    @property
    def database_dsn(self) -> str:
        if self.database_url:
            return self.database_url

        return (
            f"postgresql://{self.pguser}:{self.pgpassword}"
            f"@{self.pghost}:{self.pgport}/{self.pgdatabase}"
        )

    def validate_required_for_production(self) -> list[str]:
        """Validate that required settings exist for production"""
        if not self.is_production:
            return []

        required_fields = [
            ("admin_token", self.admin_token),
            ("gateway_api_token", self.gateway_api_token),
            ("gateway_webhook_key", self.gateway_webhook_key),
        ]

        return [name for name, value in required_fields if not value]


def warn_on_risky_config(s: "Settings") -> list[str]:
    warnings: list[str] = []

    # --- Admin / Security ---
    if not s.admin_token:
        warnings.append("admin_token is missing (session command API will reject every request).")

    if not s.gateway_webhook_key:
        warnings.append(
            "gateway_webhook_key is not set: gateway webhooks are accepted without an internal key."
        )

    if s.is_production and s.allowed_origins == ["*"]:
        warnings.append("prod: allowed_origins=['*'] (CORS is wide open).")

    if s.trust_proxy_headers:
        warnings.append(
            "trust_proxy_headers=True: ensure you are behind a trusted reverse proxy, "
            "otherwise X-Forwarded-For spoofing is possible."
        )

    # --- Gateway ---
    if not s.gateway_api_token:
        warnings.append("gateway_api_token is missing (gateway calls are sent unauthenticated).")
    if s.gateway_timeout_seconds <= 0 or s.gateway_timeout_seconds > 60:
        warnings.append(
            f"gateway_timeout_seconds={s.gateway_timeout_seconds} is outside (0, 60]; "
            "operator commands may hang or fail spuriously."
        )

    # --- Metrics exposure ---
    if s.enable_metrics and not s.metrics_token:
        warnings.append(
            "enable_metrics=True but metrics_token is not set: metrics/health protection relies on internal_networks."
        )

    return warnings


def validate_or_warn(s: "Settings") -> None:
    """
    In prod: enforce required settings (hard fail).
    In non-prod: warn only.
    """
    missing = s.validate_required_for_production()

    if missing:
        raise RuntimeError(f"Missing required settings for production: {', '.join(missing)}")

    for msg in warn_on_risky_config(s):
        print(f"[WARN][config] {msg}")

settings = Settings()
validate_or_warn(settings)
