"""Configuration management for the ICMS-ST credit engine."""

import logging
from typing import Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

SERVICE_VERSION = "0.1.0"


class StCreditConfig(BaseSettings):
    """Configuration for storage, validation and service endpoints."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    storage_backend: Literal["memory", "supabase"] = Field(
        default="memory",
        description="Balance snapshot storage backend",
    )

    supabase_url: Optional[str] = Field(
        default=None,
        description="Supabase project URL (env var: SUPABASE_URL)",
    )

    supabase_service_role_key: Optional[str] = Field(
        default=None,
        description="Supabase service role key (env var: SUPABASE_SERVICE_ROLE_KEY)",
    )

    snapshots_table: str = Field(
        default="controle_saldos_notas",
        description="Table holding per-note balance snapshots",
    )

    locks_table: str = Field(
        default="competencias_st",
        description="Table holding competência lock rows",
    )

    credit_control_table: str = Field(
        default="controle_creditos_icms_st",
        description="Table holding per-period credit control summaries",
    )

    strict_opening_balance: bool = Field(
        default=False,
        description="Reject negative or above-quantity manual opening balances",
    )

    stock_report_encoding: str = Field(
        default="utf-8",
        description="Text encoding of stock movement report files",
    )

    operator_id: str = Field(
        default="local",
        description="Operator identity recorded on competência locks (CLI use)",
    )

    api_host: str = Field(
        default="0.0.0.0",
        description="API host address",
    )

    api_port: int = Field(
        default=8000,
        description="API port",
    )

    api_keys: str = Field(
        default="",
        description="Comma-separated API keys for authentication",
    )

    allow_api_key_auth: bool = Field(
        default=True,
        description="Accept configured API keys as bearer tokens",
    )

    allowed_origins: str = Field(
        default="http://localhost:5173",
        description="Comma-separated CORS origins",
    )

    @field_validator("snapshots_table", "locks_table", "credit_control_table")
    @classmethod
    def validate_table_name(cls, v: str) -> str:
        """Table names must be plain identifiers."""
        cleaned = v.strip()
        if not cleaned or not cleaned.replace("_", "").isalnum():
            raise ValueError(f"Invalid table name: '{v}'")
        return cleaned

    def get_api_keys(self) -> set[str]:
        """Parse API keys from comma-separated string."""
        return {k.strip() for k in self.api_keys.split(",") if k.strip()}

    def get_allowed_origins(self) -> list[str]:
        """Parse CORS origins from comma-separated string."""
        return [o.strip() for o in self.allowed_origins.split(",") if o.strip()]

    def validate_config(self) -> None:
        """Validate configuration at startup. Raises ValueError if invalid."""
        errors = []

        if self.storage_backend == "supabase":
            if not self.supabase_url:
                errors.append("SUPABASE_URL required when STORAGE_BACKEND=supabase")
            if not self.supabase_service_role_key:
                errors.append(
                    "SUPABASE_SERVICE_ROLE_KEY required when STORAGE_BACKEND=supabase"
                )

        if len({self.snapshots_table, self.locks_table, self.credit_control_table}) < 3:
            errors.append("Storage tables must be distinct")

        if self.api_port < 1 or self.api_port > 65535:
            errors.append("API_PORT must be between 1 and 65535")

        if not self.operator_id.strip():
            errors.append("OPERATOR_ID cannot be empty")

        if errors:
            raise ValueError(
                "Configuration validation failed:\n"
                + "\n".join(f"  - {e}" for e in errors)
            )


_config_instance = None


def get_config() -> StCreditConfig:
    """Get or create global configuration instance."""
    global _config_instance
    if _config_instance is None:
        _config_instance = StCreditConfig()
        _config_instance.validate_config()
        logger.info("Configuration validated successfully")
    return _config_instance


def reload_config() -> StCreditConfig:
    """Reload configuration (useful for testing)."""
    global _config_instance
    _config_instance = StCreditConfig()
    return _config_instance
