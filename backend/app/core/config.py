from functools import lru_cache
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from pydantic import AnyUrl, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


LEDGER_COMMITMENTS = ("processed", "confirmed", "finalized")


def _ensure_sqlalchemy_postgres_scheme(value: str) -> str:
    if not value.lower().startswith("postgres"):
        return value

    parsed = urlparse(value)
    scheme = parsed.scheme.lower()

    if scheme == "postgres":
        scheme = "postgresql"

    if scheme == "postgresql":
        scheme = "postgresql+psycopg"

    if scheme not in {"postgresql+psycopg", "postgresql+asyncpg"}:
        scheme = "postgresql+psycopg"

    query_params = dict(parse_qsl(parsed.query, keep_blank_values=True))
    query_params.setdefault("sslmode", "require")
    query_params.setdefault("target_session_attrs", "read-write")
    new_query = urlencode(query_params, doseq=True)

    return urlunparse(parsed._replace(scheme=scheme, query=new_query))


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    debug: bool = Field(False, description="Enable FastAPI debug mode")
    environment: str = Field(
        default="development",
        description="Runtime environment (development|staging|production)",
    )
    database_url: AnyUrl | str = Field(
        default="sqlite:///../data/ledger_replica.db",
        description="SQLAlchemy compatible database URL",
    )
    supabase_db_url: AnyUrl | str | None = Field(
        default=None,
        description="Pooled Postgres connection string used when ENVIRONMENT=production",
    )

    # Ledger RPC
    ledger_rpc_url: str = Field(
        default="http://127.0.0.1:8899",
        description="JSON-RPC endpoint of the signing relay in front of the ledger",
    )
    ledger_program_id: str = Field(
        default="PredMkt1111111111111111111111111111111111111",
        description="Program id whose instructions are decoded and written",
    )
    ledger_authority_address: str = Field(
        default="Auth111111111111111111111111111111111111111",
        description="Backend authority account that signs lifecycle writes",
    )
    ledger_global_config_address: str = Field(
        default="Conf111111111111111111111111111111111111111",
        description="Program global configuration account",
    )
    ledger_commitment: str = Field(
        default="confirmed",
        description="Commitment level awaited after submission (processed|confirmed|finalized)",
    )
    ledger_request_timeout_seconds: float = Field(
        default=30.0, description="HTTP timeout for a single RPC request", gt=0
    )
    ledger_confirmation_timeout_seconds: float = Field(
        default=60.0, description="Maximum time spent polling for confirmation", gt=0
    )
    ledger_confirmation_poll_seconds: float = Field(
        default=1.0, description="Delay between confirmation status polls", gt=0
    )

    # Notification webhook
    webhook_secret: str | None = Field(
        default=None, description="Shared secret for HMAC-SHA256 webhook signatures"
    )
    webhook_dev_mode: bool = Field(
        default=False, description="Accept unsigned webhook deliveries (development only)"
    )

    # Opinion aggregation
    proposal_approval_threshold_bps: int = Field(
        default=7000, description="Approval threshold for proposal votes", ge=0, le=10_000
    )
    dispute_threshold_bps: int = Field(
        default=6000, description="Success threshold for dispute votes", ge=0, le=10_000
    )
    aggregation_interval_seconds: float = Field(
        default=300.0, description="Cadence of the vote aggregation jobs", gt=0
    )

    # Lifecycle timer
    dispute_window_hours: float = Field(
        default=48.0,
        description="Waiting period after a resolution proposal before finalization",
        gt=0,
    )
    finalization_safety_buffer_seconds: float = Field(
        default=60.0, description="Extra delay past the dispute window to absorb clock skew", ge=0
    )
    finalization_batch_size: int = Field(
        default=10, description="Maximum markets finalized per monitor pass", ge=1, le=100
    )
    finalization_timeout_seconds: float = Field(
        default=30.0, description="Per-market timeout for a finalize write", gt=0
    )
    monitor_interval_seconds: float = Field(
        default=300.0, description="Cadence of the finalization monitor", gt=0
    )

    # Retry policies
    ledger_retry_max_attempts: int = Field(default=3, ge=1, le=10)
    ledger_retry_initial_delay_seconds: float = Field(default=1.0, ge=0)
    ledger_retry_max_delay_seconds: float = Field(default=10.0, ge=0)
    ledger_retry_backoff_factor: float = Field(default=2.0, ge=1)
    finalization_retry_initial_delay_seconds: float = Field(default=5.0, ge=0)
    finalization_retry_max_delay_seconds: float = Field(default=20.0, ge=0)

    scheduler_enabled: bool = Field(
        default=False, description="Start the periodic jobs together with the API process"
    )
    lifecycle_dry_run: bool = Field(
        default=False,
        description="Log lifecycle writes instead of submitting them or updating the replica",
    )

    @field_validator("ledger_commitment")
    @classmethod
    def _validate_commitment(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in LEDGER_COMMITMENTS:
            raise ValueError(
                "LEDGER_COMMITMENT must be one of " + ", ".join(LEDGER_COMMITMENTS)
            )
        return normalized

    @field_validator("database_url", "supabase_db_url", mode="before")
    @classmethod
    def _normalize_postgres_urls(cls, value: Any) -> Any:
        if value is None or not isinstance(value, str):
            return value
        if value.startswith("postgres://"):
            return "postgresql://" + value[len("postgres://") :]
        return value

    @field_validator("supabase_db_url")
    @classmethod
    def _require_postgres_scheme(cls, value: Any) -> Any:
        if value is None:
            return value
        scheme = str(value).split(":", 1)[0].lower()
        valid_schemes = {
            "postgres",
            "postgresql",
            "postgresql+psycopg",
            "postgresql+asyncpg",
        }
        if scheme not in valid_schemes:
            raise ValueError(
                "SUPABASE_DB_URL must be a PostgreSQL connection string (e.g. postgresql://...)."
            )
        return value

    @property
    def resolved_database_url(self) -> str:
        if self.environment.lower() == "production":
            if not self.supabase_db_url:
                raise ValueError(
                    "SUPABASE_DB_URL must be set when ENVIRONMENT=production"
                )
            return _ensure_sqlalchemy_postgres_scheme(str(self.supabase_db_url))
        return _ensure_sqlalchemy_postgres_scheme(str(self.database_url))

    @property
    def dispute_window_seconds(self) -> float:
        return self.dispute_window_hours * 3600.0


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
