from functools import lru_cache
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from pydantic import AnyUrl, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from app.domain.errors import ConfigurationError
from app.domain.models import OperatorCredentials


MIRROR_BASE_URLS: dict[str, str] = {
    "testnet": "https://testnet.mirrornode.hedera.com",
    "mainnet": "https://mainnet-public.mirrornode.hedera.com",
    "previewnet": "https://previewnet.mirrornode.hedera.com",
}

IDEMPOTENCY_SCOPES = {"token", "global"}


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
        default="sqlite:///./data/ticketgate.db",
        description="SQLAlchemy compatible database URL holding the registry and payment claims",
    )
    hedera_network: str = Field(
        default="testnet",
        description="Ledger network used for submissions and mirror lookups (testnet|mainnet|previewnet)",
    )
    hedera_account_id: str | None = Field(
        default=None,
        description="Operator (treasury) account id, e.g. 0.0.1234",
    )
    hedera_private_key: str | None = Field(
        default=None,
        description="Operator private key; signs topic, mint and transfer transactions",
    )
    hedera_mirror_url: AnyUrl | str | None = Field(
        default=None,
        description="Override for the mirror node base URL (defaults to the public mirror of the network)",
    )
    mirror_timeout_seconds: float = Field(
        default=10.0,
        description="HTTP timeout applied to each mirror node request",
        gt=0,
    )
    mirror_retry_backoff_seconds: list[float] | tuple[float, ...] | str = Field(
        default_factory=lambda: [1.0, 2.0, 4.0],
        description=(
            "Comma-separated list or array of delays (seconds) between mirror lookups while a "
            "payment transaction is not yet indexed"
        ),
    )
    idempotency_scope: str = Field(
        default="token",
        description="Scope within which a payment reference may be consumed once (token|global)",
    )
    payment_aggregate_transfers: bool = Field(
        default=False,
        description="Sum every transfer entry per account instead of checking only the first one",
    )

    @field_validator("hedera_network", mode="before")
    @classmethod
    def _validate_network(cls, value: Any) -> str:
        candidate = str(value or "testnet").strip().lower()
        if candidate not in MIRROR_BASE_URLS:
            raise ValueError(
                "HEDERA_NETWORK must be one of: " + ", ".join(sorted(MIRROR_BASE_URLS))
            )
        return candidate

    @field_validator("idempotency_scope", mode="before")
    @classmethod
    def _validate_scope(cls, value: Any) -> str:
        candidate = str(value or "token").strip().lower()
        if candidate not in IDEMPOTENCY_SCOPES:
            raise ValueError("IDEMPOTENCY_SCOPE must be 'token' or 'global'")
        return candidate

    @field_validator("database_url", mode="before")
    @classmethod
    def _normalize_postgres_urls(cls, value: Any) -> Any:
        if value is None or not isinstance(value, str):
            return value
        if value.startswith("postgres://"):
            return "postgresql://" + value[len("postgres://") :]
        return value

    @field_validator("mirror_retry_backoff_seconds", mode="before")
    @classmethod
    def _parse_retry_backoff(cls, value: Any) -> list[float]:
        if value in (None, "", []):
            return [1.0, 2.0, 4.0]
        if isinstance(value, str):
            tokens = [token.strip() for token in value.split(",") if token.strip()]
            if not tokens:
                raise ValueError("MIRROR_RETRY_BACKOFF_SECONDS must contain at least one value")
            value = tokens
        if isinstance(value, (list, tuple)):
            backoff: list[float] = []
            for item in value:
                try:
                    delay = float(item)
                except (TypeError, ValueError) as exc:
                    raise ValueError("MIRROR_RETRY_BACKOFF_SECONDS entries must be numeric") from exc
                if delay <= 0:
                    raise ValueError("MIRROR_RETRY_BACKOFF_SECONDS entries must be positive")
                backoff.append(delay)
            if not backoff:
                raise ValueError("MIRROR_RETRY_BACKOFF_SECONDS must contain at least one value")
            return backoff
        raise ValueError(
            "MIRROR_RETRY_BACKOFF_SECONDS must be provided as a comma-separated string or list of numbers"
        )

    @property
    def resolved_database_url(self) -> str:
        return _ensure_sqlalchemy_postgres_scheme(str(self.database_url))

    @property
    def resolved_mirror_url(self) -> str:
        if self.hedera_mirror_url:
            return str(self.hedera_mirror_url).rstrip("/")
        return MIRROR_BASE_URLS[self.hedera_network]

    @property
    def mirror_retry_backoff_schedule(self) -> tuple[float, ...]:
        return tuple(float(value) for value in self.mirror_retry_backoff_seconds)

    def operator_credentials(self) -> OperatorCredentials:
        """Return the treasury identity, failing loudly when it is not configured."""

        if not self.hedera_account_id or not self.hedera_private_key:
            raise ConfigurationError(
                "Missing HEDERA_ACCOUNT_ID or HEDERA_PRIVATE_KEY in environment"
            )
        return OperatorCredentials(
            account_id=self.hedera_account_id.strip(),
            private_key=self.hedera_private_key.strip(),
            network=self.hedera_network,
        )


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
