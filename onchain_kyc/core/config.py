from pathlib import Path

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    DB_URL: str = "sqlite+aiosqlite:///./onchain_kyc.db"
    REDIS_URL: str | None = None
    STATISTICS_CACHE_TTL: int = 30

    # Self.xyz attestation provider
    SELF_APP_SCOPE: str = "onchain-kyc-v1"
    SELF_CONFIG_ID: str = "1"
    SELF_API_ENDPOINT: str = "https://staging-api.self.xyz"
    SELF_WEBHOOK_SECRET: str | None = None
    SELF_WEBHOOK_SIGNATURE_HEADER: str = Field(
        default="x-self-signature",
        validation_alias=AliasChoices("SELF_WEBHOOK_SIGNATURE_HEADER", "WEBHOOK_SIGNATURE_HEADER"),
    )
    PROOF_BACKEND: str = "self_api"  # "self_api" or "hmac"
    PROOF_VERIFICATION_KEY: str | None = None
    PROOF_VERIFY_TIMEOUT: float = 10.0

    # Default compliance requirements
    SELF_MINIMUM_AGE: int = 18
    SELF_REQUIRE_OFAC_CHECK: bool = False
    SELF_EXCLUDED_COUNTRIES: str = ""
    SELF_ALLOWED_DOCUMENT_TYPES: str = "1,2"

    SESSION_TTL_MINUTES: int = 30

    # Compliance oracle (ledger relayer)
    COMPLIANCE_ORACLE_URL: str | None = None
    COMPLIANCE_ORACLE_API_KEY: str | None = None
    COMPLIANCE_ORACLE_TIMEOUT: float = 5.0
    COMMIT_RETRY_BASE_SECONDS: int = 15
    COMMIT_RETRY_MAX_SECONDS: int = 3600

    SCHEDULER_ENABLED: bool = True
    SCHEDULER_INTERVAL_SECONDS: int = 30
    RECOVERY_GRACE_SECONDS: int = 60

    WEBHOOK_RACE_RETRIES: int = 5
    WEBHOOK_RACE_DELAY: float = 0.05

    PUBLIC_BASE_URL: str = "http://localhost:8000"
    CORS_ORIGINS: str = ""

    model_config = SettingsConfigDict(
        env_file=Path(__file__).resolve().parents[1].parent / ".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def excluded_countries(self) -> list[str]:
        return [c.strip().upper() for c in self.SELF_EXCLUDED_COUNTRIES.split(",") if c.strip()]

    @property
    def allowed_document_types(self) -> list[int]:
        types = []
        for raw in self.SELF_ALLOWED_DOCUMENT_TYPES.split(","):
            raw = raw.strip()
            if raw.isdigit():
                types.append(int(raw))
        return types or [1, 2]

    @property
    def cors_origins(self) -> list[str]:
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

    @property
    def webhook_endpoint(self) -> str:
        return f"{self.PUBLIC_BASE_URL.rstrip('/')}/kyc/verify"


settings = Settings()
