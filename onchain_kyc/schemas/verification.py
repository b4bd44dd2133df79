"""
Pydantic schemas for onchain KYC verification via Self.xyz
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ============================================================================
# Requirements
# ============================================================================

class Requirements(CamelModel):
    """Frozen compliance policy attached to a session"""
    minimum_age: int
    require_ofac_check: bool
    allowed_document_types: List[int]
    excluded_countries: List[str] = Field(default_factory=list)


class RequirementsRequest(CamelModel):
    """Caller overrides; anything omitted falls back to the configured default"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    minimum_age: Optional[int] = None
    require_ofac_check: Optional[bool] = None
    allowed_document_types: Optional[List[int]] = None
    excluded_countries: Optional[List[str]] = None


# ============================================================================
# Session initiation
# ============================================================================

class InitiateRequest(CamelModel):
    """Loosely typed: bad values are reported as InvalidWallet / RequirementsInvalid"""
    wallet_address: Any = Field(default=None, description="0x-prefixed 20 byte wallet address")
    requirements: Any = Field(
        default=None,
        description="Requirement overrides (minimumAge, requireOfacCheck, allowedDocumentTypes, excludedCountries)",
    )


class SessionData(CamelModel):
    """What the wallet app needs to render the Self QR code"""
    scope: str
    config_id: str
    endpoint: str
    user_id: str


class InitiateResponse(CamelModel):
    session_id: str
    requirements: Requirements
    expires_at: datetime
    status: str
    reused: bool = Field(default=False, description="True when an existing pending session was returned")
    session_data: SessionData


# ============================================================================
# Webhook payload
# ============================================================================

class ExtractedAttributes(CamelModel):
    nationality: str = Field(min_length=2, max_length=3)
    document_type: int = Field(ge=1)
    age_at_least: int = Field(ge=0)
    is_ofac_match: bool = False

    @field_validator("nationality")
    @classmethod
    def _upper_alpha(cls, value: str) -> str:
        if not value.isalpha():
            raise ValueError("nationality must be an alphabetic country code")
        return value.upper()

    def canonical(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class PublicSignals(CamelModel):
    nullifier: str = Field(min_length=1)
    user_identifier: str = Field(min_length=1)
    scope: str
    config_id: str
    attributes_hash: str = Field(min_length=1)


class UserContextData(CamelModel):
    wallet_address: str = Field(validation_alias=AliasChoices("walletAddress", "wallet_address", "userId"))
    session_id: Optional[str] = None
    email: Optional[str] = None


class WebhookPayload(CamelModel):
    attestation_id: int
    proof: Dict[str, Any]
    public_signals: PublicSignals
    extracted_attrs: ExtractedAttributes
    user_context_data: UserContextData


# ============================================================================
# Results
# ============================================================================

class VerificationResult(CamelModel):
    """Stored on a session once it reaches verified or rejected"""
    reason: Optional[str] = None
    detail: Optional[str] = None
    attributes: Optional[ExtractedAttributes] = None
    nullifier: Optional[str] = None
    decided_at: datetime


class CommitReceipt(CamelModel):
    """Ledger relayer acknowledgment of a committed compliance flag"""
    transaction_hash: Optional[str] = None
    block_number: Optional[int] = None
    gas_used: Optional[str] = None
    verification_count: int = 0
    committed_at: Optional[datetime] = None


class TimelineEvent(CamelModel):
    event: str
    state: Optional[str] = None
    at: datetime
    reason: Optional[str] = None
    detail: Optional[str] = None


class SessionResponse(CamelModel):
    session_id: str
    wallet_address: str
    state: str
    requirements: Requirements
    scope: str
    config_id: str
    created_at: datetime
    updated_at: datetime
    expires_at: datetime
    completed_at: Optional[datetime] = None
    result: Optional[VerificationResult] = None
    commit_pending: bool = False
    commit_receipt: Optional[CommitReceipt] = None
    timeline: List[TimelineEvent] = Field(default_factory=list)


class VerificationOutcome(CamelModel):
    verified: bool
    session_id: str
    wallet_address: str
    state: str
    reason: Optional[str] = Field(default=None, description="InvalidProof, NullifierReplay or PolicyViolation")
    detail: Optional[str] = Field(default=None, description="Failed policy predicate, if any")
    commit_pending: bool = False
    replayed: bool = Field(default=False, description="True when returned from a stored terminal result")
    result: Optional[VerificationResult] = None
    commit_receipt: Optional[CommitReceipt] = None


class RecentSession(CamelModel):
    session_id: str
    state: str
    created_at: datetime
    completed_at: Optional[datetime] = None


class StatusResponse(CamelModel):
    wallet_address: str
    is_verified: bool
    source: str = Field(description="local, ledger or none")
    verified_at: Optional[datetime] = None
    verification_count: int = 0
    commit_pending: bool = False
    last_result: Optional[VerificationResult] = None
    commit_receipt: Optional[CommitReceipt] = Field(default=None, description="Receipt of the latest committed verification")
    recent_sessions: List[RecentSession] = Field(default_factory=list)


class StatisticsResponse(CamelModel):
    total_verifications: int
    unique_users: int


class DocumentTypeInfo(CamelModel):
    id: int
    name: str


class ConfigResponse(CamelModel):
    scope: str
    config_id: str
    endpoint: str
    requirements: Requirements
    document_types: List[DocumentTypeInfo]
    session_ttl_minutes: int


class HealthResponse(CamelModel):
    status: str
    timestamp: datetime
    services: Dict[str, Dict[str, Any]]
