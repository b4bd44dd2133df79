"""KYC verification session models."""

from datetime import datetime, timezone

from sqlalchemy import Integer, String, Text, DateTime, JSON, Index
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class SessionState:
    PENDING = "pending"
    PROOF_RECEIVED = "proof_received"
    VERIFIED = "verified"
    REJECTED = "rejected"
    EXPIRED = "expired"

    TERMINAL = frozenset({VERIFIED, REJECTED, EXPIRED})
    IN_FLIGHT = frozenset({PENDING, PROOF_RECEIVED})
    WITH_RESULT = frozenset({VERIFIED, REJECTED})

    # Forward-only transitions
    ALLOWED = {
        PENDING: frozenset({PROOF_RECEIVED, REJECTED, EXPIRED}),
        PROOF_RECEIVED: frozenset({VERIFIED, REJECTED}),
        VERIFIED: frozenset(),
        REJECTED: frozenset(),
        EXPIRED: frozenset(),
    }


class CommitStatus:
    PENDING = "pending"
    COMMITTED = "committed"


class VerificationSession(Base):
    """One onchain KYC attempt for a wallet."""

    __tablename__ = "kyc_sessions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    wallet_address: Mapped[str] = mapped_column(String, nullable=False, index=True)

    # Holds the wallet while the session is pending or proof_received, NULL otherwise.
    # The unique constraint allows at most one in-flight session per wallet.
    active_wallet: Mapped[str | None] = mapped_column(String, unique=True, nullable=True)

    state: Mapped[str] = mapped_column(String, nullable=False, default=SessionState.PENDING)

    # Frozen policy snapshot and provider configuration
    requirements: Mapped[dict] = mapped_column(JSON, nullable=False)
    scope: Mapped[str] = mapped_column(String, nullable=False)
    config_id: Mapped[str] = mapped_column(String, nullable=False)

    # Set when the proof is accepted (proof_received onwards)
    attestation_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    nullifier: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    disclosed_attributes: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    # Present only in verified / rejected
    result: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(String, nullable=True)
    rejection_detail: Mapped[str | None] = mapped_column(String, nullable=True)

    # Compliance oracle commit tracking (verified sessions only)
    commit_status: Mapped[str | None] = mapped_column(String, nullable=True)
    commit_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_commit_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_commit_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    committed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Relayer acknowledgment: transactionHash, blockNumber, gasUsed, verificationCount
    commit_receipt: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    # Append-only list of {event, state, at, reason, detail}
    timeline: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_kyc_sessions_wallet_state", "wallet_address", "state"),
        Index("ix_kyc_sessions_state_expires", "state", "expires_at"),
        Index("ix_kyc_sessions_commit", "commit_status", "next_commit_at"),
        Index("ix_kyc_sessions_created", "created_at"),
    )
