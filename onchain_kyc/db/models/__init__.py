"""
SQLAlchemy database models.

- base: Base declarative class
- verification: KYC verification sessions and their state constants
- nullifier: consumed proof nullifiers

Import any model from this module:
    from onchain_kyc.db.models import VerificationSession, ConsumedNullifier
"""

# Base class (must be imported first)
from .base import Base

# Verification models
from .verification import VerificationSession, SessionState, CommitStatus

# Replay protection
from .nullifier import ConsumedNullifier

__all__ = [
    "Base",
    "VerificationSession",
    "SessionState",
    "CommitStatus",
    "ConsumedNullifier",
]
