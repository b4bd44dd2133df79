"""
Compliance policy evaluation.

Predicates run in a fixed order and stop at the first failure so that a
given (requirements, attributes) pair always yields the same reason code.
"""
from dataclasses import dataclass
from typing import Optional

from onchain_kyc.schemas.verification import ExtractedAttributes, Requirements

AGE_BELOW_MINIMUM = "AGE_BELOW_MINIMUM"
DOCUMENT_TYPE_NOT_ALLOWED = "DOCUMENT_TYPE_NOT_ALLOWED"
OFAC_MATCH = "OFAC_MATCH"
NATIONALITY_EXCLUDED = "NATIONALITY_EXCLUDED"

POLICY_VIOLATION = "PolicyViolation"


@dataclass(frozen=True)
class PolicyDecision:
    passed: bool
    reason: Optional[str] = None

    @property
    def code(self) -> Optional[str]:
        return None if self.passed else POLICY_VIOLATION


PASS = PolicyDecision(passed=True)


def evaluate(requirements: Requirements, attrs: ExtractedAttributes) -> PolicyDecision:
    if attrs.age_at_least < requirements.minimum_age:
        return PolicyDecision(False, AGE_BELOW_MINIMUM)

    if attrs.document_type not in requirements.allowed_document_types:
        return PolicyDecision(False, DOCUMENT_TYPE_NOT_ALLOWED)

    if requirements.require_ofac_check and attrs.is_ofac_match:
        return PolicyDecision(False, OFAC_MATCH)

    if requirements.excluded_countries and attrs.nationality.upper() in {
        c.upper() for c in requirements.excluded_countries
    }:
        return PolicyDecision(False, NATIONALITY_EXCLUDED)

    return PASS
