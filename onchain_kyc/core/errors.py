"""
Error taxonomy for the KYC orchestrator.

Client-facing errors carry a stable ``code`` and the HTTP status the API
layer maps them to. ``InvalidProof``, ``StaleTransition`` and
``CommitFailed`` are internal signals and never leave the service.
"""
from typing import Any


class KYCError(Exception):
    code = "KYCError"
    status_code = 500

    def __init__(self, message: str | None = None, details: Any = None):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details

    def to_detail(self) -> dict:
        return {"ok": False, "error": self.code, "message": self.message, "details": self.details}


class ValidationError(KYCError):
    code = "ValidationError"
    status_code = 400


class InvalidWallet(ValidationError):
    code = "InvalidWallet"


class RequirementsInvalid(ValidationError):
    code = "RequirementsInvalid"


class MalformedPayload(ValidationError):
    code = "MalformedPayload"


class InvalidWebhookSignature(KYCError):
    code = "InvalidWebhookSignature"
    status_code = 401


class SessionNotFound(KYCError):
    code = "SessionNotFound"
    status_code = 404


class SessionExpired(KYCError):
    code = "SessionExpired"
    status_code = 410


class ProofBackendUnavailable(KYCError):
    """The provider could not be asked; the session stays pending for redelivery."""

    code = "ProofBackendUnavailable"
    status_code = 503


class ConcurrencyConflict(KYCError):
    code = "ConcurrencyConflict"
    status_code = 503


class InvalidProof(Exception):
    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class StaleTransition(Exception):
    def __init__(self, session_id: str, expected: str, actual: str | None):
        super().__init__(f"session {session_id}: expected {expected}, found {actual}")
        self.session_id = session_id
        self.expected = expected
        self.actual = actual


class CommitFailed(Exception):
    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable
