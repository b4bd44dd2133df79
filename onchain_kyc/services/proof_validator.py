"""
Self.xyz proof validation

Checks an inbound proof bundle before any session state is touched:
- the proof is bound to the session's scope and config id
- the public signals commit to the disclosed attributes
- the proof is bound to the session wallet
- the proof itself verifies against the provider's verification parameters

Every failure surfaces as InvalidProof. The specific cause is only logged.
"""
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import httpx

from onchain_kyc.core.config import Settings, settings
from onchain_kyc.core.errors import InvalidProof, ProofBackendUnavailable
from onchain_kyc.schemas.verification import ExtractedAttributes, PublicSignals, WebhookPayload
from onchain_kyc.utils.redact import redact

log = logging.getLogger(__name__)


def canonical_json(data: Any) -> str:
    """Sorted keys, compact separators, unescaped unicode."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def attributes_hash(attrs: ExtractedAttributes) -> str:
    return hashlib.sha256(canonical_json(attrs.canonical()).encode("utf-8")).hexdigest()


def signed_message(attestation_id: int, public_signals: PublicSignals) -> str:
    return canonical_json({
        "attestationId": attestation_id,
        "publicSignals": public_signals.model_dump(by_alias=True),
    })


class ProofBackend(Protocol):
    name: str

    async def verify(
        self,
        attestation_id: int,
        proof: Dict[str, Any],
        public_signals: PublicSignals,
    ) -> bool:
        ...


class SelfApiProofBackend:
    """Asks the Self.xyz verification API whether a proof is valid."""

    name = "self_api"

    def __init__(
        self,
        endpoint: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = endpoint.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def verify(
        self,
        attestation_id: int,
        proof: Dict[str, Any],
        public_signals: PublicSignals,
    ) -> bool:
        payload = {
            "attestationId": attestation_id,
            "proof": proof,
            "publicSignals": public_signals.model_dump(by_alias=True),
        }
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            try:
                response = await client.post(f"{self.base_url}/v1/verify", json=payload)
            except httpx.HTTPError as e:
                log.error(f"Self verify API unreachable: {e!r}")
                raise ProofBackendUnavailable("Proof verification service unavailable") from e

        if response.status_code >= 500:
            log.error(f"Self verify API error: {response.status_code} - {response.text}")
            raise ProofBackendUnavailable("Proof verification service unavailable")
        if response.status_code >= 400:
            log.warning(f"Self verify API refused proof: {response.status_code} - {response.text}")
            return False

        try:
            body = response.json()
        except ValueError as e:
            raise ProofBackendUnavailable("Proof verification service returned invalid JSON") from e
        return bool(body.get("valid") or body.get("isValid"))


class HmacProofBackend:
    """
    Verifies proofs signed with a shared verification key.

    proof["signature"] must be HMAC-SHA256(key, canonical {attestationId, publicSignals}).
    Used for staging relayers and local development.
    """

    name = "hmac"

    def __init__(self, verification_key: str):
        if not verification_key:
            raise ValueError("PROOF_VERIFICATION_KEY is required for the hmac proof backend")
        self.key = verification_key.encode("utf-8")

    def sign(self, attestation_id: int, public_signals: PublicSignals) -> str:
        message = signed_message(attestation_id, public_signals)
        return hmac.new(self.key, message.encode("utf-8"), hashlib.sha256).hexdigest()

    async def verify(
        self,
        attestation_id: int,
        proof: Dict[str, Any],
        public_signals: PublicSignals,
    ) -> bool:
        signature = proof.get("signature")
        if not isinstance(signature, str):
            return False
        expected = self.sign(attestation_id, public_signals)
        return hmac.compare_digest(signature.lower().encode("utf-8"), expected.encode("utf-8"))


def build_proof_backend(config: Settings = settings) -> ProofBackend:
    if config.PROOF_BACKEND == "hmac":
        return HmacProofBackend(config.PROOF_VERIFICATION_KEY or "")
    if config.PROOF_BACKEND == "self_api":
        return SelfApiProofBackend(config.SELF_API_ENDPOINT, timeout=config.PROOF_VERIFY_TIMEOUT)
    raise ValueError(f"Unknown PROOF_BACKEND: {config.PROOF_BACKEND}")


@dataclass(frozen=True)
class TrustedAttestation:
    """Attributes that passed validation and may be used for policy checks."""
    attestation_id: int
    nullifier: str
    user_identifier: str
    attributes: ExtractedAttributes


class ProofValidator:

    def __init__(self, backend: ProofBackend):
        self.backend = backend

    async def validate(
        self,
        payload: WebhookPayload,
        *,
        scope: str,
        config_id: str,
        wallet_address: str,
    ) -> TrustedAttestation:
        signals = payload.public_signals

        if not payload.proof:
            self._fail("malformed_proof", signals)

        if signals.scope != scope or str(signals.config_id) != str(config_id):
            self._fail(
                f"scope_mismatch expected={scope}/{config_id} got={signals.scope}/{signals.config_id}",
                signals,
            )

        if not hmac.compare_digest(
            signals.attributes_hash.lower().encode("utf-8"),
            attributes_hash(payload.extracted_attrs).encode("utf-8"),
        ):
            self._fail("attribute_signal_mismatch", signals)

        if signals.user_identifier.lower() != wallet_address.lower():
            self._fail("user_identifier_mismatch", signals)

        valid = await self.backend.verify(payload.attestation_id, payload.proof, signals)
        if not valid:
            self._fail(f"signature_invalid backend={self.backend.name}", signals)

        return TrustedAttestation(
            attestation_id=payload.attestation_id,
            nullifier=signals.nullifier,
            user_identifier=signals.user_identifier,
            attributes=payload.extracted_attrs,
        )

    @staticmethod
    def _fail(cause: str, signals: PublicSignals) -> None:
        log.warning("proof.invalid cause=%s nullifier=%s", cause, redact(signals.nullifier))
        raise InvalidProof(cause)
