"""
Compliance Oracle Client

Thin adapter over the ledger relayer that owns the on-chain compliance flag
(SelfKYCVerifier contract). The relayer exposes:
- POST /compliance/{wallet}: record a verification; answers the record plus the
  transaction receipt (transactionHash, blockNumber, gasUsed)
- GET  /compliance/{wallet}: read {isVerified, verifiedAt, verificationCount}

Commits are idempotent from our side: a 409 (nullifier already recorded)
is treated as success. A response body that is not a compliance record is
reported as a retryable CommitFailed.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

from onchain_kyc.core.config import Settings, settings
from onchain_kyc.core.errors import CommitFailed
from onchain_kyc.utils.redact import redact

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class AttestationSummary:
    session_id: str
    nullifier: str
    nationality: str
    document_type: int
    age_at_least: int
    is_ofac_clear: bool

    def to_payload(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "nullifier": self.nullifier,
            "nationality": self.nationality,
            "documentType": self.document_type,
            "ageAtLeast": self.age_at_least,
            "isOfacClear": self.is_ofac_clear,
        }


@dataclass(frozen=True)
class ComplianceRecord:
    wallet_address: str
    is_verified: bool
    verified_at: Optional[datetime] = None
    verification_count: int = 0
    transaction_hash: Optional[str] = None
    block_number: Optional[int] = None
    gas_used: Optional[str] = None

    @classmethod
    def from_response(cls, wallet_address: str, data: Any) -> "ComplianceRecord":
        """Raises ValueError/TypeError when the relayer body is not a compliance record."""
        if not isinstance(data, dict):
            raise TypeError(f"expected a JSON object, got {type(data).__name__}")
        block_number = data.get("blockNumber")
        gas_used = data.get("gasUsed")
        return cls(
            wallet_address=wallet_address,
            is_verified=bool(data.get("isVerified")),
            verified_at=_parse_timestamp(data.get("verifiedAt") or data.get("timestamp")),
            verification_count=int(data.get("verificationCount") or 0),
            transaction_hash=data.get("transactionHash") or data.get("txHash"),
            block_number=int(block_number) if block_number is not None else None,
            gas_used=str(gas_used) if gas_used is not None else None,
        )

    def receipt(self) -> Dict[str, Any]:
        """Acknowledgment kept on the session once the flag is committed."""
        return {
            "transactionHash": self.transaction_hash,
            "blockNumber": self.block_number,
            "gasUsed": self.gas_used,
            "verificationCount": self.verification_count,
        }


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value in (None, "", 0, "0"):
        return None
    try:
        if isinstance(value, (int, float)) or str(value).isdigit():
            return datetime.fromtimestamp(int(value), tz=timezone.utc)
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except (ValueError, OverflowError) as e:
        log.warning(f"Unparseable verifiedAt from oracle: {value!r} ({e})")
        return None


class ComplianceOracleClient:

    def __init__(
        self,
        base_url: Optional[str],
        api_key: Optional[str] = None,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/") if base_url else None
        self.api_key = api_key
        self.timeout = timeout
        self.transport = transport

    @property
    def configured(self) -> bool:
        return self.base_url is not None

    def _get_headers(self) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if self.api_key:
            headers["x-api-key"] = self.api_key
        return headers

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport, headers=self._get_headers())

    async def commit(self, wallet_address: str, summary: AttestationSummary) -> ComplianceRecord:
        """Raises CommitFailed; callers queue a retry instead of failing the verification."""
        if not self.configured:
            raise CommitFailed("COMPLIANCE_ORACLE_URL is not configured", retryable=True)

        log.info(f"Committing compliance flag for {redact(wallet_address)} (session {summary.session_id})")

        async with self._client() as client:
            try:
                response = await client.post(
                    f"{self.base_url}/compliance/{wallet_address}",
                    json=summary.to_payload(),
                )
            except httpx.TimeoutException as e:
                raise CommitFailed(f"oracle timeout after {self.timeout}s", retryable=True) from e
            except httpx.HTTPError as e:
                raise CommitFailed(f"oracle unreachable: {e!r}", retryable=True) from e

        if response.status_code == 409:
            log.info(f"Oracle already holds nullifier for {redact(wallet_address)}; treating as committed")
            return await self.read(wallet_address)

        if response.status_code >= 400:
            retryable = response.status_code >= 500 or response.status_code == 429
            raise CommitFailed(
                f"oracle error {response.status_code}: {response.text[:200]}",
                retryable=retryable,
            )

        if not response.content:
            record = ComplianceRecord(wallet_address=wallet_address, is_verified=True)
        else:
            record = self._parse_record(wallet_address, response)
        log.info(
            f"Compliance flag committed for {redact(wallet_address)} "
            f"(verificationCount={record.verification_count})"
        )
        return record

    async def read(self, wallet_address: str) -> ComplianceRecord:
        if not self.configured:
            return ComplianceRecord(wallet_address=wallet_address, is_verified=False)

        async with self._client() as client:
            try:
                response = await client.get(f"{self.base_url}/compliance/{wallet_address}")
            except httpx.HTTPError as e:
                raise CommitFailed(f"oracle unreachable: {e!r}", retryable=True) from e

        if response.status_code == 404:
            return ComplianceRecord(wallet_address=wallet_address, is_verified=False)
        if response.status_code >= 400:
            raise CommitFailed(f"oracle error {response.status_code}", retryable=response.status_code >= 500)
        return self._parse_record(wallet_address, response)

    def _parse_record(self, wallet_address: str, response: httpx.Response) -> ComplianceRecord:
        try:
            return ComplianceRecord.from_response(wallet_address, response.json())
        except (ValueError, TypeError, AttributeError) as e:
            log.error(f"Unparseable oracle response for {redact(wallet_address)}: {response.text[:200]!r}")
            raise CommitFailed(
                f"unparseable oracle response ({response.status_code}): {e}",
                retryable=True,
            ) from e


def build_compliance_oracle(config: Settings = settings) -> ComplianceOracleClient:
    return ComplianceOracleClient(
        config.COMPLIANCE_ORACLE_URL,
        api_key=config.COMPLIANCE_ORACLE_API_KEY,
        timeout=config.COMPLIANCE_ORACLE_TIMEOUT,
    )
