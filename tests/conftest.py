"""
Onchain KYC test configuration

Shared fixtures: a throwaway SQLite database per test, a controllable clock,
an in-memory compliance oracle behind httpx.MockTransport, and helpers that
build signed Self.xyz webhook payloads.
"""
import hashlib
import hmac
import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from onchain_kyc.core.config import Settings
from onchain_kyc.db.models import Base
from onchain_kyc.schemas.verification import ExtractedAttributes, PublicSignals
from onchain_kyc.services.compliance_oracle import ComplianceOracleClient
from onchain_kyc.services.nullifier_ledger import NullifierLedger
from onchain_kyc.services.orchestrator import VerificationOrchestrator
from onchain_kyc.services.proof_validator import HmacProofBackend, ProofValidator, attributes_hash
from onchain_kyc.services.session_store import SessionStore
from onchain_kyc.services.statistics import StatisticsCache

WALLET = "0x" + "a1" * 20
OTHER_WALLET = "0x" + "b2" * 20
THIRD_WALLET = "0x" + "c3" * 20
VERIFICATION_KEY = "test-verification-key"
WEBHOOK_SECRET = "test-webhook-secret"
ORACLE_URL = "http://oracle.test"
TX_HASH = "0x" + "ab" * 32


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime | None = None):
        self.now = now or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class OracleStub:
    """In-memory ledger relayer speaking the /compliance/{wallet} protocol."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.records: dict[str, int] = {}
        self.down = False
        self.status_code: int | None = None
        # Optional override: request -> response, for malformed relayer replies
        self.respond = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.down:
            raise httpx.ConnectError("oracle down", request=request)
        if self.status_code is not None:
            return httpx.Response(self.status_code, text="forced")
        if self.respond is not None:
            return self.respond(request)

        wallet = request.url.path.rsplit("/", 1)[-1]
        if request.method == "POST":
            self.records[wallet] = self.records.get(wallet, 0) + 1
        if wallet not in self.records:
            return httpx.Response(404, json={"isVerified": False})
        record = {
            "isVerified": True,
            "verifiedAt": 1772366400,
            "verificationCount": self.records[wallet],
        }
        if request.method == "POST":
            record.update(transactionHash=TX_HASH, blockNumber=1000 + len(self.commits), gasUsed=52110)
        return httpx.Response(200, json=record)

    @property
    def commits(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == "POST"]

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


def build_payload(
    wallet: str = WALLET,
    *,
    session_id: str | None = None,
    nullifier: str = "nullifier-0001",
    nationality: str = "DEU",
    document_type: int = 1,
    age_at_least: int = 21,
    is_ofac_match: bool = False,
    scope: str = "onchain-kyc-v1",
    config_id: str = "1",
    user_identifier: str | None = None,
    attestation_id: int = 1,
    key: str = VERIFICATION_KEY,
) -> dict:
    attrs = ExtractedAttributes(
        nationality=nationality,
        document_type=document_type,
        age_at_least=age_at_least,
        is_ofac_match=is_ofac_match,
    )
    signals = PublicSignals(
        nullifier=nullifier,
        user_identifier=user_identifier or wallet,
        scope=scope,
        config_id=config_id,
        attributes_hash=attributes_hash(attrs),
    )
    payload = {
        "attestationId": attestation_id,
        "proof": {"signature": HmacProofBackend(key).sign(attestation_id, signals)},
        "publicSignals": signals.model_dump(by_alias=True),
        "extractedAttrs": attrs.model_dump(by_alias=True),
        "userContextData": {"walletAddress": wallet},
    }
    if session_id:
        payload["userContextData"]["sessionId"] = session_id
    return payload


def sign_body(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def encode(payload: dict) -> bytes:
    return json.dumps(payload).encode("utf-8")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        DB_URL="sqlite+aiosqlite://",
        REDIS_URL=None,
        PROOF_BACKEND="hmac",
        PROOF_VERIFICATION_KEY=VERIFICATION_KEY,
        SELF_WEBHOOK_SECRET=None,
        SELF_MINIMUM_AGE=18,
        SELF_REQUIRE_OFAC_CHECK=False,
        SELF_EXCLUDED_COUNTRIES="",
        SELF_ALLOWED_DOCUMENT_TYPES="1,2",
        COMPLIANCE_ORACLE_URL=ORACLE_URL,
        COMPLIANCE_ORACLE_TIMEOUT=2.0,
        COMMIT_RETRY_BASE_SECONDS=15,
        COMMIT_RETRY_MAX_SECONDS=3600,
        WEBHOOK_RACE_RETRIES=5,
        WEBHOOK_RACE_DELAY=0.0,
        SCHEDULER_ENABLED=False,
        PUBLIC_BASE_URL="https://kyc.test",
    )


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'kyc.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def store(session_factory, clock):
    return SessionStore(session_factory, clock=clock)


@pytest.fixture
def ledger(session_factory, clock):
    return NullifierLedger(session_factory, clock=clock)


@pytest.fixture
def oracle_stub():
    return OracleStub()


@pytest.fixture
def stats_cache():
    return StatisticsCache(ttl=30, enabled=False)


@pytest.fixture
def orchestrator(store, ledger, clock, oracle_stub, stats_cache, test_settings):
    return VerificationOrchestrator(
        store=store,
        ledger=ledger,
        validator=ProofValidator(HmacProofBackend(VERIFICATION_KEY)),
        oracle=ComplianceOracleClient(ORACLE_URL, timeout=2.0, transport=oracle_stub.transport),
        stats_cache=stats_cache,
        config=test_settings,
        clock=clock,
    )
