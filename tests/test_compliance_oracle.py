"""
Compliance oracle client tests.
"""
import json
from datetime import datetime, timezone

import httpx
import pytest

from onchain_kyc.core.errors import CommitFailed
from onchain_kyc.services.compliance_oracle import (
    AttestationSummary,
    ComplianceOracleClient,
    ComplianceRecord,
)

from conftest import ORACLE_URL, TX_HASH, WALLET

SUMMARY = AttestationSummary(
    session_id="kyc_abc",
    nullifier="n-1",
    nationality="DEU",
    document_type=1,
    age_at_least=21,
    is_ofac_clear=True,
)


# Relayer replies that answer 200 but carry no usable compliance record
UNPARSEABLE = [
    lambda: httpx.Response(200, text="<html>gateway</html>"),
    lambda: httpx.Response(200, json="ok"),
    lambda: httpx.Response(200, json=[1, 2]),
    lambda: httpx.Response(200, json={"isVerified": True, "verificationCount": "many"}),
    lambda: httpx.Response(200, json={"isVerified": True, "blockNumber": {"n": 1}}),
]


def _client(handler, api_key=None) -> ComplianceOracleClient:
    return ComplianceOracleClient(ORACLE_URL, api_key=api_key, timeout=1.0, transport=httpx.MockTransport(handler))


class TestCommit:

    @pytest.mark.asyncio
    async def test_commit_posts_summary(self, oracle_stub):
        client = ComplianceOracleClient(ORACLE_URL, api_key="k-1", transport=oracle_stub.transport)
        record = await client.commit(WALLET, SUMMARY)

        assert record.is_verified
        assert record.verification_count == 1
        assert record.verified_at == datetime.fromtimestamp(1772366400, tz=timezone.utc)
        assert record.transaction_hash == TX_HASH
        assert record.block_number == 1001
        assert record.gas_used == "52110"
        assert record.receipt() == {
            "transactionHash": TX_HASH,
            "blockNumber": 1001,
            "gasUsed": "52110",
            "verificationCount": 1,
        }

        request = oracle_stub.commits[0]
        assert request.url.path == f"/compliance/{WALLET}"
        assert request.headers["x-api-key"] == "k-1"
        body = json.loads(request.content)
        assert body["sessionId"] == "kyc_abc"
        assert body["isOfacClear"] is True

    @pytest.mark.asyncio
    async def test_conflict_is_already_committed(self):
        def handler(request):
            if request.method == "POST":
                return httpx.Response(409, json={"error": "nullifier recorded"})
            return httpx.Response(200, json={"isVerified": True, "verificationCount": 3})

        record = await _client(handler).commit(WALLET, SUMMARY)
        assert record.is_verified
        assert record.verification_count == 3

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,retryable", [(500, True), (503, True), (429, True), (400, False), (403, False)])
    async def test_error_statuses(self, status, retryable):
        client = _client(lambda request: httpx.Response(status, text="nope"))
        with pytest.raises(CommitFailed) as exc:
            await client.commit(WALLET, SUMMARY)
        assert exc.value.retryable is retryable

    @pytest.mark.asyncio
    async def test_timeout_is_retryable(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(CommitFailed) as exc:
            await _client(handler).commit(WALLET, SUMMARY)
        assert exc.value.retryable

    @pytest.mark.asyncio
    async def test_empty_success_body_is_committed(self):
        record = await _client(lambda request: httpx.Response(204)).commit(WALLET, SUMMARY)
        assert record.is_verified
        assert record.transaction_hash is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("response", UNPARSEABLE)
    async def test_unparseable_success_body_is_retryable(self, response):
        with pytest.raises(CommitFailed) as exc:
            await _client(lambda request: response()).commit(WALLET, SUMMARY)
        assert exc.value.retryable
        assert "unparseable oracle response" in str(exc.value)

    @pytest.mark.asyncio
    async def test_unconfigured_client_cannot_commit(self):
        client = ComplianceOracleClient(None)
        assert not client.configured
        with pytest.raises(CommitFailed):
            await client.commit(WALLET, SUMMARY)


class TestRead:

    @pytest.mark.asyncio
    async def test_unknown_wallet_is_unverified(self, oracle_stub):
        client = ComplianceOracleClient(ORACLE_URL, transport=oracle_stub.transport)
        record = await client.read(WALLET)
        assert record == ComplianceRecord(wallet_address=WALLET, is_verified=False)

    @pytest.mark.asyncio
    async def test_iso_timestamp(self):
        client = _client(lambda request: httpx.Response(
            200, json={"isVerified": True, "verifiedAt": "2026-03-01T12:00:00Z", "verificationCount": 2}
        ))
        record = await client.read(WALLET)
        assert record.verified_at == datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
        assert record.verification_count == 2

    @pytest.mark.asyncio
    async def test_unconfigured_client_reads_unverified(self):
        record = await ComplianceOracleClient(None).read(WALLET)
        assert not record.is_verified

    @pytest.mark.asyncio
    async def test_server_error_raises(self):
        with pytest.raises(CommitFailed):
            await _client(lambda request: httpx.Response(500)).read(WALLET)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("response", UNPARSEABLE)
    async def test_unparseable_body_raises_commit_failed(self, response):
        with pytest.raises(CommitFailed) as exc:
            await _client(lambda request: response()).read(WALLET)
        assert exc.value.retryable
