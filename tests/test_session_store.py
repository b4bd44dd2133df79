"""
Session store tests: creation, compare-and-transition, commit bookkeeping.
"""
import asyncio
from datetime import timedelta

import pytest

from onchain_kyc.core.errors import SessionNotFound, StaleTransition
from onchain_kyc.db.models import SessionState, CommitStatus
from onchain_kyc.schemas.verification import Requirements

from conftest import WALLET, OTHER_WALLET

REQUIREMENTS = Requirements(
    minimum_age=18,
    require_ofac_check=False,
    allowed_document_types=[1, 2],
    excluded_countries=[],
)


async def _create(store, wallet=WALLET):
    session, created = await store.create(
        wallet, REQUIREMENTS, scope="onchain-kyc-v1", config_id="1", ttl=timedelta(minutes=30)
    )
    return session, created


def _result(row):
    row.result = {"reason": None, "decidedAt": row.completed_at.isoformat()}


class TestCreate:

    @pytest.mark.asyncio
    async def test_creates_pending_session(self, store, clock):
        session, created = await _create(store)
        assert created
        assert session.session_id.startswith("kyc_")
        assert session.state == SessionState.PENDING
        assert session.active_wallet == WALLET
        assert session.requirements["minimumAge"] == 18

        loaded = await store.get(session.session_id)
        assert loaded is not None
        assert loaded.wallet_address == WALLET

    @pytest.mark.asyncio
    async def test_second_create_returns_in_flight_session(self, store):
        first, _ = await _create(store)
        second, created = await _create(store)
        assert not created
        assert second.session_id == first.session_id

    @pytest.mark.asyncio
    async def test_concurrent_creates_yield_one_session(self, store):
        results = await asyncio.gather(*[_create(store) for _ in range(5)])
        ids = {session.session_id for session, _ in results}
        assert len(ids) == 1
        assert sum(1 for _, created in results if created) == 1

    @pytest.mark.asyncio
    async def test_wallets_are_independent(self, store):
        a, _ = await _create(store, WALLET)
        b, _ = await _create(store, OTHER_WALLET)
        assert a.session_id != b.session_id

    @pytest.mark.asyncio
    async def test_terminal_session_frees_the_wallet(self, store):
        first, _ = await _create(store)
        await store.transition(first.session_id, SessionState.PENDING, SessionState.EXPIRED)
        second, created = await _create(store)
        assert created
        assert second.session_id != first.session_id


class TestTransition:

    @pytest.mark.asyncio
    async def test_forward_transition_applies_mutator(self, store):
        session, _ = await _create(store)

        def accept(row):
            row.nullifier = "n-1"

        moved = await store.transition(session.session_id, SessionState.PENDING, SessionState.PROOF_RECEIVED, accept)
        assert moved.state == SessionState.PROOF_RECEIVED
        assert moved.active_wallet == WALLET
        assert (await store.get(session.session_id)).nullifier == "n-1"

    @pytest.mark.asyncio
    async def test_terminal_transition_sets_completion(self, store, clock):
        session, _ = await _create(store)
        clock.advance(minutes=2)
        done = await store.transition(session.session_id, SessionState.PENDING, SessionState.REJECTED, _result)
        assert done.active_wallet is None
        assert done.completed_at == clock.now

    @pytest.mark.asyncio
    async def test_wrong_expected_state_is_stale(self, store):
        session, _ = await _create(store)
        await store.transition(session.session_id, SessionState.PENDING, SessionState.EXPIRED)
        with pytest.raises(StaleTransition) as exc:
            await store.transition(session.session_id, SessionState.PENDING, SessionState.PROOF_RECEIVED)
        assert exc.value.actual == SessionState.EXPIRED

    @pytest.mark.parametrize("expected,new_state", [
        (SessionState.VERIFIED, SessionState.PENDING),
        (SessionState.EXPIRED, SessionState.PENDING),
        (SessionState.PROOF_RECEIVED, SessionState.PENDING),
        (SessionState.PROOF_RECEIVED, SessionState.EXPIRED),
        (SessionState.PENDING, SessionState.VERIFIED),
    ])
    @pytest.mark.asyncio
    async def test_illegal_transitions_rejected(self, store, expected, new_state):
        session, _ = await _create(store)
        with pytest.raises(ValueError):
            await store.transition(session.session_id, expected, new_state)

    @pytest.mark.asyncio
    async def test_result_required_for_verified(self, store):
        session, _ = await _create(store)
        await store.transition(session.session_id, SessionState.PENDING, SessionState.PROOF_RECEIVED)
        with pytest.raises(ValueError):
            await store.transition(session.session_id, SessionState.PROOF_RECEIVED, SessionState.VERIFIED)
        assert (await store.get(session.session_id)).state == SessionState.PROOF_RECEIVED

    @pytest.mark.asyncio
    async def test_unknown_session(self, store):
        with pytest.raises(SessionNotFound):
            await store.transition("kyc_missing", SessionState.PENDING, SessionState.EXPIRED)

    @pytest.mark.asyncio
    async def test_concurrent_transitions_single_winner(self, store):
        session, _ = await _create(store)
        results = await asyncio.gather(
            *[
                store.transition(session.session_id, SessionState.PENDING, SessionState.REJECTED, _result)
                for _ in range(4)
            ],
            return_exceptions=True,
        )
        winners = [r for r in results if not isinstance(r, Exception)]
        assert len(winners) == 1
        assert all(isinstance(r, StaleTransition) for r in results if isinstance(r, Exception))


class TestQueries:

    @pytest.mark.asyncio
    async def test_find_expired_pending(self, store, clock):
        session, _ = await _create(store)
        assert await store.find_expired_pending(clock()) == []
        clock.advance(minutes=31)
        found = await store.find_expired_pending(clock())
        assert [s.session_id for s in found] == [session.session_id]

    @pytest.mark.asyncio
    async def test_recent_for_wallet_newest_first(self, store, clock):
        ids = []
        for _ in range(4):
            session, _ = await _create(store)
            ids.append(session.session_id)
            await store.transition(session.session_id, SessionState.PENDING, SessionState.EXPIRED)
            clock.advance(seconds=1)
        recent = await store.recent_for_wallet(WALLET)
        assert [s.session_id for s in recent] == list(reversed(ids))[:3]

    @pytest.mark.asyncio
    async def test_commit_bookkeeping(self, store, clock):
        session, _ = await _create(store)
        await store.transition(session.session_id, SessionState.PENDING, SessionState.PROOF_RECEIVED)

        def verify(row):
            _result(row)
            row.commit_status = CommitStatus.PENDING

        await store.transition(session.session_id, SessionState.PROOF_RECEIVED, SessionState.VERIFIED, verify)

        assert [s.session_id for s in await store.find_due_commits(clock())] == [session.session_id]

        await store.record_commit_failure(session.session_id, "boom", clock() + timedelta(minutes=1))
        assert await store.find_due_commits(clock()) == []
        row = await store.get(session.session_id)
        assert row.commit_attempts == 1
        assert row.last_commit_error == "boom"

        clock.advance(minutes=2)
        await store.record_commit_success(session.session_id)
        row = await store.get(session.session_id)
        assert row.commit_status == CommitStatus.COMMITTED
        assert row.commit_attempts == 2
        assert await store.find_due_commits(clock()) == []

        count, _, pending = await store.verified_summary(WALLET)
        assert count == 1
        assert pending is False
        assert await store.statistics() == (1, 1)


class TestTimeline:

    @pytest.mark.asyncio
    async def test_create_and_transition_append_events(self, store, clock):
        session, _ = await _create(store)
        assert [e["event"] for e in session.timeline] == ["session_created"]

        clock.advance(minutes=1)
        await store.transition(session.session_id, SessionState.PENDING, SessionState.PROOF_RECEIVED)
        row = await store.get(session.session_id)
        assert [e["event"] for e in row.timeline] == ["session_created", "proof_accepted"]
        assert row.timeline[-1]["state"] == SessionState.PROOF_RECEIVED
        assert row.timeline[-1]["at"] == clock.now.isoformat()

    @pytest.mark.asyncio
    async def test_rejection_event_keeps_reason(self, store):
        session, _ = await _create(store)

        def reject(row):
            _result(row)
            row.rejection_reason = "PolicyViolation"
            row.rejection_detail = "AGE_BELOW_MINIMUM"

        await store.transition(session.session_id, SessionState.PENDING, SessionState.REJECTED, reject)
        event = (await store.get(session.session_id)).timeline[-1]
        assert event["event"] == "session_rejected"
        assert event["reason"] == "PolicyViolation"
        assert event["detail"] == "AGE_BELOW_MINIMUM"

    @pytest.mark.asyncio
    async def test_commit_receipt_is_stored(self, store, clock):
        session, _ = await _create(store)
        await store.transition(session.session_id, SessionState.PENDING, SessionState.PROOF_RECEIVED)

        def verify(row):
            _result(row)
            row.commit_status = CommitStatus.PENDING

        await store.transition(session.session_id, SessionState.PROOF_RECEIVED, SessionState.VERIFIED, verify)
        receipt = {"transactionHash": "0xfeed", "blockNumber": 7, "gasUsed": "21000", "verificationCount": 1}
        assert await store.record_commit_success(session.session_id, receipt)

        row = await store.get(session.session_id)
        assert row.commit_receipt == receipt
        assert row.timeline[-1]["event"] == "ledger_committed"
        assert (await store.latest_committed_for_wallet(WALLET)).session_id == session.session_id

        # Already committed: later bookkeeping is a no-op
        assert not await store.record_commit_failure(session.session_id, "late", clock())
        assert (await store.get(session.session_id)).commit_receipt == receipt
