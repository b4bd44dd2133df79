"""
Durable store for VerificationSession rows.

All state changes go through ``transition``, a compare-and-transition
primitive: it only applies when the row is still in the expected state
and the row version has not moved underneath it. Every transition and
commit bookkeeping update appends an event to the session timeline.
"""
import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable, Optional, Sequence

from sqlalchemy import select, func, desc
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from onchain_kyc.core.errors import SessionNotFound, StaleTransition
from onchain_kyc.db.models import VerificationSession, SessionState, CommitStatus
from onchain_kyc.schemas.verification import Requirements
from onchain_kyc.utils.redact import redact, utcnow

log = logging.getLogger(__name__)

Mutator = Callable[[VerificationSession], None]


def new_session_id() -> str:
    return f"kyc_{uuid.uuid4().hex}"


TIMELINE_EVENTS = {
    SessionState.PROOF_RECEIVED: "proof_accepted",
    SessionState.VERIFIED: "session_verified",
    SessionState.REJECTED: "session_rejected",
    SessionState.EXPIRED: "session_expired",
}


def _event(
    event: str,
    at: datetime,
    state: Optional[str] = None,
    reason: Optional[str] = None,
    detail: Optional[str] = None,
) -> dict:
    return {
        "event": event,
        "state": state,
        "at": at.isoformat(),
        "reason": reason,
        "detail": detail,
    }


class SessionStore:

    def __init__(self, session_factory, clock: Callable[[], datetime] = utcnow):
        self.session_factory = session_factory
        self.clock = clock

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, session_id: str, db: Optional[AsyncSession] = None) -> VerificationSession | None:
        stmt = (
            select(VerificationSession)
            .where(VerificationSession.session_id == session_id)
            .execution_options(populate_existing=True)
        )
        if db is not None:
            return await db.scalar(stmt)
        async with self.session_factory() as db:
            return await db.scalar(stmt)

    async def get_active_for_wallet(self, wallet_address: str) -> VerificationSession | None:
        async with self.session_factory() as db:
            return await db.scalar(
                select(VerificationSession).where(VerificationSession.active_wallet == wallet_address)
            )

    async def latest_for_wallet(
        self,
        wallet_address: str,
        states: Optional[Sequence[str]] = None,
    ) -> VerificationSession | None:
        stmt = select(VerificationSession).where(VerificationSession.wallet_address == wallet_address)
        if states:
            stmt = stmt.where(VerificationSession.state.in_(list(states)))
        stmt = stmt.order_by(desc(VerificationSession.created_at), desc(VerificationSession.id)).limit(1)
        async with self.session_factory() as db:
            return await db.scalar(stmt)

    async def latest_committed_for_wallet(self, wallet_address: str) -> VerificationSession | None:
        async with self.session_factory() as db:
            return await db.scalar(
                select(VerificationSession)
                .where(
                    VerificationSession.wallet_address == wallet_address,
                    VerificationSession.state == SessionState.VERIFIED,
                    VerificationSession.commit_status == CommitStatus.COMMITTED,
                )
                .order_by(desc(VerificationSession.committed_at), desc(VerificationSession.id))
                .limit(1)
            )

    async def recent_for_wallet(self, wallet_address: str, limit: int = 3) -> list[VerificationSession]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(VerificationSession)
                .where(VerificationSession.wallet_address == wallet_address)
                .order_by(desc(VerificationSession.created_at), desc(VerificationSession.id))
                .limit(limit)
            )
            return list(result.scalars().all())

    async def verified_summary(self, wallet_address: str) -> tuple[int, datetime | None, bool]:
        """(verified session count, last completion time, any commit still pending)."""
        async with self.session_factory() as db:
            row = (await db.execute(
                select(
                    func.count(VerificationSession.id),
                    func.max(VerificationSession.completed_at),
                    func.count(VerificationSession.id).filter(
                        VerificationSession.commit_status == CommitStatus.PENDING
                    ),
                ).where(
                    VerificationSession.wallet_address == wallet_address,
                    VerificationSession.state == SessionState.VERIFIED,
                )
            )).one()
        count, last_completed, pending = row
        return int(count or 0), last_completed, bool(pending)

    async def statistics(self) -> tuple[int, int]:
        """Full scan: (verified sessions, distinct verified wallets)."""
        async with self.session_factory() as db:
            row = (await db.execute(
                select(
                    func.count(VerificationSession.id),
                    func.count(func.distinct(VerificationSession.wallet_address)),
                ).where(VerificationSession.state == SessionState.VERIFIED)
            )).one()
        return int(row[0] or 0), int(row[1] or 0)

    async def find_expired_pending(self, now: datetime, limit: int = 100) -> list[VerificationSession]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(VerificationSession)
                .where(
                    VerificationSession.state == SessionState.PENDING,
                    VerificationSession.expires_at <= now,
                )
                .order_by(VerificationSession.expires_at)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def find_due_commits(self, now: datetime, limit: int = 50) -> list[VerificationSession]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(VerificationSession)
                .where(
                    VerificationSession.state == SessionState.VERIFIED,
                    VerificationSession.commit_status == CommitStatus.PENDING,
                    (VerificationSession.next_commit_at.is_(None)) | (VerificationSession.next_commit_at <= now),
                )
                .order_by(VerificationSession.completed_at)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def find_stuck_in_flight(self, older_than: datetime, limit: int = 50) -> list[VerificationSession]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(VerificationSession)
                .where(
                    VerificationSession.state == SessionState.PROOF_RECEIVED,
                    VerificationSession.updated_at <= older_than,
                )
                .limit(limit)
            )
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create(
        self,
        wallet_address: str,
        requirements: Requirements,
        *,
        scope: str,
        config_id: str,
        ttl: timedelta,
    ) -> tuple[VerificationSession, bool]:
        """
        Insert a pending session. Returns (session, created).

        When the wallet already has an in-flight session the insert loses on the
        active_wallet unique constraint and that session is returned instead.
        """
        now = self.clock()
        session = VerificationSession(
            session_id=new_session_id(),
            wallet_address=wallet_address,
            active_wallet=wallet_address,
            state=SessionState.PENDING,
            requirements=requirements.model_dump(by_alias=True),
            scope=scope,
            config_id=config_id,
            created_at=now,
            updated_at=now,
            expires_at=now + ttl,
            timeline=[_event("session_created", now, SessionState.PENDING)],
        )
        async with self.session_factory() as db:
            db.add(session)
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                existing = await self.get_active_for_wallet(wallet_address)
                if existing:
                    log.info(f"Returning in-flight session {existing.session_id} for wallet {redact(wallet_address)}")
                    return existing, False
                raise

        log.info(f"Created KYC session {session.session_id} for wallet {redact(wallet_address)}")
        return session, True

    async def transition(
        self,
        session_id: str,
        expected: str,
        new_state: str,
        mutator: Optional[Mutator] = None,
        db: Optional[AsyncSession] = None,
    ) -> VerificationSession:
        """
        Move a session from ``expected`` to ``new_state``.

        Raises StaleTransition if the session is no longer in ``expected`` or was
        modified concurrently. When ``db`` is given the change joins the caller's
        transaction and is not committed here.
        """
        if new_state not in SessionState.ALLOWED.get(expected, ()):
            raise ValueError(f"Illegal transition {expected} -> {new_state}")

        if db is not None:
            return await self._transition(db, session_id, expected, new_state, mutator)

        async with self.session_factory() as db:
            async with db.begin():
                return await self._transition(db, session_id, expected, new_state, mutator)

    async def _transition(
        self,
        db: AsyncSession,
        session_id: str,
        expected: str,
        new_state: str,
        mutator: Optional[Mutator],
    ) -> VerificationSession:
        session = await self.get(session_id, db=db)
        if session is None:
            raise SessionNotFound(f"Session {session_id} not found")
        if session.state != expected:
            raise StaleTransition(session_id, expected, session.state)

        now = self.clock()
        session.state = new_state
        session.updated_at = now
        if new_state in SessionState.TERMINAL:
            session.active_wallet = None
            session.completed_at = now
        if mutator is not None:
            mutator(session)
        rejected = new_state == SessionState.REJECTED
        session.timeline = [
            *(session.timeline or []),
            _event(
                TIMELINE_EVENTS[new_state],
                now,
                new_state,
                reason=session.rejection_reason if rejected else None,
                detail=session.rejection_detail if rejected else None,
            ),
        ]

        if (session.result is not None) != (new_state in SessionState.WITH_RESULT):
            raise ValueError(f"Session {session_id}: result must be set exactly for verified/rejected")

        try:
            await db.flush()
        except StaleDataError as e:
            raise StaleTransition(session_id, expected, None) from e

        log.debug(f"Session {session_id}: {expected} -> {new_state}")
        return session

    async def record_commit_success(self, session_id: str, receipt: Optional[dict] = None) -> bool:
        now = self.clock()
        return await self._update_commit(
            session_id,
            _event("ledger_committed", now, SessionState.VERIFIED),
            commit_status=CommitStatus.COMMITTED,
            committed_at=now,
            commit_receipt=receipt,
            next_commit_at=None,
            last_commit_error=None,
        )

    async def record_commit_failure(self, session_id: str, error: str, next_attempt_at: datetime) -> bool:
        return await self._update_commit(
            session_id,
            _event("ledger_commit_failed", self.clock(), SessionState.VERIFIED, detail=error[:200]),
            next_commit_at=next_attempt_at,
            last_commit_error=error[:2000],
        )

    async def _update_commit(self, session_id: str, event: dict, **values) -> bool:
        """Applies to verified sessions whose commit is still pending. False when nothing changed."""
        async with self.session_factory() as db:
            try:
                async with db.begin():
                    session = await db.scalar(
                        select(VerificationSession)
                        .where(
                            VerificationSession.session_id == session_id,
                            VerificationSession.state == SessionState.VERIFIED,
                            VerificationSession.commit_status == CommitStatus.PENDING,
                        )
                        .execution_options(populate_existing=True)
                    )
                    if session is None:
                        return False
                    for key, value in values.items():
                        setattr(session, key, value)
                    session.commit_attempts = (session.commit_attempts or 0) + 1
                    session.updated_at = self.clock()
                    session.timeline = [*(session.timeline or []), event]
            except StaleDataError:
                log.info(f"Session {session_id}: commit bookkeeping lost a race, keeping the other write")
                return False
        return True
