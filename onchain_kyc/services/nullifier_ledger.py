import logging
from typing import Optional

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from onchain_kyc.db.models import ConsumedNullifier
from onchain_kyc.utils.redact import redact, utcnow

log = logging.getLogger(__name__)


class NullifierLedger:
    """
    Set of spent proof nullifiers.

    Uniqueness is enforced by the primary key, so of any number of concurrent
    reservations for the same nullifier exactly one insert can succeed.
    """

    def __init__(self, session_factory, clock=utcnow):
        self.session_factory = session_factory
        self.clock = clock

    async def reserve_if_unused(
        self,
        nullifier: str,
        session_id: str,
        wallet_address: str,
        db: Optional[AsyncSession] = None,
    ) -> bool:
        """
        Returns True if this call consumed the nullifier, False if it was already spent.

        With ``db`` the insert joins the caller's transaction; on False the caller
        must roll that transaction back.
        """
        record = ConsumedNullifier(
            nullifier=nullifier,
            consumed_by_session=session_id,
            wallet_address=wallet_address,
            consumed_at=self.clock(),
        )

        if db is not None:
            db.add(record)
            try:
                await db.flush()
            except IntegrityError:
                log.info("nullifier.replay nullifier=%s session=%s", redact(nullifier), session_id)
                return False
            return True

        async with self.session_factory() as db:
            db.add(record)
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                log.info("nullifier.replay nullifier=%s session=%s", redact(nullifier), session_id)
                return False
        return True

    async def get(self, nullifier: str) -> ConsumedNullifier | None:
        async with self.session_factory() as db:
            return await db.get(ConsumedNullifier, nullifier)

    async def is_consumed(self, nullifier: str) -> bool:
        return await self.get(nullifier) is not None

    async def count(self) -> int:
        async with self.session_factory() as db:
            return int(await db.scalar(select(func.count()).select_from(ConsumedNullifier)) or 0)
