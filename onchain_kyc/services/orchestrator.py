"""
Onchain KYC verification orchestrator

Sequences the session store, proof validator, nullifier ledger, policy
engine and compliance oracle for:
- session initiation
- webhook proof ingestion
- status / session lookups
- statistics
- background maintenance (expiry sweep, commit retries, crash recovery)

Webhook deliveries are at-least-once and may race each other. Every state
change goes through SessionStore.transition, so concurrent deliveries for
the same session resolve to a single outcome.
"""
import asyncio
import logging
import re
from datetime import datetime, timedelta
from typing import Any, Callable, Mapping, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import text

from onchain_kyc.core.config import Settings, settings
from onchain_kyc.core.errors import (
    CommitFailed,
    ConcurrencyConflict,
    InvalidProof,
    InvalidWallet,
    MalformedPayload,
    RequirementsInvalid,
    SessionExpired,
    SessionNotFound,
    StaleTransition,
)
from onchain_kyc.db.models import VerificationSession, SessionState, CommitStatus
from onchain_kyc.schemas.verification import (
    CommitReceipt,
    ConfigResponse,
    DocumentTypeInfo,
    ExtractedAttributes,
    InitiateResponse,
    RecentSession,
    Requirements,
    RequirementsRequest,
    SessionData,
    SessionResponse,
    StatisticsResponse,
    StatusResponse,
    TimelineEvent,
    UserContextData,
    VerificationOutcome,
    VerificationResult,
    WebhookPayload,
)
from onchain_kyc.services import policy
from onchain_kyc.services.compliance_oracle import (
    AttestationSummary,
    ComplianceOracleClient,
    build_compliance_oracle,
)
from onchain_kyc.services.nullifier_ledger import NullifierLedger
from onchain_kyc.services.proof_validator import ProofValidator, TrustedAttestation, build_proof_backend
from onchain_kyc.services.session_store import SessionStore
from onchain_kyc.services.statistics import StatisticsCache
from onchain_kyc.utils.redact import as_utc, redact, utcnow

log = logging.getLogger(__name__)

WALLET_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")
COUNTRY_RE = re.compile(r"^[A-Za-z]{2,3}$")

SUPPORTED_DOCUMENT_TYPES = {
    1: "E-Passport",
    2: "EU ID Card",
    3: "Aadhaar",
}

INVALID_PROOF = "InvalidProof"
NULLIFIER_REPLAY = "NullifierReplay"
POLICY_VIOLATION = policy.POLICY_VIOLATION


class NullifierAlreadyConsumed(Exception):
    """Rolls back the reservation transaction."""


def normalize_wallet(address: Any) -> str:
    if not isinstance(address, str) or not WALLET_RE.match(address):
        raise InvalidWallet("Invalid wallet address format", details={"walletAddress": address})
    return address.lower()


class VerificationOrchestrator:

    def __init__(
        self,
        store: SessionStore,
        ledger: NullifierLedger,
        validator: ProofValidator,
        oracle: ComplianceOracleClient,
        stats_cache: StatisticsCache,
        config: Settings = settings,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        self.store = store
        self.ledger = ledger
        self.validator = validator
        self.oracle = oracle
        self.stats_cache = stats_cache
        self.config = config
        self.clock = clock
        self._sleep = sleep

    # ========================================================================
    # Configuration / requirements
    # ========================================================================

    def default_requirements(self) -> Requirements:
        return Requirements(
            minimum_age=self.config.SELF_MINIMUM_AGE,
            require_ofac_check=self.config.SELF_REQUIRE_OFAC_CHECK,
            allowed_document_types=self.config.allowed_document_types,
            excluded_countries=self.config.excluded_countries,
        )

    def resolve_requirements(self, overrides: Optional[Mapping[str, Any]]) -> Requirements:
        """
        Merge caller overrides onto the configured defaults.

        Overrides may tighten the policy but never relax it.
        """
        defaults = self.default_requirements()
        if overrides is None:
            return defaults
        if not isinstance(overrides, Mapping):
            raise RequirementsInvalid(
                "Invalid verification requirements",
                details=["requirements must be an object"],
            )
        if not overrides:
            return defaults

        try:
            req = RequirementsRequest.model_validate(dict(overrides))
        except PydanticValidationError as e:
            raise RequirementsInvalid(
                "Invalid verification requirements",
                details=[err["msg"] for err in e.errors()],
            ) from e

        errors = []

        minimum_age = defaults.minimum_age if req.minimum_age is None else req.minimum_age
        if minimum_age <= 0:
            errors.append("minimumAge must be positive")
        elif minimum_age < defaults.minimum_age:
            errors.append(f"Minimum age cannot be less than {defaults.minimum_age}")

        document_types = (
            defaults.allowed_document_types
            if req.allowed_document_types is None
            else req.allowed_document_types
        )
        if not document_types:
            errors.append("allowedDocumentTypes must not be empty")
        else:
            unknown = [t for t in document_types if t not in SUPPORTED_DOCUMENT_TYPES]
            if unknown:
                errors.append(f"Unknown document types: {', '.join(map(str, unknown))}")
            unsupported = [
                t for t in document_types
                if t in SUPPORTED_DOCUMENT_TYPES and t not in defaults.allowed_document_types
            ]
            if unsupported:
                errors.append(f"Document types not supported: {', '.join(map(str, unsupported))}")

        require_ofac = (
            defaults.require_ofac_check
            if req.require_ofac_check is None
            else req.require_ofac_check
        )
        if defaults.require_ofac_check and not require_ofac:
            errors.append("requireOfacCheck cannot be disabled")

        excluded = list(defaults.excluded_countries)
        for country in req.excluded_countries or []:
            if not COUNTRY_RE.match(country):
                errors.append(f"Invalid country code: {country}")
            elif country.upper() not in excluded:
                excluded.append(country.upper())

        if errors:
            raise RequirementsInvalid("Invalid verification requirements", details=errors)

        return Requirements(
            minimum_age=minimum_age,
            require_ofac_check=require_ofac,
            allowed_document_types=sorted(set(document_types)),
            excluded_countries=excluded,
        )

    def get_config(self) -> ConfigResponse:
        return ConfigResponse(
            scope=self.config.SELF_APP_SCOPE,
            config_id=self.config.SELF_CONFIG_ID,
            endpoint=self.config.webhook_endpoint,
            requirements=self.default_requirements(),
            document_types=[
                DocumentTypeInfo(id=t, name=SUPPORTED_DOCUMENT_TYPES.get(t, f"Document Type {t}"))
                for t in self.config.allowed_document_types
            ],
            session_ttl_minutes=self.config.SESSION_TTL_MINUTES,
        )

    # ========================================================================
    # Session initiation
    # ========================================================================

    async def initiate_session(
        self,
        wallet_address: str,
        requirements: Optional[Mapping[str, Any]] = None,
    ) -> InitiateResponse:
        wallet = normalize_wallet(wallet_address)
        resolved = self.resolve_requirements(requirements)

        existing = await self.store.get_active_for_wallet(wallet)
        if existing is not None and existing.state == SessionState.PENDING and self._is_expired(existing):
            await self._expire(existing.session_id)
            existing = None

        if existing is not None:
            log.info(f"Returning existing KYC session {existing.session_id} for wallet {redact(wallet)}")
            return self._initiate_response(existing, reused=True)

        session, created = await self.store.create(
            wallet,
            resolved,
            scope=self.config.SELF_APP_SCOPE,
            config_id=self.config.SELF_CONFIG_ID,
            ttl=timedelta(minutes=self.config.SESSION_TTL_MINUTES),
        )
        return self._initiate_response(session, reused=not created)

    def _initiate_response(self, session: VerificationSession, reused: bool) -> InitiateResponse:
        return InitiateResponse(
            session_id=session.session_id,
            requirements=Requirements.model_validate(session.requirements),
            expires_at=as_utc(session.expires_at),
            status=session.state,
            reused=reused,
            session_data=SessionData(
                scope=session.scope,
                config_id=session.config_id,
                endpoint=self.config.webhook_endpoint,
                user_id=session.wallet_address,
            ),
        )

    # ========================================================================
    # Webhook ingestion
    # ========================================================================

    def parse_webhook(self, raw_payload: Any) -> WebhookPayload:
        if not isinstance(raw_payload, Mapping):
            raise MalformedPayload("Webhook payload must be a JSON object")
        try:
            payload = WebhookPayload.model_validate(dict(raw_payload))
        except PydanticValidationError as e:
            raise MalformedPayload(
                "Webhook payload is missing required fields",
                details=[{"loc": list(err["loc"]), "msg": err["msg"]} for err in e.errors()],
            ) from e
        if not WALLET_RE.match(payload.user_context_data.wallet_address):
            raise MalformedPayload("Invalid or missing wallet address in verification data")
        return payload

    async def ingest_webhook(self, raw_payload: Any) -> VerificationOutcome:
        payload = self.parse_webhook(raw_payload)
        session = await self._resolve_session(payload.user_context_data)
        session_id = session.session_id

        retries = max(1, self.config.WEBHOOK_RACE_RETRIES)
        for attempt in range(retries):
            outcome = await self._advance(session, payload)
            if outcome is not None:
                return outcome

            log.info(
                "webhook.race session=%s state=%s attempt=%d",
                session_id, session.state, attempt + 1,
            )
            await self._sleep(self.config.WEBHOOK_RACE_DELAY * (attempt + 1))
            session = await self._reload(session_id)

        if session.state == SessionState.PROOF_RECEIVED:
            # The delivery that reserved the nullifier stalled; finish from stored state.
            try:
                return await self.finalize(session_id)
            except StaleTransition as e:
                raise ConcurrencyConflict("Verification in progress, retry later") from e

        outcome = await self._advance(session, payload)
        if outcome is not None:
            return outcome
        raise ConcurrencyConflict("Verification in progress, retry later")

    async def _advance(self, session: VerificationSession, payload: WebhookPayload) -> Optional[VerificationOutcome]:
        """One step for a delivery. None means another delivery owns the session right now."""
        if session.state in SessionState.WITH_RESULT:
            log.info("webhook.replay session=%s state=%s", session.session_id, session.state)
            return self._outcome(session, replayed=True)

        if session.state == SessionState.EXPIRED:
            raise SessionExpired(f"Session {session.session_id} has expired")

        if session.state == SessionState.PENDING:
            if self._is_expired(session):
                await self._expire(session.session_id)
                raise SessionExpired(f"Session {session.session_id} has expired")
            try:
                return await self._process_proof(session, payload)
            except StaleTransition as e:
                log.info("webhook.stale session=%s %s", session.session_id, e)
                return None

        return None

    async def _resolve_session(self, context: UserContextData) -> VerificationSession:
        wallet = context.wallet_address.lower()

        if context.session_id:
            session = await self.store.get(context.session_id)
            if session is None or session.wallet_address != wallet:
                raise SessionNotFound(f"Session {context.session_id} not found")
            return session

        session = await self.store.get_active_for_wallet(wallet)
        if session is None:
            session = await self.store.latest_for_wallet(wallet)
        if session is None:
            raise SessionNotFound(f"No KYC session for wallet {redact(wallet)}")
        return session

    async def _reload(self, session_id: str) -> VerificationSession:
        session = await self.store.get(session_id)
        if session is None:
            raise SessionNotFound(f"Session {session_id} not found")
        return session

    async def _process_proof(self, session: VerificationSession, payload: WebhookPayload) -> VerificationOutcome:
        session_id = session.session_id

        try:
            trusted = await self.validator.validate(
                payload,
                scope=session.scope,
                config_id=session.config_id,
                wallet_address=session.wallet_address,
            )
        except InvalidProof as e:
            rejected = await self.store.transition(
                session_id,
                SessionState.PENDING,
                SessionState.REJECTED,
                self._rejection(INVALID_PROOF),
            )
            log.warning("webhook.rejected session=%s reason=%s cause=%s", session_id, INVALID_PROOF, e.detail)
            return self._outcome(rejected)

        try:
            await self._reserve(session, trusted)
        except NullifierAlreadyConsumed:
            holder = await self.ledger.get(trusted.nullifier)
            if holder is not None and holder.consumed_by_session == session_id:
                raise StaleTransition(session_id, SessionState.PENDING, None)
            rejected = await self.store.transition(
                session_id,
                SessionState.PENDING,
                SessionState.REJECTED,
                self._rejection(NULLIFIER_REPLAY, attributes=trusted.attributes, nullifier=trusted.nullifier),
            )
            log.warning(
                "webhook.rejected session=%s reason=%s nullifier=%s",
                session_id, NULLIFIER_REPLAY, redact(trusted.nullifier),
            )
            return self._outcome(rejected)

        return await self.finalize(session_id)

    async def _reserve(self, session: VerificationSession, trusted: TrustedAttestation) -> None:
        """Spend the nullifier and enter proof_received in one transaction."""

        def accept(row: VerificationSession) -> None:
            row.attestation_id = trusted.attestation_id
            row.nullifier = trusted.nullifier
            row.disclosed_attributes = trusted.attributes.model_dump(by_alias=True)

        async with self.store.session_factory() as db:
            async with db.begin():
                reserved = await self.ledger.reserve_if_unused(
                    trusted.nullifier,
                    session.session_id,
                    session.wallet_address,
                    db=db,
                )
                if not reserved:
                    raise NullifierAlreadyConsumed(trusted.nullifier)
                await self.store.transition(
                    session.session_id,
                    SessionState.PENDING,
                    SessionState.PROOF_RECEIVED,
                    accept,
                    db=db,
                )

    async def finalize(self, session_id: str) -> VerificationOutcome:
        """
        Evaluate policy for a proof_received session and make it terminal.

        Works purely from the stored attributes and reserved nullifier, so it is
        also the crash-recovery path.
        """
        session = await self._reload(session_id)
        if session.state in SessionState.WITH_RESULT:
            return self._outcome(session, replayed=True)
        if session.state != SessionState.PROOF_RECEIVED:
            raise StaleTransition(session_id, SessionState.PROOF_RECEIVED, session.state)

        requirements = Requirements.model_validate(session.requirements)
        attributes = ExtractedAttributes.model_validate(session.disclosed_attributes)
        decision = policy.evaluate(requirements, attributes)

        try:
            if not decision.passed:
                final = await self.store.transition(
                    session_id,
                    SessionState.PROOF_RECEIVED,
                    SessionState.REJECTED,
                    self._rejection(
                        POLICY_VIOLATION,
                        detail=decision.reason,
                        attributes=attributes,
                        nullifier=session.nullifier,
                    ),
                )
                log.warning(
                    "webhook.rejected session=%s reason=%s detail=%s",
                    session_id, POLICY_VIOLATION, decision.reason,
                )
                return self._outcome(final)

            final = await self.store.transition(
                session_id,
                SessionState.PROOF_RECEIVED,
                SessionState.VERIFIED,
                self._verification(attributes, session.nullifier),
            )
        except StaleTransition:
            current = await self._reload(session_id)
            if current.state in SessionState.WITH_RESULT:
                return self._outcome(current, replayed=True)
            raise

        log.info("webhook.verified session=%s wallet=%s", session_id, redact(final.wallet_address))
        await self.stats_cache.invalidate()

        committed = await self._commit(final)
        if committed:
            final = await self._reload(session_id)
        return self._outcome(final, commit_pending=not committed)

    def _rejection(
        self,
        reason: str,
        detail: Optional[str] = None,
        attributes: Optional[ExtractedAttributes] = None,
        nullifier: Optional[str] = None,
    ):
        def mutate(row: VerificationSession) -> None:
            row.rejection_reason = reason
            row.rejection_detail = detail
            row.result = VerificationResult(
                reason=reason,
                detail=detail,
                attributes=attributes,
                nullifier=nullifier,
                decided_at=row.completed_at,
            ).model_dump(mode="json", by_alias=True)

        return mutate

    def _verification(self, attributes: ExtractedAttributes, nullifier: Optional[str]):
        def mutate(row: VerificationSession) -> None:
            row.result = VerificationResult(
                attributes=attributes,
                nullifier=nullifier,
                decided_at=row.completed_at,
            ).model_dump(mode="json", by_alias=True)
            row.commit_status = CommitStatus.PENDING
            # The webhook commits inline; the scheduler only picks it up after that attempt times out.
            row.next_commit_at = row.completed_at + timedelta(seconds=self.config.COMPLIANCE_ORACLE_TIMEOUT)

        return mutate

    # ========================================================================
    # Compliance oracle commits
    # ========================================================================

    async def _commit(self, session: VerificationSession) -> bool:
        """Try once, bounded by the oracle timeout. On failure the scheduler retries."""
        attributes = ExtractedAttributes.model_validate(session.disclosed_attributes)
        summary = AttestationSummary(
            session_id=session.session_id,
            nullifier=session.nullifier or "",
            nationality=attributes.nationality,
            document_type=attributes.document_type,
            age_at_least=attributes.age_at_least,
            is_ofac_clear=not attributes.is_ofac_match,
        )

        try:
            record = await asyncio.wait_for(
                self.oracle.commit(session.wallet_address, summary),
                timeout=self.config.COMPLIANCE_ORACLE_TIMEOUT,
            )
        except (CommitFailed, asyncio.TimeoutError) as e:
            retryable = getattr(e, "retryable", True)
            message = str(e) or "oracle commit timed out"
        except Exception as e:
            log.exception("commit.error session=%s", session.session_id)
            retryable = True
            message = f"unexpected oracle error: {e!r}"
        else:
            await self.store.record_commit_success(session.session_id, record.receipt())
            return True

        next_attempt = self.clock() + self._commit_backoff(session.commit_attempts)
        await self.store.record_commit_failure(session.session_id, message, next_attempt)
        if retryable:
            log.warning(
                "commit.pending session=%s attempts=%d next=%s error=%s",
                session.session_id, session.commit_attempts + 1, next_attempt.isoformat(), message,
            )
        else:
            log.error(
                "commit.refused session=%s attempts=%d error=%s",
                session.session_id, session.commit_attempts + 1, message,
            )
        return False

    def _commit_backoff(self, attempts: int) -> timedelta:
        seconds = self.config.COMMIT_RETRY_BASE_SECONDS * (2 ** min(attempts, 16))
        return timedelta(seconds=min(seconds, self.config.COMMIT_RETRY_MAX_SECONDS))

    # ========================================================================
    # Queries
    # ========================================================================

    async def get_session(self, session_id: str, caller_wallet: Optional[str] = None) -> SessionResponse:
        session = await self.store.get(session_id)
        if session is None:
            raise SessionNotFound(f"Session {session_id} not found")
        if caller_wallet is not None and caller_wallet.lower() != session.wallet_address:
            raise SessionNotFound(f"Session {session_id} not found")

        if session.state == SessionState.PENDING and self._is_expired(session):
            await self._expire(session.session_id)
            session = await self._reload(session_id)

        return SessionResponse(
            session_id=session.session_id,
            wallet_address=session.wallet_address,
            state=session.state,
            requirements=Requirements.model_validate(session.requirements),
            scope=session.scope,
            config_id=session.config_id,
            created_at=as_utc(session.created_at),
            updated_at=as_utc(session.updated_at),
            expires_at=as_utc(session.expires_at),
            completed_at=as_utc(session.completed_at),
            result=VerificationResult.model_validate(session.result) if session.result else None,
            commit_pending=session.commit_status == CommitStatus.PENDING,
            commit_receipt=self._receipt(session),
            timeline=[TimelineEvent.model_validate(e) for e in session.timeline or []],
        )

    async def get_status(self, wallet_address: str) -> StatusResponse:
        wallet = normalize_wallet(wallet_address)

        recent = [
            RecentSession(
                session_id=s.session_id,
                state=s.state,
                created_at=as_utc(s.created_at),
                completed_at=as_utc(s.completed_at),
            )
            for s in await self.store.recent_for_wallet(wallet)
        ]

        latest = await self.store.latest_for_wallet(wallet, states=SessionState.WITH_RESULT)
        if latest is not None:
            count, last_verified_at, commit_pending = await self.store.verified_summary(wallet)
            committed = await self.store.latest_committed_for_wallet(wallet)
            return StatusResponse(
                wallet_address=wallet,
                is_verified=count > 0,
                source="local",
                verified_at=as_utc(last_verified_at),
                verification_count=count,
                commit_pending=commit_pending,
                last_result=VerificationResult.model_validate(latest.result) if latest.result else None,
                commit_receipt=self._receipt(committed) if committed is not None else None,
                recent_sessions=recent,
            )

        record = None
        if self.oracle.configured:
            try:
                record = await asyncio.wait_for(
                    self.oracle.read(wallet),
                    timeout=self.config.COMPLIANCE_ORACLE_TIMEOUT,
                )
            except (CommitFailed, asyncio.TimeoutError) as e:
                log.warning(f"Oracle read failed for {redact(wallet)}: {e!r}")

        if record is not None and record.is_verified:
            return StatusResponse(
                wallet_address=wallet,
                is_verified=True,
                source="ledger",
                verified_at=record.verified_at,
                verification_count=record.verification_count,
                recent_sessions=recent,
            )

        return StatusResponse(
            wallet_address=wallet,
            is_verified=False,
            source="none",
            recent_sessions=recent,
        )

    async def get_statistics(self) -> StatisticsResponse:
        cached = await self.stats_cache.get()
        if cached is not None:
            return cached
        stats = await self.rebuild_statistics()
        await self.stats_cache.set(stats)
        return stats

    async def rebuild_statistics(self) -> StatisticsResponse:
        total, unique = await self.store.statistics()
        return StatisticsResponse(total_verifications=total, unique_users=unique)

    async def health(self) -> dict:
        try:
            async with self.store.session_factory() as db:
                await db.execute(text("SELECT 1"))
            database = {"status": "operational"}
        except Exception as e:
            log.warning(f"Database health check failed: {e!r}")
            database = {"status": "unavailable", "error": str(e)}

        return {
            "status": "operational" if database["status"] == "operational" else "degraded",
            "timestamp": self.clock(),
            "services": {
                "database": database,
                "self": {
                    "scope": self.config.SELF_APP_SCOPE,
                    "configId": self.config.SELF_CONFIG_ID,
                    "proofBackend": self.validator.backend.name,
                    "hasWebhookSecret": bool(self.config.SELF_WEBHOOK_SECRET),
                },
                "oracle": {
                    "configured": self.oracle.configured,
                },
                "cache": {
                    "enabled": self.stats_cache.enabled,
                },
            },
        }

    # ========================================================================
    # Maintenance
    # ========================================================================

    def _is_expired(self, session: VerificationSession) -> bool:
        return as_utc(session.expires_at) <= self.clock()

    async def _expire(self, session_id: str) -> bool:
        try:
            await self.store.transition(session_id, SessionState.PENDING, SessionState.EXPIRED)
        except StaleTransition:
            # Someone else moved it first; their state wins.
            return False
        log.info(f"KYC session {session_id} expired")
        return True

    async def expire_stale_sessions(self, limit: int = 100) -> int:
        expired = 0
        for session in await self.store.find_expired_pending(self.clock(), limit=limit):
            if await self._expire(session.session_id):
                expired += 1
        return expired

    async def retry_pending_commits(self, limit: int = 50) -> int:
        committed = 0
        for session in await self.store.find_due_commits(self.clock(), limit=limit):
            try:
                if await self._commit(session):
                    committed += 1
            except Exception:
                # One bad row must not starve the rest of the batch.
                log.exception("commit.retry_failed session=%s", session.session_id)
        return committed

    async def recover_in_flight(self, limit: int = 50) -> int:
        older_than = self.clock() - timedelta(seconds=self.config.RECOVERY_GRACE_SECONDS)
        recovered = 0
        for session in await self.store.find_stuck_in_flight(older_than, limit=limit):
            try:
                outcome = await self.finalize(session.session_id)
            except StaleTransition:
                continue
            recovered += 1
            log.info(
                "recovery.finalized session=%s state=%s",
                session.session_id, outcome.state,
            )
        return recovered

    # ========================================================================
    # Views
    # ========================================================================

    def _receipt(self, session: VerificationSession) -> Optional[CommitReceipt]:
        if not session.commit_receipt:
            return None
        return CommitReceipt.model_validate(
            {**session.commit_receipt, "committedAt": as_utc(session.committed_at)}
        )

    def _outcome(
        self,
        session: VerificationSession,
        replayed: bool = False,
        commit_pending: Optional[bool] = None,
    ) -> VerificationOutcome:
        if commit_pending is None:
            commit_pending = session.commit_status == CommitStatus.PENDING
        return VerificationOutcome(
            verified=session.state == SessionState.VERIFIED,
            session_id=session.session_id,
            wallet_address=session.wallet_address,
            state=session.state,
            reason=session.rejection_reason,
            detail=session.rejection_detail,
            commit_pending=commit_pending,
            replayed=replayed,
            result=VerificationResult.model_validate(session.result) if session.result else None,
            commit_receipt=self._receipt(session),
        )


def build_orchestrator(session_factory, config: Settings = settings) -> VerificationOrchestrator:
    from onchain_kyc.utils.redis_pool import redis_enabled

    return VerificationOrchestrator(
        store=SessionStore(session_factory),
        ledger=NullifierLedger(session_factory),
        validator=ProofValidator(build_proof_backend(config)),
        oracle=build_compliance_oracle(config),
        stats_cache=StatisticsCache(ttl=config.STATISTICS_CACHE_TTL, enabled=redis_enabled()),
        config=config,
    )
