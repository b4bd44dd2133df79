import asyncio
import logging
from datetime import datetime, timezone

from onchain_kyc.core.config import settings
from onchain_kyc.services.orchestrator import VerificationOrchestrator
from onchain_kyc.utils.deps import get_orchestrator

log = logging.getLogger("scheduler")

_scheduler_task: asyncio.Task | None = None


async def run_maintenance_once(orchestrator: VerificationOrchestrator) -> dict:
    """One sweep: expire stale sessions, finish stuck verifications, retry oracle commits."""
    result = {}
    for name, job in (
        ("expired", orchestrator.expire_stale_sessions),
        ("recovered", orchestrator.recover_in_flight),
        ("committed", orchestrator.retry_pending_commits),
    ):
        try:
            result[name] = await job()
        except Exception as e:
            log.exception(f"[SCHEDULER] {name} job failed: {e}")
            result[name] = None

    log.info(
        f"[SCHEDULER] Maintenance complete: "
        f"expired={result['expired']}, "
        f"recovered={result['recovered']}, "
        f"committed={result['committed']}"
    )
    return result


async def _scheduler_loop():
    interval_seconds = settings.SCHEDULER_INTERVAL_SECONDS

    log.info(f"[SCHEDULER] Starting KYC maintenance scheduler: interval={interval_seconds}s")

    while True:
        try:
            log.debug(f"[SCHEDULER] Running maintenance at {datetime.now(timezone.utc).isoformat()}")
            await run_maintenance_once(get_orchestrator())
        except asyncio.CancelledError:
            log.info("[SCHEDULER] Scheduler cancelled, shutting down")
            break
        except Exception as e:
            log.exception(f"[SCHEDULER] Unexpected error: {e}")

        try:
            await asyncio.sleep(interval_seconds)
        except asyncio.CancelledError:
            log.info("[SCHEDULER] Scheduler cancelled, shutting down")
            break


def start_scheduler():
    global _scheduler_task

    if not settings.SCHEDULER_ENABLED:
        log.info("[SCHEDULER] KYC maintenance scheduler is disabled (SCHEDULER_ENABLED=false)")
        return

    if _scheduler_task is not None:
        log.warning("[SCHEDULER] Scheduler already running")
        return

    _scheduler_task = asyncio.create_task(_scheduler_loop())
    log.info("[SCHEDULER] KYC maintenance scheduler started")


async def stop_scheduler():
    global _scheduler_task

    if _scheduler_task is not None:
        _scheduler_task.cancel()
        try:
            await _scheduler_task
        except asyncio.CancelledError:
            pass
        _scheduler_task = None
        log.info("[SCHEDULER] KYC maintenance scheduler stopped")
