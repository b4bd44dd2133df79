from functools import lru_cache

from onchain_kyc.core.config import settings
from onchain_kyc.db.session import SessionLocal
from onchain_kyc.services.orchestrator import VerificationOrchestrator, build_orchestrator


@lru_cache(maxsize=1)
def get_orchestrator() -> VerificationOrchestrator:
    return build_orchestrator(SessionLocal, settings)
