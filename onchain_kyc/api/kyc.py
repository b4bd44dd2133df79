"""
Onchain KYC API endpoints using Self.xyz

This module provides endpoints for:
- Starting a verification session for a wallet
- Receiving the Self.xyz verification webhook
- Checking wallet compliance status and session details
- Public statistics, configuration and health
"""
import hmac
import json
import logging
from hashlib import sha256
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from onchain_kyc.core.config import Settings
from onchain_kyc.core.errors import KYCError, InvalidWebhookSignature, MalformedPayload
from onchain_kyc.schemas.verification import (
    ConfigResponse,
    HealthResponse,
    InitiateRequest,
    InitiateResponse,
    SessionResponse,
    StatisticsResponse,
    StatusResponse,
    VerificationOutcome,
)
from onchain_kyc.services.orchestrator import VerificationOrchestrator
from onchain_kyc.utils.deps import get_orchestrator

log = logging.getLogger(__name__)

router = APIRouter(prefix="/kyc", tags=["kyc"])


def _http_error(e: KYCError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=e.to_detail())


def _verify_signature(config: Settings, raw_body: bytes, signature_header: Optional[str]) -> None:
    """
    Verify the Self.xyz webhook signature.
    Header value is hex HMAC_SHA256(body) with SELF_WEBHOOK_SECRET, optionally prefixed with 'sha256='.
    """
    secret = config.SELF_WEBHOOK_SECRET
    if not secret:
        log.warning("webhook.hmac.skipped SELF_WEBHOOK_SECRET not configured")
        return
    if not signature_header:
        log.warning("webhook.hmac.missing_signature_header")
        raise InvalidWebhookSignature("Missing webhook signature")

    provided = signature_header.strip().lower()
    if provided.startswith("sha256="):
        provided = provided[len("sha256="):]
    expected = hmac.new(secret.encode("utf-8"), raw_body, sha256).hexdigest()

    if not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        log.warning("webhook.hmac.invalid_signature provided=%s", provided[:10] + "…")
        raise InvalidWebhookSignature("Invalid webhook signature")


@router.post("/initiate", response_model=InitiateResponse, status_code=201)
async def initiate_verification(
    body: Optional[InitiateRequest] = None,
    orchestrator: VerificationOrchestrator = Depends(get_orchestrator),
):
    """
    Start (or resume) a KYC session for a wallet.

    Returns the session id, the frozen requirements and the data the wallet
    app needs to build the Self.xyz QR code.
    """
    try:
        body = body or InitiateRequest()
        return await orchestrator.initiate_session(body.wallet_address, body.requirements)
    except KYCError as e:
        raise _http_error(e)


@router.post("/verify", response_model=VerificationOutcome)
async def verify_webhook(
    request: Request,
    orchestrator: VerificationOrchestrator = Depends(get_orchestrator),
):
    """
    Self.xyz verification webhook.
    - Validates the HMAC signature when a secret is configured.
    - Redeliveries for a finished session return the stored outcome.
    - Rejections respond 422 with the outcome body.
    """
    client_ip = request.client.host if request.client else "-"
    raw = await request.body()
    log.info("webhook.receive ip=%s bytes=%d", client_ip, len(raw))

    signature = request.headers.get(orchestrator.config.SELF_WEBHOOK_SIGNATURE_HEADER)
    try:
        _verify_signature(orchestrator.config, raw, signature)
        try:
            payload = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            log.warning("webhook.json.invalid ip=%s", client_ip)
            raise MalformedPayload("Invalid JSON payload")
        outcome = await orchestrator.ingest_webhook(payload)
    except KYCError as e:
        raise _http_error(e)

    if not outcome.verified:
        return JSONResponse(status_code=422, content=outcome.model_dump(mode="json", by_alias=True))
    return outcome


@router.get("/status/{wallet_address}", response_model=StatusResponse)
async def get_wallet_status(
    wallet_address: str,
    orchestrator: VerificationOrchestrator = Depends(get_orchestrator),
):
    try:
        return await orchestrator.get_status(wallet_address)
    except KYCError as e:
        raise _http_error(e)


@router.get("/session/{session_id}", response_model=SessionResponse)
async def get_session(
    session_id: str,
    x_wallet_address: str | None = Header(default=None, alias="x-wallet-address"),
    orchestrator: VerificationOrchestrator = Depends(get_orchestrator),
):
    """Session details. When x-wallet-address is sent it must own the session."""
    try:
        return await orchestrator.get_session(session_id, caller_wallet=x_wallet_address)
    except KYCError as e:
        raise _http_error(e)


@router.get("/statistics", response_model=StatisticsResponse)
async def get_statistics(orchestrator: VerificationOrchestrator = Depends(get_orchestrator)):
    return await orchestrator.get_statistics()


@router.get("/config", response_model=ConfigResponse)
async def get_config(orchestrator: VerificationOrchestrator = Depends(get_orchestrator)):
    return orchestrator.get_config()


@router.get("/health", response_model=HealthResponse)
async def health(orchestrator: VerificationOrchestrator = Depends(get_orchestrator)):
    return await orchestrator.health()
