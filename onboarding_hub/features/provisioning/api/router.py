"""
Onboarding bot routes.

Card callbacks from Feishu plus a few operator endpoints for triggering a
check or the digest by hand and reading the audit trail.
"""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from onboarding_hub.features.provisioning.domain.errors import ProvisioningError
from onboarding_hub.features.provisioning.services.dispatcher import CallbackAck, CallbackEvent
from onboarding_hub.features.provisioning.services.orchestrator import ProvisioningOrchestrator
from onboarding_hub.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/bot", tags=["onboarding-bot"])


def get_orchestrator(request: Request) -> ProvisioningOrchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Bot is not running"
        )
    return orchestrator


def _verify_token(request: Request, body: dict[str, Any]) -> None:
    expected = getattr(request.app.state, "verification_token", None)
    if not expected:
        return
    header = body.get("header") if isinstance(body.get("header"), dict) else {}
    token = body.get("token") or header.get("token")
    if token != expected:
        logger.warning("Rejected callback with bad verification token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid verification token"
        )


@router.post("/callback")
async def card_callback(
    request: Request,
    orchestrator: ProvisioningOrchestrator = Depends(get_orchestrator),
) -> dict:
    """Feishu card callback. Must answer within Feishu's 3 second budget."""
    try:
        body = await request.json()
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Body must be JSON"
        ) from None
    if not isinstance(body, dict):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Body must be a JSON object"
        )

    _verify_token(request, body)

    if body.get("type") == "url_verification":
        return {"challenge": body.get("challenge")}

    event = CallbackEvent.from_payload(body)
    logger.info("Bot callback received", operator_id=event.operator_id, message_id=event.message_id)

    try:
        ack = await orchestrator.handle_callback(event)
    except ProvisioningError as e:
        logger.error("Bot callback failed", error=str(e), error_code=e.error_code)
        ack = CallbackAck.error(f"Processing failed: {e.user_message}")
    except Exception as e:
        logger.exception("Unexpected error in bot callback", error_type=type(e).__name__)
        ack = CallbackAck.error("Processing failed: unexpected error")
    return ack.to_dict()


@router.post("/check")
async def trigger_check(
    force: bool = Query(False),
    orchestrator: ProvisioningOrchestrator = Depends(get_orchestrator),
) -> dict:
    """Run a roster check now."""
    summary = await orchestrator.check_and_notify(force=force)
    return {"success": summary.error is None, **summary.to_dict()}


@router.post("/summary")
async def trigger_digest(
    orchestrator: ProvisioningOrchestrator = Depends(get_orchestrator),
) -> dict:
    """Send the daily digest now."""
    try:
        pending = await orchestrator.send_daily_digest()
    except ProvisioningError as e:
        logger.error("Manual digest failed", error=str(e))
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=e.user_message) from e
    return {"success": True, "pending": pending}


@router.get("/audit")
async def audit_log(
    count: int = Query(50, ge=1, le=500),
    orchestrator: ProvisioningOrchestrator = Depends(get_orchestrator),
) -> dict:
    entries = orchestrator.get_audit_log(count)
    return {
        "success": True,
        "data": [entry.model_dump(mode="json") for entry in entries],
        "total": len(entries),
    }


@router.get("/status")
async def bot_status(orchestrator: ProvisioningOrchestrator = Depends(get_orchestrator)) -> dict:
    return orchestrator.status()
