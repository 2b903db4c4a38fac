"""
HTTP surface of the registration coordinator

Executor callbacks, Twilio inbound SMS, magic-link completion, checkpoint
save/restore and the timer triggers. Internal callers authenticate with the
shared X-Callback-Secret header; the SMS webhook with Twilio's signature;
the magic-link endpoints with the signed token itself.
"""
import logging
from typing import Optional, Dict, Any
from urllib.parse import parse_qsl
from xml.sax.saxutils import escape

from fastapi import FastAPI, Depends, Header, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ..common.config import Config
from ..challenge.broker import TicketNotFound
from ..coordinator import Coordinator
from ..settlement.committer import ReservationNotFound
from .auth import SecurityError, verify_shared_secret, verify_twilio_signature

logger = logging.getLogger(__name__)


class CallbackRequest(BaseModel):
    reservation_id: str
    success: bool
    provider_response: Optional[Dict[str, Any]] = None


class ChallengeRequest(BaseModel):
    user_id: str
    session_id: str
    provider: str
    registration_id: Optional[str] = None


class LinkRequest(BaseModel):
    token: str
    sig: str
    reason: Optional[str] = None


class CheckpointRequest(BaseModel):
    step_name: str
    browser_state: Any = None
    workflow_state: Any = None
    provider_context: Any = None
    success: bool = True
    metadata: Optional[Dict[str, Any]] = None


def twiml(message: str) -> Response:
    body = (
        '<?xml version="1.0" encoding="UTF-8"?>'
        f"<Response><Message>{escape(message)}</Message></Response>"
    )
    return Response(content=body, media_type="text/xml")


def create_app(config: Config, coordinator: Optional[Coordinator] = None) -> FastAPI:
    """
    Build the FastAPI app. Refuses to start without its secrets
    (raises ConfigurationError).
    """
    config.require_secrets()
    coordinator = coordinator or Coordinator.build(config)

    app = FastAPI(title="Registration Coordinator")
    app.state.coordinator = coordinator

    @app.on_event("shutdown")
    async def close_clients():
        await coordinator.aclose()

    @app.exception_handler(SecurityError)
    async def security_error_handler(request: Request, exc: SecurityError):
        return JSONResponse(status_code=exc.status_code, content={"detail": str(exc)})

    async def require_secret(x_callback_secret: Optional[str] = Header(default=None)):
        verify_shared_secret(x_callback_secret, config.app.callback_secret)

    # ========================================
    # Settlement
    # ========================================

    @app.post("/settlement/callback", dependencies=[Depends(require_secret)])
    async def settlement_callback(req: CallbackRequest):
        try:
            result = await coordinator.committer.commit(
                req.reservation_id, req.success, req.provider_response
            )
        except ReservationNotFound:
            raise HTTPException(status_code=404, detail="Reservation not found")
        return {"ok": True, "status": result.status.value, "duplicate": result.duplicate}

    # ========================================
    # Inbound SMS
    # ========================================

    @app.post("/sms/inbound")
    async def sms_inbound(request: Request):
        raw = (await request.body()).decode()
        params = dict(parse_qsl(raw, keep_blank_values=True))
        url = config.notifications.sms.webhook_url or str(request.url)

        verify_twilio_signature(
            request.headers.get("X-Twilio-Signature"),
            url,
            params,
            config.notifications.sms.twilio_auth_token,
        )

        phone = params.get("From", "")
        if not phone:
            raise HTTPException(status_code=400, detail="Missing sender")

        outcome = await coordinator.replies.handle(phone, params.get("Body", ""))
        return twiml(outcome.message)

    # ========================================
    # Challenges
    # ========================================

    @app.post("/challenges", dependencies=[Depends(require_secret)])
    async def create_challenge(req: ChallengeRequest):
        ticket, delivery = await coordinator.broker.create_ticket(
            req.user_id, req.session_id, req.provider, req.registration_id
        )
        return {
            "ticket_id": ticket.id,
            "expires_at": ticket.expires_at.isoformat(),
            "notified": delivery.delivered,
            "channel": delivery.channel,
        }

    @app.post("/challenges/resolve")
    async def resolve_challenge(req: LinkRequest):
        result = await coordinator.broker.resolve(req.token, req.sig)
        return result.model_dump(mode="json")

    @app.post("/challenges/fail")
    async def fail_challenge(req: LinkRequest):
        result = await coordinator.broker.fail(req.token, req.sig, req.reason or "unsolvable")
        return result.model_dump(mode="json")

    @app.post("/challenges/sweep", dependencies=[Depends(require_secret)])
    async def sweep_challenges():
        expired = await coordinator.broker.expire_stale()
        return {"expired": [t.id for t in expired]}

    @app.post("/challenges/{ticket_id}/resend", dependencies=[Depends(require_secret)])
    async def resend_challenge(ticket_id: str):
        try:
            delivery = await coordinator.broker.resend(ticket_id)
        except TicketNotFound:
            raise HTTPException(status_code=404, detail="Ticket not found")
        return delivery.model_dump(mode="json")

    # ========================================
    # Polling
    # ========================================

    @app.post("/poll/tick", dependencies=[Depends(require_secret)])
    async def poll_tick():
        summary = await coordinator.poller.tick()
        return summary.model_dump(mode="json")

    # ========================================
    # Checkpoints
    # ========================================

    @app.post("/checkpoints/{session_id}", dependencies=[Depends(require_secret)])
    async def save_checkpoint(session_id: str, req: CheckpointRequest):
        checkpoint = coordinator.checkpoints.save(
            session_id,
            req.step_name,
            browser_state=req.browser_state,
            workflow_state=req.workflow_state,
            provider_context=req.provider_context,
            success=req.success,
            metadata=req.metadata,
        )
        return {"checkpoint_id": checkpoint.id}

    @app.get("/checkpoints/{session_id}", dependencies=[Depends(require_secret)])
    async def restore_checkpoint(session_id: str, checkpoint_id: Optional[str] = None):
        checkpoint = coordinator.checkpoints.restore(session_id, checkpoint_id)
        if checkpoint is None:
            raise HTTPException(status_code=404, detail="No recoverable checkpoint")
        return checkpoint.model_dump(mode="json")

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app
