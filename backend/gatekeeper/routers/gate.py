import re
import secrets

import structlog
from fastapi import (
    APIRouter,
    Header,
    HTTPException,
    Request,
    Response,
    WebSocket,
    WebSocketDisconnect,
)
from pydantic import ValidationError

from gatekeeper.config import settings
from gatekeeper.errors import ProtocolError, ServiceUnavailable
from gatekeeper.middleware.logging import bind_correlation_id
from gatekeeper.middleware.rate_limit import limiter
from gatekeeper.schemas.messages import Message
from gatekeeper.services.admission_service import AdmissionStateMachine

router = APIRouter()
logger = structlog.get_logger()

SESSION_KEY_HEADER = "X-Session-Key"
SESSION_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_-]{16,128}$")
RETRY_AFTER_SECONDS = "1"
WS_TRY_AGAIN_LATER = 1013


def mint_session_key() -> str:
    return secrets.token_urlsafe(24)


def get_gate(request: Request) -> AdmissionStateMachine:
    return request.app.state.gate


def resolve_session_key(x_session_key: str | None) -> str:
    """Validate a client-supplied session key, or mint a new one."""
    if x_session_key is None:
        return mint_session_key()
    if not SESSION_KEY_PATTERN.match(x_session_key):
        raise HTTPException(status_code=400, detail="Invalid session key format")
    return x_session_key


async def dispatch_message(
    gate: AdmissionStateMachine, session_key: str, message: Message
) -> Message:
    """Run one envelope through the state machine. Only unlock requests are accepted."""
    try:
        request = message.require_unlock_request()
    except ProtocolError:
        return Message.wrap(await gate.reject_message_async(session_key))
    reply = await gate.handle_async(session_key, request)
    return Message.wrap(reply)


@router.post("/gate/unlock", response_model=Message, response_model_exclude_none=True)
@limiter.limit(settings.rate_limit_unlock)
async def unlock(
    request: Request,
    response: Response,
    message: Message,
    x_session_key: str | None = Header(default=None),
):
    """
    Exchange one gate message.

    Send ``{"unlock_request": {}}`` to receive a challenge, then resend with
    the solved proof under the same ``X-Session-Key`` to receive a permit.
    Every rejection is the same ``permit_reply`` with ``connection_allowed``
    false.
    """
    session_key = resolve_session_key(x_session_key)
    response.headers[SESSION_KEY_HEADER] = session_key

    try:
        return await dispatch_message(get_gate(request), session_key, message)
    except ServiceUnavailable:
        raise HTTPException(
            status_code=503,
            detail="Gate is busy, retry shortly",
            headers={"Retry-After": RETRY_AFTER_SECONDS, SESSION_KEY_HEADER: session_key},
        )


@router.websocket("/gate/ws")
async def gate_websocket(websocket: WebSocket):
    """One admission session per connection, keyed by a server-minted key."""
    gate: AdmissionStateMachine = websocket.app.state.gate
    bind_correlation_id()
    session_key = mint_session_key()

    await websocket.accept()
    logger.info("gate_websocket_opened")
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = Message.model_validate_json(raw)
            except ValidationError:
                reply = Message.wrap(await gate.reject_message_async(session_key))
            else:
                try:
                    reply = await dispatch_message(gate, session_key, message)
                except ServiceUnavailable:
                    await websocket.close(code=WS_TRY_AGAIN_LATER)
                    return
            await websocket.send_json(reply.to_wire())
    except WebSocketDisconnect:
        logger.info("gate_websocket_closed")
    finally:
        await gate.drop_async(session_key)
