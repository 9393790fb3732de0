from fastapi import APIRouter, Depends, HTTPException

from app.logging_config import get_logger
from app.runtime import Runtime, get_runtime
from app.schemas.webhook import ConnectionEvent, WebhookMessage, WebhookResponse

logger = get_logger("webhook")

router = APIRouter(prefix="/webhook", tags=["webhook"])

CONNECTED_STATES = {"open", "connected"}


@router.post("/messages", response_model=WebhookResponse)
async def receive_message(payload: WebhookMessage, runtime: Runtime = Depends(get_runtime)) -> WebhookResponse:
    """Accept one bridge message and hand it to the inbound channel."""
    message = payload.to_inbound()
    if not runtime.dispatcher.submit(message):
        raise HTTPException(status_code=503, detail="Inbound queue is full")
    logger.debug(f"Message accepted: key={message.conversation_key}, id={message.message_id}")
    return WebhookResponse(success=True, message="queued", message_id=message.message_id)


@router.post("/connection")
async def connection_event(event: ConnectionEvent, runtime: Runtime = Depends(get_runtime)) -> dict:
    """Bridge connection updates. Reconnecting starts recovery and a pending sweep."""
    state = event.state.strip().lower()
    logger.info(f"Connection state: {state}", extra={"context": {"instance_id": event.instanceId}})
    if state not in CONNECTED_STATES:
        return {"success": True, "state": state, "recovery_scheduled": False}

    recovery_task = runtime.recovery.on_connected()
    runtime.pending_sweeper.trigger()
    return {"success": True, "state": state, "recovery_scheduled": recovery_task is not None}
