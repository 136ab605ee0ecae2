"""Feishu event callback endpoint."""

import json
import logging
from typing import Any, Dict

from fastapi import APIRouter, BackgroundTasks, HTTPException, Request, status

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/events")
async def receive_event(request: Request, background_tasks: BackgroundTasks) -> Dict[str, Any]:
    """Receive an event callback.

    Answers the URL verification challenge, and hands chat messages to the
    bridge as a background task so Feishu gets its acknowledgement quickly.

    Raises:
        400: If the body is not a JSON object or is encrypted
        401: If the verification token does not match
    """
    try:
        payload = await request.json()
    except json.JSONDecodeError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Body must be JSON")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Body must be a JSON object")

    if "encrypt" in payload:
        logger.error("Received an encrypted event; disable the Encrypt Key in the Feishu console")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Encrypted events are not supported")

    event_handler = request.app.state.event_handler
    if not event_handler.verify_token(payload):
        logger.warning("Rejected event callback with an invalid verification token")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid verification token")

    if payload.get("type") == "url_verification":
        return {"challenge": payload.get("challenge", "")}

    message = event_handler.process(payload)
    if message is not None:
        logger.info(f"Dispatching message {message.message_id} from chat {message.chat_id}")
        background_tasks.add_task(request.app.state.bridge.handle_message, message)

    return {"code": 0}
