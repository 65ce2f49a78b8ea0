"""MindfulAI — Meta Webhook Routes."""

import json
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse
from sqlmodel import Session

from app.api.deps import get_enqueue
from app.core.logging import get_logger
from app.database import get_session
from app.sync.webhooks import process_notification, verify_signature, verify_subscription
from app.sync.worker import Enqueue

logger = get_logger("api.webhooks")

router = APIRouter(prefix="/api", tags=["Webhooks"])


@router.get("/meta-webhooks", response_class=PlainTextResponse)
async def subscribe(
    mode: Optional[str] = Query(None, alias="hub.mode"),
    token: Optional[str] = Query(None, alias="hub.verify_token"),
    challenge: Optional[str] = Query(None, alias="hub.challenge"),
):
    """Meta's subscription handshake."""
    echoed = verify_subscription(mode, token, challenge)
    if echoed is None:
        logger.warning("🚫 Webhook verification failed")
        raise HTTPException(status_code=403, detail="Forbidden")
    logger.info("✅ Webhook subscription verified")
    return PlainTextResponse(echoed)


@router.post("/meta-webhooks")
async def receive(
    request: Request,
    session: Session = Depends(get_session),
    enqueue: Enqueue = Depends(get_enqueue),
):
    raw = await request.body()
    if not verify_signature(raw, request.headers.get("X-Hub-Signature-256")):
        logger.warning("🚫 Webhook signature mismatch")
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        data = json.loads(raw)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON")

    return await process_notification(session, data, enqueue)
