"""MindfulAI — QStash Worker Route.

Each QStash delivery runs exactly one sync phase and may enqueue the next.
"""

import json

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import ValidationError
from sqlmodel import Session

from app.api.deps import get_enqueue, get_meta_client, get_receiver, require_worker_enabled
from app.config import settings
from app.connectors.meta.client import MetaClient
from app.core.logging import get_logger
from app.database import get_session
from app.queue.qstash import QStashReceiver, SignatureError, worker_url
from app.sync.worker import Enqueue, SyncPayload, SyncWorker

logger = get_logger("api.worker")

router = APIRouter(prefix="/api", tags=["Worker"])


@router.post("/meta-marketing-worker", dependencies=[Depends(require_worker_enabled)])
async def meta_marketing_worker(
    request: Request,
    session: Session = Depends(get_session),
    client: MetaClient = Depends(get_meta_client),
    receiver: QStashReceiver = Depends(get_receiver),
    enqueue: Enqueue = Depends(get_enqueue),
):
    raw = await request.body()

    if settings.qstash_verify_signatures:
        try:
            receiver.verify(request.headers.get("Upstash-Signature"), raw, url=worker_url())
        except SignatureError as e:
            logger.warning(f"🚫 Rejected worker call: {e}")
            raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        payload = SyncPayload.model_validate(json.loads(raw or b"{}"))
    except (ValueError, ValidationError) as e:
        raise HTTPException(status_code=400, detail=f"Invalid payload: {e}")

    client.ad_account_id = payload.account_id
    worker = SyncWorker(session, client, enqueue=enqueue)
    try:
        result = await worker.run(payload)
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Worker failed: {e}")

    return {"success": True, "requestId": payload.request_id, **result}
