"""MindfulAI — Shared Route Dependencies.

Routes take the Meta client and the queue through FastAPI dependencies so
tests can swap them via `app.dependency_overrides`.
"""

from functools import partial
from typing import AsyncIterator

from fastapi import Depends, HTTPException
from sqlmodel import Session

from app.config import settings
from app.connectors.meta.client import MetaClient
from app.database import get_session
from app.queue.qstash import QStashClient, QStashReceiver, enqueue_sync
from app.sync.store import ApiObserver
from app.sync.worker import Enqueue


async def get_meta_client(session: Session = Depends(get_session)) -> AsyncIterator[MetaClient]:
    """Meta client whose calls are recorded to meta_api_metrics / meta_rate_limits."""
    observer = ApiObserver(session)
    client = MetaClient(
        metrics_recorder=observer.record_call,
        usage_recorder=observer.record_usage,
    )
    try:
        yield client
    finally:
        await client.close()


def get_queue() -> QStashClient:
    return QStashClient()


def get_receiver() -> QStashReceiver:
    return QStashReceiver()


def get_enqueue(queue: QStashClient = Depends(get_queue)) -> Enqueue:
    return partial(enqueue_sync, client=queue)


def require_worker_enabled() -> None:
    """503 while the kill switch is on."""
    if settings.kill_switch_active:
        raise HTTPException(
            status_code=503,
            detail="Worker disabled via kill switch",
        )
