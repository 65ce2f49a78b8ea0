"""MindfulAI — Cron Route.

External schedulers hit this once a day to fan out account syncs.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from sqlmodel import Session

from app.api.deps import get_enqueue
from app.config import settings
from app.database import get_session
from app.sync.cron import run_daily_sync
from app.sync.worker import Enqueue

router = APIRouter(prefix="/api/cron", tags=["Cron"])


def require_cron_secret(
    x_cron_secret: Optional[str] = Header(None),
    secret: Optional[str] = Query(None),
) -> None:
    provided = x_cron_secret or secret
    if not settings.cron_secret or provided != settings.cron_secret:
        raise HTTPException(status_code=401, detail="Unauthorized")


@router.get("/meta-marketing", dependencies=[Depends(require_cron_secret)])
async def meta_marketing_cron(
    session: Session = Depends(get_session),
    enqueue: Enqueue = Depends(get_enqueue),
):
    summary = await run_daily_sync(session, enqueue)
    return {"success": True, **summary}
