"""MindfulAI — Meta Marketing Routes.

Direct reads, background-sync triggers, entity creation, creative repair and
the daily-sync lifecycle the dashboard drives.
"""

from datetime import timedelta
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel
from sqlmodel import Session

from app.api.deps import get_enqueue, get_meta_client
from app.connectors.meta import endpoints
from app.connectors.meta.client import MetaAPIError, MetaClient, to_act_id
from app.connectors.meta.transformer import (
    account_insights_row,
    map_objective,
    map_status,
    optional_float,
)
from app.core.logging import get_logger
from app.database import get_session
from app.models.job_models import JobStatus
from app.models.meta_models import MetaAccountInsights, MetaAdSet, MetaCampaign, utcnow
from app.queue.qstash import QStashError
from app.sync import jobs
from app.sync.jobs import JobNotFoundError, JobStateError, as_utc
from app.sync.repair import ads_needing_repair, repair_failed_creatives
from app.sync.store import upsert_row
from app.sync.worker import Enqueue, SyncPayload

logger = get_logger("api.meta")

router = APIRouter(prefix="/api", tags=["Meta Marketing"])

FRESHNESS_DAYS = 3


# ── Request Models ──


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CreateCampaignRequest(_CamelModel):
    account_id: str
    name: str
    objective: str = "OUTCOME_AWARENESS"
    status: str = "PAUSED"
    special_ad_categories: List[str] = []


class CreateAdSetRequest(_CamelModel):
    account_id: str
    campaign_id: str
    name: str
    daily_budget: Optional[int] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    bid_amount: Optional[int] = None
    billing_event: str = "IMPRESSIONS"
    optimization_goal: str = "REACH"
    targeting: Dict[str, Any] = {}
    status: str = "PAUSED"


class DailySyncRequest(_CamelModel):
    account_id: str
    timeframe: str = "24h"
    user_id: Optional[str] = None


class StopRequest(_CamelModel):
    request_id: str


# ── Helpers ──


async def start_background_sync(
    session: Session,
    enqueue: Enqueue,
    account_id: str,
    timeframe: str = "24h",
    user_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Create a queued job and publish its account phase."""
    request_id = jobs.new_request_id("meta")
    jobs.create_job(session, request_id)
    payload = SyncPayload(
        accountId=to_act_id(account_id),
        timeframe=timeframe,
        action="get24HourData",
        requestId=request_id,
        phase="account",
        userId=user_id,
    )
    try:
        message_id = await enqueue(payload.to_message(), follow_up=False)
    except QStashError as e:
        jobs.update_job_status(session, request_id, JobStatus.FAILED, error_message=str(e))
        raise HTTPException(status_code=500, detail=f"Failed to queue sync: {e}")
    return {
        "success": True,
        "status": "queued",
        "requestId": request_id,
        "messageId": message_id,
        "message": "Background sync started",
    }


# ── /api/meta-marketing ──


@router.get("/meta-marketing")
async def meta_marketing(
    action: Optional[str] = Query(None),
    account_id: Optional[str] = Query(None, alias="accountId"),
    timeframe: str = Query("24h"),
    session: Session = Depends(get_session),
    client: MetaClient = Depends(get_meta_client),
    enqueue: Enqueue = Depends(get_enqueue),
):
    """Dashboard entry point. `action` selects the operation."""
    if not account_id:
        raise HTTPException(status_code=400, detail="Account ID is required")
    act_id = to_act_id(account_id)
    client.ad_account_id = act_id

    if action == "getAccountInfo":
        try:
            info = await endpoints.fetch_account_info(client, act_id)
            insights = await endpoints.fetch_account_insights(client, act_id, "6-month")
        except MetaAPIError as e:
            raise HTTPException(status_code=500, detail=f"Failed to fetch account info: {e}")
        row = account_insights_row(act_id, info, insights, endpoints.date_range("6-month"))
        upsert_row(session, MetaAccountInsights, row, ("account_id",))
        return {"success": True, "account": info, "insights": insights}

    if action == "get24HourData":
        return await start_background_sync(session, enqueue, act_id, timeframe)

    if action == "checkFreshness":
        existing = session.get(MetaAccountInsights, act_id)
        if existing is None:
            return {"needsRefresh": True, "isNewAccount": True, "lastUpdated": None}
        last_updated = as_utc(existing.last_updated)
        return {
            "needsRefresh": utcnow() - last_updated > timedelta(days=FRESHNESS_DAYS),
            "isNewAccount": False,
            "lastUpdated": last_updated.isoformat(),
        }

    raise HTTPException(status_code=400, detail=f"Invalid action: {action}")


@router.post("/meta-marketing")
async def meta_marketing_create(
    action: Optional[str] = Query(None),
    body: Dict[str, Any] = Body(...),
    session: Session = Depends(get_session),
    client: MetaClient = Depends(get_meta_client),
):
    """Create a campaign or ad set through the Graph API and mirror it."""
    try:
        if action == "createCampaign":
            request = CreateCampaignRequest.model_validate(body)
        elif action == "createAdSet":
            request = CreateAdSetRequest.model_validate(body)
        else:
            raise HTTPException(status_code=400, detail=f"Invalid action: {action}")
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False, include_context=False))

    act_id = to_act_id(request.account_id)
    client.ad_account_id = act_id

    try:
        if isinstance(request, CreateCampaignRequest):
            status = map_status(request.status)
            objective = map_objective(request.objective)
            result = await client.post(
                f"{act_id}/campaigns",
                {
                    "name": request.name,
                    "objective": objective,
                    "status": status,
                    "special_ad_categories": request.special_ad_categories,
                },
                endpoint="create_campaign",
            )
            row = {
                "campaign_id": result["id"],
                "account_id": act_id,
                "name": request.name,
                "status": status,
                "objective": objective,
            }
            upsert_row(session, MetaCampaign, row, ("campaign_id",))
        else:
            status = map_status(request.status)
            result = await client.post(
                f"{act_id}/adsets",
                {
                    "name": request.name,
                    "campaign_id": request.campaign_id,
                    "daily_budget": request.daily_budget,
                    "start_time": request.start_time,
                    "end_time": request.end_time,
                    "bid_amount": request.bid_amount,
                    "billing_event": request.billing_event,
                    "optimization_goal": request.optimization_goal,
                    "targeting": request.targeting,
                    "status": status,
                },
                endpoint="create_adset",
            )
            row = {
                "ad_set_id": result["id"],
                "campaign_id": request.campaign_id,
                "account_id": act_id,
                "name": request.name,
                "status": status,
                "daily_budget": optional_float(request.daily_budget),
                "bid_amount": optional_float(request.bid_amount),
                "billing_event": request.billing_event,
                "optimization_goal": request.optimization_goal,
                "targeting": request.targeting,
                "start_time": request.start_time,
                "end_time": request.end_time,
            }
            upsert_row(session, MetaAdSet, row, ("ad_set_id",))
    except MetaAPIError as e:
        raise HTTPException(status_code=500, detail=f"{action} failed: {e}")

    return {"success": True, "result": result, "stored": row}


# ── Creative repair ──


@router.post("/meta-marketing/repair-creatives")
async def repair_creatives(
    batch_size: int = Query(100, alias="batchSize", ge=1, le=1000),
    session: Session = Depends(get_session),
    client: MetaClient = Depends(get_meta_client),
):
    results = await repair_failed_creatives(session, client, batch_size)
    return {
        "success": True,
        "message": (
            f"Processed {results['processed']} ads, updated {results['updated']}, "
            f"failed {results['failed']}"
        ),
        "results": results,
    }


@router.get("/meta-marketing/repair-creatives")
async def count_creatives_to_repair(session: Session = Depends(get_session)):
    count = len(ads_needing_repair(session))
    return {"success": True, "count": count, "message": f"Found {count} ads that need repair"}


# ── Daily sync lifecycle ──


@router.post("/meta-marketing-daily")
async def start_daily_sync(
    request: DailySyncRequest,
    session: Session = Depends(get_session),
    enqueue: Enqueue = Depends(get_enqueue),
):
    return await start_background_sync(
        session, enqueue, request.account_id, request.timeframe, request.user_id
    )


@router.get("/meta-marketing-daily/status")
async def daily_sync_status(
    request_id: str = Query(..., alias="requestId"),
    session: Session = Depends(get_session),
):
    job = jobs.get_job(session, request_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    data = jobs.serialize_job(job)
    return {
        "requestId": request_id,
        "status": job.status,
        "progress": job.progress,
        "error": job.error_message,
        "result": job.result_data,
        "estimatedTimeRemaining": data["estimated_time_remaining"],
        "job": data,
    }


def _cancel(session: Session, request_id: str) -> Dict[str, Any]:
    try:
        job = jobs.cancel_job(session, request_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except JobStateError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {
        "success": True,
        "requestId": request_id,
        "status": job.status,
        "progress": job.progress,
        "message": "Job cancelled",
    }


@router.delete("/meta-marketing-daily/status")
async def cancel_daily_sync(
    request_id: str = Query(..., alias="requestId"),
    session: Session = Depends(get_session),
):
    return _cancel(session, request_id)


@router.post("/meta-marketing-daily/stop")
async def stop_daily_sync(request: StopRequest, session: Session = Depends(get_session)):
    return _cancel(session, request.request_id)
