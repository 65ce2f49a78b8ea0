"""MindfulAI — Chunked Sync Worker.

One QStash delivery runs one phase of the pipeline:

    account → campaigns → adsets → ads        (full sync)
    incremental                                (webhook-triggered refresh)

Each invocation works against a time budget. When the budget runs out the
worker enqueues a follow-up carrying exactly the remaining work and returns.
Phases upsert, so a redelivered message just rewrites the same snapshot.
"""

import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from sqlmodel import Session, select

from app.config import settings
from app.connectors.meta import endpoints
from app.connectors.meta.client import MetaClient, to_act_id
from app.connectors.meta.transformer import (
    account_insights_row,
    ad_row,
    adset_row,
    campaign_row,
    engagement_row,
)
from app.core.logging import get_logger
from app.models.job_models import JobStatus
from app.models.meta_models import (
    AdEngagementMetrics,
    MetaAccountInsights,
    MetaAd,
    MetaAdSet,
    MetaCampaign,
)
from app.queue.qstash import enqueue_sync
from app.sync import jobs
from app.sync.store import upsert_row

logger = get_logger("sync.worker")

Phase = Literal["account", "campaigns", "adsets", "ads", "incremental"]
LEGACY_ACTIONS = ("get24HourData", "getData")
INCREMENTAL_ACTION = "incrementalSync"

Enqueue = Callable[..., Awaitable[str]]


class SyncError(Exception):
    """A phase cannot proceed; the job is marked failed."""


class SyncPayload(BaseModel):
    """Message body exchanged with QStash (camelCase on the wire)."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    account_id: str = Field(alias="accountId", min_length=1)
    timeframe: str = "24h"
    action: str = "get24HourData"
    request_id: str = Field(alias="requestId", min_length=1)
    user_id: Optional[str] = Field(default=None, alias="userId")
    phase: Optional[Phase] = None
    campaign_ids: List[str] = Field(default_factory=list, alias="campaignIds")
    adset_ids: List[str] = Field(default_factory=list, alias="adsetIds")
    after: Optional[str] = None
    offset: int = Field(default=0, ge=0)
    sync_type: Optional[str] = Field(default=None, alias="syncType")
    entity_ids: Dict[str, List[str]] = Field(default_factory=dict, alias="entityIds")
    reason: Optional[str] = None

    def next(self, **changes: Any) -> "SyncPayload":
        return self.model_copy(update=changes)

    def to_message(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class Deadline:
    """Time budget for one invocation."""

    def __init__(self, budget: float | None = None, clock: Callable[[], float] = time.monotonic):
        self.budget = (
            settings.max_processing_time - settings.safety_buffer if budget is None else budget
        )
        self._clock = clock
        self._start = clock()

    @property
    def elapsed(self) -> float:
        return self._clock() - self._start

    @property
    def remaining(self) -> float:
        return max(0.0, self.budget - self.elapsed)

    @property
    def expired(self) -> bool:
        return self.elapsed >= self.budget


def _today() -> str:
    return datetime.now(timezone.utc).date().isoformat()


def _progress_between(start: int, end: int, done: int, total: int) -> int:
    if total <= 0:
        return end
    return start + int((end - start) * min(done, total) / total)


class SyncWorker:
    """Runs one phase for one payload."""

    def __init__(
        self,
        session: Session,
        client: MetaClient,
        enqueue: Enqueue = enqueue_sync,
        deadline: Optional[Deadline] = None,
    ):
        self.session = session
        self.client = client
        self.enqueue = enqueue
        self.deadline = deadline or Deadline()

    # ── Entry point ──

    async def run(self, payload: SyncPayload) -> Dict[str, Any]:
        phase = self.resolve_phase(payload)
        log_extra = {"request_id": payload.request_id, "account_id": payload.account_id, "phase": phase}
        logger.info(f"▶️ Running {phase} phase", extra=log_extra)

        handler = getattr(self, f"_run_{phase}")
        try:
            result = await handler(payload)
        except Exception as e:
            logger.error(f"❌ {phase} phase failed: {e}", extra=log_extra, exc_info=True)
            jobs.update_job_status(
                self.session, payload.request_id, JobStatus.FAILED, error_message=f"{phase}: {e}"
            )
            raise

        logger.info(
            f"✅ {phase} phase finished: {result.get('status')}",
            extra={**log_extra, "duration_ms": round(self.deadline.elapsed * 1000)},
        )
        return result

    @staticmethod
    def resolve_phase(payload: SyncPayload) -> str:
        if payload.phase:
            return payload.phase
        if payload.action == INCREMENTAL_ACTION:
            return "incremental"
        if payload.action in LEGACY_ACTIONS:
            return "account"
        raise SyncError(f"Unsupported action: {payload.action}")

    # ── Helpers ──

    def _progress(self, payload: SyncPayload, progress: int) -> None:
        jobs.update_job_status(
            self.session, payload.request_id, JobStatus.PROCESSING, progress, monotonic=True
        )

    def _cancelled(self, payload: SyncPayload, phase: str) -> Optional[Dict[str, Any]]:
        if jobs.is_cancelled(self.session, payload.request_id):
            logger.info(f"🛑 Job cancelled, stopping {phase} phase", extra={"request_id": payload.request_id})
            return {"phase": phase, "status": "cancelled"}
        return None

    async def _follow_up(self, payload: SyncPayload, **changes: Any) -> Optional[str]:
        if jobs.is_cancelled(self.session, payload.request_id):
            logger.info(f"Job {payload.request_id} cancelled; not enqueuing {changes.get('phase')}")
            return None
        nxt = payload.next(**changes)
        return await self.enqueue(nxt.to_message(), follow_up=True)

    def _complete(self, payload: SyncPayload, result: Dict[str, Any]) -> Dict[str, Any]:
        summary = {
            "accountId": payload.account_id,
            "timeframe": payload.timeframe,
            "completedAt": datetime.now(timezone.utc).isoformat(),
            **result,
        }
        jobs.update_job_status(
            self.session, payload.request_id, JobStatus.COMPLETED, 100, result_data=summary
        )
        return {**result, "status": "completed"}

    async def _insights(self, entity_id: str, timeframe: str) -> Optional[Dict[str, Any]]:
        return await endpoints.fetch_insights(self.client, entity_id, timeframe)

    async def _store_ad(
        self, ad: Dict[str, Any], adset_id: str, campaign_id: Optional[str], payload: SyncPayload
    ) -> None:
        insights = await self._insights(ad["id"], payload.timeframe)
        creative_id = (ad.get("creative") or {}).get("id")
        creative = (
            await endpoints.fetch_creative_with_retry(self.client, creative_id)
            if creative_id
            else None
        )
        upsert_row(
            self.session,
            MetaAd,
            ad_row(ad, adset_id, campaign_id, payload.account_id, creative, insights),
            ("ad_id",),
        )
        upsert_row(
            self.session,
            AdEngagementMetrics,
            engagement_row(ad["id"], insights, _today()),
            ("ad_id", "date"),
        )

    # ── Phases ──

    async def _run_account(self, payload: SyncPayload) -> Dict[str, Any]:
        cancelled = self._cancelled(payload, "account")
        if cancelled:
            return cancelled

        self._progress(payload, 10)
        self._progress(payload, 15)
        if self.deadline.expired:
            await self._follow_up(payload, phase="account", after=None, offset=0)
            return {"phase": "account", "status": "deferred_due_to_time_limit"}

        info = await endpoints.fetch_account_info(self.client, payload.account_id)
        self._progress(payload, 25)
        if self.deadline.expired:
            await self._follow_up(payload, phase="account", after=None, offset=0)
            return {"phase": "account", "status": "deferred_due_to_time_limit"}

        insights = await endpoints.fetch_account_insights(
            self.client, payload.account_id, payload.timeframe
        )
        self._progress(payload, 35)

        row = account_insights_row(
            payload.account_id, info, insights, endpoints.date_range(payload.timeframe)
        )
        upsert_row(self.session, MetaAccountInsights, row, ("account_id",))
        self._progress(payload, 40)

        await self._follow_up(payload, phase="campaigns", after=None, offset=0, campaign_ids=[])
        return {"phase": "account", "status": "completed", "nextPhase": "campaigns"}

    async def _run_campaigns(self, payload: SyncPayload) -> Dict[str, Any]:
        cancelled = self._cancelled(payload, "campaigns")
        if cancelled:
            return cancelled

        if self.deadline.expired:
            await self._follow_up(payload, phase="campaigns")
            return {"phase": "campaigns", "status": "deferred_due_to_time_limit", "after": payload.after}

        self._progress(payload, 40)
        page = await endpoints.fetch_campaigns_page(self.client, payload.account_id, payload.after)
        campaign_ids = list(payload.campaign_ids)
        errors = 0
        processed = 0

        for index in range(payload.offset, len(page.data)):
            if self.deadline.expired:
                await self._follow_up(
                    payload, phase="campaigns", offset=index, campaign_ids=campaign_ids
                )
                return {
                    "phase": "campaigns",
                    "status": "deferred_due_to_time_limit",
                    "processed": processed,
                    "errors": errors,
                }

            campaign = page.data[index]
            try:
                insights = await self._insights(campaign["id"], payload.timeframe)
                upsert_row(
                    self.session,
                    MetaCampaign,
                    campaign_row(campaign, payload.account_id, insights),
                    ("campaign_id",),
                )
                if campaign["id"] not in campaign_ids:
                    campaign_ids.append(campaign["id"])
                processed += 1
            except Exception as e:
                errors += 1
                logger.warning(
                    f"Skipping campaign {campaign.get('id')}: {e}",
                    extra={"request_id": payload.request_id, "phase": "campaigns"},
                )
            self._progress(payload, _progress_between(40, 60, index + 1, len(page.data)))

        if page.has_next and page.after:
            await self._follow_up(
                payload, phase="campaigns", after=page.after, offset=0, campaign_ids=campaign_ids
            )
            return {"phase": "campaigns", "status": "next_page", "processed": processed, "errors": errors}

        if not campaign_ids:
            return self._complete(payload, {"phase": "campaigns", "campaigns": 0, "errors": errors})

        self._progress(payload, 60)
        await self._follow_up(
            payload, phase="adsets", campaign_ids=campaign_ids, adset_ids=[], after=None, offset=0
        )
        return {
            "phase": "campaigns",
            "status": "completed",
            "nextPhase": "adsets",
            "processed": processed,
            "errors": errors,
            "campaigns": len(campaign_ids),
        }

    async def _run_adsets(self, payload: SyncPayload) -> Dict[str, Any]:
        cancelled = self._cancelled(payload, "adsets")
        if cancelled:
            return cancelled

        act_id = to_act_id(payload.account_id)
        if self.session.get(MetaAccountInsights, act_id) is None:
            raise SyncError(f"Account {act_id} has not been synced yet")

        campaign_ids = list(payload.campaign_ids)
        if not campaign_ids:
            campaign_ids = list(
                self.session.exec(
                    select(MetaCampaign.campaign_id).where(MetaCampaign.account_id == act_id)
                ).all()
            )
        if not campaign_ids:
            raise SyncError(f"No campaigns found for account {act_id}")

        self._progress(payload, 60)
        batch = campaign_ids[: settings.batch_size]
        remaining = campaign_ids[settings.batch_size:]
        adset_ids = list(payload.adset_ids)
        errors = 0

        for index, campaign_id in enumerate(batch):
            if self.deadline.expired:
                remaining = batch[index:] + remaining
                break
            try:
                adsets = await endpoints.fetch_adsets(self.client, campaign_id)
            except Exception as e:
                errors += 1
                logger.warning(f"Skipping ad sets of campaign {campaign_id}: {e}")
                continue

            for adset in adsets:
                try:
                    insights = await self._insights(adset["id"], payload.timeframe)
                    upsert_row(
                        self.session,
                        MetaAdSet,
                        adset_row(adset, campaign_id, payload.account_id, insights),
                        ("ad_set_id",),
                    )
                    if adset["id"] not in adset_ids:
                        adset_ids.append(adset["id"])
                except Exception as e:
                    errors += 1
                    logger.warning(f"Skipping ad set {adset.get('id')}: {e}")
            self._progress(payload, _progress_between(60, 80, index + 1, len(campaign_ids)))

        if remaining:
            await self._follow_up(payload, phase="adsets", campaign_ids=remaining, adset_ids=adset_ids)
            return {
                "phase": "adsets",
                "status": "partial",
                "remainingCampaigns": len(remaining),
                "adsets": len(adset_ids),
                "errors": errors,
            }

        if not adset_ids:
            return self._complete(payload, {"phase": "adsets", "adsets": 0, "errors": errors})

        self._progress(payload, 80)
        await self._follow_up(payload, phase="ads", adset_ids=adset_ids, campaign_ids=[], offset=0)
        return {
            "phase": "adsets",
            "status": "completed",
            "nextPhase": "ads",
            "adsets": len(adset_ids),
            "errors": errors,
        }

    async def _run_ads(self, payload: SyncPayload) -> Dict[str, Any]:
        cancelled = self._cancelled(payload, "ads")
        if cancelled:
            return cancelled

        adset_ids = list(payload.adset_ids)
        if not adset_ids:
            return self._complete(payload, {"phase": "ads", "ads": 0, "errors": 0})

        self._progress(payload, 80)
        batch = adset_ids[: settings.batch_size]
        remaining = adset_ids[settings.batch_size:]
        ads_processed = 0
        errors = 0

        for index, adset_id in enumerate(batch):
            if self.deadline.expired:
                remaining = batch[index:] + remaining
                break
            try:
                campaign_id = await endpoints.fetch_adset_parent(self.client, adset_id)
                ads = await endpoints.fetch_ads(self.client, adset_id)
            except Exception as e:
                errors += 1
                logger.warning(f"Skipping ads of ad set {adset_id}: {e}")
                continue

            # offset only ever applies to the first ad set of a message
            start = payload.offset if index == 0 else 0
            for ad_index in range(start, len(ads)):
                if self.deadline.expired:
                    await self._follow_up(
                        payload,
                        phase="ads",
                        adset_ids=batch[index:] + remaining,
                        offset=ad_index,
                    )
                    return {
                        "phase": "ads",
                        "status": "deferred_due_to_time_limit",
                        "remainingAdsets": len(batch[index:] + remaining),
                        "offset": ad_index,
                        "ads": ads_processed,
                        "errors": errors,
                    }
                ad = ads[ad_index]
                try:
                    await self._store_ad(ad, adset_id, campaign_id, payload)
                    ads_processed += 1
                except Exception as e:
                    errors += 1
                    logger.warning(f"Skipping ad {ad.get('id')}: {e}")
            self._progress(payload, _progress_between(80, 99, index + 1, len(adset_ids)))

        if remaining:
            await self._follow_up(payload, phase="ads", adset_ids=remaining, offset=0)
            return {
                "phase": "ads",
                "status": "partial",
                "remainingAdsets": len(remaining),
                "ads": ads_processed,
                "errors": errors,
            }

        return self._complete(payload, {"phase": "ads", "ads": ads_processed, "errors": errors})

    async def _run_incremental(self, payload: SyncPayload) -> Dict[str, Any]:
        cancelled = self._cancelled(payload, "incremental")
        if cancelled:
            return cancelled

        self._progress(payload, 10)
        tasks = [
            (kind, entity_id)
            for kind in ("campaigns", "adsets", "ads")
            for entity_id in payload.entity_ids.get(kind, [])
        ]
        refreshed = 0
        errors = 0

        for index, (kind, entity_id) in enumerate(tasks):
            if self.deadline.expired:
                left: Dict[str, List[str]] = {}
                for k, eid in tasks[index:]:
                    left.setdefault(k, []).append(eid)
                await self._follow_up(payload, phase="incremental", entity_ids=left)
                return {"phase": "incremental", "status": "partial", "refreshed": refreshed, "errors": errors}
            try:
                await self._refresh(kind, entity_id, payload)
                refreshed += 1
            except Exception as e:
                errors += 1
                logger.warning(f"Incremental refresh of {kind[:-1]} {entity_id} failed: {e}")
            self._progress(payload, _progress_between(10, 99, index + 1, len(tasks)))

        return self._complete(
            payload,
            {"phase": "incremental", "refreshed": refreshed, "errors": errors, "reason": payload.reason},
        )

    async def _refresh(self, kind: str, entity_id: str, payload: SyncPayload) -> None:
        if kind == "campaigns":
            campaign = await endpoints.fetch_campaign(self.client, entity_id)
            insights = await self._insights(entity_id, payload.timeframe)
            upsert_row(
                self.session,
                MetaCampaign,
                campaign_row(campaign, payload.account_id, insights),
                ("campaign_id",),
            )
        elif kind == "adsets":
            adset = await endpoints.fetch_adset(self.client, entity_id)
            insights = await self._insights(entity_id, payload.timeframe)
            upsert_row(
                self.session,
                MetaAdSet,
                adset_row(adset, adset.get("campaign_id", ""), payload.account_id, insights),
                ("ad_set_id",),
            )
        else:
            ad = await endpoints.fetch_ad(self.client, entity_id)
            await self._store_ad(ad, ad.get("adset_id", ""), ad.get("campaign_id"), payload)
