"""MindfulAI — Daily Fan-out.

Queues a 24h sync for every authorised account, a few at a time, and logs
the run to `meta_cron_logs`.
"""

import time
from datetime import datetime, timezone
from typing import Any, Dict, List

from sqlmodel import Session, select

from app.config import settings
from app.connectors.meta.client import strip_act_prefix, to_act_id
from app.core.logging import get_logger
from app.core.rate_limit import pause
from app.models.job_models import JobStatus, MetaCronLog
from app.models.meta_models import Account
from app.queue.qstash import enqueue_sync
from app.sync import jobs
from app.sync.worker import Enqueue, SyncPayload

logger = get_logger("sync.cron")


def _batches(items: List[Any], size: int) -> List[List[Any]]:
    size = max(1, size)
    return [items[i : i + size] for i in range(0, len(items), size)]


async def _queue_account(session: Session, account: Account, enqueue: Enqueue) -> Dict[str, Any]:
    act_id = to_act_id(account.account_id)
    result: Dict[str, Any] = {
        "account_id": strip_act_prefix(account.account_id),
        "formatted_account_id": act_id,
        "account_name": account.account_name,
    }

    for attempt in range(1, settings.cron_max_retries + 1):
        request_id = f"cron-{int(time.time() * 1000)}-{strip_act_prefix(account.account_id)}"
        try:
            jobs.create_job(session, request_id)
            payload = SyncPayload(
                accountId=act_id,
                timeframe="24h",
                action="get24HourData",
                requestId=request_id,
                phase="account",
                userId="system",
            )
            message_id = await enqueue(payload.to_message(), follow_up=False)
        except Exception as e:
            logger.error(
                f"❌ Failed to queue {act_id} (attempt {attempt}/{settings.cron_max_retries}): {e}",
                extra={"account_id": act_id},
            )
            jobs.update_job_status(session, request_id, JobStatus.FAILED, error_message=str(e))
            if attempt < settings.cron_max_retries:
                await pause(settings.cron_account_delay * (attempt + 1))
                continue
            return {**result, "status": "error", "error": str(e), "retries": attempt}

        logger.info(f"✅ Queued daily sync for {act_id}: {message_id}", extra={"account_id": act_id})
        return {
            **result,
            "status": "queued",
            "message_id": message_id,
            "request_id": request_id,
            "retries": attempt - 1,
        }

    return {**result, "status": "error", "error": "No attempts made", "retries": 0}


def _log_run(session: Session, results: List[Dict[str, Any]], successful: int, failed: int) -> None:
    try:
        session.add(
            MetaCronLog(
                accounts_processed=len(results),
                successful_accounts=successful,
                failed_accounts=failed,
                results=results,
            )
        )
        session.commit()
    except Exception as e:
        session.rollback()
        logger.error(f"Failed to write cron log: {e}")


async def run_daily_sync(session: Session, enqueue: Enqueue = enqueue_sync) -> Dict[str, Any]:
    """Queue the account phase for every row in `accounts`."""
    started = time.monotonic()
    accounts = list(session.exec(select(Account)).all())
    if not accounts:
        logger.info("No accounts to process")
        return {
            "message": "No accounts to process",
            "accounts_found": 0,
            "execution_time_ms": round((time.monotonic() - started) * 1000),
        }

    batches = _batches(accounts, settings.cron_batch_size)
    logger.info(f"📦 Processing {len(accounts)} accounts in {len(batches)} batches")

    results: List[Dict[str, Any]] = []
    for batch_index, batch in enumerate(batches):
        for index, account in enumerate(batch):
            results.append(await _queue_account(session, account, enqueue))
            if index < len(batch) - 1:
                await pause(settings.cron_account_delay)
        if batch_index < len(batches) - 1:
            await pause(settings.cron_account_delay * 2)

    successful = sum(1 for r in results if r["status"] == "queued")
    failed = len(results) - successful
    _log_run(session, results, successful, failed)

    return {
        "message": "Daily Meta sync queued",
        "accounts_found": len(accounts),
        "accounts_processed": len(results),
        "successful_accounts": successful,
        "failed_accounts": failed,
        "results": results,
        "executed_at": datetime.now(timezone.utc).isoformat(),
        "execution_time_ms": round((time.monotonic() - started) * 1000),
    }
