"""MindfulAI — Meta Webhook Ingester.

Verifies Meta's `X-Hub-Signature-256` and turns ad-object change
notifications into incremental syncs for authorised accounts.
"""

import hashlib
import hmac
from typing import Any, Dict, List, Optional

from sqlmodel import Session, select

from app.config import settings
from app.connectors.meta.client import strip_act_prefix, to_act_id
from app.core.logging import get_logger
from app.models.job_models import JobStatus
from app.models.meta_models import Account, MetaAd
from app.queue.qstash import enqueue_sync
from app.sync import jobs
from app.sync.worker import INCREMENTAL_ACTION, Enqueue, SyncPayload

logger = get_logger("sync.webhooks")

# object → (payload key in change.value, entityIds bucket, reason)
OBJECT_ROUTES = {
    "ad_campaign": ("campaign_id", "campaigns", "webhook_campaign_update"),
    "ad_adset": ("adset_id", "adsets", "webhook_adset_update"),
    "ad_ad": ("ad_id", "ads", "webhook_ad_update"),
}


def expected_signature(raw_body: bytes, app_secret: str) -> str:
    digest = hmac.new(app_secret.encode(), raw_body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_signature(raw_body: bytes, signature: Optional[str], app_secret: str | None = None) -> bool:
    """Constant-time check of `sha256=<hex>` against the app secret."""
    secret = settings.meta_app_secret if app_secret is None else app_secret
    if not signature or not secret:
        return False
    return hmac.compare_digest(signature, expected_signature(raw_body, secret))


def verify_subscription(mode: Optional[str], token: Optional[str], challenge: Optional[str]) -> Optional[str]:
    """Return the challenge to echo, or None when the handshake is refused."""
    if mode == "subscribe" and settings.webhook_verify_token and token == settings.webhook_verify_token:
        return challenge or ""
    return None


def _authorised_account(session: Session, account_id: str) -> Optional[Account]:
    return session.get(Account, strip_act_prefix(account_id))


def _entity_ids(session: Session, account_id: str, object_type: str, value: Dict[str, Any]) -> Dict[str, List[str]]:
    if object_type in OBJECT_ROUTES:
        key, bucket, _ = OBJECT_ROUTES[object_type]
        return {bucket: [str(value[key])]} if value.get(key) else {}
    if object_type == "ad_creative" and value.get("creative_id"):
        ad_ids = session.exec(
            select(MetaAd.ad_id).where(
                MetaAd.creative_id == str(value["creative_id"]),
                MetaAd.account_id == to_act_id(account_id),
            )
        ).all()
        return {"ads": list(ad_ids)} if ad_ids else {}
    return {}


def _reason(object_type: str) -> str:
    if object_type in OBJECT_ROUTES:
        return OBJECT_ROUTES[object_type][2]
    return "creative_update"


async def trigger_incremental_sync(
    session: Session,
    account_id: str,
    entity_ids: Dict[str, List[str]],
    reason: str,
    enqueue: Enqueue = enqueue_sync,
) -> Dict[str, Any]:
    request_id = jobs.new_request_id("webhook")
    jobs.create_job(session, request_id)
    payload = SyncPayload(
        accountId=to_act_id(account_id),
        timeframe="24h",
        action=INCREMENTAL_ACTION,
        requestId=request_id,
        phase="incremental",
        syncType="incremental",
        entityIds=entity_ids,
        reason=reason,
    )
    try:
        message_id = await enqueue(payload.to_message(), follow_up=False)
    except Exception as e:
        jobs.update_job_status(session, request_id, JobStatus.FAILED, error_message=str(e))
        raise
    logger.info(
        f"🚀 Incremental sync {request_id} queued ({reason}): {entity_ids}",
        extra={"request_id": request_id, "account_id": payload.account_id},
    )
    return {"requestId": request_id, "messageId": message_id, "entityIds": entity_ids, "reason": reason}


async def process_notification(
    session: Session, data: Dict[str, Any], enqueue: Enqueue = enqueue_sync
) -> Dict[str, Any]:
    """Handle one verified webhook body. One change failing never stops the rest."""
    object_type = data.get("object", "")
    triggered: List[Dict[str, Any]] = []
    skipped: List[str] = []
    errors = 0

    for entry in data.get("entry") or []:
        account_id = strip_act_prefix(str(entry.get("id", "")))
        account = _authorised_account(session, account_id)
        if account is None:
            logger.warning(f"🚫 Skipping unauthorised account: {account_id}")
            skipped.append(account_id)
            continue

        for change in entry.get("changes") or []:
            try:
                entity_ids = _entity_ids(session, account_id, object_type, change.get("value") or {})
                if not entity_ids:
                    logger.info(f"No syncable ids in {object_type} change for {account_id}")
                    continue
                triggered.append(
                    await trigger_incremental_sync(
                        session, account_id, entity_ids, _reason(object_type), enqueue
                    )
                )
            except Exception as e:
                errors += 1
                logger.error(
                    f"❌ Error processing {object_type} change for {account_id}: {e}",
                    extra={"account_id": account_id},
                )

    return {"status": "success", "triggered": triggered, "skippedAccounts": skipped, "errors": errors}
