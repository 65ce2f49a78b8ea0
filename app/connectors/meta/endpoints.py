"""MindfulAI — Meta API Endpoints.

Typed fetch functions for each Marketing API resource the sync mirrors.
Each returns raw vendor JSON; row building happens in the transformer.
"""

import calendar
import json
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from app.connectors.meta.client import MetaAPIError, MetaClient, Page, to_act_id
from app.core.logging import get_logger
from app.core.rate_limit import backoff_delay, pause

logger = get_logger("meta.endpoints")

# ── Field lists ──

ACCOUNT_FIELDS = [
    "name",
    "account_status",
    "amount_spent",
    "balance",
    "currency",
    "spend_cap",
    "timezone_name",
    "timezone_offset_hours_utc",
    "business_country_code",
    "disable_reason",
    "is_prepay_account",
    "tax_id_status",
]

ACCOUNT_INSIGHT_FIELDS = [
    "impressions", "clicks", "reach", "spend", "cpc", "cpm", "ctr", "frequency",
    "objective", "action_values", "actions", "cost_per_action_type",
    "cost_per_unique_click", "outbound_clicks", "outbound_clicks_ctr",
    "website_ctr", "website_purchase_roas",
]

INSIGHT_FIELDS = ACCOUNT_INSIGHT_FIELDS + [
    "inline_link_clicks",
    "inline_post_engagement",
    "video_30_sec_watched_actions",
    "video_p25_watched_actions",
    "video_p50_watched_actions",
    "video_p75_watched_actions",
    "video_p95_watched_actions",
    "video_p100_watched_actions",
    "video_avg_time_watched_actions",
    "video_play_actions",
    "video_thruplay_watched_actions",
    "video_continuous_2_sec_watched_actions",
]

# Fallback when the full list returns nothing
REDUCED_INSIGHT_FIELDS = [
    "impressions", "clicks", "reach", "spend", "actions", "cost_per_action_type",
    "inline_link_clicks", "inline_post_engagement",
    "video_30_sec_watched_actions", "video_p25_watched_actions",
    "video_thruplay_watched_actions", "video_continuous_2_sec_watched_actions",
]
MINIMAL_INSIGHT_FIELDS = [
    "impressions", "clicks", "reach", "spend", "actions",
    "inline_link_clicks", "inline_post_engagement",
]
SIMPLE_INSIGHT_FIELDS = ["impressions", "clicks", "spend"]

CAMPAIGN_FIELDS = [
    "id", "name", "status", "configured_status", "effective_status", "objective",
    "buying_type", "bid_strategy", "daily_budget", "lifetime_budget",
    "budget_remaining", "spend_cap", "start_time", "stop_time", "created_time",
    "updated_time", "promoted_object", "pacing_type", "special_ad_categories",
    "source_campaign_id", "topline_id", "recommendations",
]

ADSET_FIELDS = [
    "id", "name", "campaign_id", "status", "configured_status", "effective_status",
    "optimization_goal", "billing_event", "bid_amount", "bid_strategy",
    "daily_budget", "lifetime_budget", "targeting", "start_time", "end_time",
    "attribution_spec", "destination_type", "frequency_control_specs",
    "is_dynamic_creative", "issues_info", "learning_stage_info", "pacing_type",
    "promoted_object", "source_adset_id", "targeting_optimization_types",
    "use_new_app_click", "created_time", "updated_time",
]

AD_FIELDS = [
    "id", "name", "adset_id", "campaign_id", "status", "configured_status",
    "effective_status", "creative", "tracking_specs", "conversion_specs",
    "tracking_and_conversion_specs", "created_time", "updated_time",
    "source_ad_id", "recommendations", "issues_info", "engagement_audience",
    "preview_url", "template_url", "thumbnail_url", "instagram_permalink_url",
    "effective_object_story_id", "url_tags",
]

CREATIVE_FIELDS = [
    "id", "name", "title", "body", "object_type", "thumbnail_url", "image_url",
    "video_id", "url_tags", "template_url", "instagram_permalink_url",
    "effective_object_story_id", "asset_feed_spec", "object_story_spec",
    "platform_customizations",
]

# ── Creative fallback markers (stored in asset_feed_spec._fallback_source) ──

DELETED_CREATIVE = "DELETED_CREATIVE"
FETCH_FAILED_EMERGENCY = "FETCH_FAILED_EMERGENCY"
FAILED_TO_EXTRACT = "FAILED_TO_EXTRACT"
FAILURE_MARKERS = (DELETED_CREATIVE, FETCH_FAILED_EMERGENCY, FAILED_TO_EXTRACT)

DELETED_CREATIVE_CODE = 803
NO_DATA_CODE = 100


# ── Date ranges ──


def _months_ago(day: date, months: int) -> date:
    month_index = day.year * 12 + (day.month - 1) - months
    year, month = divmod(month_index, 12)
    month += 1
    return date(year, month, min(day.day, calendar.monthrange(year, month)[1]))


def date_range(timeframe: str, today: Optional[date] = None) -> Dict[str, str]:
    """Return a Graph API `time_range` dict for a sync timeframe.

    `24h` is yesterday..today. `6-month` (and anything unrecognised) is six
    months back, never earlier than the two years Meta retains.
    """
    today = today or datetime.now(timezone.utc).date()
    if timeframe == "24h":
        since = today - timedelta(days=1)
    elif timeframe == "30d":
        since = today - timedelta(days=30)
    elif timeframe == "7d":
        since = today - timedelta(days=7)
    else:
        since = max(_months_ago(today, 6), _months_ago(today, 24))
    return {"since": since.isoformat(), "until": today.isoformat()}


def _insights_params(fields: List[str], timeframe: str, level: str | None = None) -> Dict[str, Any]:
    params: Dict[str, Any] = {
        "fields": ",".join(fields),
        "time_range": json.dumps(date_range(timeframe)),
    }
    if level:
        params["level"] = level
    return params


async def _first_insight(
    client: MetaClient, entity_id: str, fields: List[str], timeframe: str
) -> Optional[Dict[str, Any]]:
    page = await client.get_page(
        f"{entity_id}/insights",
        _insights_params(fields, timeframe),
        call_type="INSIGHTS",
        endpoint="insights",
    )
    return page.data[0] if page.data else None


# ── Account ──


async def fetch_account_info(client: MetaClient, account_id: str) -> Dict[str, Any]:
    return await client.get_account_info(account_id, ACCOUNT_FIELDS)


async def fetch_account_insights(
    client: MetaClient, account_id: str, timeframe: str = "24h"
) -> Optional[Dict[str, Any]]:
    """Aggregate account-level insights for the timeframe (first row or None)."""
    page = await client.get_page(
        f"{to_act_id(account_id)}/insights",
        _insights_params(ACCOUNT_INSIGHT_FIELDS, timeframe, level="account"),
        call_type="INSIGHTS",
        endpoint="account_insights",
    )
    return page.data[0] if page.data else None


# ── Hierarchy ──


async def fetch_campaigns_page(
    client: MetaClient, account_id: str, after: str | None = None, limit: int = 100
) -> Page:
    params: Dict[str, Any] = {"fields": ",".join(CAMPAIGN_FIELDS), "limit": limit}
    if after:
        params["after"] = after
    return await client.get_page(f"{to_act_id(account_id)}/campaigns", params, endpoint="campaigns")


async def fetch_adsets(client: MetaClient, campaign_id: str) -> List[Dict[str, Any]]:
    """All ad sets under a campaign (every page)."""
    return await client.paginate(
        f"{campaign_id}/adsets",
        {"fields": ",".join(ADSET_FIELDS), "limit": 100},
        endpoint="adsets",
    )


async def fetch_adset_parent(client: MetaClient, adset_id: str) -> Optional[str]:
    """Campaign ID owning an ad set."""
    result = await client.read_object(adset_id, ["campaign_id"], endpoint="adset_info")
    return result.get("campaign_id")


async def fetch_ads(client: MetaClient, adset_id: str) -> List[Dict[str, Any]]:
    return await client.paginate(
        f"{adset_id}/ads",
        {"fields": ",".join(AD_FIELDS), "limit": 100},
        endpoint="ads",
    )


async def fetch_campaign(client: MetaClient, campaign_id: str) -> Dict[str, Any]:
    return await client.read_object(campaign_id, CAMPAIGN_FIELDS + ["account_id"], endpoint="campaign")


async def fetch_adset(client: MetaClient, adset_id: str) -> Dict[str, Any]:
    return await client.read_object(adset_id, ADSET_FIELDS + ["account_id"], endpoint="adset")


async def fetch_ad(client: MetaClient, ad_id: str) -> Dict[str, Any]:
    return await client.read_object(ad_id, AD_FIELDS + ["account_id"], endpoint="ad")


# ── Insights with fallbacks ──


async def fetch_insights(
    client: MetaClient, entity_id: str, timeframe: str = "24h"
) -> Optional[Dict[str, Any]]:
    """Insights for one campaign/ad set/ad, widening the net when empty.

    Full fields over the timeframe, then reduced fields over 30 days (for
    6-month syncs), then minimal fields over 7 days. Code-100 / "No data
    available" errors get one simplified 7-day attempt. Any other failure,
    including exhausted rate-limit retries, yields None.
    """
    try:
        result = await _first_insight(client, entity_id, INSIGHT_FIELDS, timeframe)
        if result:
            return result
        if timeframe == "6-month":
            logger.info(f"🔄 No 6-month insights for {entity_id}, trying 30-day fallback")
            result = await _first_insight(client, entity_id, REDUCED_INSIGHT_FIELDS, "30d")
            if result:
                return result
        logger.info(f"🔄 Trying 7-day fallback for {entity_id}")
        result = await _first_insight(client, entity_id, MINIMAL_INSIGHT_FIELDS, "7d")
        if result:
            return result
        logger.info(f"No insights data available for {entity_id} in any timeframe")
        return None
    except MetaAPIError as e:
        if e.error_code == NO_DATA_CODE or "No data available" in str(e):
            try:
                return await _first_insight(client, entity_id, SIMPLE_INSIGHT_FIELDS, "7d")
            except MetaAPIError as simple_error:
                logger.warning(f"Simplified insights failed for {entity_id}: {simple_error}")
                return None
        logger.warning(f"Insights unavailable for {entity_id}: {e}")
        return None


# ── Creatives ──


def _marker(source: str, error: str, **extra: Any) -> Dict[str, Any]:
    return {"_fallback_source": source, "error": error, **extra}


def synthesize_asset_feed_spec(creative: Dict[str, Any]) -> Dict[str, Any]:
    """Build an asset_feed_spec for a creative that has none."""
    link_data = (creative.get("object_story_spec") or {}).get("link_data")
    if link_data:
        spec: Dict[str, Any] = {"_fallback_source": "OBJECT_STORY_SPEC"}
        if link_data.get("video_id"):
            spec["videos"] = [{"video_id": link_data["video_id"]}]
        if link_data.get("image_hash"):
            spec["images"] = [{"image_hash": link_data["image_hash"]}]
        if link_data.get("picture"):
            spec["images"] = [{"picture": link_data["picture"]}]
        for key in ("call_to_action", "description"):
            if link_data.get(key):
                spec[key] = link_data[key]
        if link_data.get("link"):
            spec["link_url"] = link_data["link"]
        return spec
    if creative.get("video_id"):
        video = {"video_id": creative["video_id"]}
        if creative.get("thumbnail_url"):
            video["thumbnail_url"] = creative["thumbnail_url"]
        return {"_fallback_source": "VIDEO_ID", "videos": [video]}
    if creative.get("image_url"):
        return {"_fallback_source": "IMAGE_URL", "images": [{"url": creative["image_url"]}]}
    return _marker(FAILED_TO_EXTRACT, "No extractable asset data found")


def _is_deleted(error: MetaAPIError) -> bool:
    message = str(error)
    return (
        error.error_code == DELETED_CREATIVE_CODE
        or "does not exist" in message
        or "not found" in message
    )


async def fetch_creative_with_retry(
    client: MetaClient, creative_id: str, max_retries: int = 5
) -> Dict[str, Any]:
    """Read a creative; always returns a dict carrying an asset_feed_spec."""
    for attempt in range(1, max_retries + 1):
        try:
            creative = await client.read_object(creative_id, CREATIVE_FIELDS, endpoint="creative")
        except MetaAPIError as e:
            if _is_deleted(e):
                logger.info(f"🗑️ Creative {creative_id} appears to be deleted")
                return {
                    "_deleted": True,
                    "asset_feed_spec": _marker(DELETED_CREATIVE, "Creative was deleted"),
                }
            if attempt >= max_retries:
                logger.error(f"❌ All {max_retries} attempts failed for creative {creative_id}")
                return {
                    "_fetch_failed": True,
                    "asset_feed_spec": _marker(
                        FETCH_FAILED_EMERGENCY, str(e) or "Unknown fetch error", creative_id=creative_id
                    ),
                }
            logger.warning(f"Creative fetch attempt {attempt} failed for {creative_id}: {e}")
            await pause(backoff_delay(attempt - 1))
            continue

        if not creative.get("asset_feed_spec"):
            creative["asset_feed_spec"] = synthesize_asset_feed_spec(creative)
        return creative

    # max_retries < 1
    return {"_fetch_failed": True, "asset_feed_spec": _marker(FETCH_FAILED_EMERGENCY, "No attempts made", creative_id=creative_id)}


def has_valid_asset_feed_spec(asset_feed_spec: Any) -> bool:
    """False when missing or when it only records a failed fetch."""
    if not asset_feed_spec:
        return False
    if isinstance(asset_feed_spec, dict):
        return asset_feed_spec.get("_fallback_source") not in FAILURE_MARKERS
    return True
