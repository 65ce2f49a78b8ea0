"""MindfulAI — Meta Raw → Mirror Row Transformer.

Turns raw Graph API objects (plus their insights) into the column dicts the
store upserts. Builders are pure; timestamps are stamped by the store.
"""

from typing import Any, Dict, List, Optional

from app.connectors.meta.client import to_act_id
from app.core.logging import get_logger

logger = get_logger("meta.transformer")

VALID_STATUSES = ("ACTIVE", "PAUSED", "DELETED", "ARCHIVED")

OBJECTIVE_MAP = {
    "AWARENESS": "OUTCOME_AWARENESS",
    "REACH": "OUTCOME_AWARENESS",
    "BRAND_AWARENESS": "OUTCOME_AWARENESS",
    "ENGAGEMENT": "OUTCOME_ENGAGEMENT",
    "POST_ENGAGEMENT": "OUTCOME_ENGAGEMENT",
    "PAGE_LIKES": "OUTCOME_ENGAGEMENT",
    "EVENT_RESPONSES": "OUTCOME_ENGAGEMENT",
    "VIDEO_VIEWS": "OUTCOME_ENGAGEMENT",
    "SALES": "OUTCOME_SALES",
    "PRODUCT_CATALOG_SALES": "OUTCOME_SALES",
    "STORE_TRAFFIC": "OUTCOME_SALES",
    "LINK_CLICKS": "OUTCOME_TRAFFIC",
    "WEBSITE_TRAFFIC": "OUTCOME_TRAFFIC",
    "LEAD_GENERATION": "OUTCOME_LEADS",
    "LEADS": "OUTCOME_LEADS",
    "APP_INSTALLS": "OUTCOME_APP_PROMOTION",
    "MOBILE_APP_INSTALLS": "OUTCOME_APP_PROMOTION",
    "APP_ENGAGEMENT": "OUTCOME_APP_PROMOTION",
    "MOBILE_APP_ENGAGEMENT": "OUTCOME_APP_PROMOTION",
    "CONVERSIONS": "OUTCOME_CONVERSIONS",
    "WEBSITE_CONVERSIONS": "OUTCOME_CONVERSIONS",
}
VALID_OBJECTIVES = frozenset(OBJECTIVE_MAP.values())


# ── Parsing helpers ──


def safe_int(value: Any, default: Optional[int] = 0) -> Optional[int]:
    """Parse an int the way Meta sends them (usually strings)."""
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        pass
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return default


def safe_float(value: Any, default: Optional[float] = 0.0) -> Optional[float]:
    if value is None:
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def optional_float(value: Any) -> Optional[float]:
    """Budget-style fields: missing or empty stays None."""
    if not value:
        return None
    return safe_float(value, None)


def first_value(entries: Any) -> Any:
    """`[{"action_type": ..., "value": "12"}]` → "12"."""
    if isinstance(entries, list):
        return entries[0].get("value") if entries and isinstance(entries[0], dict) else None
    return entries


def action_value(entries: Any, action_type: str) -> Any:
    for entry in entries or []:
        if isinstance(entry, dict) and entry.get("action_type") == action_type:
            return entry.get("value")
    return None


def map_status(status: Optional[str]) -> str:
    upper = (status or "").upper()
    if upper in VALID_STATUSES:
        return upper
    logger.warning(f"Could not map status '{status}', using PAUSED")
    return "PAUSED"


def map_objective(objective: Optional[str]) -> str:
    upper = (objective or "").upper()
    if upper in VALID_OBJECTIVES:
        return upper
    if upper in OBJECTIVE_MAP:
        return OBJECTIVE_MAP[upper]
    logger.warning(f"Could not map objective '{objective}', using OUTCOME_AWARENESS")
    return "OUTCOME_AWARENESS"


# ── Insight snapshot shared by campaign / ad set / ad ──


def insights_snapshot(insights: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Spend/volume columns plus a conversions map.

    cost_per_conversion is spend over the summed action values, or None
    when there are no actions to divide by.
    """
    insights = insights or {}
    actions: List[Dict[str, Any]] = insights.get("actions") or []
    spend = safe_float(insights.get("spend"))
    conversions = {a.get("action_type"): a.get("value") for a in actions} if actions else None
    total_actions = sum(safe_int(a.get("value")) for a in actions)
    return {
        "impressions": safe_int(insights.get("impressions")),
        "clicks": safe_int(insights.get("clicks")),
        "reach": safe_int(insights.get("reach")),
        "spend": spend,
        "conversions": conversions,
        "cost_per_conversion": spend / total_actions if total_actions else None,
    }


# ── Row builders ──


def account_insights_row(
    account_id: str,
    info: Dict[str, Any],
    insights: Optional[Dict[str, Any]],
    date_range: Dict[str, str],
) -> Dict[str, Any]:
    insights = insights or {}
    return {
        "account_id": to_act_id(account_id),
        "name": info.get("name") or "",
        "account_status": safe_int(info.get("account_status")),
        "amount_spent": safe_float(info.get("amount_spent")),
        "balance": safe_float(info.get("balance")),
        "currency": info.get("currency") or "",
        "spend_cap": optional_float(info.get("spend_cap")),
        "timezone_name": info.get("timezone_name") or "",
        "timezone_offset_hours_utc": safe_float(info.get("timezone_offset_hours_utc")),
        "business_country_code": info.get("business_country_code") or "",
        "disable_reason": safe_int(info.get("disable_reason")),
        "is_prepay_account": bool(info.get("is_prepay_account", False)),
        "tax_id_status": str(info.get("tax_id_status") or ""),
        "insights_start_date": date_range["since"],
        "insights_end_date": date_range["until"],
        "total_impressions": safe_int(insights.get("impressions")),
        "total_clicks": safe_int(insights.get("clicks")),
        "total_reach": safe_int(insights.get("reach")),
        "total_spend": safe_float(insights.get("spend")),
        "average_cpc": safe_float(insights.get("cpc")),
        "average_cpm": safe_float(insights.get("cpm")),
        "average_ctr": safe_float(insights.get("ctr")),
        "average_frequency": safe_float(insights.get("frequency")),
        "actions": insights.get("actions") or [],
        "action_values": insights.get("action_values") or [],
        "cost_per_action_type": insights.get("cost_per_action_type") or [],
        "cost_per_unique_click": safe_float(insights.get("cost_per_unique_click")),
        "outbound_clicks": insights.get("outbound_clicks") or [],
        "outbound_clicks_ctr": safe_float(first_value(insights.get("outbound_clicks_ctr"))),
        "website_ctr": insights.get("website_ctr") or [],
        "website_purchase_roas": safe_float(first_value(insights.get("website_purchase_roas"))),
        "is_data_complete": True,
    }


def campaign_row(
    campaign: Dict[str, Any], account_id: str, insights: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    return {
        "campaign_id": campaign["id"],
        "account_id": to_act_id(account_id),
        "name": campaign.get("name") or "",
        "status": campaign.get("status") or "UNKNOWN",
        "configured_status": campaign.get("configured_status"),
        "effective_status": campaign.get("effective_status"),
        "objective": campaign.get("objective") or "",
        "buying_type": campaign.get("buying_type"),
        "bid_strategy": campaign.get("bid_strategy"),
        "daily_budget": optional_float(campaign.get("daily_budget")),
        "lifetime_budget": optional_float(campaign.get("lifetime_budget")),
        "budget_remaining": optional_float(campaign.get("budget_remaining")),
        "spend_cap": optional_float(campaign.get("spend_cap")),
        "start_time": campaign.get("start_time"),
        "end_time": campaign.get("stop_time"),
        "promoted_object": campaign.get("promoted_object"),
        "pacing_type": campaign.get("pacing_type"),
        "special_ad_categories": campaign.get("special_ad_categories") or [],
        "source_campaign_id": campaign.get("source_campaign_id"),
        "topline_id": campaign.get("topline_id"),
        "recommendations": campaign.get("recommendations"),
        **insights_snapshot(insights),
    }


def adset_row(
    adset: Dict[str, Any],
    campaign_id: str,
    account_id: str,
    insights: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    return {
        "ad_set_id": adset["id"],
        "campaign_id": adset.get("campaign_id") or campaign_id,
        "account_id": to_act_id(account_id),
        "name": adset.get("name") or "",
        "status": adset.get("status") or "UNKNOWN",
        "configured_status": adset.get("configured_status"),
        "effective_status": adset.get("effective_status"),
        "optimization_goal": adset.get("optimization_goal"),
        "billing_event": adset.get("billing_event"),
        "bid_amount": optional_float(adset.get("bid_amount")),
        "bid_strategy": adset.get("bid_strategy"),
        "daily_budget": optional_float(adset.get("daily_budget")),
        "lifetime_budget": optional_float(adset.get("lifetime_budget")),
        "targeting": adset.get("targeting"),
        "start_time": adset.get("start_time"),
        "end_time": adset.get("end_time"),
        "attribution_spec": adset.get("attribution_spec"),
        "destination_type": adset.get("destination_type"),
        "frequency_control_specs": adset.get("frequency_control_specs"),
        "is_dynamic_creative": adset.get("is_dynamic_creative"),
        "issues_info": adset.get("issues_info"),
        "learning_stage_info": adset.get("learning_stage_info"),
        "pacing_type": adset.get("pacing_type"),
        "promoted_object": adset.get("promoted_object"),
        "source_adset_id": adset.get("source_adset_id"),
        "targeting_optimization_types": adset.get("targeting_optimization_types"),
        "use_new_app_click": adset.get("use_new_app_click"),
        **insights_snapshot(insights),
    }


def ad_row(
    ad: Dict[str, Any],
    adset_id: str,
    campaign_id: Optional[str],
    account_id: str,
    creative: Optional[Dict[str, Any]] = None,
    insights: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Ad row with the fetched creative merged in.

    Any ad that references a creative always carries an asset_feed_spec,
    even if only a failure marker.
    """
    creative = creative or {}
    creative_ref = ad.get("creative") or {}
    creative_id = creative_ref.get("id")
    asset_feed_spec = creative.get("asset_feed_spec")
    if creative_id and not asset_feed_spec:
        asset_feed_spec = {
            "_fallback_source": "VALIDATION_FAILURE",
            "error": "creative_id present but no asset_feed_spec",
            "creative_id": creative_id,
            "ad_id": ad["id"],
        }
    return {
        "ad_id": ad["id"],
        "ad_set_id": ad.get("adset_id") or adset_id,
        "campaign_id": ad.get("campaign_id") or campaign_id,
        "account_id": to_act_id(account_id),
        "name": ad.get("name") or "",
        "status": ad.get("status") or "UNKNOWN",
        "configured_status": ad.get("configured_status"),
        "effective_status": ad.get("effective_status"),
        "creative": creative_ref or None,
        "creative_id": creative_id,
        "creative_type": determine_creative_type(creative or None, ad),
        "asset_feed_spec": asset_feed_spec if creative_id else None,
        "object_story_spec": creative.get("object_story_spec"),
        "tracking_specs": ad.get("tracking_specs"),
        "conversion_specs": ad.get("conversion_specs"),
        "tracking_and_conversion_specs": ad.get("tracking_and_conversion_specs"),
        "source_ad_id": ad.get("source_ad_id"),
        "recommendations": ad.get("recommendations"),
        "issues_info": ad.get("issues_info"),
        "engagement_audience": ad.get("engagement_audience"),
        "preview_url": ad.get("preview_url"),
        "template_url": ad.get("template_url") or creative.get("template_url"),
        "thumbnail_url": ad.get("thumbnail_url") or creative.get("thumbnail_url"),
        "image_url": creative.get("image_url"),
        "video_id": creative.get("video_id"),
        "instagram_permalink_url": ad.get("instagram_permalink_url") or creative.get("instagram_permalink_url"),
        "effective_object_story_id": ad.get("effective_object_story_id") or creative.get("effective_object_story_id"),
        "url_tags": ad.get("url_tags") or creative.get("url_tags"),
        **insights_snapshot(insights),
    }


def engagement_row(ad_id: str, insights: Optional[Dict[str, Any]], day: str) -> Dict[str, Any]:
    """Per-day engagement metrics; every metric is None without insights."""
    row: Dict[str, Any] = {"ad_id": ad_id, "date": day}
    insights = insights or {}
    actions = insights.get("actions")
    costs = insights.get("cost_per_action_type")

    def count(value: Any) -> Optional[int]:
        return safe_int(value, None) if value is not None else None

    def cost(value: Any) -> Optional[float]:
        return safe_float(value, None) if value is not None else None

    row.update(
        inline_link_clicks=count(insights.get("inline_link_clicks")),
        inline_post_engagement=count(insights.get("inline_post_engagement")),
        video_30s_watched=count(first_value(insights.get("video_30_sec_watched_actions"))),
        video_25_percent_watched=count(first_value(insights.get("video_p25_watched_actions"))),
        video_50_percent_watched=count(first_value(insights.get("video_p50_watched_actions"))),
        video_75_percent_watched=count(first_value(insights.get("video_p75_watched_actions"))),
        video_95_percent_watched=count(first_value(insights.get("video_p95_watched_actions"))),
        page_engagement=count(action_value(actions, "page_engagement")),
        post_engagement=count(action_value(actions, "post_engagement")),
        post_comments=count(action_value(actions, "comment")),
        two_sec_video_views=count(first_value(insights.get("video_continuous_2_sec_watched_actions"))),
        three_sec_video_views=count(action_value(actions, "video_view")),
        thruplays=count(first_value(insights.get("video_thruplay_watched_actions"))),
        cost_per_link_click=cost(action_value(costs, "link_click")),
        cost_per_post_engagement=cost(action_value(costs, "post_engagement")),
        cost_per_page_engagement=cost(action_value(costs, "page_engagement")),
        cost_per_thruplay=cost(action_value(costs, "video_thruplay_watched")),
        cost_per_2sec_view=cost(action_value(costs, "video_continuous_2_sec_watched")),
        cost_per_3sec_view=cost(action_value(costs, "video_view")),
        avg_watch_time_seconds=cost(first_value(insights.get("video_avg_time_watched_actions"))),
    )

    impressions = safe_int(insights.get("impressions"))
    p25 = row["video_25_percent_watched"]
    two_sec = row["two_sec_video_views"]
    row["vtr_percentage"] = p25 / impressions * 100 if p25 is not None and impressions else None
    row["hook_rate_percentage"] = (
        two_sec / impressions * 100 if two_sec is not None and impressions else None
    )
    return row


def _media_type(spec: Optional[Dict[str, Any]]) -> Optional[str]:
    if not isinstance(spec, dict):
        return None
    if spec.get("videos"):
        return "VIDEO"
    if spec.get("images"):
        return "IMAGE"
    return None


def _link_data_type(object_story_spec: Optional[Dict[str, Any]]) -> Optional[str]:
    link_data = (object_story_spec or {}).get("link_data") or {}
    if link_data.get("video_id"):
        return "VIDEO"
    if link_data.get("image_hash") or link_data.get("picture"):
        return "IMAGE"
    return None


def determine_creative_type(creative: Optional[Dict[str, Any]], ad: Dict[str, Any]) -> str:
    """VIDEO, IMAGE or UNKNOWN from whatever media references exist."""
    if not creative:
        return (
            _media_type(ad.get("asset_feed_spec"))
            or _link_data_type(ad.get("object_story_spec"))
            or "UNKNOWN"
        )
    if creative.get("video_id"):
        return "VIDEO"
    if creative.get("image_url") or creative.get("thumbnail_url"):
        return "IMAGE"
    return (
        _link_data_type(creative.get("object_story_spec"))
        or _media_type(creative.get("asset_feed_spec"))
        or "UNKNOWN"
    )
