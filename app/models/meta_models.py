"""MindfulAI — Meta Advertising Mirror Tables.

Rows are denormalized snapshots of the vendor hierarchy
(Account → Campaign → AdSet → Ad → Creative). The primary key is always the
vendor ID and every sync overwrites the previous snapshot.
"""

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import JSON, Column
from sqlmodel import SQLModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def JSONField(**kwargs: Any) -> Any:
    """Loosely-typed vendor payload stored as JSON/JSONB."""
    return Field(default=None, sa_column=Column(JSON), **kwargs)


class Account(SQLModel, table=True):
    """Ad accounts the dashboard is authorised to mirror."""

    __tablename__ = "accounts"

    account_id: str = Field(primary_key=True, description="Meta account ID without act_")
    account_name: str = Field(default="")
    created_at: datetime = Field(default_factory=utcnow)


class MetaAccountInsights(SQLModel, table=True):
    """Account-level info plus aggregate insights for the last sync window."""

    __tablename__ = "meta_account_insights"

    account_id: str = Field(primary_key=True, description="act_<id>")
    name: str = ""
    account_status: int = 0
    amount_spent: float = 0.0
    balance: float = 0.0
    currency: str = ""
    spend_cap: Optional[float] = None
    timezone_name: str = ""
    timezone_offset_hours_utc: float = 0.0
    business_country_code: str = ""
    disable_reason: int = 0
    is_prepay_account: bool = False
    tax_id_status: str = ""
    insights_start_date: str = Field(default="", description="YYYY-MM-DD")
    insights_end_date: str = Field(default="", description="YYYY-MM-DD")
    total_impressions: int = 0
    total_clicks: int = 0
    total_reach: int = 0
    total_spend: float = 0.0
    average_cpc: float = 0.0
    average_cpm: float = 0.0
    average_ctr: float = 0.0
    average_frequency: float = 0.0
    actions: Any = JSONField()
    action_values: Any = JSONField()
    cost_per_action_type: Any = JSONField()
    cost_per_unique_click: float = 0.0
    outbound_clicks: Any = JSONField()
    outbound_clicks_ctr: float = 0.0
    website_ctr: Any = JSONField()
    website_purchase_roas: float = 0.0
    is_data_complete: bool = True
    last_updated: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class MetaCampaign(SQLModel, table=True):
    __tablename__ = "meta_campaigns"

    campaign_id: str = Field(primary_key=True)
    account_id: str = Field(index=True)
    name: str = ""
    status: str = "UNKNOWN"
    configured_status: Optional[str] = None
    effective_status: Optional[str] = None
    objective: str = ""
    buying_type: Optional[str] = None
    bid_strategy: Optional[str] = None
    daily_budget: Optional[float] = None
    lifetime_budget: Optional[float] = None
    budget_remaining: Optional[float] = None
    spend_cap: Optional[float] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    promoted_object: Any = JSONField()
    pacing_type: Any = JSONField()
    special_ad_categories: Any = JSONField()
    source_campaign_id: Optional[str] = None
    topline_id: Optional[str] = None
    recommendations: Any = JSONField()
    impressions: int = 0
    clicks: int = 0
    reach: int = 0
    spend: float = 0.0
    conversions: Any = JSONField()
    cost_per_conversion: Optional[float] = None
    last_updated: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class MetaAdSet(SQLModel, table=True):
    __tablename__ = "meta_ad_sets"

    ad_set_id: str = Field(primary_key=True)
    campaign_id: str = Field(index=True)
    account_id: str = Field(index=True)
    name: str = ""
    status: str = "UNKNOWN"
    configured_status: Optional[str] = None
    effective_status: Optional[str] = None
    optimization_goal: Optional[str] = None
    billing_event: Optional[str] = None
    bid_amount: Optional[float] = None
    bid_strategy: Optional[str] = None
    daily_budget: Optional[float] = None
    lifetime_budget: Optional[float] = None
    targeting: Any = JSONField()
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    attribution_spec: Any = JSONField()
    destination_type: Optional[str] = None
    frequency_control_specs: Any = JSONField()
    is_dynamic_creative: Optional[bool] = None
    issues_info: Any = JSONField()
    learning_stage_info: Any = JSONField()
    pacing_type: Any = JSONField()
    promoted_object: Any = JSONField()
    source_adset_id: Optional[str] = None
    targeting_optimization_types: Any = JSONField()
    use_new_app_click: Optional[bool] = None
    impressions: int = 0
    clicks: int = 0
    reach: int = 0
    spend: float = 0.0
    conversions: Any = JSONField()
    cost_per_conversion: Optional[float] = None
    last_updated: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class MetaAd(SQLModel, table=True):
    __tablename__ = "meta_ads"

    ad_id: str = Field(primary_key=True)
    ad_set_id: str = Field(index=True)
    campaign_id: Optional[str] = Field(default=None, index=True)
    account_id: str = Field(index=True)
    name: str = ""
    status: str = "UNKNOWN"
    configured_status: Optional[str] = None
    effective_status: Optional[str] = None
    creative: Any = JSONField()
    creative_id: Optional[str] = Field(default=None, index=True)
    creative_type: str = "UNKNOWN"
    asset_feed_spec: Any = JSONField()
    object_story_spec: Any = JSONField()
    tracking_specs: Any = JSONField()
    conversion_specs: Any = JSONField()
    tracking_and_conversion_specs: Any = JSONField()
    source_ad_id: Optional[str] = None
    recommendations: Any = JSONField()
    issues_info: Any = JSONField()
    engagement_audience: Optional[bool] = None
    preview_url: Optional[str] = None
    template_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    image_url: Optional[str] = None
    video_id: Optional[str] = None
    instagram_permalink_url: Optional[str] = None
    effective_object_story_id: Optional[str] = None
    url_tags: Optional[str] = None
    impressions: int = 0
    clicks: int = 0
    reach: int = 0
    spend: float = 0.0
    conversions: Any = JSONField()
    cost_per_conversion: Optional[float] = None
    last_updated: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class AdEngagementMetrics(SQLModel, table=True):
    """Per-ad, per-day engagement and video metrics.

    A row is written for every synced ad, even when Meta returned no
    insights, so downstream charts can tell "no data" from "not synced".
    """

    __tablename__ = "ad_engagement_metrics"

    ad_id: str = Field(primary_key=True)
    date: str = Field(primary_key=True, description="YYYY-MM-DD")
    inline_link_clicks: Optional[int] = None
    inline_post_engagement: Optional[int] = None
    video_30s_watched: Optional[int] = None
    video_25_percent_watched: Optional[int] = None
    video_50_percent_watched: Optional[int] = None
    video_75_percent_watched: Optional[int] = None
    video_95_percent_watched: Optional[int] = None
    page_engagement: Optional[int] = None
    post_engagement: Optional[int] = None
    post_comments: Optional[int] = None
    two_sec_video_views: Optional[int] = None
    three_sec_video_views: Optional[int] = None
    thruplays: Optional[int] = None
    cost_per_link_click: Optional[float] = None
    cost_per_post_engagement: Optional[float] = None
    cost_per_page_engagement: Optional[float] = None
    cost_per_thruplay: Optional[float] = None
    cost_per_2sec_view: Optional[float] = None
    cost_per_3sec_view: Optional[float] = None
    avg_watch_time_seconds: Optional[float] = None
    vtr_percentage: Optional[float] = None
    hook_rate_percentage: Optional[float] = None
    last_updated: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
