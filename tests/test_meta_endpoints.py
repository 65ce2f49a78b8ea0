"""Fetchers: date ranges, insights fallbacks and creative retrieval."""

import asyncio
import json
from datetime import date

from app.connectors.meta import endpoints
from app.connectors.meta.endpoints import (
    DELETED_CREATIVE,
    FAILED_TO_EXTRACT,
    FETCH_FAILED_EMERGENCY,
    MINIMAL_INSIGHT_FIELDS,
    REDUCED_INSIGHT_FIELDS,
    SIMPLE_INSIGHT_FIELDS,
    date_range,
    has_valid_asset_feed_spec,
    synthesize_asset_feed_spec,
)


def _time_range(request):
    return json.loads(request.url.params["time_range"])


class TestDateRange:
    def test_24h(self):
        assert date_range("24h", today=date(2024, 3, 15)) == {"since": "2024-03-14", "until": "2024-03-15"}

    def test_fixed_windows(self):
        assert date_range("7d", today=date(2024, 3, 15))["since"] == "2024-03-08"
        assert date_range("30d", today=date(2024, 3, 15))["since"] == "2024-02-14"

    def test_six_months(self):
        assert date_range("6-month", today=date(2024, 3, 15))["since"] == "2023-09-15"

    def test_six_months_clamps_month_end(self):
        assert date_range("6-month", today=date(2024, 8, 31))["since"] == "2024-02-29"


class TestInsights:
    def test_returns_first_row(self, graph, meta_client):
        graph.add("c1/insights", {"data": [{"impressions": "10"}, {"impressions": "99"}]})

        result = asyncio.run(endpoints.fetch_insights(meta_client, "c1", "24h"))

        assert result == {"impressions": "10"}
        assert len(graph.requests) == 1

    def test_six_month_falls_back_to_30_then_7_days(self, graph, meta_client):
        graph.add("c1/insights", {"data": []})
        graph.add("c1/insights", {"data": []})
        graph.add("c1/insights", {"data": [{"impressions": "3"}]})

        result = asyncio.run(endpoints.fetch_insights(meta_client, "c1", "6-month"))

        assert result == {"impressions": "3"}
        reduced, minimal = graph.requests[1], graph.requests[2]
        assert reduced.url.params["fields"] == ",".join(REDUCED_INSIGHT_FIELDS)
        assert minimal.url.params["fields"] == ",".join(MINIMAL_INSIGHT_FIELDS)
        since_30 = date.fromisoformat(_time_range(reduced)["since"])
        since_7 = date.fromisoformat(_time_range(minimal)["since"])
        assert (since_7 - since_30).days == 23

    def test_short_timeframe_skips_30_day_fallback(self, graph, meta_client):
        graph.add("c1/insights", {"data": []})

        assert asyncio.run(endpoints.fetch_insights(meta_client, "c1", "24h")) is None
        assert len(graph.requests) == 2

    def test_no_data_error_gets_simplified_retry(self, graph, meta_client):
        graph.error("c1/insights", 100, "No data available for this period")
        graph.add("c1/insights", {"data": [{"spend": "1.00"}]})

        result = asyncio.run(endpoints.fetch_insights(meta_client, "c1", "24h"))

        assert result == {"spend": "1.00"}
        assert graph.requests[1].url.params["fields"] == ",".join(SIMPLE_INSIGHT_FIELDS)

    def test_other_errors_yield_none(self, graph, meta_client):
        graph.error("c1/insights", 190, "Invalid token")
        assert asyncio.run(endpoints.fetch_insights(meta_client, "c1", "24h")) is None

    def test_account_insights_use_account_level(self, graph, meta_client):
        graph.add("act_123/insights", {"data": [{"impressions": "5"}]})

        result = asyncio.run(endpoints.fetch_account_insights(meta_client, "123", "6-month"))

        assert result == {"impressions": "5"}
        assert graph.requests[0].url.params["level"] == "account"


def test_campaign_page_passes_cursor(graph, meta_client):
    graph.add("act_123/campaigns", {"data": [{"id": "c1"}], "paging": {"cursors": {"after": "x"}, "next": "n"}})

    page = asyncio.run(endpoints.fetch_campaigns_page(meta_client, "123", after="prev", limit=50))

    params = graph.requests[0].url.params
    assert params["after"] == "prev"
    assert params["limit"] == "50"
    assert page.has_next and page.after == "x"


class TestCreatives:
    def test_existing_asset_feed_spec_is_kept(self, graph, meta_client):
        spec = {"videos": [{"video_id": "v1"}]}
        graph.add("cr1", {"id": "cr1", "asset_feed_spec": spec})

        creative = asyncio.run(endpoints.fetch_creative_with_retry(meta_client, "cr1"))

        assert creative["asset_feed_spec"] == spec

    def test_missing_spec_is_synthesized(self, graph, meta_client):
        graph.add("cr1", {"id": "cr1", "video_id": "v1", "thumbnail_url": "https://t"})

        creative = asyncio.run(endpoints.fetch_creative_with_retry(meta_client, "cr1"))

        assert creative["asset_feed_spec"] == {
            "_fallback_source": "VIDEO_ID",
            "videos": [{"video_id": "v1", "thumbnail_url": "https://t"}],
        }

    def test_deleted_creative_is_not_retried(self, graph, meta_client):
        graph.error("cr1", 803, "Some of the aliases you requested do not exist")

        creative = asyncio.run(endpoints.fetch_creative_with_retry(meta_client, "cr1"))

        assert creative["_deleted"] is True
        assert creative["asset_feed_spec"]["_fallback_source"] == DELETED_CREATIVE
        assert len(graph.requests) == 1

    def test_persistent_failure_yields_emergency_marker(self, graph, meta_client, pauses):
        graph.error("cr1", 2, "Service temporarily unavailable")

        creative = asyncio.run(endpoints.fetch_creative_with_retry(meta_client, "cr1", max_retries=3))

        assert creative["_fetch_failed"] is True
        assert creative["asset_feed_spec"]["_fallback_source"] == FETCH_FAILED_EMERGENCY
        assert creative["asset_feed_spec"]["creative_id"] == "cr1"
        assert len(graph.requests) == 3
        assert len(pauses) == 2

    def test_synthesize_from_link_data(self):
        spec = synthesize_asset_feed_spec(
            {
                "object_story_spec": {
                    "link_data": {
                        "image_hash": "abc",
                        "link": "https://shop.example.com",
                        "call_to_action": {"type": "SHOP_NOW"},
                    }
                }
            }
        )
        assert spec["_fallback_source"] == "OBJECT_STORY_SPEC"
        assert spec["images"] == [{"image_hash": "abc"}]
        assert spec["link_url"] == "https://shop.example.com"
        assert spec["call_to_action"] == {"type": "SHOP_NOW"}

    def test_synthesize_from_image_url(self):
        spec = synthesize_asset_feed_spec({"image_url": "https://img"})
        assert spec == {"_fallback_source": "IMAGE_URL", "images": [{"url": "https://img"}]}

    def test_synthesize_nothing_to_extract(self):
        assert synthesize_asset_feed_spec({})["_fallback_source"] == FAILED_TO_EXTRACT

    def test_validity(self):
        assert not has_valid_asset_feed_spec(None)
        assert not has_valid_asset_feed_spec({})
        assert not has_valid_asset_feed_spec({"_fallback_source": DELETED_CREATIVE})
        assert not has_valid_asset_feed_spec({"_fallback_source": FETCH_FAILED_EMERGENCY})
        assert has_valid_asset_feed_spec({"_fallback_source": "VIDEO_ID", "videos": []})
        assert has_valid_asset_feed_spec({"images": [{"image_hash": "h"}]})
