"""Phase handlers of the chunked sync worker."""

import asyncio
from unittest.mock import patch

import pytest
from sqlmodel import select

from app.config import settings
from app.connectors.meta.client import MetaAPIError
from app.models.meta_models import (
    AdEngagementMetrics,
    MetaAccountInsights,
    MetaAd,
    MetaAdSet,
    MetaCampaign,
)
from app.sync import jobs
from app.sync.worker import Deadline, SyncError, SyncPayload, SyncWorker
from conftest import FakeClock


def _payload(**kwargs):
    data = {"accountId": "act_123", "requestId": "req-1", "timeframe": "24h"}
    data.update(kwargs)
    return SyncPayload.model_validate(data)


@pytest.fixture
def worker(session, meta_client, queue):
    jobs.create_job(session, "req-1")
    return SyncWorker(session, meta_client, enqueue=queue, deadline=Deadline(budget=60))


def _expired_worker(session, meta_client, queue):
    return SyncWorker(session, meta_client, enqueue=queue, deadline=Deadline(budget=0))


def _seed_account(session):
    session.add(MetaAccountInsights(account_id="act_123", name="Acme"))
    session.commit()


class TestPayload:
    def test_camel_case_round_trip(self):
        payload = _payload(phase="adsets", campaignIds=["c1"])
        message = payload.next(phase="ads", adset_ids=["as1"]).to_message()

        assert message["accountId"] == "act_123"
        assert message["phase"] == "ads"
        assert message["adsetIds"] == ["as1"]
        assert message["campaignIds"] == ["c1"]
        assert "userId" not in message

    def test_phase_resolution(self):
        assert SyncWorker.resolve_phase(_payload(action="getData")) == "account"
        assert SyncWorker.resolve_phase(_payload(action="get24HourData")) == "account"
        assert SyncWorker.resolve_phase(_payload(action="incrementalSync")) == "incremental"
        assert SyncWorker.resolve_phase(_payload(phase="ads")) == "ads"
        with pytest.raises(SyncError):
            SyncWorker.resolve_phase(_payload(action="somethingElse"))


class TestAccountPhase:
    def test_stores_account_and_queues_campaigns(self, worker, session, graph, queue):
        graph.add("act_123", {"name": "Acme", "currency": "EUR", "account_status": 1})
        graph.add("act_123/insights", {"data": [{"impressions": "100", "spend": "12.5"}]})

        result = asyncio.run(worker.run(_payload(phase="account")))

        assert result["status"] == "completed"
        assert result["nextPhase"] == "campaigns"
        row = session.get(MetaAccountInsights, "act_123")
        assert row.name == "Acme"
        assert row.total_impressions == 100
        assert queue.messages[0]["follow_up"] is True
        assert queue.payloads[0]["phase"] == "campaigns"
        job = jobs.get_job(session, "req-1")
        assert job.status == "processing"
        assert job.progress == 40

    def test_deferred_when_out_of_time(self, session, meta_client, queue, graph):
        worker = _expired_worker(session, meta_client, queue)

        result = asyncio.run(worker.run(_payload(phase="account")))

        assert result["status"] == "deferred_due_to_time_limit"
        assert queue.payloads[0]["phase"] == "account"
        assert graph.requests == []

    def test_cancelled_job_does_nothing(self, worker, session, graph, queue):
        jobs.cancel_job(session, "req-1")

        result = asyncio.run(worker.run(_payload(phase="account")))

        assert result == {"phase": "account", "status": "cancelled"}
        assert graph.requests == []
        assert queue.messages == []

    def test_failure_marks_job_failed(self, worker, session, graph):
        graph.error("act_123", 190, "Invalid OAuth access token")

        with pytest.raises(MetaAPIError):
            asyncio.run(worker.run(_payload(phase="account")))

        job = jobs.get_job(session, "req-1")
        assert job.status == "failed"
        assert "Invalid OAuth" in job.error_message


class TestCampaignsPhase:
    def test_stores_page_and_queues_adsets(self, worker, session, graph, queue):
        graph.add("act_123/campaigns", {"data": [{"id": "c1", "name": "One"}, {"id": "c2", "name": "Two"}]})
        graph.add("c1/insights", {"data": [{"impressions": "5", "spend": "1"}]})
        graph.add("c2/insights", {"data": []})

        result = asyncio.run(worker.run(_payload(phase="campaigns")))

        assert result["status"] == "completed"
        assert result["processed"] == 2
        assert session.get(MetaCampaign, "c1").impressions == 5
        assert session.get(MetaCampaign, "c2").impressions == 0
        assert queue.payloads[0]["phase"] == "adsets"
        assert queue.payloads[0]["campaignIds"] == ["c1", "c2"]

    def test_next_page_is_a_follow_up(self, worker, graph, queue):
        graph.add(
            "act_123/campaigns",
            {"data": [{"id": "c1"}], "paging": {"cursors": {"after": "cur"}, "next": "https://next"}},
        )
        graph.add("c1/insights", {"data": []})

        result = asyncio.run(worker.run(_payload(phase="campaigns", campaignIds=["c0"])))

        assert result["status"] == "next_page"
        follow_up = queue.payloads[0]
        assert follow_up["phase"] == "campaigns"
        assert follow_up["after"] == "cur"
        assert follow_up["offset"] == 0
        assert follow_up["campaignIds"] == ["c0", "c1"]

    def test_resumes_from_offset(self, worker, session, graph):
        graph.add("act_123/campaigns", {"data": [{"id": "c1"}, {"id": "c2"}]})
        graph.add("c2/insights", {"data": []})

        asyncio.run(worker.run(_payload(phase="campaigns", offset=1, campaignIds=["c1"])))

        assert session.get(MetaCampaign, "c1") is None
        assert session.get(MetaCampaign, "c2") is not None

    def test_time_limit_mid_page_records_offset(self, session, meta_client, graph, queue):
        jobs.create_job(session, "req-1")
        clock = FakeClock()
        worker = SyncWorker(session, meta_client, enqueue=queue, deadline=Deadline(budget=10, clock=clock))

        def slow_insights(request):
            clock.advance(20)
            return {"data": [{"impressions": "1"}]}

        graph.add("act_123/campaigns", {"data": [{"id": "c1"}, {"id": "c2"}]})
        graph.add("c1/insights", slow_insights)

        result = asyncio.run(worker.run(_payload(phase="campaigns")))

        assert result["status"] == "deferred_due_to_time_limit"
        assert queue.payloads[0]["offset"] == 1
        assert queue.payloads[0]["campaignIds"] == ["c1"]
        assert session.get(MetaCampaign, "c2") is None

    def test_no_campaigns_completes_job(self, worker, session, graph, queue):
        graph.add("act_123/campaigns", {"data": []})

        result = asyncio.run(worker.run(_payload(phase="campaigns")))

        assert result["status"] == "completed"
        assert queue.messages == []
        job = jobs.get_job(session, "req-1")
        assert job.status == "completed"
        assert job.progress == 100
        assert job.result_data["campaigns"] == 0


class TestAdSetsPhase:
    def test_requires_synced_account(self, worker, session):
        with pytest.raises(SyncError):
            asyncio.run(worker.run(_payload(phase="adsets", campaignIds=["c1"])))
        assert jobs.get_job(session, "req-1").status == "failed"

    def test_stores_adsets_and_queues_ads(self, worker, session, graph, queue):
        _seed_account(session)
        graph.add("c1/adsets", {"data": [{"id": "as1", "name": "Set", "campaign_id": "c1"}]})
        graph.add("as1/insights", {"data": []})

        result = asyncio.run(worker.run(_payload(phase="adsets", campaignIds=["c1"])))

        assert result["nextPhase"] == "ads"
        assert session.get(MetaAdSet, "as1").campaign_id == "c1"
        assert queue.payloads[0]["phase"] == "ads"
        assert queue.payloads[0]["adsetIds"] == ["as1"]
        assert queue.payloads[0]["campaignIds"] == []

    def test_falls_back_to_stored_campaigns(self, worker, session, graph, queue):
        _seed_account(session)
        session.add(MetaCampaign(campaign_id="c7", account_id="act_123"))
        session.commit()
        graph.add("c7/adsets", {"data": [{"id": "as7"}]})
        graph.add("as7/insights", {"data": []})

        asyncio.run(worker.run(_payload(phase="adsets")))

        assert session.get(MetaAdSet, "as7").campaign_id == "c7"

    def test_large_batches_are_split(self, worker, session, graph, queue):
        _seed_account(session)
        graph.add("c1/adsets", {"data": [{"id": "as1"}]})
        graph.add("as1/insights", {"data": []})

        with patch.object(settings, "batch_size", 1):
            result = asyncio.run(worker.run(_payload(phase="adsets", campaignIds=["c1", "c2"])))

        assert result["status"] == "partial"
        assert queue.payloads[0]["phase"] == "adsets"
        assert queue.payloads[0]["campaignIds"] == ["c2"]
        assert queue.payloads[0]["adsetIds"] == ["as1"]
        assert graph.calls("c2/adsets") == []

    def test_failed_campaign_is_counted_not_fatal(self, worker, session, graph, queue):
        _seed_account(session)
        graph.error("c1/adsets", 100, "Unsupported get request")
        graph.add("c2/adsets", {"data": [{"id": "as2"}]})
        graph.add("as2/insights", {"data": []})

        result = asyncio.run(worker.run(_payload(phase="adsets", campaignIds=["c1", "c2"])))

        assert result["errors"] == 1
        assert queue.payloads[0]["adsetIds"] == ["as2"]


class TestAdsPhase:
    def test_stores_ads_creatives_and_engagement(self, worker, session, graph, queue):
        graph.add("as1", {"id": "as1", "campaign_id": "c1"})
        graph.add("as1/ads", {"data": [{"id": "ad1", "name": "Ad", "creative": {"id": "cr1"}}]})
        graph.add(
            "ad1/insights",
            {
                "data": [
                    {
                        "impressions": "1000",
                        "video_p25_watched_actions": [{"action_type": "video_view", "value": "100"}],
                    }
                ]
            },
        )
        graph.add("cr1", {"id": "cr1", "video_id": "v1"})

        result = asyncio.run(worker.run(_payload(phase="ads", adsetIds=["as1"])))

        assert result["status"] == "completed"
        assert result["ads"] == 1
        ad = session.get(MetaAd, "ad1")
        assert ad.campaign_id == "c1"
        assert ad.creative_type == "VIDEO"
        assert ad.asset_feed_spec["_fallback_source"] == "VIDEO_ID"
        metrics = session.exec(select(AdEngagementMetrics)).one()
        assert metrics.vtr_percentage == pytest.approx(10.0)
        assert jobs.get_job(session, "req-1").status == "completed"
        assert queue.messages == []

    def test_deleted_creative_still_stores_ad(self, worker, session, graph):
        graph.add("as1", {"id": "as1", "campaign_id": "c1"})
        graph.add("as1/ads", {"data": [{"id": "ad1", "creative": {"id": "cr1"}}]})
        graph.add("ad1/insights", {"data": []})
        graph.error("cr1", 803, "Object does not exist")

        asyncio.run(worker.run(_payload(phase="ads", adsetIds=["as1"])))

        ad = session.get(MetaAd, "ad1")
        assert ad.asset_feed_spec["_fallback_source"] == "DELETED_CREATIVE"

    def test_no_adsets_completes(self, worker, session):
        result = asyncio.run(worker.run(_payload(phase="ads")))
        assert result["status"] == "completed"
        assert jobs.get_job(session, "req-1").status == "completed"

    def test_time_limit_mid_adset_records_offset(self, session, meta_client, graph, queue):
        jobs.create_job(session, "req-1")
        clock = FakeClock()
        worker = SyncWorker(session, meta_client, enqueue=queue, deadline=Deadline(budget=50, clock=clock))

        def slow_insights(request):
            clock.advance(20)
            return {"data": [{"impressions": "1"}]}

        graph.add("as1", {"id": "as1", "campaign_id": "c1"})
        graph.add("as1/ads", {"data": [{"id": f"ad{n}"} for n in range(1, 5)]})
        for n in range(1, 5):
            graph.add(f"ad{n}/insights", slow_insights)

        result = asyncio.run(worker.run(_payload(phase="ads", adsetIds=["as1", "as2"])))

        assert result["status"] == "deferred_due_to_time_limit"
        assert result["ads"] == 3
        follow_up = queue.payloads[0]
        assert follow_up["phase"] == "ads"
        assert follow_up["adsetIds"] == ["as1", "as2"]
        assert follow_up["offset"] == 3
        assert session.get(MetaAd, "ad4") is None
        assert graph.calls("as2/ads") == []
        assert jobs.get_job(session, "req-1").status == "processing"

    def test_resumes_ads_from_offset(self, worker, session, graph, queue):
        graph.add("as1", {"id": "as1", "campaign_id": "c1"})
        graph.add("as1/ads", {"data": [{"id": "ad1"}, {"id": "ad2"}, {"id": "ad3"}]})
        graph.add("ad3/insights", {"data": []})

        result = asyncio.run(worker.run(_payload(phase="ads", adsetIds=["as1"], offset=2)))

        assert result["ads"] == 1
        assert session.get(MetaAd, "ad1") is None
        assert session.get(MetaAd, "ad3") is not None
        assert graph.calls("ad1/insights") == []

    def test_follow_up_never_lowers_progress(self, worker, session, graph, queue):
        jobs.update_job_status(session, "req-1", "processing", 95)
        graph.add("as1", {"id": "as1", "campaign_id": "c1"})
        graph.add("as1/ads", {"data": []})

        with patch.object(settings, "batch_size", 1):
            result = asyncio.run(worker.run(_payload(phase="ads", adsetIds=["as1", "as2"])))

        assert result["status"] == "partial"
        assert queue.payloads[0]["adsetIds"] == ["as2"]
        assert queue.payloads[0]["offset"] == 0
        assert jobs.get_job(session, "req-1").progress == 95

class TestIncrementalPhase:
    def test_refreshes_listed_entities(self, worker, session, graph):
        graph.add("c9", {"id": "c9", "name": "Updated", "status": "PAUSED"})
        graph.add("c9/insights", {"data": []})

        payload = _payload(action="incrementalSync", entityIds={"campaigns": ["c9"]}, reason="webhook_campaign_update")
        result = asyncio.run(worker.run(payload))

        assert result["status"] == "completed"
        assert result["refreshed"] == 1
        assert session.get(MetaCampaign, "c9").name == "Updated"
        assert jobs.get_job(session, "req-1").result_data["reason"] == "webhook_campaign_update"

    def test_leftover_entities_are_a_follow_up(self, session, meta_client, queue, graph):
        jobs.create_job(session, "req-1")
        worker = _expired_worker(session, meta_client, queue)

        payload = _payload(phase="incremental", entityIds={"campaigns": ["c1"], "ads": ["ad1", "ad2"]})
        result = asyncio.run(worker.run(payload))

        assert result["status"] == "partial"
        assert queue.payloads[0]["entityIds"] == {"campaigns": ["c1"], "ads": ["ad1", "ad2"]}
        assert graph.requests == []
