"""MindfulAI — Creative Repair.

Re-fetches creatives for ads whose asset_feed_spec is missing or only holds
a failure marker from an earlier sync.
"""

from typing import Any, Dict, List

from sqlmodel import Session, select

from app.connectors.meta.client import MetaClient
from app.connectors.meta.endpoints import fetch_creative_with_retry, has_valid_asset_feed_spec
from app.connectors.meta.transformer import determine_creative_type
from app.core.logging import get_logger
from app.models.meta_models import MetaAd, utcnow

logger = get_logger("sync.repair")


def ads_needing_repair(session: Session, limit: int | None = None) -> List[MetaAd]:
    ads = session.exec(select(MetaAd).where(MetaAd.creative_id.is_not(None))).all()
    broken = [ad for ad in ads if not has_valid_asset_feed_spec(ad.asset_feed_spec)]
    return broken[:limit] if limit else broken


async def repair_failed_creatives(
    session: Session, client: MetaClient, batch_size: int = 100
) -> Dict[str, Any]:
    ads = ads_needing_repair(session, batch_size)
    updated = 0
    failed = 0
    details: List[Dict[str, Any]] = []

    for ad in ads:
        creative = await fetch_creative_with_retry(client, ad.creative_id)
        spec = creative.get("asset_feed_spec")
        if not has_valid_asset_feed_spec(spec):
            failed += 1
            details.append({"ad_id": ad.ad_id, "status": "failed", "source": (spec or {}).get("_fallback_source")})
            continue

        ad.asset_feed_spec = spec
        ad.object_story_spec = creative.get("object_story_spec") or ad.object_story_spec
        ad.creative_type = determine_creative_type(creative, {})
        ad.image_url = creative.get("image_url") or ad.image_url
        ad.video_id = creative.get("video_id") or ad.video_id
        ad.thumbnail_url = creative.get("thumbnail_url") or ad.thumbnail_url
        ad.updated_at = utcnow()
        session.add(ad)
        session.commit()
        updated += 1
        details.append({"ad_id": ad.ad_id, "status": "updated"})

    logger.info(f"🔧 Creative repair: {len(ads)} processed, {updated} updated, {failed} failed")
    return {"processed": len(ads), "updated": updated, "failed": failed, "details": details}
