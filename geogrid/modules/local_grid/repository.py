"""Persistence operations for campaigns, scans, point results, and competitor stats.

Every function opens its own ``get_session()`` unit of work. Returned ORM
objects are detached but fully loaded (the session factory disables
expire-on-commit), so callers may read their columns freely.
"""

import calendar
import logging
from collections.abc import Iterable
from datetime import datetime, timedelta, timezone
from typing import Optional

from geogrid.database import get_session
from geogrid.models.local_grid import (
    CompetitorStat,
    GridPointResult,
    GridScan,
    LocalCampaign,
)
from geogrid.modules.local_grid.business_matcher import normalize_business_name
from geogrid.modules.local_grid.types import (
    AggregatedCompetitorStats,
    KeywordScanResult,
    ScanAggregationResult,
)

logger = logging.getLogger(__name__)

CAMPAIGN_ACTIVE = "active"
CAMPAIGN_PAUSED = "paused"

SCAN_PENDING = "pending"
SCAN_SCANNING = "scanning"
SCAN_COMPLETED = "completed"
SCAN_FAILED = "failed"
SCAN_CANCELLED = "cancelled"

SCAN_FREQUENCIES = ("daily", "weekly", "monthly")

_STAT_SORT_FIELDS = {
    "avg_rank": CompetitorStat.avg_rank.asc(),
    "share_of_voice": CompetitorStat.share_of_voice.desc(),
    "times_in_top3": CompetitorStat.times_in_top3.desc(),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _add_months(value: datetime, months: int) -> datetime:
    """Shift by calendar months, clamping the day to the target month's length."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def next_scan_time(last_scan_at: datetime, scan_frequency: str) -> datetime:
    """Return when a campaign scanned at ``last_scan_at`` is next due.

    Examples:
        >>> next_scan_time(datetime(2025, 1, 31), "monthly")
        datetime.datetime(2025, 2, 28, 0, 0)
    """
    if scan_frequency == "daily":
        return last_scan_at + timedelta(days=1)
    if scan_frequency == "weekly":
        return last_scan_at + timedelta(days=7)
    if scan_frequency == "monthly":
        return _add_months(last_scan_at, 1)
    raise ValueError(
        f"Unsupported scan frequency {scan_frequency!r}; expected one of {SCAN_FREQUENCIES}"
    )


# ------------------------------------------------------------------
# Campaigns
# ------------------------------------------------------------------

def create_campaign(
    business_name: str,
    center_lat: float,
    center_lng: float,
    keywords: list[str],
    grid_size: int = 7,
    grid_radius_miles: float = 5.0,
    scan_frequency: str = "weekly",
    gmb_place_id: Optional[str] = None,
    gmb_cid: Optional[str] = None,
) -> LocalCampaign:
    """Create an active campaign that is due for its first scan immediately."""
    if scan_frequency not in SCAN_FREQUENCIES:
        raise ValueError(
            f"Unsupported scan frequency {scan_frequency!r}; expected one of {SCAN_FREQUENCIES}"
        )
    with get_session() as session:
        campaign = LocalCampaign(
            business_name=business_name,
            center_lat=center_lat,
            center_lng=center_lng,
            keywords_json=[kw.strip() for kw in keywords if kw.strip()],
            grid_size=grid_size,
            grid_radius_miles=grid_radius_miles,
            scan_frequency=scan_frequency,
            status=CAMPAIGN_ACTIVE,
            gmb_place_id=gmb_place_id,
            gmb_cid=gmb_cid,
            next_scan_at=_utcnow(),
        )
        session.add(campaign)
        session.flush()
        logger.info(
            "Created campaign %d for %r (%dx%d, %.1f mi, %d keywords)",
            campaign.id, business_name, grid_size, grid_size,
            grid_radius_miles, len(campaign.keywords_json),
        )
        return campaign


def get_campaign(campaign_id: int) -> Optional[LocalCampaign]:
    with get_session() as session:
        return session.get(LocalCampaign, campaign_id)


def list_campaigns(status: Optional[str] = None, limit: int = 50) -> list[LocalCampaign]:
    """Return campaigns, most recently updated first."""
    with get_session() as session:
        query = session.query(LocalCampaign)
        if status:
            query = query.filter(LocalCampaign.status == status)
        return (
            query.order_by(LocalCampaign.updated_at.desc(), LocalCampaign.id.desc())
            .limit(limit)
            .all()
        )


def update_campaign_status(campaign_id: int, status: str) -> None:
    with get_session() as session:
        campaign = session.get(LocalCampaign, campaign_id)
        if campaign is None:
            raise LookupError(f"Campaign not found: {campaign_id}")
        campaign.status = status
    logger.info("Campaign %d status -> %s", campaign_id, status)


def update_campaign_schedule(
    campaign_id: int,
    last_scan_at: datetime,
    scan_frequency: str,
) -> datetime:
    """Record a finished scan and compute the campaign's next due time.

    Daily adds one day, weekly seven days, monthly one calendar month.
    """
    next_scan_at = next_scan_time(last_scan_at, scan_frequency)
    with get_session() as session:
        campaign = session.get(LocalCampaign, campaign_id)
        if campaign is None:
            raise LookupError(f"Campaign not found: {campaign_id}")
        campaign.last_scan_at = last_scan_at
        campaign.next_scan_at = next_scan_at
    logger.info("Campaign %d next scan at %s", campaign_id, next_scan_at.isoformat())
    return next_scan_at


def get_campaigns_due_for_scan(
    limit: int = 20,
    now: Optional[datetime] = None,
) -> list[LocalCampaign]:
    """Active campaigns whose next scan time has passed, oldest due first."""
    now = now or _utcnow()
    with get_session() as session:
        return (
            session.query(LocalCampaign)
            .filter(
                LocalCampaign.status == CAMPAIGN_ACTIVE,
                LocalCampaign.next_scan_at.is_not(None),
                LocalCampaign.next_scan_at <= now,
            )
            .order_by(LocalCampaign.next_scan_at.asc())
            .limit(limit)
            .all()
        )


# ------------------------------------------------------------------
# Grid scans
# ------------------------------------------------------------------

def create_grid_scan(campaign_id: int) -> int:
    with get_session() as session:
        scan = GridScan(campaign_id=campaign_id, status=SCAN_PENDING, progress=0)
        session.add(scan)
        session.flush()
        logger.debug("Created grid scan %d for campaign %d", scan.id, campaign_id)
        return scan.id


def _update_scan(scan_id: int, **fields) -> None:
    with get_session() as session:
        scan = session.get(GridScan, scan_id)
        if scan is None:
            raise LookupError(f"Grid scan not found: {scan_id}")
        for name, value in fields.items():
            setattr(scan, name, value)


def start_grid_scan(scan_id: int) -> None:
    _update_scan(scan_id, status=SCAN_SCANNING, started_at=_utcnow())


def update_scan_progress(
    scan_id: int,
    progress: int,
    points_completed: Optional[int] = None,
) -> None:
    """Store progress as a percentage clamped to 0..100."""
    fields = {"progress": min(100, max(0, int(progress)))}
    if points_completed is not None:
        fields["points_completed"] = points_completed
    _update_scan(scan_id, **fields)


def complete_grid_scan(
    scan_id: int,
    avg_rank: Optional[float],
    share_of_voice: float,
    top_competitor: Optional[str],
    api_calls_used: int,
    estimated_cost: float,
    failed_points: int,
) -> None:
    _update_scan(
        scan_id,
        status=SCAN_COMPLETED,
        completed_at=_utcnow(),
        progress=100,
        avg_rank=avg_rank,
        share_of_voice=share_of_voice,
        top_competitor=top_competitor,
        api_calls_used=api_calls_used,
        estimated_cost=estimated_cost,
        failed_points=failed_points,
    )
    logger.info("Grid scan %d completed (%d calls, %d failed)", scan_id, api_calls_used, failed_points)


def cancel_grid_scan(scan_id: int, api_calls_used: int, failed_points: int) -> None:
    _update_scan(
        scan_id,
        status=SCAN_CANCELLED,
        completed_at=_utcnow(),
        api_calls_used=api_calls_used,
        failed_points=failed_points,
        error_message="Scan cancelled",
    )
    logger.warning("Grid scan %d cancelled", scan_id)


def fail_grid_scan(scan_id: int, error_message: str) -> None:
    _update_scan(
        scan_id,
        status=SCAN_FAILED,
        completed_at=_utcnow(),
        error_message=error_message,
    )
    logger.error("Grid scan %d failed: %s", scan_id, error_message)


def get_grid_scan(scan_id: int) -> Optional[GridScan]:
    with get_session() as session:
        return session.get(GridScan, scan_id)


def list_campaign_scans(campaign_id: int, limit: int = 20) -> list[GridScan]:
    with get_session() as session:
        return (
            session.query(GridScan)
            .filter(GridScan.campaign_id == campaign_id)
            .order_by(GridScan.created_at.desc(), GridScan.id.desc())
            .limit(limit)
            .all()
        )


# ------------------------------------------------------------------
# Point results and competitor stats
# ------------------------------------------------------------------

def save_grid_point_results(scan_id: int, results: Iterable[KeywordScanResult]) -> int:
    """Persist successful point results; failed points are not stored.

    Returns:
        Number of rows written.
    """
    count = 0
    with get_session() as session:
        for keyword_result in results:
            for point_result in keyword_result.points:
                if not point_result.success:
                    continue
                session.add(GridPointResult(
                    scan_id=scan_id,
                    keyword=keyword_result.keyword,
                    grid_row=point_result.point.row,
                    grid_col=point_result.point.col,
                    lat=point_result.point.lat,
                    lng=point_result.point.lng,
                    rank=point_result.target_rank,
                    top_rankings_json=[
                        {
                            "name": r.name,
                            "rank": r.rank,
                            "cid": r.cid,
                            "rating": r.rating,
                            "review_count": r.review_count,
                            "address": r.address,
                        }
                        for r in point_result.top_rankings
                    ],
                    total_results=point_result.total_results,
                ))
                count += 1
    logger.debug("Saved %d grid point results for scan %d", count, scan_id)
    return count


def get_grid_points_for_keyword(scan_id: int, keyword: str) -> list[GridPointResult]:
    with get_session() as session:
        return (
            session.query(GridPointResult)
            .filter(GridPointResult.scan_id == scan_id, GridPointResult.keyword == keyword)
            .order_by(GridPointResult.grid_row.asc(), GridPointResult.grid_col.asc())
            .all()
        )


def _stat_row(scan_id: int, stats: AggregatedCompetitorStats, is_target: bool) -> CompetitorStat:
    return CompetitorStat(
        scan_id=scan_id,
        business_name=stats.business_name,
        normalized_name=normalize_business_name(stats.business_name),
        is_target=is_target,
        gmb_cid=stats.gmb_cid,
        rating=stats.rating,
        review_count=stats.review_count,
        avg_rank=stats.avg_rank,
        times_in_top3=stats.times_in_top3,
        times_in_top10=stats.times_in_top10,
        times_in_top20=stats.times_in_top20,
        share_of_voice=stats.share_of_voice,
        prev_avg_rank=stats.prev_avg_rank,
        rank_change=stats.rank_change,
    )


def save_competitor_stats(scan_id: int, aggregation: ScanAggregationResult) -> int:
    """Persist the target row followed by every competitor row."""
    with get_session() as session:
        session.add(_stat_row(scan_id, aggregation.target_stats, is_target=True))
        for stats in aggregation.competitor_stats:
            session.add(_stat_row(scan_id, stats, is_target=False))
    count = 1 + len(aggregation.competitor_stats)
    logger.debug("Saved %d competitor stats for scan %d", count, scan_id)
    return count


def get_competitor_stats(
    scan_id: int,
    sort_by: str = "avg_rank",
    limit: int = 50,
) -> list[CompetitorStat]:
    """Stats for one scan; ``avg_rank`` sorts ascending, other fields descending."""
    if sort_by not in _STAT_SORT_FIELDS:
        raise ValueError(
            f"Unsupported sort_by {sort_by!r}; expected one of {sorted(_STAT_SORT_FIELDS)}"
        )
    with get_session() as session:
        return (
            session.query(CompetitorStat)
            .filter(CompetitorStat.scan_id == scan_id)
            .order_by(_STAT_SORT_FIELDS[sort_by])
            .limit(limit)
            .all()
        )


def get_previous_competitor_stats(
    campaign_id: int,
    exclude_scan_id: Optional[int] = None,
) -> Optional[dict[str, CompetitorStat]]:
    """Stats of the campaign's latest completed scan, keyed by normalized name.

    Returns ``None`` when the campaign has no other completed scan.
    """
    with get_session() as session:
        query = session.query(GridScan).filter(
            GridScan.campaign_id == campaign_id,
            GridScan.status == SCAN_COMPLETED,
        )
        if exclude_scan_id is not None:
            query = query.filter(GridScan.id != exclude_scan_id)
        previous = query.order_by(GridScan.completed_at.desc(), GridScan.id.desc()).first()
        if previous is None:
            return None

        rows = (
            session.query(CompetitorStat)
            .filter(CompetitorStat.scan_id == previous.id)
            .all()
        )
    logger.debug("Previous scan %d has %d competitor stats", previous.id, len(rows))
    return {row.normalized_name: row for row in rows}
