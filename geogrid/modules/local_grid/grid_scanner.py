"""Grid Scanner — per-point, per-keyword map ranking scans.

Points are scanned one at a time. The provider client's shared limiter
arbitrates between concurrent scans. A failed point is recorded and the
scan moves on; there is no retry at this layer.
"""

import asyncio
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Union

from geogrid.integrations.dataforseo import RankedSearch
from geogrid.modules.local_grid.business_matcher import is_match
from geogrid.modules.local_grid.grid_calculator import (
    DEFAULT_ZOOM,
    format_coordinate_for_api,
)
from geogrid.modules.local_grid.types import (
    CompetitorRanking,
    GridPoint,
    GridPointScanResult,
    KeywordScanResult,
    ScanCostEstimate,
)

logger = logging.getLogger(__name__)

DEFAULT_COST_PER_CALL = 0.005

PointProgress = Callable[[int, int], None]
KeywordProgress = Callable[[str, int, int, int, int], None]
# Checked between points. The CLI sets an asyncio.Event on Ctrl+C; the
# scheduler sets a threading.Event from another thread on shutdown.
CancelSignal = Union[asyncio.Event, threading.Event]


@dataclass(frozen=True)
class GridScanConfig:
    """Per-scan settings passed to every point query."""

    target_business_name: str
    depth: int = 20
    zoom: int = DEFAULT_ZOOM


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def scan_grid_point(
    provider: RankedSearch,
    point: GridPoint,
    keyword: str,
    config: GridScanConfig,
) -> GridPointScanResult:
    """Query the provider once for ``keyword`` at ``point``.

    Every returned listing is recorded; the first listing matching the
    target sets ``target_rank``. Provider errors are captured in the result
    and never propagate.
    """
    coordinates = format_coordinate_for_api(point.lat, point.lng, config.zoom)
    scanned_at = _utcnow()

    try:
        listings = await provider.google_maps_search(
            keyword=keyword,
            coordinates=coordinates,
            depth=config.depth,
        )
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        logger.warning(
            "Grid point (%d,%d) failed for %r: %s", point.row, point.col, keyword, exc
        )
        return GridPointScanResult(
            point=point,
            keyword=keyword,
            target_rank=None,
            top_rankings=(),
            total_results=0,
            success=False,
            scanned_at=scanned_at,
            error=str(exc) or exc.__class__.__name__,
        )

    target_rank: Optional[int] = None
    rankings: list[CompetitorRanking] = []
    for listing in listings:
        rankings.append(CompetitorRanking(
            name=listing.title,
            rank=listing.rank_absolute,
            cid=listing.cid,
            rating=listing.rating,
            review_count=listing.review_count,
            address=listing.address,
            phone=listing.phone,
            category=listing.category,
        ))
        if target_rank is None and is_match(listing.title, config.target_business_name):
            target_rank = listing.rank_absolute

    logger.debug(
        "Grid point (%d,%d) %r: %d results, target_rank=%s",
        point.row, point.col, keyword, len(rankings), target_rank,
    )
    return GridPointScanResult(
        point=point,
        keyword=keyword,
        target_rank=target_rank,
        top_rankings=tuple(rankings),
        total_results=len(rankings),
        success=True,
        scanned_at=scanned_at,
    )


async def scan_grid_for_keyword(
    provider: RankedSearch,
    points: list[GridPoint],
    keyword: str,
    config: GridScanConfig,
    on_progress: Optional[PointProgress] = None,
    cancel_event: Optional[CancelSignal] = None,
) -> KeywordScanResult:
    """Scan every point for one keyword, in order.

    ``on_progress(completed, total)`` runs synchronously after each point,
    so it must return quickly. When ``cancel_event`` is set the loop stops
    before the next point and returns what has been gathered so far.
    """
    results: list[GridPointScanResult] = []
    successful = failed = 0
    in_top3 = in_top10 = ranked = 0
    rank_sum = 0
    cancelled = False
    total = len(points)

    for idx, point in enumerate(points, 1):
        if cancel_event is not None and cancel_event.is_set():
            cancelled = True
            logger.warning(
                "Scan for %r cancelled after %d/%d points", keyword, idx - 1, total
            )
            break

        result = await scan_grid_point(provider, point, keyword, config)
        results.append(result)

        if result.success:
            successful += 1
            if result.target_rank is not None:
                ranked += 1
                rank_sum += result.target_rank
                if result.target_rank <= 3:
                    in_top3 += 1
                if result.target_rank <= 10:
                    in_top10 += 1
        else:
            failed += 1

        if on_progress is not None:
            on_progress(idx, total)

    avg_rank = rank_sum / ranked if ranked else None
    logger.info(
        "Keyword %r: %d ok, %d failed, ranked at %d points (avg=%s)",
        keyword, successful, failed, ranked,
        f"{avg_rank:.2f}" if avg_rank is not None else "n/a",
    )
    return KeywordScanResult(
        keyword=keyword,
        points=tuple(results),
        successful_scans=successful,
        failed_scans=failed,
        avg_rank=avg_rank,
        times_in_top3=in_top3,
        times_in_top10=in_top10,
        times_ranked=ranked,
        cancelled=cancelled,
    )


def _bind_keyword_progress(
    on_progress: Optional[KeywordProgress],
    keyword: str,
    keyword_index: int,
    total_keywords: int,
) -> Optional[PointProgress]:
    if on_progress is None:
        return None

    def report(completed: int, total: int) -> None:
        on_progress(keyword, keyword_index, total_keywords, completed, total)

    return report


async def scan_grid_for_all_keywords(
    provider: RankedSearch,
    points: list[GridPoint],
    keywords: list[str],
    config: GridScanConfig,
    on_progress: Optional[KeywordProgress] = None,
    cancel_event: Optional[CancelSignal] = None,
) -> list[KeywordScanResult]:
    """Scan all points for each keyword in turn.

    ``on_progress(keyword, keyword_index, total_keywords, points_completed,
    total_points)`` supports two-level progress displays. A cancelled
    keyword ends the scan; results gathered so far are returned.
    """
    results: list[KeywordScanResult] = []
    total_keywords = len(keywords)

    for k, keyword in enumerate(keywords):
        if cancel_event is not None and cancel_event.is_set():
            break

        keyword_result = await scan_grid_for_keyword(
            provider, points, keyword, config,
            on_progress=_bind_keyword_progress(on_progress, keyword, k, total_keywords),
            cancel_event=cancel_event,
        )
        results.append(keyword_result)
        if keyword_result.cancelled:
            break

    return results


def estimate_scan_cost(
    grid_size: int,
    keyword_count: int,
    cost_per_call: float = DEFAULT_COST_PER_CALL,
) -> ScanCostEstimate:
    """Estimate provider calls and cost for a scan.

    Examples:
        >>> estimate_scan_cost(7, 3, 0.005)
        ScanCostEstimate(total_points=49, total_calls=147, estimated_cost=0.735)
    """
    total_points = grid_size * grid_size
    total_calls = total_points * keyword_count
    return ScanCostEstimate(
        total_points=total_points,
        total_calls=total_calls,
        estimated_cost=round(total_calls * cost_per_call, 4),
    )


def calculate_scan_stats(results: list[KeywordScanResult]) -> dict[str, Any]:
    """Roll per-keyword results up into scan-wide target statistics.

    The overall average rank is the mean of the per-keyword averages of
    keywords where the target ranked at all; share of voice is the target's
    top-3 hits over all successful point scans.
    """
    total_scans = sum(len(r.points) for r in results)
    successful = sum(r.successful_scans for r in results)
    failed = sum(r.failed_scans for r in results)
    in_top3 = sum(r.times_in_top3 for r in results)
    in_top10 = sum(r.times_in_top10 for r in results)
    ranked = sum(r.times_ranked for r in results)

    keyword_avgs = [r.avg_rank for r in results if r.avg_rank is not None]
    overall_avg = sum(keyword_avgs) / len(keyword_avgs) if keyword_avgs else None
    share_of_voice = round(in_top3 / successful * 100, 2) if successful else 0.0

    return {
        "total_scans": total_scans,
        "successful_scans": successful,
        "failed_scans": failed,
        "overall_avg_rank": overall_avg,
        "overall_times_in_top3": in_top3,
        "overall_times_in_top10": in_top10,
        "overall_times_ranked": ranked,
        "overall_share_of_voice": share_of_voice,
    }
