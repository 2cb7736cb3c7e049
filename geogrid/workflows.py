"""Workflow engine running a campaign's geo-grid scan end to end."""

import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Optional

from geogrid.integrations.dataforseo import RankedSearch
from geogrid.models.local_grid import CompetitorStat
from geogrid.modules.local_grid import repository
from geogrid.modules.local_grid.business_matcher import normalize_business_name
from geogrid.modules.local_grid.competitor_aggregator import (
    aggregate_competitor_stats,
    calculate_rank_changes,
)
from geogrid.modules.local_grid.grid_calculator import DEFAULT_ZOOM, generate_grid_points
from geogrid.modules.local_grid.grid_scanner import (
    DEFAULT_COST_PER_CALL,
    CancelSignal,
    GridScanConfig,
    KeywordProgress,
    calculate_scan_stats,
    scan_grid_for_all_keywords,
)
from geogrid.modules.local_grid.types import (
    FullScanResult,
    GridConfig,
    ScanAggregationResult,
    ScanStats,
)

logger = logging.getLogger(__name__)


class ScanWorkflowError(RuntimeError):
    """A campaign scan could not run (missing campaign, no keywords, ...)."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class GridScanWorkflow:
    """Run a campaign scan: grid, scan, aggregate, compare, persist, reschedule.

    The provider is passed in so several workflows can share one client and
    its rate limiter.

    Usage::

        workflow = GridScanWorkflow(provider=client)
        result = await workflow.run_scan(campaign_id)
    """

    def __init__(
        self,
        provider: RankedSearch,
        cost_per_call: float = DEFAULT_COST_PER_CALL,
        depth: int = 20,
        zoom: int = DEFAULT_ZOOM,
    ) -> None:
        self._provider = provider
        self._cost_per_call = cost_per_call
        self._depth = depth
        self._zoom = zoom

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------

    def _progress_recorder(
        self,
        scan_id: int,
        points_per_keyword: int,
        total_keywords: int,
        on_progress: Optional[KeywordProgress],
    ) -> KeywordProgress:
        """Build a callback that stores progress at each new 10% step."""
        total_points = points_per_keyword * total_keywords
        last_step = {"value": 0}

        def record(keyword, keyword_index, keyword_count, completed, total) -> None:
            done = keyword_index * points_per_keyword + completed
            percent = round(done / total_points * 100) if total_points else 100
            step = percent // 10
            if step > last_step["value"]:
                last_step["value"] = step
                repository.update_scan_progress(scan_id, percent, points_completed=done)
            if on_progress is not None:
                on_progress(keyword, keyword_index, keyword_count, completed, total)

        return record

    @staticmethod
    def _with_rank_changes(
        aggregation: ScanAggregationResult,
        previous: dict[str, CompetitorStat],
    ) -> ScanAggregationResult:
        """Compare with the previous scan's rows.

        The target compares against the previous ``is_target`` row whatever
        listing name it carried then; competitors go through name matching.
        """
        previous_target = next((row for row in previous.values() if row.is_target), None)
        competitors = {key: row for key, row in previous.items() if not row.is_target}

        target_stats = aggregation.target_stats
        if previous_target is not None:
            target_stats = calculate_rank_changes(
                [target_stats],
                {normalize_business_name(target_stats.business_name): previous_target},
            )[0]
        return replace(
            aggregation,
            target_stats=target_stats,
            competitor_stats=tuple(
                calculate_rank_changes(list(aggregation.competitor_stats), competitors)
            ),
        )

    # ------------------------------------------------------------------
    # Scan
    # ------------------------------------------------------------------

    async def run_scan(
        self,
        campaign_id: int,
        keywords: Optional[list[str]] = None,
        on_progress: Optional[KeywordProgress] = None,
        cancel_event: Optional[CancelSignal] = None,
    ) -> FullScanResult:
        """Scan every grid point of a campaign for each keyword.

        Steps:
            1. Load the campaign
            2. Create and start the scan record
            3. Generate grid points
            4. Scan all keywords across all points
            5. Save successful point results
            6. Aggregate competitor stats and compare with the previous scan
            7. Save competitor stats
            8. Complete the scan and advance the campaign schedule

        A cancelled scan keeps its partial results, is stored as cancelled,
        and does not advance the schedule. Any error marks the scan failed
        and is re-raised.

        Raises:
            ScanWorkflowError: Campaign missing or nothing to scan.
        """
        campaign = repository.get_campaign(campaign_id)
        if campaign is None:
            raise ScanWorkflowError(f"Campaign not found: {campaign_id}")

        scan_id = repository.create_grid_scan(campaign_id)
        started_at = _utcnow()
        repository.start_grid_scan(scan_id)
        logger.info(
            "Starting grid scan %d for campaign %d (%r)",
            scan_id, campaign_id, campaign.business_name,
        )

        try:
            points = generate_grid_points(GridConfig(
                center_lat=campaign.center_lat,
                center_lng=campaign.center_lng,
                grid_size=campaign.grid_size,
                radius_miles=campaign.grid_radius_miles,
            ))

            scan_keywords = keywords if keywords else campaign.keywords
            if not scan_keywords:
                raise ScanWorkflowError("No keywords to scan")

            config = GridScanConfig(
                target_business_name=campaign.business_name,
                depth=self._depth,
                zoom=self._zoom,
            )
            keyword_results = await scan_grid_for_all_keywords(
                self._provider,
                points,
                scan_keywords,
                config,
                on_progress=self._progress_recorder(
                    scan_id, len(points), len(scan_keywords), on_progress,
                ),
                cancel_event=cancel_event,
            )
            cancelled = any(kr.cancelled for kr in keyword_results) or (
                len(keyword_results) < len(scan_keywords)
            )

            repository.save_grid_point_results(scan_id, keyword_results)

            total_planned = len(points) * len(scan_keywords)
            aggregation = aggregate_competitor_stats(
                keyword_results,
                campaign.business_name,
                total_grid_points=total_planned,
                scan_id=str(scan_id),
            )
            previous = repository.get_previous_competitor_stats(
                campaign_id, exclude_scan_id=scan_id,
            )
            if previous:
                aggregation = self._with_rank_changes(aggregation, previous)
            repository.save_competitor_stats(scan_id, aggregation)

            totals = calculate_scan_stats(keyword_results)
            api_calls_used = totals["successful_scans"]
            stats = ScanStats(
                total_points=len(points),
                total_scans=totals["total_scans"],
                successful_scans=totals["successful_scans"],
                failed_scans=totals["failed_scans"],
                api_calls_used=api_calls_used,
                estimated_cost=round(api_calls_used * self._cost_per_call, 4),
            )

            completed_at = _utcnow()
            if cancelled:
                repository.cancel_grid_scan(
                    scan_id,
                    api_calls_used=stats.api_calls_used,
                    failed_points=stats.failed_scans,
                )
            else:
                overall = aggregation.overall_metrics
                repository.complete_grid_scan(
                    scan_id,
                    avg_rank=overall.avg_rank or None,
                    share_of_voice=overall.share_of_voice,
                    top_competitor=overall.top_competitor,
                    api_calls_used=stats.api_calls_used,
                    estimated_cost=stats.estimated_cost,
                    failed_points=stats.failed_scans,
                )
                repository.update_campaign_schedule(
                    campaign_id, completed_at, campaign.scan_frequency,
                )
        except asyncio.CancelledError:
            repository.fail_grid_scan(scan_id, "Scan task cancelled")
            raise
        except Exception as exc:
            repository.fail_grid_scan(scan_id, str(exc) or exc.__class__.__name__)
            raise

        logger.info(
            "Grid scan %d finished: %d/%d point scans ok, target avg_rank=%.2f, sov=%.2f%%",
            scan_id, stats.successful_scans, stats.total_scans,
            aggregation.target_stats.avg_rank, aggregation.target_stats.share_of_voice,
        )
        return FullScanResult(
            scan_id=str(scan_id),
            campaign_id=str(campaign_id),
            target_business_name=campaign.business_name,
            keyword_results=tuple(keyword_results),
            stats=stats,
            started_at=started_at,
            completed_at=completed_at,
            cancelled=cancelled,
            aggregation=aggregation,
        )

    async def run_due_scans(
        self,
        limit: int = 20,
        cancel_event: Optional[CancelSignal] = None,
    ) -> list[FullScanResult]:
        """Scan every campaign that is due, one after another.

        A failing campaign is logged and skipped so the rest still run.
        Once ``cancel_event`` is set the running scan stops at its next point
        and keeps what it gathered; campaigns not yet started stay due.
        """
        due = repository.get_campaigns_due_for_scan(limit=limit)
        logger.info("%d campaign(s) due for scanning", len(due))
        results: list[FullScanResult] = []
        for index, campaign in enumerate(due):
            if cancel_event is not None and cancel_event.is_set():
                logger.warning(
                    "Due scans interrupted; %d campaign(s) left for the next run",
                    len(due) - index,
                )
                break
            try:
                results.append(await self.run_scan(campaign.id, cancel_event=cancel_event))
            except Exception as exc:
                logger.exception("Scheduled scan for campaign %d failed: %s", campaign.id, exc)
        return results
