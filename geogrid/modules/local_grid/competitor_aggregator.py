"""Competitor Aggregator — roll point-level rankings up into per-business stats.

Produces average rank, top-3/10/20 counts, share of voice, rank changes
against a previous scan, tiers, market share, and a short competitive
summary for the target business.
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass, replace
from typing import Any, Optional

from geogrid.modules.local_grid.business_matcher import (
    is_match,
    is_target_match,
    normalize_business_name,
)
from geogrid.modules.local_grid.types import (
    AggregatedCompetitorStats,
    CompetitiveSummary,
    CompetitorRanking,
    KeywordScanResult,
    OverallMetrics,
    ScanAggregationResult,
    TargetPosition,
)

logger = logging.getLogger(__name__)

MARKET_SHARE_COMPETITORS = 9
MAX_MAIN_THREATS = 3

RECOMMENDATIONS: dict[TargetPosition, str] = {
    TargetPosition.DOMINANT: (
        "Maintain strong position. Focus on review acquisition and content updates."
    ),
    TargetPosition.STRONG: (
        "Good visibility. Optimize GBP profile and increase review velocity "
        "to reach dominant position."
    ),
    TargetPosition.MODERATE: (
        "Improve local signals. Focus on proximity optimization, review "
        "generation, and category relevance."
    ),
    TargetPosition.WEAK: (
        "Significant improvement needed. Audit GBP completeness, build "
        "citations, and implement local content strategy."
    ),
    TargetPosition.NOT_RANKING: (
        "Not appearing in local results. Verify GBP listing is claimed, "
        "categories are correct, and NAP is consistent."
    ),
}


@dataclass
class _CompetitorAccumulator:
    business_name: str
    gmb_cid: Optional[str] = None
    rating: Optional[float] = None
    review_count: Optional[int] = None
    total_rank: int = 0
    rank_count: int = 0
    times_in_top3: int = 0
    times_in_top10: int = 0
    times_in_top20: int = 0

    def add(self, ranking: CompetitorRanking) -> None:
        self.total_rank += ranking.rank
        self.rank_count += 1
        if ranking.rank <= 3:
            self.times_in_top3 += 1
        if ranking.rank <= 10:
            self.times_in_top10 += 1
        if ranking.rank <= 20:
            self.times_in_top20 += 1

        # Prefer the listing variant with the most reviews
        if ranking.rating and (
            not self.rating or (ranking.review_count or 0) > (self.review_count or 0)
        ):
            self.rating = ranking.rating
            self.review_count = ranking.review_count
        if ranking.cid and not self.gmb_cid:
            self.gmb_cid = ranking.cid

    def merge(self, other: "_CompetitorAccumulator") -> None:
        self.total_rank += other.total_rank
        self.rank_count += other.rank_count
        self.times_in_top3 += other.times_in_top3
        self.times_in_top10 += other.times_in_top10
        self.times_in_top20 += other.times_in_top20
        if other.rating and (
            not self.rating or (other.review_count or 0) > (self.review_count or 0)
        ):
            self.rating = other.rating
            self.review_count = other.review_count
        if other.gmb_cid and not self.gmb_cid:
            self.gmb_cid = other.gmb_cid

    def to_stats(self, total_successful_scans: int) -> AggregatedCompetitorStats:
        avg_rank = round(self.total_rank / self.rank_count, 2) if self.rank_count else 0.0
        share = (
            round(self.times_in_top3 / total_successful_scans * 100, 2)
            if total_successful_scans else 0.0
        )
        return AggregatedCompetitorStats(
            business_name=self.business_name,
            gmb_cid=self.gmb_cid,
            rating=self.rating,
            review_count=self.review_count,
            avg_rank=avg_rank,
            times_in_top3=self.times_in_top3,
            times_in_top10=self.times_in_top10,
            times_in_top20=self.times_in_top20,
            share_of_voice=share,
        )


def aggregate_competitor_stats(
    scan_results: list[KeywordScanResult],
    target_business_name: str,
    total_grid_points: int = 0,
    scan_id: str = "",
) -> ScanAggregationResult:
    """Aggregate every successful point's listings into per-business stats.

    Listings are merged by normalized name. Tier counters use each listing's
    rank at that point. Share of voice divides top-3 appearances by the
    scan-wide count of successful point scans, so rarely seen businesses
    score low. The target is always present in the result: a zero row is
    synthesized if it was never observed.

    Args:
        scan_results: Per-keyword results of one scan.
        target_business_name: Name of the business the scan runs for.
        total_grid_points: Planned point-keyword pairs, for logging only.
        scan_id: Identifier copied into the result.
    """
    accumulators: dict[str, _CompetitorAccumulator] = {}

    for keyword_result in scan_results:
        for point_result in keyword_result.points:
            if not point_result.success:
                continue
            for ranking in point_result.top_rankings:
                key = normalize_business_name(ranking.name)
                acc = accumulators.get(key)
                if acc is None:
                    acc = _CompetitorAccumulator(business_name=ranking.name)
                    accumulators[key] = acc
                acc.add(ranking)

    total_successful = sum(kr.successful_scans for kr in scan_results)

    target_acc: Optional[_CompetitorAccumulator] = None
    competitors: list[AggregatedCompetitorStats] = []
    for acc in accumulators.values():
        if is_target_match(acc.business_name, target_business_name):
            if target_acc is None:
                target_acc = acc
            else:
                target_acc.merge(acc)
            continue
        competitors.append(acc.to_stats(total_successful))

    competitors.sort(key=lambda s: s.avg_rank)

    if target_acc is not None:
        target_stats = target_acc.to_stats(total_successful)
    else:
        target_stats = AggregatedCompetitorStats(
            business_name=target_business_name,
            avg_rank=0.0,
            times_in_top3=0,
            times_in_top10=0,
            times_in_top20=0,
            share_of_voice=0.0,
        )

    overall = OverallMetrics(
        avg_rank=target_stats.avg_rank,
        share_of_voice=target_stats.share_of_voice,
        top_competitor=competitors[0].business_name if competitors else None,
        total_competitors_found=len(competitors),
    )

    logger.info(
        "Aggregated %d businesses from %d successful scans (%d planned); "
        "target avg_rank=%.2f sov=%.2f%%",
        len(accumulators), total_successful, total_grid_points,
        target_stats.avg_rank, target_stats.share_of_voice,
    )
    return ScanAggregationResult(
        scan_id=scan_id,
        target_stats=target_stats,
        competitor_stats=tuple(competitors),
        overall_metrics=overall,
    )


def _previous_avg_rank(value: Any) -> Optional[float]:
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, Mapping):
        raw = value.get("avg_rank")
    else:
        raw = getattr(value, "avg_rank", None)
    return float(raw) if raw is not None else None


def _find_previous(business_name: str, previous: Mapping[str, Any]) -> Any:
    key = normalize_business_name(business_name)
    if key in previous:
        return previous[key]
    for prev_key, entry in previous.items():
        if is_match(key, prev_key):
            return entry
    return None


def calculate_rank_changes(
    current: list[AggregatedCompetitorStats],
    previous: Optional[Mapping[str, Any]],
) -> list[AggregatedCompetitorStats]:
    """Attach the previous scan's average rank and the change to each row.

    ``previous`` maps normalized business names to a previous average rank,
    either as a number or as an object/dict with an ``avg_rank`` field. A
    row without an exact key falls back to the first previous name that
    ``is_match`` accepts, so listing-name variants keep their history.
    ``rank_change = prev_avg_rank - avg_rank``, so a positive change is an
    improvement (the business moved toward rank 1). An average rank of 0
    means "not ranking" and yields no change on either side.
    """
    if not previous:
        return list(current)

    updated: list[AggregatedCompetitorStats] = []
    for stats in current:
        entry = _find_previous(stats.business_name, previous)
        prev_avg = _previous_avg_rank(entry) if entry is not None else None
        if not prev_avg or not stats.avg_rank:
            updated.append(stats)
            continue
        updated.append(replace(
            stats,
            prev_avg_rank=prev_avg,
            rank_change=round(prev_avg - stats.avg_rank, 2),
        ))
    return updated


def group_by_performance_tier(
    stats: list[AggregatedCompetitorStats],
) -> dict[str, list[AggregatedCompetitorStats]]:
    """Bucket businesses by average rank: <=3, <=10, <=20, and the rest."""
    tiers: dict[str, list[AggregatedCompetitorStats]] = {
        "dominant": [],
        "strong": [],
        "moderate": [],
        "weak": [],
    }
    for s in stats:
        if s.avg_rank <= 3:
            tiers["dominant"].append(s)
        elif s.avg_rank <= 10:
            tiers["strong"].append(s)
        elif s.avg_rank <= 20:
            tiers["moderate"].append(s)
        else:
            tiers["weak"].append(s)
    return tiers


_SORT_KEYS = {
    "avg_rank": (lambda s: s.avg_rank, False),
    "share_of_voice": (lambda s: s.share_of_voice, True),
    "times_in_top3": (lambda s: s.times_in_top3, True),
    "review_count": (lambda s: s.review_count or 0, True),
}


def get_top_competitors(
    stats: list[AggregatedCompetitorStats],
    n: int,
    sort_by: str = "avg_rank",
) -> list[AggregatedCompetitorStats]:
    """Return the best ``n`` businesses by the chosen metric.

    ``avg_rank`` sorts ascending; the other metrics sort descending.
    """
    if sort_by not in _SORT_KEYS:
        raise ValueError(
            f"Unsupported sort_by {sort_by!r}; expected one of {sorted(_SORT_KEYS)}"
        )
    key, reverse = _SORT_KEYS[sort_by]
    return sorted(stats, key=key, reverse=reverse)[:n]


def calculate_market_share(
    stats: list[AggregatedCompetitorStats],
    target_stats: AggregatedCompetitorStats,
) -> list[dict[str, Any]]:
    """Share-of-voice distribution: top competitors plus the target."""
    top = get_top_competitors(stats, MARKET_SHARE_COMPETITORS, sort_by="share_of_voice")
    shares = [
        {"name": s.business_name, "share_of_voice": s.share_of_voice, "is_target": False}
        for s in top
    ]
    shares.append({
        "name": target_stats.business_name,
        "share_of_voice": target_stats.share_of_voice,
        "is_target": True,
    })
    shares.sort(key=lambda item: item["share_of_voice"], reverse=True)
    return shares


def _target_position(target: AggregatedCompetitorStats) -> TargetPosition:
    if target.avg_rank == 0 or target.times_in_top20 == 0:
        return TargetPosition.NOT_RANKING
    if target.avg_rank <= 3:
        return TargetPosition.DOMINANT
    if target.avg_rank <= 10:
        return TargetPosition.STRONG
    if target.avg_rank <= 20:
        return TargetPosition.MODERATE
    return TargetPosition.WEAK


def generate_competitive_summary(aggregation: ScanAggregationResult) -> CompetitiveSummary:
    """Derive the target's position, competitors ahead, threats, and next step."""
    target = aggregation.target_stats
    competitors = aggregation.competitor_stats
    position = _target_position(target)

    ahead = sum(1 for c in competitors if 0 < c.avg_rank < target.avg_rank)
    threats = [
        c.business_name for c in competitors
        if c.share_of_voice > target.share_of_voice
    ][:MAX_MAIN_THREATS]

    return CompetitiveSummary(
        target_position=position,
        competitors_ahead=ahead,
        main_threats=threats,
        recommendation=RECOMMENDATIONS[position],
    )
