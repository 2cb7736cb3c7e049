"""Tests for competitor aggregation, rank changes, tiers, market share, and summary."""

from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

from geogrid.modules.local_grid.competitor_aggregator import (
    RECOMMENDATIONS,
    aggregate_competitor_stats,
    calculate_market_share,
    calculate_rank_changes,
    generate_competitive_summary,
    get_top_competitors,
    group_by_performance_tier,
)
from geogrid.modules.local_grid.types import (
    AggregatedCompetitorStats,
    CompetitorRanking,
    GridPoint,
    GridPointScanResult,
    KeywordScanResult,
    OverallMetrics,
    ScanAggregationResult,
    TargetPosition,
)

TARGET = "Fielder Park Dental"
_NOW = datetime(2025, 3, 1, tzinfo=timezone.utc)


def _ranking(name, rank, cid=None, rating=None, review_count=None):
    return CompetitorRanking(name=name, rank=rank, cid=cid, rating=rating, review_count=review_count)


def _point(col, rankings, success=True, keyword="dentist"):
    return GridPointScanResult(
        point=GridPoint(row=0, col=col, lat=32.7, lng=-97.1 + col / 100),
        keyword=keyword,
        target_rank=None,
        top_rankings=tuple(rankings) if success else (),
        total_results=len(rankings) if success else 0,
        success=success,
        scanned_at=_NOW,
        error=None if success else "boom",
    )


def _keyword(keyword, points):
    ok = sum(1 for p in points if p.success)
    return KeywordScanResult(
        keyword=keyword,
        points=tuple(points),
        successful_scans=ok,
        failed_scans=len(points) - ok,
        avg_rank=None,
        times_in_top3=0,
        times_in_top10=0,
        times_ranked=0,
    )


def _stats(name, avg_rank, sov=0.0, top3=0, top20=1, **kwargs):
    return AggregatedCompetitorStats(
        business_name=name,
        avg_rank=avg_rank,
        times_in_top3=top3,
        times_in_top10=top20,
        times_in_top20=top20,
        share_of_voice=sov,
        **kwargs,
    )


def _by_name(result):
    return {s.business_name: s for s in result.competitor_stats}


# ===========================================================================
# 1. Aggregation
# ===========================================================================
class TestAggregateCompetitorStats:
    """Per-business stats across every successful point and keyword."""

    def test_two_point_average(self):
        results = [_keyword("dentist", [
            _point(0, [_ranking("ABC Dental", 1)]),
            _point(1, [_ranking("ABC Dental", 2)]),
        ])]
        agg = aggregate_competitor_stats(results, TARGET, total_grid_points=2)
        abc = _by_name(agg)["ABC Dental"]
        assert abc.avg_rank == 1.5
        assert abc.times_in_top3 == 2
        assert abc.times_in_top10 == 2
        assert abc.times_in_top20 == 2
        assert abc.share_of_voice == 100.0

    def test_tier_counters_use_rank_at_each_point(self):
        results = [_keyword("dentist", [
            _point(0, [_ranking("Smile Studio", 2)]),
            _point(1, [_ranking("Smile Studio", 8)]),
            _point(2, [_ranking("Smile Studio", 15)]),
            _point(3, [_ranking("Smile Studio", 25)]),
        ])]
        smile = _by_name(aggregate_competitor_stats(results, TARGET))["Smile Studio"]
        assert smile.times_in_top3 == 1
        assert smile.times_in_top10 == 2
        assert smile.times_in_top20 == 3
        assert smile.avg_rank == 12.5
        assert smile.share_of_voice == 25.0

    def test_name_variants_merge(self):
        results = [_keyword("dentist", [
            _point(0, [_ranking("Smile Studio LLC", 1)]),
            _point(1, [_ranking("Smile Studio", 3)]),
        ])]
        agg = aggregate_competitor_stats(results, TARGET)
        assert len(agg.competitor_stats) == 1
        merged = agg.competitor_stats[0]
        assert merged.business_name == "Smile Studio LLC"
        assert merged.avg_rank == 2.0

    def test_share_of_voice_uses_scan_wide_denominator(self):
        results = [
            _keyword("dentist", [
                _point(0, [_ranking("Rare Dental Clinic", 1)]),
                _point(1, [_ranking("Other Dental Group", 1)]),
            ]),
            _keyword("emergency dentist", [
                _point(0, [_ranking("Other Dental Group", 1)]),
                _point(1, [_ranking("Other Dental Group", 1)]),
            ]),
        ]
        stats = _by_name(aggregate_competitor_stats(results, TARGET))
        assert stats["Rare Dental Clinic"].share_of_voice == 25.0
        assert stats["Other Dental Group"].share_of_voice == 75.0

    def test_failed_points_are_ignored(self):
        results = [_keyword("dentist", [
            _point(0, [_ranking("ABC Dental", 1)]),
            _point(1, [], success=False),
            _point(2, [_ranking("ABC Dental", 3)]),
        ])]
        abc = _by_name(aggregate_competitor_stats(results, TARGET))["ABC Dental"]
        assert abc.avg_rank == 2.0
        assert abc.share_of_voice == 100.0

    def test_target_separated_and_variants_merged(self):
        results = [_keyword("dentist", [
            _point(0, [_ranking("Smile Studio", 1), _ranking("Fielder Park Dentistry, P.C.", 2)]),
            _point(1, [_ranking("Fielder Park Dental - Dr. Smith", 4), _ranking("Smile Studio", 5)]),
        ])]
        agg = aggregate_competitor_stats(results, TARGET, scan_id="scan-1")
        assert agg.scan_id == "scan-1"
        assert [c.business_name for c in agg.competitor_stats] == ["Smile Studio"]
        assert agg.target_stats.avg_rank == 3.0
        assert agg.target_stats.times_in_top3 == 1
        assert agg.target_stats.times_in_top20 == 2
        assert agg.target_stats.share_of_voice == 50.0

    def test_target_synthesized_when_absent(self):
        results = [_keyword("dentist", [_point(0, [_ranking("Smile Studio", 1)])])]
        agg = aggregate_competitor_stats(results, TARGET)
        target = agg.target_stats
        assert target.business_name == TARGET
        assert target.avg_rank == 0
        assert target.times_in_top3 == 0
        assert target.times_in_top20 == 0
        assert target.share_of_voice == 0
        assert agg.overall_metrics.avg_rank == 0
        assert agg.overall_metrics.share_of_voice == 0

    def test_competitors_sorted_by_avg_rank(self):
        results = [_keyword("dentist", [
            _point(0, [_ranking("Zeta Dental Care", 9), _ranking("Alpha Dental Care", 4), _ranking("Mid Town Dental", 6)]),
        ])]
        agg = aggregate_competitor_stats(results, TARGET)
        assert [c.avg_rank for c in agg.competitor_stats] == [4.0, 6.0, 9.0]
        assert agg.overall_metrics.top_competitor == "Alpha Dental Care"
        assert agg.overall_metrics.total_competitors_found == 3

    def test_averages_rounded_to_two_places(self):
        results = [_keyword("dentist", [
            _point(0, [_ranking("Smile Studio", 1)]),
            _point(1, [_ranking("Smile Studio", 1)]),
            _point(2, [_ranking("Smile Studio", 2)]),
        ])]
        smile = _by_name(aggregate_competitor_stats(results, TARGET))["Smile Studio"]
        assert smile.avg_rank == 1.33
        assert smile.share_of_voice == 100.0

    def test_rating_prefers_listing_with_more_reviews(self):
        results = [_keyword("dentist", [
            _point(0, [_ranking("Smile Studio", 1, cid="first", rating=4.0, review_count=10)]),
            _point(1, [_ranking("Smile Studio", 1, cid="second", rating=4.6, review_count=50)]),
            _point(2, [_ranking("Smile Studio", 1, rating=3.0, review_count=5)]),
            _point(3, [_ranking("Smile Studio", 1)]),
        ])]
        smile = _by_name(aggregate_competitor_stats(results, TARGET))["Smile Studio"]
        assert smile.rating == 4.6
        assert smile.review_count == 50
        assert smile.gmb_cid == "first"

    def test_empty_results(self):
        agg = aggregate_competitor_stats([], TARGET)
        assert agg.competitor_stats == ()
        assert agg.overall_metrics.top_competitor is None
        assert agg.overall_metrics.total_competitors_found == 0
        assert agg.target_stats.share_of_voice == 0


# ===========================================================================
# 2. Rank changes
# ===========================================================================
class TestCalculateRankChanges:
    """Positive rank_change means the business moved toward rank 1."""

    def test_improvement_is_positive(self):
        updated = calculate_rank_changes([_stats("ABC Dental", 4.0)], {"abc dental": 10.0})
        assert updated[0].prev_avg_rank == 10.0
        assert updated[0].rank_change == 6.0

    def test_decline_is_negative(self):
        updated = calculate_rank_changes([_stats("ABC Dental", 7.5)], {"abc dental": 5.25})
        assert updated[0].rank_change == -2.25

    def test_previous_lookup_uses_normalized_name(self):
        previous = {"smile studio": {"avg_rank": 3.0}}
        updated = calculate_rank_changes([_stats("Smile Studio, LLC", 2.0)], previous)
        assert updated[0].rank_change == 1.0

    def test_previous_entry_as_object(self):
        previous = {"smile studio": SimpleNamespace(avg_rank=6)}
        updated = calculate_rank_changes([_stats("Smile Studio", 2.0)], previous)
        assert updated[0].prev_avg_rank == 6.0
        assert updated[0].rank_change == 4.0

    def test_new_business_unchanged(self):
        current = [_stats("New Dental Office", 3.0)]
        updated = calculate_rank_changes(current, {"smile studio": 2.0})
        assert updated[0].prev_avg_rank is None
        assert updated[0].rank_change is None

    def test_listing_name_variant_matches_previous(self):
        updated = calculate_rank_changes([_stats("Smile Studio Arlington", 2.0)], {"smile studio": 3.0})
        assert updated[0].prev_avg_rank == 3.0
        assert updated[0].rank_change == 1.0

    def test_exact_name_preferred_over_variant(self):
        previous = {"smile studio": 3.0, "smile studio arlington": 5.0}
        updated = calculate_rank_changes([_stats("Smile Studio Arlington", 2.0)], previous)
        assert updated[0].prev_avg_rank == 5.0

    def test_short_fragment_does_not_match(self):
        updated = calculate_rank_changes([_stats("Smile Dental", 2.0)], {"smile": 3.0})
        assert updated[0].rank_change is None

    @pytest.mark.parametrize("current, previous", [(0.0, 4.0), (3.0, 0.0), (0.0, 0.0)])
    def test_not_ranking_on_either_side_has_no_change(self, current, previous):
        updated = calculate_rank_changes([_stats("ABC Dental", current)], {"abc dental": previous})
        assert updated[0].prev_avg_rank is None
        assert updated[0].rank_change is None

    def test_no_previous_scan(self):
        current = [_stats("ABC Dental", 4.0)]
        assert calculate_rank_changes(current, None) == current
        assert calculate_rank_changes(current, {}) == current


# ===========================================================================
# 3. Tiers, top competitors, market share
# ===========================================================================
class TestCompetitorViews:
    """Tier buckets, top-N selection, and share-of-voice distribution."""

    def test_group_by_performance_tier(self):
        stats = [_stats("a", 2.0), _stats("b", 3.0), _stats("c", 7.0), _stats("d", 10.0),
                 _stats("e", 15.0), _stats("f", 20.0), _stats("g", 20.5)]
        tiers = group_by_performance_tier(stats)
        assert [s.business_name for s in tiers["dominant"]] == ["a", "b"]
        assert [s.business_name for s in tiers["strong"]] == ["c", "d"]
        assert [s.business_name for s in tiers["moderate"]] == ["e", "f"]
        assert [s.business_name for s in tiers["weak"]] == ["g"]

    def test_top_competitors_by_avg_rank(self):
        stats = [_stats("a", 5.0), _stats("b", 1.0), _stats("c", 3.0)]
        assert [s.business_name for s in get_top_competitors(stats, 2)] == ["b", "c"]

    def test_top_competitors_by_share_of_voice(self):
        stats = [_stats("a", 5.0, sov=10), _stats("b", 1.0, sov=40), _stats("c", 3.0, sov=25)]
        top = get_top_competitors(stats, 3, sort_by="share_of_voice")
        assert [s.business_name for s in top] == ["b", "c", "a"]

    def test_top_competitors_by_review_count(self):
        stats = [_stats("a", 5.0, review_count=None), _stats("b", 1.0, review_count=12),
                 _stats("c", 3.0, review_count=300)]
        top = get_top_competitors(stats, 2, sort_by="review_count")
        assert [s.business_name for s in top] == ["c", "b"]

    def test_top_competitors_unknown_sort(self):
        with pytest.raises(ValueError):
            get_top_competitors([], 5, sort_by="rating")

    def test_market_share(self):
        stats = [_stats("c" + str(i), float(i), sov=float(i)) for i in range(1, 13)]
        target = _stats(TARGET, 2.0, sov=9.5)
        shares = calculate_market_share(stats, target)
        assert len(shares) == 10
        assert shares[0]["name"] == "c12"
        assert [s["share_of_voice"] for s in shares] == sorted(
            [s["share_of_voice"] for s in shares], reverse=True
        )
        target_entries = [s for s in shares if s["is_target"]]
        assert len(target_entries) == 1
        assert target_entries[0]["name"] == TARGET
        assert "c3" not in [s["name"] for s in shares]


# ===========================================================================
# 4. Competitive summary
# ===========================================================================
def _aggregation(target, competitors):
    return ScanAggregationResult(
        scan_id="s1",
        target_stats=target,
        competitor_stats=tuple(competitors),
        overall_metrics=OverallMetrics(
            avg_rank=target.avg_rank,
            share_of_voice=target.share_of_voice,
            top_competitor=competitors[0].business_name if competitors else None,
            total_competitors_found=len(competitors),
        ),
    )


class TestCompetitiveSummary:
    """Position, competitors ahead, threats, and fixed recommendation."""

    @pytest.mark.parametrize("avg_rank, expected", [
        (1.0, TargetPosition.DOMINANT),
        (3.0, TargetPosition.DOMINANT),
        (3.01, TargetPosition.STRONG),
        (10.0, TargetPosition.STRONG),
        (15.0, TargetPosition.MODERATE),
        (20.0, TargetPosition.MODERATE),
        (25.0, TargetPosition.WEAK),
    ])
    def test_position_thresholds(self, avg_rank, expected):
        summary = generate_competitive_summary(_aggregation(_stats(TARGET, avg_rank), []))
        assert summary.target_position is expected
        assert summary.recommendation == RECOMMENDATIONS[expected]

    def test_synthesized_target_is_not_ranking(self):
        target = _stats(TARGET, 0.0, top20=0)
        summary = generate_competitive_summary(_aggregation(target, [_stats("a", 1.0)]))
        assert summary.target_position is TargetPosition.NOT_RANKING
        assert summary.recommendation == RECOMMENDATIONS[TargetPosition.NOT_RANKING]

    def test_never_in_top20_is_not_ranking(self):
        target = _stats(TARGET, 24.0, top20=0)
        summary = generate_competitive_summary(_aggregation(target, []))
        assert summary.target_position is TargetPosition.NOT_RANKING

    def test_competitors_ahead_and_threats(self):
        target = _stats(TARGET, 5.0, sov=20.0)
        competitors = [
            _stats("a", 1.0, sov=60.0),
            _stats("b", 2.0, sov=10.0),
            _stats("c", 3.0, sov=30.0),
            _stats("d", 4.0, sov=25.0),
            _stats("e", 4.5, sov=21.0),
            _stats("f", 5.0, sov=50.0),
            _stats("g", 8.0, sov=0.0),
        ]
        summary = generate_competitive_summary(_aggregation(target, competitors))
        assert summary.target_position is TargetPosition.STRONG
        assert summary.competitors_ahead == 5
        assert summary.main_threats == ["a", "c", "d"]

    def test_recommendations_cover_every_position(self):
        assert set(RECOMMENDATIONS) == set(TargetPosition)
        assert all(text for text in RECOMMENDATIONS.values())
