"""Value types shared by the geo-grid scanner, aggregator, and summary."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


@dataclass(frozen=True)
class GridPoint:
    """One sampled coordinate in the scan lattice (zero-based row/col)."""

    row: int
    col: int
    lat: float
    lng: float


@dataclass(frozen=True)
class GridConfig:
    """Centre, lattice size, and half-width (in miles) of a scan grid."""

    center_lat: float
    center_lng: float
    grid_size: int = 7
    radius_miles: float = 5.0


@dataclass(frozen=True)
class CompetitorRanking:
    """A single listing observed at one grid point for one keyword."""

    name: str
    rank: int
    cid: Optional[str] = None
    rating: Optional[float] = None
    review_count: Optional[int] = None
    address: Optional[str] = None
    phone: Optional[str] = None
    category: Optional[str] = None


@dataclass(frozen=True)
class GridPointScanResult:
    """Outcome of one provider query for a (grid point, keyword) pair.

    ``target_rank`` is ``None`` both when the target is absent from the
    results and when the call failed; check ``success`` first.
    """

    point: GridPoint
    keyword: str
    target_rank: Optional[int]
    top_rankings: tuple[CompetitorRanking, ...]
    total_results: int
    success: bool
    scanned_at: datetime
    error: Optional[str] = None


@dataclass(frozen=True)
class KeywordScanResult:
    """All point results for one keyword plus the target's rank tallies."""

    keyword: str
    points: tuple[GridPointScanResult, ...]
    successful_scans: int
    failed_scans: int
    avg_rank: Optional[float]
    times_in_top3: int
    times_in_top10: int
    times_ranked: int
    cancelled: bool = False


@dataclass(frozen=True)
class ScanStats:
    total_points: int
    total_scans: int
    successful_scans: int
    failed_scans: int
    api_calls_used: int
    estimated_cost: float


@dataclass(frozen=True)
class FullScanResult:
    """Complete result of a campaign scan, as handed to storage and display."""

    scan_id: str
    campaign_id: str
    target_business_name: str
    keyword_results: tuple[KeywordScanResult, ...]
    stats: ScanStats
    started_at: datetime
    completed_at: datetime
    cancelled: bool = False
    aggregation: Optional["ScanAggregationResult"] = None


@dataclass(frozen=True)
class ScanCostEstimate:
    total_points: int
    total_calls: int
    estimated_cost: float


@dataclass(frozen=True)
class AggregatedCompetitorStats:
    """Per-business statistics across every keyword and grid point of a scan."""

    business_name: str
    avg_rank: float
    times_in_top3: int
    times_in_top10: int
    times_in_top20: int
    share_of_voice: float
    gmb_cid: Optional[str] = None
    rating: Optional[float] = None
    review_count: Optional[int] = None
    prev_avg_rank: Optional[float] = None
    rank_change: Optional[float] = None


@dataclass(frozen=True)
class OverallMetrics:
    avg_rank: float
    share_of_voice: float
    top_competitor: Optional[str]
    total_competitors_found: int


@dataclass(frozen=True)
class ScanAggregationResult:
    scan_id: str
    target_stats: AggregatedCompetitorStats
    competitor_stats: tuple[AggregatedCompetitorStats, ...]
    overall_metrics: OverallMetrics


class TargetPosition(str, Enum):
    """Qualitative standing of the target business in a scan."""

    DOMINANT = "dominant"
    STRONG = "strong"
    MODERATE = "moderate"
    WEAK = "weak"
    NOT_RANKING = "not_ranking"


@dataclass(frozen=True)
class CompetitiveSummary:
    target_position: TargetPosition
    competitors_ahead: int
    main_threats: list[str] = field(default_factory=list)
    recommendation: str = ""


class RankCategory(str, Enum):
    """Colour bucket for displaying a single rank value."""

    EXCELLENT = "excellent"
    GOOD = "good"
    AVERAGE = "average"
    POOR = "poor"
    NOT_RANKING = "not_ranking"


def get_rank_category(rank: Optional[float]) -> RankCategory:
    """Bucket a point rank or an average rank: top-3, top-10, top-20, beyond, or absent."""
    if rank is None:
        return RankCategory.NOT_RANKING
    if rank <= 3:
        return RankCategory.EXCELLENT
    if rank <= 10:
        return RankCategory.GOOD
    if rank <= 20:
        return RankCategory.AVERAGE
    return RankCategory.POOR
