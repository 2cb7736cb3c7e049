"""Geo-grid scanning module.

Generates a lattice of coordinates around a business, queries map-pack
rankings at every point for every keyword, and aggregates the results into
per-competitor statistics, share of voice, and a competitive summary.
"""

from geogrid.modules.local_grid.business_matcher import (
    is_match,
    is_target_match,
    normalize_business_name,
)
from geogrid.modules.local_grid.competitor_aggregator import (
    aggregate_competitor_stats,
    calculate_market_share,
    calculate_rank_changes,
    generate_competitive_summary,
    get_top_competitors,
    group_by_performance_tier,
)
from geogrid.modules.local_grid.grid_calculator import (
    GridValidationError,
    calculate_destination,
    calculate_distance,
    format_coordinate_for_api,
    generate_grid_points,
)
from geogrid.modules.local_grid.grid_scanner import (
    GridScanConfig,
    estimate_scan_cost,
    scan_grid_for_all_keywords,
    scan_grid_for_keyword,
    scan_grid_point,
)

__all__ = [
    "is_match",
    "is_target_match",
    "normalize_business_name",
    "aggregate_competitor_stats",
    "calculate_market_share",
    "calculate_rank_changes",
    "generate_competitive_summary",
    "get_top_competitors",
    "group_by_performance_tier",
    "GridValidationError",
    "calculate_destination",
    "calculate_distance",
    "format_coordinate_for_api",
    "generate_grid_points",
    "GridScanConfig",
    "estimate_scan_cost",
    "scan_grid_for_all_keywords",
    "scan_grid_for_keyword",
    "scan_grid_point",
]
