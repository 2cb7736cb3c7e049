"""SQLAlchemy ORM models — import every model so Base.metadata is populated."""

from geogrid.models.local_grid import (
    LocalCampaign,
    GridScan,
    GridPointResult,
    CompetitorStat,
)

__all__ = [
    "LocalCampaign",
    "GridScan",
    "GridPointResult",
    "CompetitorStat",
]
