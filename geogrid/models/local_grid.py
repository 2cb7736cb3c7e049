"""Geo-grid campaign, scan, point-result, and competitor-stat SQLAlchemy models."""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Boolean, Float, ForeignKey, Integer, String, Text, DateTime, JSON
from sqlalchemy.orm import Mapped, mapped_column, relationship

from geogrid.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LocalCampaign(Base):
    """A business tracked with recurring geo-grid scans."""

    __tablename__ = "local_campaigns"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    business_name: Mapped[str] = mapped_column(String(500), nullable=False, index=True)
    gmb_place_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    gmb_cid: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    center_lat: Mapped[float] = mapped_column(Float, nullable=False)
    center_lng: Mapped[float] = mapped_column(Float, nullable=False)
    grid_size: Mapped[int] = mapped_column(Integer, nullable=False, default=7)
    grid_radius_miles: Mapped[float] = mapped_column(Float, nullable=False, default=5.0)
    keywords_json: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    scan_frequency: Mapped[str] = mapped_column(String(20), nullable=False, default="weekly")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active", index=True)
    last_scan_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    next_scan_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    scans: Mapped[list["GridScan"]] = relationship(
        back_populates="campaign", cascade="all, delete-orphan"
    )

    @property
    def keywords(self) -> list[str]:
        return list(self.keywords_json or [])

    def __repr__(self) -> str:
        return (
            f"<LocalCampaign id={self.id} name={self.business_name!r} "
            f"grid={self.grid_size}x{self.grid_size} r={self.grid_radius_miles}>"
        )


class GridScan(Base):
    """One execution of a campaign's grid scan and its headline metrics."""

    __tablename__ = "grid_scans"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    campaign_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("local_campaigns.id", ondelete="CASCADE"), nullable=False, index=True
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    points_completed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    avg_rank: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    share_of_voice: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    top_competitor: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    api_calls_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    estimated_cost: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    failed_points: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    campaign: Mapped["LocalCampaign"] = relationship(back_populates="scans")
    point_results: Mapped[list["GridPointResult"]] = relationship(
        back_populates="scan", cascade="all, delete-orphan"
    )
    competitor_stats: Mapped[list["CompetitorStat"]] = relationship(
        back_populates="scan", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return (
            f"<GridScan id={self.id} campaign={self.campaign_id} "
            f"status={self.status!r} progress={self.progress}>"
        )


class GridPointResult(Base):
    """Target rank and listings observed at one grid point for one keyword."""

    __tablename__ = "grid_point_results"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    scan_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("grid_scans.id", ondelete="CASCADE"), nullable=False, index=True
    )
    keyword: Mapped[str] = mapped_column(String(500), nullable=False, index=True)
    grid_row: Mapped[int] = mapped_column(Integer, nullable=False)
    grid_col: Mapped[int] = mapped_column(Integer, nullable=False)
    lat: Mapped[float] = mapped_column(Float, nullable=False)
    lng: Mapped[float] = mapped_column(Float, nullable=False)
    rank: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    top_rankings_json: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    total_results: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    scan: Mapped["GridScan"] = relationship(back_populates="point_results")

    def __repr__(self) -> str:
        return (
            f"<GridPointResult scan={self.scan_id} kw={self.keyword!r} "
            f"({self.grid_row},{self.grid_col}) rank={self.rank}>"
        )


class CompetitorStat(Base):
    """Aggregated statistics for one business in one scan."""

    __tablename__ = "competitor_stats"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    scan_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("grid_scans.id", ondelete="CASCADE"), nullable=False, index=True
    )
    business_name: Mapped[str] = mapped_column(String(500), nullable=False)
    normalized_name: Mapped[str] = mapped_column(String(500), nullable=False, index=True)
    is_target: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    gmb_cid: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    rating: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    review_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    avg_rank: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    times_in_top3: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    times_in_top10: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    times_in_top20: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    share_of_voice: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    prev_avg_rank: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    rank_change: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    scan: Mapped["GridScan"] = relationship(back_populates="competitor_stats")

    def __repr__(self) -> str:
        return (
            f"<CompetitorStat scan={self.scan_id} name={self.business_name!r} "
            f"avg={self.avg_rank} sov={self.share_of_voice}>"
        )
