import uuid
from datetime import datetime, timezone

from sqlalchemy import BigInteger, Boolean, DateTime, Float, ForeignKey, Index, Integer, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from visibility_tracker.db.base import Base, BigIntPK, JSONType


class MetricFact(Base):
    """Central fact row, 1:1 with a collector result.

    Dimension values are copied from the collector result so reporting can
    filter without joining back to it.
    """

    __tablename__ = "metric_facts"
    __table_args__ = (Index("ix_metric_facts_brand_processed", "brand_id", "customer_id", "processed_at"),)

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    collector_result_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("collector_results.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    brand_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("brands.id", ondelete="CASCADE"), nullable=False
    )
    customer_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    query_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("queries.id", ondelete="CASCADE"), nullable=False)
    collector_type: Mapped[str] = mapped_column(String(40), nullable=False)
    topic: Mapped[str | None] = mapped_column(String(255), nullable=True)
    processed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    brand_metric: Mapped["BrandMetric"] = relationship(
        "BrandMetric", back_populates="metric_fact", cascade="all, delete-orphan", uselist=False
    )
    competitor_metrics: Mapped[list["CompetitorMetric"]] = relationship(
        "CompetitorMetric", back_populates="metric_fact", cascade="all, delete-orphan"
    )


class BrandMetric(Base):
    """Brand visibility / position metrics for one fact."""

    __tablename__ = "brand_metrics"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    metric_fact_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("metric_facts.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    visibility_index: Mapped[float | None] = mapped_column(Float, nullable=True)  # 0-1, higher = more prominent
    share_of_answers: Mapped[float | None] = mapped_column(Float, nullable=True)  # 0-100
    has_brand_presence: Mapped[bool] = mapped_column(Boolean, default=False)
    brand_first_position: Mapped[int | None] = mapped_column(Integer, nullable=True)  # char offset
    brand_positions: Mapped[list] = mapped_column(JSONType, default=list)  # char offsets
    total_brand_mentions: Mapped[int] = mapped_column(Integer, default=0)
    total_word_count: Mapped[int] = mapped_column(Integer, default=0)

    metric_fact: Mapped["MetricFact"] = relationship("MetricFact", back_populates="brand_metric")


class CompetitorMetric(Base):
    """Competitor visibility / position metrics, one row per competitor per fact."""

    __tablename__ = "competitor_metrics"
    __table_args__ = (UniqueConstraint("metric_fact_id", "competitor_id", name="uq_competitor_metric"),)

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    metric_fact_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("metric_facts.id", ondelete="CASCADE"), nullable=False
    )
    competitor_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("brand_competitors.id", ondelete="CASCADE"), nullable=False, index=True
    )
    visibility_index: Mapped[float | None] = mapped_column(Float, nullable=True)
    share_of_answers: Mapped[float | None] = mapped_column(Float, nullable=True)
    competitor_first_position: Mapped[int | None] = mapped_column(Integer, nullable=True)
    competitor_positions: Mapped[list] = mapped_column(JSONType, default=list)
    competitor_mentions: Mapped[int] = mapped_column(Integer, default=0)

    metric_fact: Mapped["MetricFact"] = relationship("MetricFact", back_populates="competitor_metrics")
