import uuid
from datetime import datetime, timezone

from sqlalchemy import BigInteger, DateTime, ForeignKey, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from visibility_tracker.db.base import Base, BigIntPK, JSONType


class ConsolidatedAnalysis(Base):
    """Stage-1 checkpoint: products + sentiment extracted from one collector result."""

    __tablename__ = "consolidated_analysis_cache"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    collector_result_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("collector_results.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    brand_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    customer_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    products: Mapped[dict] = mapped_column(JSONType, default=dict)  # {"brand": [...], "competitors": {name: [...]}}
    sentiment: Mapped[dict] = mapped_column(JSONType, default=dict)  # {"brand": {...}, "competitors": {name: {...}}}
    citations: Mapped[dict] = mapped_column(JSONType, default=dict)  # {url: {"category", "pageName"}}
    engine: Mapped[str] = mapped_column(String(80), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
