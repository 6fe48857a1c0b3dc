import uuid
from datetime import datetime, timezone

from sqlalchemy import BigInteger, DateTime, ForeignKey, Index, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from visibility_tracker.db.base import Base, BigIntPK, JSONType


class CollectorResult(Base):
    """Raw answer of one (query, logical collector) execution.

    `status` is the collection lifecycle written by the orchestrator;
    `scoring_status` belongs to the scoring pipeline and is only changed
    through the claim / finalize statements in analysis.pipeline.
    """

    __tablename__ = "collector_results"
    __table_args__ = (
        Index("ix_collector_results_scoring", "brand_id", "customer_id", "scoring_status"),
        Index("ix_collector_results_scoring_started", "scoring_status", "scoring_started_at"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    customer_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    brand_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("brands.id", ondelete="CASCADE"), nullable=False, index=True
    )
    query_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("queries.id", ondelete="CASCADE"), nullable=False, index=True
    )
    execution_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("query_executions.id", ondelete="SET NULL"), nullable=True
    )
    collector_type: Mapped[str] = mapped_column(String(40), nullable=False)  # chatgpt | perplexity | ...
    provider: Mapped[str | None] = mapped_column(String(40), nullable=True)  # adapter that produced the answer
    question: Mapped[str] = mapped_column(Text, nullable=False)
    topic: Mapped[str | None] = mapped_column(String(255), nullable=True)

    raw_answer: Mapped[str | None] = mapped_column(Text, nullable=True)
    citations: Mapped[list] = mapped_column(JSONType, default=list)
    urls: Mapped[list] = mapped_column(JSONType, default=list)
    result_metadata: Mapped[dict | None] = mapped_column("metadata", JSONType, nullable=True)
    snapshot_id: Mapped[str | None] = mapped_column(String(120), nullable=True)
    execution_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Collection lifecycle
    status: Mapped[str] = mapped_column(String(20), default="pending")
    status_log: Mapped[list] = mapped_column(JSONType, default=list)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_metadata: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    # Scoring lifecycle: null | pending | processing | completed | error
    scoring_status: Mapped[str | None] = mapped_column(String(20), nullable=True, default="pending")
    scoring_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    scoring_completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    scoring_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    scoring_worker_id: Mapped[str | None] = mapped_column(String(120), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
