import uuid

from sqlalchemy import BigInteger, Float, ForeignKey, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from visibility_tracker.db.base import Base, BigIntPK, JSONType


class BrandSentiment(Base):
    __tablename__ = "brand_sentiment"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    metric_fact_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("metric_facts.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    sentiment_label: Mapped[str] = mapped_column(String(10), nullable=False)  # POSITIVE | NEGATIVE | NEUTRAL
    sentiment_score: Mapped[float] = mapped_column(Float, nullable=False)  # 1-100
    positive_sentences: Mapped[list] = mapped_column(JSONType, default=list)
    negative_sentences: Mapped[list] = mapped_column(JSONType, default=list)


class CompetitorSentiment(Base):
    __tablename__ = "competitor_sentiment"
    __table_args__ = (UniqueConstraint("metric_fact_id", "competitor_id", name="uq_competitor_sentiment"),)

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    metric_fact_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("metric_facts.id", ondelete="CASCADE"), nullable=False
    )
    competitor_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("brand_competitors.id", ondelete="CASCADE"), nullable=False, index=True
    )
    sentiment_label: Mapped[str] = mapped_column(String(10), nullable=False)
    sentiment_score: Mapped[float] = mapped_column(Float, nullable=False)
    positive_sentences: Mapped[list] = mapped_column(JSONType, default=list)
    negative_sentences: Mapped[list] = mapped_column(JSONType, default=list)
