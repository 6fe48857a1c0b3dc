import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from visibility_tracker.db.base import Base


class QueryIntent(str, Enum):
    INFORMATIONAL = "informational"
    COMPARATIVE = "comparative"
    TRANSACTIONAL = "transactional"
    NAVIGATIONAL = "navigational"


class Query(Base):
    """A natural-language prompt tracked for a brand.

    Rows are never edited in place: a new configuration version inserts a new
    row and points the old one at it via superseded_by_id, so historical
    collector results keep their original query reference.
    """

    __tablename__ = "queries"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    brand_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("brands.id", ondelete="CASCADE"), nullable=False, index=True
    )
    customer_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    query_text: Mapped[str] = mapped_column(String(2000), nullable=False)
    topic: Mapped[str | None] = mapped_column(String(255), nullable=True)
    intent: Mapped[str] = mapped_column(String(20), default=QueryIntent.INFORMATIONAL.value)
    version: Mapped[int] = mapped_column(Integer, default=1)
    superseded_by_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("queries.id", ondelete="SET NULL"), nullable=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
