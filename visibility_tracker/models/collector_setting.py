from sqlalchemy import Boolean, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from visibility_tracker.db.base import Base


class CollectorSetting(Base):
    """One fallback-chain entry for a logical collector (data-driven chain config)."""

    __tablename__ = "collector_settings"
    __table_args__ = (UniqueConstraint("collector_type", "provider", name="uq_collector_setting"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    collector_type: Mapped[str] = mapped_column(String(40), nullable=False, index=True)
    provider: Mapped[str] = mapped_column(String(40), nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    # NULL falls back to COLLECTION_DEFAULT_TIMEOUT_MS / COLLECTION_DEFAULT_RETRIES
    timeout_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_retries: Mapped[int | None] = mapped_column(Integer, nullable=True)
    continue_on_failure: Mapped[bool] = mapped_column(Boolean, default=True)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
