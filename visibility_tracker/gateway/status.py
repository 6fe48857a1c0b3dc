"""Collection status state machine for collector results and executions.

    pending ──> running ──> completed
       │           ├──────> failed_retry
       └───────────┴──────> failed

Moves are forward only; every applied move is appended to ``status_log``.
Database updates are conditional on the stored status so a concurrent writer
cannot move a row backward.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from visibility_tracker.gateway.errors import InvalidStatusTransition

logger = logging.getLogger(__name__)


class CollectionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED_RETRY = "failed_retry"
    FAILED = "failed"


ALLOWED_TRANSITIONS: dict[CollectionStatus, frozenset[CollectionStatus]] = {
    CollectionStatus.PENDING: frozenset({CollectionStatus.RUNNING, CollectionStatus.FAILED}),
    CollectionStatus.RUNNING: frozenset(
        {CollectionStatus.COMPLETED, CollectionStatus.FAILED_RETRY, CollectionStatus.FAILED}
    ),
    CollectionStatus.COMPLETED: frozenset(),
    CollectionStatus.FAILED_RETRY: frozenset(),
    CollectionStatus.FAILED: frozenset(),
}

TERMINAL_STATUSES = frozenset(s for s, targets in ALLOWED_TRANSITIONS.items() if not targets)


def can_transition(current: CollectionStatus | str | None, target: CollectionStatus | str) -> bool:
    current = CollectionStatus(current or CollectionStatus.PENDING)
    return CollectionStatus(target) in ALLOWED_TRANSITIONS[current]


def validate_transition(
    current: CollectionStatus | str | None,
    target: CollectionStatus | str,
    raw_answer: str | None = None,
) -> CollectionStatus:
    """Return the target status or raise InvalidStatusTransition."""
    target = CollectionStatus(target)
    if not can_transition(current, target):
        raise InvalidStatusTransition(str(current), target.value)
    if target == CollectionStatus.COMPLETED and not (raw_answer and raw_answer.strip()):
        raise InvalidStatusTransition(str(current), target.value, "completed requires a raw answer")
    return target


def log_entry(
    current: CollectionStatus | str | None, target: CollectionStatus | str, reason: str = ""
) -> dict[str, Any]:
    return {
        "from": CollectionStatus(current).value if current else None,
        "to": CollectionStatus(target).value,
        "at": datetime.now(timezone.utc).isoformat(),
        "reason": reason,
    }


async def transition(
    session: AsyncSession,
    model,
    row_id: int,
    current: CollectionStatus,
    target: CollectionStatus,
    status_log: list | None = None,
    reason: str = "",
    answer: str | None = None,
    **values,
) -> list:
    """Conditionally move one row from ``current`` to ``target``.

    ``model`` is any table with ``status`` and ``status_log`` columns. Extra
    column values are written in the same statement. ``answer`` is the text
    a move to completed must carry. Returns the new status log. Raises
    InvalidStatusTransition if the move is illegal or the row is no longer
    in ``current``.
    """
    validate_transition(current, target, answer)
    new_log = [*(status_log or []), log_entry(current, target, reason)]

    result = await session.execute(
        update(model)
        .where(model.id == row_id, model.status == current.value)
        .values(status=target.value, status_log=new_log, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise InvalidStatusTransition(current.value, target.value, f"{model.__tablename__} {row_id} changed concurrently")

    logger.debug("%s %s: %s -> %s", model.__tablename__, row_id, current.value, target.value)
    return new_log
