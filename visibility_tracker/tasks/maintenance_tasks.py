"""Celery tasks for database maintenance."""

import logging
import re

from visibility_tracker.tasks.celery_app import celery_app

logger = logging.getLogger(__name__)

_VIEW_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_.]*$")


def _run_sync_sql(sql: str) -> None:
    """Execute raw SQL using a sync psycopg2 connection."""
    from visibility_tracker.core.config import settings

    import psycopg2

    conn = psycopg2.connect(
        host=settings.postgres_host,
        port=settings.postgres_port,
        user=settings.postgres_user,
        password=settings.postgres_password,
        dbname=settings.postgres_db,
    )
    conn.autocommit = True
    try:
        with conn.cursor() as cur:
            cur.execute(sql)
    finally:
        conn.close()


@celery_app.task(name="refresh_reporting_view")
def refresh_reporting_view_task():
    """Refresh the read-optimized reporting view.

    Scoring runs refresh it after processing rows; this hourly beat entry
    covers the hours without scoring activity.
    """
    from visibility_tracker.core.config import settings

    view = settings.scoring_view_name
    if not settings.scoring_refresh_view:
        return {"status": "skipped"}
    if not _VIEW_NAME.match(view):
        logger.error("Refusing to refresh view with invalid name %r", view)
        return {"status": "error", "error": f"invalid view name: {view}"}

    try:
        _run_sync_sql(f"REFRESH MATERIALIZED VIEW {view}")
        logger.info("Refreshed %s", view)
        return {"status": "ok", "view": view}
    except Exception as exc:
        logger.error("Failed to refresh %s: %s", view, exc)
        return {"status": "error", "error": str(exc)}
