"""initial visibility schema: brands, queries, collection and scoring tables

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-01 09:00:00.000000

"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB, UUID

revision: str = "0001_initial"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _uuid_fk(name: str, target: str, nullable: bool = False, index: bool = True) -> sa.Column:
    return sa.Column(
        name, UUID(as_uuid=True), sa.ForeignKey(target, ondelete="CASCADE"), nullable=nullable, index=index
    )


def _fact_fk(unique: bool = False) -> sa.Column:
    return sa.Column(
        "metric_fact_id",
        sa.BigInteger(),
        sa.ForeignKey("metric_facts.id", ondelete="CASCADE"),
        nullable=False,
        unique=unique,
    )


def upgrade() -> None:
    # =========================================================
    # 1. Brands, competitors, queries
    # =========================================================
    op.create_table(
        "brands",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("customer_id", UUID(as_uuid=True), nullable=False, index=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("brand_metadata", JSONB(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "brand_competitors",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        _uuid_fk("brand_id", "brands.id"),
        sa.Column("competitor_name", sa.String(255), nullable=False),
        sa.Column("competitor_metadata", JSONB(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("brand_id", "competitor_name", name="uq_brand_competitor"),
    )

    op.create_table(
        "queries",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        _uuid_fk("brand_id", "brands.id"),
        sa.Column("customer_id", UUID(as_uuid=True), nullable=False, index=True),
        sa.Column("query_text", sa.String(2000), nullable=False),
        sa.Column("topic", sa.String(255), nullable=True),
        sa.Column("intent", sa.String(20), nullable=False, server_default="informational"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column(
            "superseded_by_id", UUID(as_uuid=True), sa.ForeignKey("queries.id", ondelete="SET NULL"), nullable=True
        ),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    # =========================================================
    # 2. Collection
    # =========================================================
    op.create_table(
        "collector_settings",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("collector_type", sa.String(40), nullable=False, index=True),
        sa.Column("provider", sa.String(40), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("timeout_ms", sa.Integer(), nullable=True),
        sa.Column("max_retries", sa.Integer(), nullable=True),
        sa.Column("continue_on_failure", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default="true"),
        sa.UniqueConstraint("collector_type", "provider", name="uq_collector_setting"),
    )

    op.create_table(
        "query_executions",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        _uuid_fk("query_id", "queries.id"),
        _uuid_fk("brand_id", "brands.id"),
        sa.Column("customer_id", UUID(as_uuid=True), nullable=False),
        sa.Column("collector_type", sa.String(40), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("status_log", JSONB(), nullable=False, server_default="[]"),
        sa.Column("metadata", JSONB(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("snapshot_id", sa.String(120), nullable=True),
        sa.Column("duration_ms", sa.BigInteger(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "collector_results",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("customer_id", UUID(as_uuid=True), nullable=False),
        _uuid_fk("brand_id", "brands.id"),
        _uuid_fk("query_id", "queries.id"),
        sa.Column(
            "execution_id",
            sa.BigInteger(),
            sa.ForeignKey("query_executions.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("collector_type", sa.String(40), nullable=False),
        sa.Column("provider", sa.String(40), nullable=True),
        sa.Column("question", sa.Text(), nullable=False),
        sa.Column("topic", sa.String(255), nullable=True),
        sa.Column("raw_answer", sa.Text(), nullable=True),
        sa.Column("citations", JSONB(), nullable=False, server_default="[]"),
        sa.Column("urls", JSONB(), nullable=False, server_default="[]"),
        sa.Column("metadata", JSONB(), nullable=True),
        sa.Column("snapshot_id", sa.String(120), nullable=True),
        sa.Column("execution_time_ms", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("status_log", JSONB(), nullable=False, server_default="[]"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("error_metadata", JSONB(), nullable=True),
        sa.Column("scoring_status", sa.String(20), nullable=True, server_default="pending"),
        sa.Column("scoring_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("scoring_completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("scoring_error", sa.Text(), nullable=True),
        sa.Column("scoring_worker_id", sa.String(120), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_collector_results_scoring", "collector_results", ["brand_id", "customer_id", "scoring_status"])
    op.create_index(
        "ix_collector_results_scoring_started", "collector_results", ["scoring_status", "scoring_started_at"]
    )

    # =========================================================
    # 3. Scoring outputs
    # =========================================================
    op.create_table(
        "consolidated_analysis_cache",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column(
            "collector_result_id",
            sa.BigInteger(),
            sa.ForeignKey("collector_results.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("brand_id", UUID(as_uuid=True), nullable=False, index=True),
        sa.Column("customer_id", UUID(as_uuid=True), nullable=False),
        sa.Column("products", JSONB(), nullable=False, server_default="{}"),
        sa.Column("sentiment", JSONB(), nullable=False, server_default="{}"),
        sa.Column("citations", JSONB(), nullable=False, server_default="{}"),
        sa.Column("engine", sa.String(80), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "metric_facts",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column(
            "collector_result_id",
            sa.BigInteger(),
            sa.ForeignKey("collector_results.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        _uuid_fk("brand_id", "brands.id", index=False),
        sa.Column("customer_id", UUID(as_uuid=True), nullable=False),
        _uuid_fk("query_id", "queries.id", index=False),
        sa.Column("collector_type", sa.String(40), nullable=False),
        sa.Column("topic", sa.String(255), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_metric_facts_brand_processed", "metric_facts", ["brand_id", "customer_id", "processed_at"])

    op.create_table(
        "brand_metrics",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        _fact_fk(unique=True),
        sa.Column("visibility_index", sa.Float(), nullable=True),
        sa.Column("share_of_answers", sa.Float(), nullable=True),
        sa.Column("has_brand_presence", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("brand_first_position", sa.Integer(), nullable=True),
        sa.Column("brand_positions", JSONB(), nullable=False, server_default="[]"),
        sa.Column("total_brand_mentions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_word_count", sa.Integer(), nullable=False, server_default="0"),
    )

    op.create_table(
        "competitor_metrics",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        _fact_fk(),
        _uuid_fk("competitor_id", "brand_competitors.id"),
        sa.Column("visibility_index", sa.Float(), nullable=True),
        sa.Column("share_of_answers", sa.Float(), nullable=True),
        sa.Column("competitor_first_position", sa.Integer(), nullable=True),
        sa.Column("competitor_positions", JSONB(), nullable=False, server_default="[]"),
        sa.Column("competitor_mentions", sa.Integer(), nullable=False, server_default="0"),
        sa.UniqueConstraint("metric_fact_id", "competitor_id", name="uq_competitor_metric"),
    )

    op.create_table(
        "brand_sentiment",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        _fact_fk(unique=True),
        sa.Column("sentiment_label", sa.String(10), nullable=False),
        sa.Column("sentiment_score", sa.Float(), nullable=False),
        sa.Column("positive_sentences", JSONB(), nullable=False, server_default="[]"),
        sa.Column("negative_sentences", JSONB(), nullable=False, server_default="[]"),
    )

    op.create_table(
        "competitor_sentiment",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        _fact_fk(),
        _uuid_fk("competitor_id", "brand_competitors.id"),
        sa.Column("sentiment_label", sa.String(10), nullable=False),
        sa.Column("sentiment_score", sa.Float(), nullable=False),
        sa.Column("positive_sentences", JSONB(), nullable=False, server_default="[]"),
        sa.Column("negative_sentences", JSONB(), nullable=False, server_default="[]"),
        sa.UniqueConstraint("metric_fact_id", "competitor_id", name="uq_competitor_sentiment"),
    )

    # =========================================================
    # 4. Citations
    # =========================================================
    op.create_table(
        "citation_categories",
        sa.Column("domain", sa.String(255), primary_key=True),
        sa.Column("category", sa.String(20), nullable=False),
        sa.Column("page_name", sa.String(255), nullable=True),
        sa.Column("source", sa.String(20), nullable=False, server_default="heuristic"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "citations",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column(
            "collector_result_id",
            sa.BigInteger(),
            sa.ForeignKey("collector_results.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column("brand_id", UUID(as_uuid=True), nullable=False, index=True),
        sa.Column("customer_id", UUID(as_uuid=True), nullable=False),
        sa.Column("url", sa.Text(), nullable=False),
        sa.Column("domain", sa.String(255), nullable=False, index=True),
        sa.Column("category", sa.String(20), nullable=False),
        sa.Column("page_name", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("collector_result_id", "url", name="uq_citation_result_url"),
    )

    # =========================================================
    # 5. Read-optimized reporting view (refreshed after scoring runs)
    # =========================================================
    op.execute(
        """
        CREATE MATERIALIZED VIEW extracted_positions_compat AS
        SELECT
            mf.id AS metric_fact_id,
            mf.collector_result_id,
            mf.brand_id,
            mf.customer_id,
            mf.query_id,
            mf.collector_type,
            mf.topic,
            mf.processed_at,
            NULL::uuid AS competitor_id,
            bm.visibility_index,
            bm.share_of_answers,
            bm.brand_first_position AS first_position,
            bm.total_brand_mentions AS mentions,
            bm.total_word_count,
            bs.sentiment_label,
            bs.sentiment_score
        FROM metric_facts mf
        JOIN brand_metrics bm ON bm.metric_fact_id = mf.id
        LEFT JOIN brand_sentiment bs ON bs.metric_fact_id = mf.id
        UNION ALL
        SELECT
            mf.id,
            mf.collector_result_id,
            mf.brand_id,
            mf.customer_id,
            mf.query_id,
            mf.collector_type,
            mf.topic,
            mf.processed_at,
            cm.competitor_id,
            cm.visibility_index,
            cm.share_of_answers,
            cm.competitor_first_position,
            cm.competitor_mentions,
            NULL::integer,
            cs.sentiment_label,
            cs.sentiment_score
        FROM metric_facts mf
        JOIN competitor_metrics cm ON cm.metric_fact_id = mf.id
        LEFT JOIN competitor_sentiment cs
            ON cs.metric_fact_id = mf.id AND cs.competitor_id = cm.competitor_id
        """
    )
    op.execute(
        "CREATE INDEX ix_extracted_positions_brand ON extracted_positions_compat (brand_id, customer_id, processed_at)"
    )


def downgrade() -> None:
    op.execute("DROP MATERIALIZED VIEW IF EXISTS extracted_positions_compat")
    for table in (
        "citations",
        "citation_categories",
        "competitor_sentiment",
        "brand_sentiment",
        "competitor_metrics",
        "brand_metrics",
        "metric_facts",
        "consolidated_analysis_cache",
        "collector_results",
        "query_executions",
        "collector_settings",
        "queries",
        "brand_competitors",
        "brands",
    ):
        op.drop_table(table)
