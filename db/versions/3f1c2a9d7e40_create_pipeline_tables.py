"""create_pipeline_tables

Revision ID: 3f1c2a9d7e40
Revises:
Create Date: 2026-10-18 09:12:44.310522

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "3f1c2a9d7e40"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create topics, sources, attempts, items, duplicate records and stories."""
    # topics
    op.create_table(
        "topics",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("automation_mode", sa.String(), server_default="manual", nullable=False),
        sa.Column("holiday", sa.Boolean(), server_default="0", nullable=False),
        sa.Column("quality_threshold", sa.Integer(), server_default="60", nullable=False),
        sa.Column("scrape_frequency_hours", sa.Integer(), server_default="12", nullable=False),
        sa.Column("negative_keywords", sa.Text(), nullable=True),
        sa.Column("competing_regions", sa.Text(), nullable=True),
        sa.Column("is_archived", sa.Boolean(), server_default="0", nullable=False),
        sa.Column("last_gathered_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name"),
        sa.CheckConstraint(
            "automation_mode IN ('manual', 'auto_gather', 'auto_simplify', 'auto_illustrate')",
            name="check_topic_automation_mode",
        ),
        sa.CheckConstraint(
            "quality_threshold BETWEEN 0 AND 100", name="check_topic_quality_threshold"
        ),
    )
    op.create_index("idx_topics_archived", "topics", ["is_archived"])

    # sources
    op.create_table(
        "sources",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("topic_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("feed_url", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default="1", nullable=False),
        sa.Column("success_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("failure_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("consecutive_failures", sa.Integer(), server_default="0", nullable=False),
        sa.Column("last_attempt_at", sa.DateTime(), nullable=True),
        sa.Column("last_success_at", sa.DateTime(), nullable=True),
        sa.Column("last_failure_at", sa.DateTime(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("avg_response_time_ms", sa.Float(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["topic_id"], ["topics.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("topic_id", "name", name="uq_source_topic_name"),
    )
    op.create_index("idx_sources_topic", "sources", ["topic_id"])

    # source_attempts
    op.create_table(
        "source_attempts",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("source_id", sa.Integer(), nullable=False),
        sa.Column("attempted_at", sa.DateTime(), nullable=False),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("articles_found", sa.Integer(), server_default="0", nullable=False),
        sa.Column("response_time_ms", sa.Integer(), nullable=True),
        sa.Column("triggered_by", sa.String(), server_default="poll", nullable=False),
        sa.ForeignKeyConstraint(["source_id"], ["sources.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("outcome IN ('success', 'failure')", name="check_attempt_outcome"),
    )
    op.create_index(
        "idx_attempts_source_time", "source_attempts", ["source_id", "attempted_at"]
    )

    # candidate_items
    op.create_table(
        "candidate_items",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("topic_id", sa.Integer(), nullable=False),
        sa.Column("source_id", sa.Integer(), nullable=False),
        sa.Column("fetched_at", sa.DateTime(), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("url", sa.Text(), nullable=True),
        sa.Column("author", sa.String(), nullable=True),
        sa.Column("fingerprint", sa.String(), nullable=False),
        sa.Column("shingles", sa.Text(), nullable=True),
        sa.Column("status", sa.String(), server_default="new", nullable=False),
        sa.Column("confidence", sa.Integer(), nullable=True),
        sa.Column("verdict", sa.String(), nullable=True),
        sa.Column("held_for_review", sa.Boolean(), server_default="0", nullable=False),
        sa.Column("hold_reason", sa.String(), nullable=True),
        sa.Column("verdict_overridden", sa.Boolean(), server_default="0", nullable=False),
        sa.Column("merged_source_ids", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["topic_id"], ["topics.id"]),
        sa.ForeignKeyConstraint(["source_id"], ["sources.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "status IN ('new', 'filtered', 'duplicate', 'awaiting_simplify', "
            "'awaiting_illustrate', 'ready')",
            name="check_item_status",
        ),
    )
    op.create_index("idx_items_topic_status", "candidate_items", ["topic_id", "status"])
    op.create_index("idx_items_topic_fetched", "candidate_items", ["topic_id", "fetched_at"])
    op.create_index("idx_items_fingerprint", "candidate_items", ["topic_id", "fingerprint"])

    # duplicate_records
    op.create_table(
        "duplicate_records",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("topic_id", sa.Integer(), nullable=False),
        sa.Column("item_id", sa.Integer(), nullable=False),
        sa.Column("matched_item_id", sa.Integer(), nullable=True),
        sa.Column("similarity", sa.Float(), nullable=False),
        sa.Column("confidence", sa.Integer(), nullable=False),
        sa.Column("detection_method", sa.String(), nullable=False),
        sa.Column("status", sa.String(), server_default="pending", nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("reviewed_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["topic_id"], ["topics.id"]),
        sa.ForeignKeyConstraint(["item_id"], ["candidate_items.id"]),
        sa.ForeignKeyConstraint(["matched_item_id"], ["candidate_items.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "status IN ('pending', 'overridden', 'merged')", name="check_duplicate_status"
        ),
    )
    op.create_index(
        "idx_duplicates_topic_status", "duplicate_records", ["topic_id", "status"]
    )
    op.create_index("idx_duplicates_item", "duplicate_records", ["item_id"])

    # stories
    op.create_table(
        "stories",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("item_id", sa.Integer(), nullable=False),
        sa.Column("topic_id", sa.Integer(), nullable=False),
        sa.Column("originality_confidence", sa.Integer(), nullable=True),
        sa.Column("author", sa.String(), nullable=True),
        sa.Column("status", sa.String(), server_default="draft", nullable=False),
        sa.Column("is_illustrated", sa.Boolean(), server_default="0", nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("published_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["item_id"], ["candidate_items.id"]),
        sa.ForeignKeyConstraint(["topic_id"], ["topics.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("item_id"),
        sa.CheckConstraint(
            "status IN ('draft', 'ready', 'published')", name="check_story_status"
        ),
    )
    op.create_index("idx_stories_topic_status", "stories", ["topic_id", "status"])

    # slides
    op.create_table(
        "slides",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("story_id", sa.Integer(), nullable=False),
        sa.Column("slide_number", sa.Integer(), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.ForeignKeyConstraint(["story_id"], ["stories.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("story_id", "slide_number", name="uq_slide_story_number"),
    )


def downgrade() -> None:
    """Drop pipeline tables."""
    op.drop_table("slides")
    op.drop_index("idx_stories_topic_status", table_name="stories")
    op.drop_table("stories")
    op.drop_index("idx_duplicates_item", table_name="duplicate_records")
    op.drop_index("idx_duplicates_topic_status", table_name="duplicate_records")
    op.drop_table("duplicate_records")
    op.drop_index("idx_items_fingerprint", table_name="candidate_items")
    op.drop_index("idx_items_topic_fetched", table_name="candidate_items")
    op.drop_index("idx_items_topic_status", table_name="candidate_items")
    op.drop_table("candidate_items")
    op.drop_index("idx_attempts_source_time", table_name="source_attempts")
    op.drop_table("source_attempts")
    op.drop_index("idx_sources_topic", table_name="sources")
    op.drop_table("sources")
    op.drop_index("idx_topics_archived", table_name="topics")
    op.drop_table("topics")
