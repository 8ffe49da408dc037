from sqlalchemy import (
    MetaData, Table, Column, String, Integer, Text, JSON,
    UniqueConstraint, PrimaryKeyConstraint, DateTime, ForeignKey, func
)

metadata = MetaData()

batches = Table(
    "batches",
    metadata,
    Column("batch_key", String(200), primary_key=True),
    Column("review_num", Integer, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
)

submissions = Table(
    "submissions",
    metadata,
    Column(
        "batch_key",
        String(200),
        ForeignKey("batches.batch_key", ondelete="CASCADE", onupdate="CASCADE"),
        nullable=False,
    ),
    Column("paper_id", String(100), nullable=False),
    Column("author_id", String(100), nullable=False, index=True),
    Column("attachment_ref", Text, nullable=True),
    Column("position", Integer, nullable=False),
    PrimaryKeyConstraint("batch_key", "paper_id", name="pk_submissions"),
)

review_assignments = Table(
    "review_assignments",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column(
        "batch_key",
        String(200),
        ForeignKey("batches.batch_key", ondelete="CASCADE", onupdate="CASCADE"),
        nullable=False,
        index=True,
    ),
    Column("paper_id", String(100), nullable=False, index=True),
    Column("author_id", String(100), nullable=False, index=True),
    Column("reviewer_id", String(100), nullable=False, index=True),
    Column("status", String(32), nullable=False),
    Column("payload", JSON(none_as_null=True), nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Column("completed_at", DateTime(timezone=True), nullable=True),
    UniqueConstraint("batch_key", "paper_id", "reviewer_id", name="uq_review_assignment"),
)

# Aggregate state per reviewer: single-delivery flag and passback target
reviewer_progress = Table(
    "reviewer_progress",
    metadata,
    Column(
        "batch_key",
        String(200),
        ForeignKey("batches.batch_key", ondelete="CASCADE", onupdate="CASCADE"),
        nullable=False,
    ),
    Column("reviewer_id", String(100), nullable=False),
    Column("report_state", String(32), nullable=False),
    Column("passback_ref", Text, nullable=True),
    Column("report_error", Text, nullable=True),
    Column("reported_at", DateTime(timezone=True), nullable=True),
    PrimaryKeyConstraint("batch_key", "reviewer_id", name="pk_reviewer_progress"),
)
