from datetime import datetime, timezone

import sqlalchemy as sa
from databases import Database

from config import DATABASE_URL

# Shared async database handle; the job store accepts any Database instance
database = Database(DATABASE_URL)
metadata = sa.MetaData()


transcoding_jobs = sa.Table(
    "transcoding_jobs",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("media_id", sa.Integer, nullable=False),
    sa.Column(
        "kind",
        sa.String(20),
        sa.CheckConstraint(
            "kind IN ('single_file', 'hls', 'thumbnail', 'storyboard')",
            name="ck_transcoding_jobs_kind",
        ),
        nullable=False,
    ),
    sa.Column(
        "status",
        sa.String(20),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed', 'cancelled')",
            name="ck_transcoding_jobs_status",
        ),
        nullable=False,
        default="pending",
    ),
    sa.Column("input_path", sa.Text, nullable=False),
    sa.Column("output_path", sa.Text, nullable=False),
    sa.Column("profile_name", sa.String(50), nullable=True),
    # Container for single-file jobs ("hls" / "jpg" otherwise)
    sa.Column("target_format", sa.String(20), nullable=True),
    # "WxH", or "adaptive" for HLS ladders
    sa.Column("target_resolution", sa.String(20), nullable=True),
    sa.Column(
        "progress_percent",
        sa.Integer,
        sa.CheckConstraint(
            "progress_percent >= 0 AND progress_percent <= 100",
            name="ck_transcoding_jobs_progress_percent_range",
        ),
        default=0,
    ),
    sa.Column("error_message", sa.Text, nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)),
    sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    sa.Index("ix_transcoding_jobs_media_id", "media_id"),
    sa.Index("ix_transcoding_jobs_status", "status"),
)


def create_tables(database_url: str = DATABASE_URL):
    """
    Create database tables directly using SQLAlchemy metadata.
    This creates all tables if they don't exist.
    """
    engine = sa.create_engine(database_url)
    metadata.create_all(engine)
    engine.dispose()


if __name__ == "__main__":
    create_tables()
    print("Database tables created successfully!")
