"""Base model with common fields for all database models."""

from datetime import datetime

from sqlmodel import Field, SQLModel

from meshledger.utils.timeutils import utc_now


class TimestampModel(SQLModel):
    """Base model with created_at and updated_at timestamps (naive UTC)."""

    created_at: datetime = Field(
        default_factory=utc_now,
        nullable=False,
        description="Timestamp when the record was created",
    )
    updated_at: datetime = Field(
        default_factory=utc_now,
        nullable=False,
        sa_column_kwargs={"onupdate": utc_now},
        description="Timestamp when the record was last updated",
    )
