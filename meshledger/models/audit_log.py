"""Audit log model. Entries are append-only."""

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import JSON, Column, ForeignKey, Integer, String
from sqlmodel import Field, SQLModel

from meshledger.utils.timeutils import utc_now


class AuditLogEntry(SQLModel, table=True):
    """Immutable record of a state-changing action."""

    __tablename__ = "audit_log"

    id: Optional[int] = Field(default=None, primary_key=True)

    action: str = Field(index=True, max_length=50)
    entity_type: str = Field(max_length=50)
    entity_id: Optional[str] = Field(default=None, index=True, max_length=100)
    user_id: str = Field(max_length=100, description="Acting user or 'system'")

    equipment_id: Optional[str] = Field(
        default=None,
        sa_column=Column(
            String(50),
            ForeignKey("equipment.id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        ),
    )
    ip_address_id: Optional[int] = Field(
        default=None,
        sa_column=Column(
            Integer,
            ForeignKey("ip_addresses.id", ondelete="SET NULL"),
            nullable=True,
        ),
    )

    details: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))

    created_at: datetime = Field(default_factory=utc_now, nullable=False, index=True)

    def __repr__(self) -> str:
        return f"<AuditLogEntry(id={self.id}, action='{self.action}')>"
