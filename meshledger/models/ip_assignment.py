"""IP assignment model: history of address-to-equipment bindings."""

from datetime import datetime
from typing import Optional

from sqlalchemy import Column, ForeignKey, Index, String
from sqlmodel import Field, SQLModel

from meshledger.utils.timeutils import utc_now


class IPAssignment(SQLModel, table=True):
    """Binding of an IP address to a piece of equipment.

    Rows are never deleted; releasing an address deactivates the row and
    stamps ``released_at``.
    """

    __tablename__ = "ip_assignments"

    id: Optional[int] = Field(default=None, primary_key=True)

    ip_address_id: int = Field(
        foreign_key="ip_addresses.id",
        index=True,
        nullable=False,
        description="Assigned IP address",
    )
    # Set to NULL only when the equipment itself is deleted
    equipment_id: Optional[str] = Field(
        default=None,
        sa_column=Column(
            String(50),
            ForeignKey("equipment.id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        ),
    )
    user_id: str = Field(
        max_length=100,
        nullable=False,
        description="Actor who created the assignment",
    )

    is_active: bool = Field(default=True, index=True)

    assigned_at: datetime = Field(default_factory=utc_now, nullable=False)
    released_at: Optional[datetime] = Field(
        default=None,
        description="When the assignment was released (NULL while active)",
    )
    notes: Optional[str] = Field(default=None, max_length=500)

    __table_args__ = (
        Index("ix_assignment_ip_active", "ip_address_id", "is_active"),
        Index("ix_assignment_equipment_active", "equipment_id", "is_active"),
    )

    def __repr__(self) -> str:
        return (
            f"<IPAssignment(id={self.id}, ip_address_id={self.ip_address_id}, "
            f"equipment_id='{self.equipment_id}', is_active={self.is_active})>"
        )
