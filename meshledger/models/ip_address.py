"""IP address model: one row per address known to the ledger."""

from enum import Enum
from typing import Optional

from sqlmodel import Field

from meshledger.models.base import TimestampModel


class IPStatus(str, Enum):
    """IP address status.

    ASSIGNED mirrors the existence of at least one active assignment and is
    recomputed on every ledger write.
    """

    AVAILABLE = "AVAILABLE"
    ASSIGNED = "ASSIGNED"
    RESERVED = "RESERVED"


class IPAddress(TimestampModel, table=True):
    """IPv4 address tracked by the allocation ledger."""

    __tablename__ = "ip_addresses"

    id: Optional[int] = Field(default=None, primary_key=True)

    address: str = Field(
        unique=True,
        index=True,
        nullable=False,
        max_length=15,
        description="Dotted-quad IPv4 address",
    )

    # Network configuration
    subnet: str = Field(
        max_length=18,
        nullable=False,
        description="Subnet in CIDR notation (e.g., '192.168.1.0/24')",
    )
    gateway: str = Field(max_length=15, nullable=False)
    dns: str = Field(
        max_length=255,
        nullable=False,
        description="Comma-separated DNS servers",
    )

    status: IPStatus = Field(
        default=IPStatus.AVAILABLE,
        index=True,
        description="AVAILABLE, ASSIGNED or RESERVED",
    )
    is_reserved: bool = Field(
        default=False,
        description="Reserved addresses are never handed out by assign",
    )
    notes: Optional[str] = Field(default=None, max_length=500)

    def __repr__(self) -> str:
        return f"<IPAddress(address='{self.address}', status='{self.status}')>"
