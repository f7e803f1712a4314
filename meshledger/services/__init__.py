"""Business logic services."""

# Note: Imports are intentionally not done here to avoid circular import issues.
# Import services directly from their modules:
#   from meshledger.services.ledger_service import LedgerService
#   from meshledger.services.probe_service import ProbeService

__all__ = [
    "AlertService",
    "AuditService",
    "ConflictService",
    "EquipmentService",
    "LedgerService",
    "ProbeService",
    "SideEffects",
]
