"""Domain exceptions for the ledger, registry, prober and alert engine.

Every exception carries the HTTP status the API layer answers with, so
services raise them directly and a single handler in ``meshledger.main``
renders them.
"""

from typing import Any, Dict, Optional

from fastapi import status


class LedgerError(Exception):
    """Base exception for all domain errors."""

    status_code: int = status.HTTP_400_BAD_REQUEST
    default_detail: str = "Request could not be processed"

    def __init__(self, detail: Optional[str] = None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.detail}


class ValidationError(LedgerError):
    """Malformed address or MAC, missing field or invalid selector."""

    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    default_detail = "Validation error"


class NotFoundError(LedgerError):
    """Referenced equipment, IP, assignment or alert does not exist."""

    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Resource not found"


class ConflictError(LedgerError):
    """Operation would break the one-active-assignment-per-IP rule.

    ``holder`` describes the assignment currently holding the address
    (equipment id, name, location, assigned_at, assignment id) when known.
    """

    status_code = status.HTTP_409_CONFLICT
    default_detail = "Resource conflict"

    def __init__(
        self, detail: Optional[str] = None, holder: Optional[Dict[str, Any]] = None
    ):
        super().__init__(detail)
        self.holder = holder

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.detail, "holder": self.holder}


class DependencyError(LedgerError):
    """An audit or alert write failed outside the primary transaction."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_detail = "Side-channel write failed"


class ProbeError(LedgerError):
    """Liveness probe could not reach the equipment or timed out."""

    status_code = status.HTTP_504_GATEWAY_TIMEOUT
    default_detail = "Probe failed"


class DeletionVerificationError(LedgerError):
    """Equipment row still present after the deletion cascade."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_detail = "Deletion could not be verified"
