# healthchain/errors.py
"""
Error taxonomy.

Every error carries the HTTP status the API layer answers with; the FastAPI
handler in main.py turns them into ``{"ok": false, "message": ...}``.
"""

from typing import Any, Dict, Optional


class HealthchainError(Exception):
    """Base exception for all domain errors."""

    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(HealthchainError):
    """Missing or malformed input."""

    status_code = 400


class AuthenticationError(HealthchainError):
    status_code = 401


class ForbiddenError(HealthchainError):
    status_code = 403


class ConsentRequiredError(ForbiddenError):
    """Cross-entity access to patient data without a live consent grant."""


class NotFoundError(HealthchainError):
    status_code = 404


class EntityNotFoundError(NotFoundError):
    """A referenced patient, doctor or hospital does not resolve."""

    def __init__(self, entity: str, entity_id: Any):
        super().__init__(f"{entity} not found", details={"id": str(entity_id)})
        self.entity = entity


class DuplicateEntityError(HealthchainError):
    status_code = 409


class DuplicateRelationshipError(HealthchainError):
    status_code = 409


class AlreadyInactiveError(HealthchainError):
    status_code = 409


class AccountLockedError(HealthchainError):
    status_code = 423


class MissingSignerError(HealthchainError):
    """A ledger-active operation was called without signing material."""

    status_code = 428


class ConsentEnumerationUnavailableError(HealthchainError):
    """Listing grants is not possible while the ledger is authoritative."""

    status_code = 501


class LedgerUnavailableError(HealthchainError):
    """Ledger endpoint unreachable, not configured, or the transaction reverted."""

    status_code = 502


class LedgerTimeoutError(LedgerUnavailableError):
    status_code = 504
