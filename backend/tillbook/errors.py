# Overview: Domain error taxonomy shared by every use case.

from __future__ import annotations


class DomainError(Exception):
    """
    Base class for expected, user-reportable failures.

    `code` is the machine-readable reason callers map to responses
    (VALIDATION_ERROR -> 400, CONFLICT -> 409, NOT_FOUND -> 404, ...).
    """

    code = "DOMAIN_ERROR"

    def __init__(self, message: str, *, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        payload = {"error": self.message, "code": self.code}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(DomainError, ValueError):
    """400-level input problem. Raised before any storage write."""

    code = "VALIDATION_ERROR"


class ConflictError(DomainError, ValueError):
    """409-level business rule conflict (e.g., duplicate open session)."""

    code = "CONFLICT"


class NotFoundError(DomainError, LookupError):
    """Referenced subject does not exist or does not belong to the tenant."""

    code = "NOT_FOUND"

    def __init__(self, resource: str, resource_id, *, details: dict | None = None):
        super().__init__(f"{resource} {resource_id} not found", details=details)
        self.resource = resource
        self.resource_id = resource_id


class DependencyError(DomainError):
    """A cross-module collaborator could not satisfy a lookup."""

    code = "DEPENDENCY_ERROR"


class TransientStorageError(DomainError):
    """Connection, lock or timeout failure. Nothing was committed; safe to retry."""

    code = "TRANSIENT_STORAGE"


class LedgerImmutabilityError(DomainError):
    """Attempt to update or delete an append-only ledger row."""

    code = "LEDGER_IMMUTABLE"
