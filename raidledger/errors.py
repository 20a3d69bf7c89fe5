"""
raidledger.errors — Error Taxonomy
===================================

Every failure the core reports carries a machine-readable ``code`` plus
optional field-level detail, so callers can tell *which* precondition
failed instead of receiving a bare rejection.

    ValidationError     400  malformed or missing input
    AuthorizationError  403  missing capability or ownership
    NotFoundError       404  unknown run
    StateError          409  operation invalid for the run's status
    ConflictError       409  duplicate identifier on creation

A retried credit that hits an existing ledger subject is **not** an error;
ledger operations report it through their return value instead.
"""

from __future__ import annotations

from typing import Any


class RaidLedgerError(Exception):
    """Base class for all expected, user-facing failures."""

    status_code = 400
    default_code = "ERROR"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        fields: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.fields = fields or {}

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.fields:
            body["fields"] = self.fields
        return body

    def __repr__(self) -> str:
        return f"<{type(self).__name__} code={self.code} message={self.message!r}>"


class ValidationError(RaidLedgerError):
    status_code = 400
    default_code = "VALIDATION_ERROR"


class AuthorizationError(RaidLedgerError):
    status_code = 403
    default_code = "NOT_AUTHORIZED"


class NotFoundError(RaidLedgerError):
    status_code = 404
    default_code = "RUN_NOT_FOUND"


class StateError(RaidLedgerError):
    status_code = 409
    default_code = "INVALID_TRANSITION"


class ConflictError(RaidLedgerError):
    status_code = 409
    default_code = "CONFLICT"
