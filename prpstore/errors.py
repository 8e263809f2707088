"""Error taxonomy for tool calls.

Every failure that leaves the dispatcher is one of these kinds. The public
message of each kind comes from a closed set; driver and vendor error text is
only ever logged, never returned to the caller.
"""

from __future__ import annotations

# PersistenceError reasons
NOT_FOUND = "not_found"
CONSTRAINT = "constraint"
CONFLICT = "conflict"
UNAVAILABLE = "unavailable"

# ExtractionError reasons
TOO_LARGE = "too_large"
MALFORMED = "malformed"
NOT_CONFIGURED = "not_configured"

PERSISTENCE_MESSAGES = {
    NOT_FOUND: "The requested record was not found.",
    CONSTRAINT: "The request conflicts with existing data.",
    CONFLICT: "The record was modified by another request; reload it and retry.",
    UNAVAILABLE: "The data store is temporarily unavailable; retry later.",
}

EXTRACTION_MESSAGES = {
    TOO_LARGE: "The document is empty or exceeds the maximum size.",
    MALFORMED: "The extraction service returned an unusable result; retry later.",
    UNAVAILABLE: "The extraction service is temporarily unavailable; retry later.",
    NOT_CONFIGURED: "Document extraction is not configured on this server.",
}


class PrpStoreError(Exception):
    """Base class for errors that map onto an error envelope."""

    kind = "InternalError"
    message = "An internal error occurred."

    def envelope_fields(self) -> dict:
        return {}

    def to_envelope(self, correlation_id: str) -> dict:
        envelope = {
            "ok": False,
            "errorKind": self.kind,
            "message": self.message,
            "correlationId": correlation_id,
        }
        envelope.update(self.envelope_fields())
        return envelope


class ValidationError(PrpStoreError):
    """Arguments failed validation. Field details are safe to show verbatim."""

    kind = "ValidationError"
    message = "The tool arguments are invalid."

    def __init__(self, details: list[dict]) -> None:
        super().__init__(f"{len(details)} invalid field(s)")
        self.details = details

    def envelope_fields(self) -> dict:
        return {"details": self.details}


class AuthorizationError(PrpStoreError):
    kind = "AuthorizationError"
    message = "Insufficient permissions."


class ExtractionError(PrpStoreError):
    kind = "ExtractionError"

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason
        self.message = EXTRACTION_MESSAGES[reason]

    def envelope_fields(self) -> dict:
        return {"reason": self.reason}


class PersistenceError(PrpStoreError):
    kind = "PersistenceError"

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason
        self.message = PERSISTENCE_MESSAGES[reason]

    @property
    def retryable(self) -> bool:
        return self.reason in (UNAVAILABLE, CONFLICT)

    def envelope_fields(self) -> dict:
        return {"reason": self.reason, "retryable": self.retryable}


class InternalError(PrpStoreError):
    pass


class OperationCancelled(Exception):
    """Raised inside a transaction whose caller went away before commit."""
