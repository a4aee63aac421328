from __future__ import annotations


class DealboardError(Exception):
    """Base error for failures raised by the deal and integration services."""

    code = "dealboard_error"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class NotFoundError(DealboardError):
    """Raised when a referenced deal, stage or integration does not exist."""

    code = "not_found"


class AlreadyConvertedError(DealboardError):
    """Raised when a source conversation is already linked to a deal."""

    code = "already_converted"

    def __init__(self, source_conversation_id: str, message: str = "Already converted a deal") -> None:
        self.source_conversation_id = source_conversation_id
        super().__init__(message)


class ValidationFailureError(DealboardError):
    """Raised for malformed patches or filters, before any store access."""

    code = "validation_failure"

    def __init__(self, message: str, fields: list[str] | None = None) -> None:
        self.fields = sorted(set(fields or []))
        super().__init__(message)
