# clinicdesk/errors.py
"""Domain errors raised by the scheduling and billing engine.

Every error carries a machine-readable ``kind``, a human message and, where it
applies, the offending ``field`` so the API layer can render a precise message.
None of these are retried by the engine.
"""
from typing import Any, Dict, Optional


class EngineError(Exception):
    kind = "ENGINE_ERROR"
    status_code = 400

    def __init__(self, message: str, field: Optional[str] = None, **context: Any):
        super().__init__(message)
        self.message = message
        self.field = field
        self.context = context

    def to_dict(self) -> Dict[str, Any]:
        payload = {"error": self.kind, "detail": self.message, "field": self.field}
        if self.context:
            payload["context"] = self.context
        return payload


class SchedulingConflictError(EngineError):
    """The proposed interval overlaps an existing booking for the doctor."""
    kind = "SCHEDULING_CONFLICT"
    status_code = 409


class OutsideBusinessHoursError(EngineError):
    kind = "OUTSIDE_BUSINESS_HOURS"
    status_code = 422


class InvalidStateTransitionError(EngineError):
    kind = "INVALID_STATE_TRANSITION"
    status_code = 409


class AlreadyInvoicedError(EngineError):
    """The visit already has an invoice; ``context['invoice_id']`` points at it."""
    kind = "ALREADY_INVOICED"
    status_code = 409


class MissingReferenceError(EngineError):
    kind = "MISSING_REFERENCE"
    status_code = 404


class NotFoundError(EngineError):
    kind = "NOT_FOUND"
    status_code = 404


class OverPaymentError(EngineError):
    kind = "OVER_PAYMENT"
    status_code = 422


class InvalidAmountError(EngineError):
    kind = "INVALID_AMOUNT"
    status_code = 422


class DataIntegrityError(EngineError):
    """A ledger adjustment would break a money invariant. Indicates a caller bug."""
    kind = "DATA_INTEGRITY"
    status_code = 500

    def to_dict(self) -> Dict[str, Any]:
        # Internal detail stays in the logs
        return {"error": self.kind, "detail": "Internal data integrity error.", "field": None}


class ConcurrentUpdateError(EngineError):
    """The row kept changing under a compare-and-swap; the caller may retry."""
    kind = "CONCURRENT_UPDATE"
    status_code = 409
