"""Domain error taxonomy.

Services raise these; the API layer maps each family to an HTTP status through
``core.observability.domain_error_handler``. Consistency warnings are never
raised: they travel as plain values on the result objects.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


class DomainError(Exception):
    status_code = 400
    code = "DOMAIN_ERROR"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "detail": self.message, "details": self.details}


# Validation errors: user-correctable, nothing was written.


class ValidationFailed(DomainError):
    status_code = 422
    code = "VALIDATION_FAILED"


class VolumeExceedsBalance(ValidationFailed):
    code = "VOLUME_EXCEEDS_BALANCE"


class MissingReference(ValidationFailed):
    code = "MISSING_REFERENCE"


class MissingFreightRate(ValidationFailed):
    code = "MISSING_FREIGHT_RATE"


class MissingFlatPrice(ValidationFailed):
    code = "MISSING_FLAT_PRICE"


class SameReference(ValidationFailed):
    code = "SAME_REFERENCE"


class InvalidRollVolume(ValidationFailed):
    code = "INVALID_ROLL_VOLUME"


class RollNotSupported(ValidationFailed):
    code = "ROLL_NOT_SUPPORTED"


class InvalidAmount(ValidationFailed):
    code = "INVALID_AMOUNT"


# State errors: a precondition on the current state was violated.


class StateConflict(DomainError):
    status_code = 409
    code = "STATE_CONFLICT"


class StaleState(StateConflict):
    code = "STALE_STATE"


class InvalidTransition(StateConflict):
    code = "INVALID_TRANSITION"


# Numeric errors: fatal to one computation only.


class NumericFailure(DomainError):
    status_code = 422
    code = "NUMERIC_FAILURE"


class ZeroVolumePosition(NumericFailure):
    code = "ZERO_VOLUME_POSITION"


class ContractSizeUnsupported(NumericFailure):
    code = "CONTRACT_SIZE_UNSUPPORTED"


class MissingReferencePrice(NumericFailure):
    code = "MISSING_REFERENCE_PRICE"


class NotFound(DomainError):
    status_code = 404
    code = "NOT_FOUND"


class Forbidden(DomainError):
    status_code = 403
    code = "FORBIDDEN"


@dataclass(frozen=True)
class ConsistencyWarning:
    """Non-fatal finding attached to a result (over-coverage, expired validation)."""

    code: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}
