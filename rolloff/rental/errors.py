"""Error taxonomy for the rental core."""

from __future__ import annotations


class RentalError(RuntimeError):
    """Base class for every error raised by the rental core."""

    kind = "error"


class ValidationError(RentalError):
    """Raised when incoming data fails validation."""

    kind = "validation"


class InvalidRangeError(ValidationError):
    """Raised when a pickup date falls before the dropoff date."""

    kind = "invalid_range"


class EmptyQuoteError(ValidationError):
    """Raised when a quote without a price snapshot is submitted."""

    kind = "empty_quote"


class SignatureVerificationError(ValidationError):
    """Raised when a payment callback cannot be authenticated."""

    kind = "signature"


class InvalidStateError(RentalError):
    """Raised when an operation is not legal in the entity's current status."""

    kind = "invalid_state"


class InvalidTransitionError(InvalidStateError):
    """Raised when a booking status change is not an allowed edge."""

    kind = "invalid_transition"


class NotFoundError(RentalError):
    kind = "not_found"


class RuleNotFoundError(NotFoundError):
    """Raised when no active pricing rule matches a waste type and size."""

    kind = "rule_not_found"


class ResourceUnavailableError(RentalError):
    kind = "resource_unavailable"


class SizeMismatchError(RentalError):
    kind = "size_mismatch"


class DataIntegrityError(RentalError):
    """Raised when referenced records are missing or inconsistent.

    These are never retried automatically.
    """

    kind = "data_integrity"


class ExternalServiceError(RentalError):
    kind = "external_service"
