"""Exception hierarchy for the commission settlement engine."""

from __future__ import annotations


class SettlementError(Exception):
    """Base class for every error raised by this package."""


class BusinessRuleViolation(SettlementError):
    """Raised when a requested operation violates a domain constraint."""


class ValidationGap(BusinessRuleViolation):
    """Raised when a sale is submitted without its required fields.

    The ``missing_fields`` attribute lists the offending fields in the order
    they were checked so callers can surface all of them at once.
    """

    def __init__(self, missing_fields):
        self.missing_fields = tuple(missing_fields)
        super().__init__(
            "Missing required sale fields: %s" % ", ".join(self.missing_fields)
        )


class LedgerInvariantViolation(BusinessRuleViolation):
    """Raised when an installment transition is not allowed."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced sale or cutoff period is unknown."""


class CutoffConfigurationError(SettlementError, ValueError):
    """Raised when cutoff periods or cutoff days are inconsistent."""


class RemoteStoreError(SettlementError):
    """Base class for failures reported by the remote store."""


class RemoteTransientError(RemoteStoreError):
    """Network, timeout, or server-side failure that may succeed on retry."""


class RemoteAuthoritativeError(RemoteStoreError):
    """Store-level rejection that will not succeed on retry."""


__all__ = [
    "SettlementError",
    "BusinessRuleViolation",
    "ValidationGap",
    "LedgerInvariantViolation",
    "MissingReferenceError",
    "CutoffConfigurationError",
    "RemoteStoreError",
    "RemoteTransientError",
    "RemoteAuthoritativeError",
]
