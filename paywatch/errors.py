"""
Errors raised inside the settlement engine.

check() never lets these escape: a missing order, a duplicate trigger
and a failed sweep are reported as CheckOutcome kinds (NOT_FOUND,
ALREADY_PROCESSED, FATAL). LedgerUnavailable is transient: re-invoke
check(), status is untouched.
"""


class PaywatchError(Exception):
    """Base class for all engine errors."""
    pass


class ConfigError(PaywatchError):
    """Raised at startup when settings are missing or malformed."""
    pass


class LedgerUnavailable(PaywatchError):
    """Transfer query failed (network, HTTP, rate limit, timeout). Retryable."""
    pass


class InvalidTransition(PaywatchError):
    """A patch tried to move an order's status backward or touch a terminal order."""
    pass
