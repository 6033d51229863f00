"""
Domain exceptions for the dispatch and reconciliation engine.

HTTP handlers in main.py translate these into responses; background
processing catches them per event so one bad event never aborts a batch.
"""

from typing import Optional


class NotifierError(Exception):
    """Base class for all domain errors."""


class ValidationError(NotifierError):
    """An inbound event is missing a required field or has an unknown shape."""


class ConsentAbsent(NotifierError):
    """No active opt-in with the required preference exists for the recipient."""


class AuthenticationError(NotifierError):
    """Webhook signature or verify-token mismatch."""


class NotFound(NotifierError):
    """A referenced tenant, opt-in or message does not exist."""


class ProviderError(NotifierError):
    """The messaging provider rejected the call, or it failed or timed out."""

    def __init__(self, reason: str, status_code: Optional[int] = None):
        super().__init__(reason)
        self.reason = reason
        self.status_code = status_code


class StoreBusy(NotifierError):
    """A write lost to a concurrent writer and could not be applied."""
