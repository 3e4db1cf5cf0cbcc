"""Error taxonomy for a payment attempt.

Validation errors never reach the network. Transport and provider errors abort
the attempt and are converted into a `PaymentOutcome` by the orchestrator.
Polling errors are logged and retried.
"""

from typing import Any


class PaymentError(Exception):
    """Base class carrying a user-facing message."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(PaymentError):
    """Input rejected before any provider call."""


class TransportError(PaymentError):
    """The provider could not be reached (DNS, connect, timeout...)."""


class ProviderError(PaymentError):
    """Provider answered with a failure status or a semantically invalid body."""

    step = "provider"

    def __init__(self, message: str, status_code: int | None = None, details: Any = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.details = details if details is not None else {}


class TokenError(ProviderError):
    step = "token"


class IpnRegistrationError(ProviderError):
    step = "ipn_registration"


class OrderSubmissionError(ProviderError):
    step = "order_submission"


class StkPushError(ProviderError):
    step = "stk_push"


class StatusLookupError(ProviderError):
    step = "status_lookup"


class PollingError(PaymentError):
    """One failed status poll; transient by definition."""

    def __init__(self, message: str, attempt: int) -> None:
        super().__init__(message)
        self.attempt = attempt
