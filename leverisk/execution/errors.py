"""
Exception hierarchy for the risk engine.

Validation problems are raised before any network call is made.
Gateway failures are split into exchange rejections, timeouts and
connection errors so that the live-order orchestrator can report each
order step precisely.  None of these exceptions ever carries
credential material in its message.
"""

from __future__ import annotations

from typing import Optional


class LeveriskError(Exception):
    """Base class of every error raised by this package."""


class InputValidationError(LeveriskError, ValueError):
    """Invalid user input: non-positive price or amount, stop equal to entry..."""


class InsufficientDataError(LeveriskError):
    """Too few samples for a volatility calculation."""


class CredentialsMissingError(LeveriskError):
    """A signed exchange call was requested without API credentials."""


class ExchangeError(LeveriskError):
    """Base class of failures talking to the exchange."""


class ExchangeRejectedError(ExchangeError):
    """The exchange answered with a non-2xx status.

    Attributes
    ----------
    status : int
        HTTP status code.
    code : int or None
        Exchange error code when the body could be parsed.
    message : str
        Exchange error message when parseable, otherwise ``HTTP <status>``.
    """

    def __init__(self, status: int, message: str, code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status
        self.code = code
        self.message = message

    @property
    def is_auth_failure(self) -> bool:
        return self.status in (401, 403)


class NetworkTimeoutError(ExchangeError):
    """An exchange call exceeded its deadline."""


class ExchangeUnavailableError(ExchangeError):
    """The exchange could not be reached (DNS, connection reset...)."""


class MalformedResponseError(ExchangeError):
    """A 2xx answer whose body is not the JSON document the call expects."""


class ReconciliationError(LeveriskError):
    """A reconciliation tick failed.  Logged only, never shown as an error."""
