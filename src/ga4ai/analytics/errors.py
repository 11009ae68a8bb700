"""
Error taxonomy for the query pipeline.

Each error carries a ``user_message`` suitable for showing to the person who
asked the question; ``str(error)`` keeps the technical detail for logs.
"""

from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from ga4ai.api.connector import ToolError


class AnalyticsError(Exception):
    """Base class for failures surfaced by the pipeline."""

    user_message = "The analytics request could not be completed."

    def __init__(self, message: str, user_message: Optional[str] = None):
        super().__init__(message)
        if user_message is not None:
            self.user_message = user_message


class ExtractionFailed(AnalyticsError):
    """The text could not be turned into a query specification."""

    user_message = (
        "I couldn't understand that analytics question. Try naming a metric, "
        "a breakdown and a period, e.g. 'sessions by country last 7 days'."
    )


class InterpretationFailed(ExtractionFailed):
    """The interpretation service failed or returned something other than JSON."""


class TransportUnavailable(AnalyticsError):
    """The connection to the analytics tool could not be established."""

    user_message = (
        "The analytics service is unavailable right now. Check that the "
        "analytics server is installed and its credentials are configured."
    )


class AllCandidatesFailed(AnalyticsError):
    """Every operation name tried for a capability was rejected."""

    def __init__(
        self,
        capability: str,
        attempts: list["ToolError"],
        message: Optional[str] = None,
        last_error: Optional["ToolError"] = None,
    ):
        self.capability = capability
        self.attempts = list(attempts)
        self.last_error = last_error or (self.attempts[-1] if self.attempts else None)
        last = self.last_error
        super().__init__(
            message
            or f"all {len(self.attempts)} candidates for {capability} failed"
            + (f": {last.message}" if last else ""),
            user_message=(
                f"The analytics service rejected the request: {last.message}"
                if last
                else "The analytics service does not offer this operation."
            ),
        )


class RemoteValidationError(AllCandidatesFailed):
    """The tool accepted the call shape but rejected the parameter values."""


class RefinementExhausted(AnalyticsError):
    """The retry budget ran out; carries the last error and the attempt count."""

    def __init__(self, last_error: AnalyticsError, attempts: int):
        self.last_error = last_error
        self.attempts = attempts
        super().__init__(
            f"gave up after {attempts} attempt(s): {last_error}",
            user_message=(
                f"{last_error.user_message} (tried {attempts} "
                f"time{'s' if attempts != 1 else ''})"
            ),
        )
