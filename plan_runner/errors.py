"""Error taxonomy for plan execution.

Only ``ModelUnavailableError`` ends a run. Everything else is either raised before
any task starts (``PlanParseError``), caught at the task boundary, or is a
control-flow signal (``CancellationObserved``).
"""

from typing import Optional


class PlanRunnerError(Exception):
    """Base class for all plan runner errors."""


class PlanParseError(PlanRunnerError):
    """The plan document is missing required structure."""

    def __init__(self, reason: str, plan_path: Optional[str] = None):
        self.reason = reason
        self.plan_path = plan_path
        where = f" ({plan_path})" if plan_path else ""
        super().__init__(f"Invalid plan{where}: {reason}")


class TransientToolError(PlanRunnerError):
    """A failure expected to go away on retry (rate limit, timeout, reset, 5xx)."""


class VerifyFailure(PlanRunnerError):
    """Tool output carried a known failure signature."""

    def __init__(self, signature: str, snippet: str):
        self.signature = signature
        self.snippet = snippet
        super().__init__(f"{signature}: {snippet}")


class ModelUnavailableError(PlanRunnerError):
    """The language model cannot be reached or refuses the request."""


class CancellationObserved(PlanRunnerError):
    """Cancellation was seen at a check boundary."""


class InvalidResumeSignal(PlanRunnerError):
    """A resume signal does not fit the checkpoint the run is paused at."""


class InvalidTransition(PlanRunnerError):
    """A task status change that would move backwards or out of a terminal state."""
