"""
Cancellation and resume.

The host allows one active response per session, so the user can only get new
input in while a task is streaming by stopping it. A stop is therefore a pause:
the position is recorded for a short window, and the next non-command input
within that window resumes the run with the input merged into the paused
task's prompt.

While a run is live (no stop), input from a second invocation is stashed for
the running task, which picks it up at its next model turn.
"""

from dataclasses import dataclass
from typing import Optional

from .errors import CancellationObserved
from .logger import RunLogger
from .models import CancelledExecutionInfo, ExecutionResult
from .notification import notify_paused
from .store import CANCEL_WINDOW_SECONDS, StateStore


class CancellationToken:
    """Cooperative cancellation flag, checked at loop boundaries."""

    def __init__(self):
        self._cancelled = False
        self.reason = ""

    def cancel(self, reason: str = "stop requested") -> None:
        self._cancelled = True
        self.reason = reason

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise CancellationObserved(self.reason)


STASHED = "stashed"     # live run will pick the text up
RESUME = "resume"       # cancelled run should be re-entered with the text
REJECTED = "rejected"   # nothing to attach the text to


@dataclass
class ContextRoute:
    action: str
    plan_path: Optional[str] = None
    task_index: Optional[int] = None


class ResumeManager:
    def __init__(self, store: StateStore, logger: Optional[RunLogger] = None):
        self.store = store
        self.logger = logger

    def record_cancellation(
        self,
        plan_path: str,
        paused_task_index: int,
        results: list[ExecutionResult],
        window_seconds: float = CANCEL_WINDOW_SECONDS,
    ) -> CancelledExecutionInfo:
        """Persist the pause, drop the liveness marker, and tell the user on the side channel."""
        info = self.store.set_cancelled(plan_path, paused_task_index, results, window_seconds)
        if self.logger:
            self.logger.log_cancelled(plan_path, paused_task_index)
        notify_paused(plan_path, paused_task_index, int(window_seconds))
        return info

    def route_input(self, text: str, plan_path: Optional[str] = None) -> ContextRoute:
        """
        Decide what free-text input means.

        A live run takes it as extra context without stopping. Otherwise a
        cancellation still inside its window is consumed: the text is stashed
        and the caller should re-enter the run at the paused index. With
        neither, the input is rejected.
        """
        if plan_path:
            marker = self.store.get_active_marker(plan_path)
            cancelled = None if marker else self.store.get_cancelled(plan_path)
        else:
            marker = self.store.find_active_plan()
            cancelled = None if marker else self.store.find_cancelled_plan()

        if marker:
            self.store.stash_pending_context(marker.plan_path, text)
            self._log(marker.plan_path, STASHED, text)
            return ContextRoute(STASHED, marker.plan_path)

        if cancelled:
            self.store.stash_pending_context(cancelled.plan_path, text)
            self.store.clear_cancelled(cancelled.plan_path)
            self._log(cancelled.plan_path, RESUME, text)
            return ContextRoute(RESUME, cancelled.plan_path, cancelled.paused_task_index)

        self._log(plan_path or "", REJECTED, text)
        return ContextRoute(REJECTED, plan_path)

    def _log(self, plan_path: str, action: str, text: str) -> None:
        if self.logger:
            self.logger.log_context(plan_path, action, len(text))
