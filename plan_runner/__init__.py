"""Plan Runner - executes phase plans task by task with checkpoints, retries and resume."""

from .cancellation import CancellationToken, ContextRoute, ResumeManager
from .chat import AnthropicChatService, ChatService, TextDelta, ToolCallRequest, TurnEnd
from .classifier import AttemptOutcome, Classification, RetryPolicy, classify_attempt, classify_results
from .config import ExecutionMode, PlanningConfig, load_config, set_execution_mode
from .errors import (
    CancellationObserved,
    InvalidResumeSignal,
    InvalidTransition,
    ModelUnavailableError,
    PlanParseError,
    PlanRunnerError,
    TransientToolError,
    VerifyFailure,
)
from .gates import GateDecision, evaluate_gate
from .issues import IssueLog, parse_issues
from .models import (
    AutoTask,
    CheckpointDecisionTask,
    CheckpointVerifyTask,
    DecisionOption,
    ExecutionPlan,
    ExecutionResult,
    ExecutionState,
    TaskStatus,
)
from .notification import Notification, NotificationType, notify
from .orchestrator import PlanExecutor, RunOutcome, ToolLoop, build_task_prompt
from .parser import load_plan, parse_plan, render_plan
from .report import render_completion_report, resolve_plan_path
from .store import StateStore

__version__ = "0.1.0"
__all__ = [
    # Core
    "PlanExecutor",
    "RunOutcome",
    "ToolLoop",
    "build_task_prompt",
    # Plans
    "parse_plan",
    "load_plan",
    "render_plan",
    "resolve_plan_path",
    "ExecutionPlan",
    "AutoTask",
    "CheckpointVerifyTask",
    "CheckpointDecisionTask",
    "DecisionOption",
    "TaskStatus",
    # State
    "ExecutionState",
    "ExecutionResult",
    "StateStore",
    "CancellationToken",
    "ContextRoute",
    "ResumeManager",
    # Config & gates
    "ExecutionMode",
    "PlanningConfig",
    "load_config",
    "set_execution_mode",
    "GateDecision",
    "evaluate_gate",
    # Failures
    "AttemptOutcome",
    "Classification",
    "RetryPolicy",
    "classify_attempt",
    "classify_results",
    "IssueLog",
    "parse_issues",
    "render_completion_report",
    # Chat
    "ChatService",
    "AnthropicChatService",
    "TextDelta",
    "ToolCallRequest",
    "TurnEnd",
    # Notification
    "Notification",
    "NotificationType",
    "notify",
    # Errors
    "PlanRunnerError",
    "PlanParseError",
    "TransientToolError",
    "VerifyFailure",
    "ModelUnavailableError",
    "CancellationObserved",
    "InvalidResumeSignal",
    "InvalidTransition",
]
