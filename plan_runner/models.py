"""Data models for plan execution."""

import time
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator

from .errors import InvalidTransition


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


ALLOWED_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.PENDING: {TaskStatus.RUNNING, TaskStatus.SKIPPED},
    TaskStatus.RUNNING: {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.SKIPPED},
    TaskStatus.COMPLETED: set(),
    TaskStatus.FAILED: set(),
    TaskStatus.SKIPPED: set(),
}

AUTO = "auto"
CHECKPOINT_VERIFY = "checkpoint:human-verify"
CHECKPOINT_DECISION = "checkpoint:decision"
TASK_TYPES = (AUTO, CHECKPOINT_VERIFY, CHECKPOINT_DECISION)


class _TaskBase(BaseModel):
    id: int = Field(description="1-based position in the plan")
    name: str = Field(description="Task name without any 'Task N:' prefix")
    status: TaskStatus = Field(default=TaskStatus.PENDING)

    def advance(self, new_status: TaskStatus) -> None:
        """Move to ``new_status``; raises InvalidTransition on a regression."""
        if new_status not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransition(
                f"Task {self.id}: {self.status.value} -> {new_status.value} is not allowed"
            )
        self.status = new_status

    @property
    def is_checkpoint(self) -> bool:
        return self.type != AUTO


class AutoTask(_TaskBase):
    """A task the agent carries out with tools."""

    type: Literal["auto"] = AUTO
    target_files: Optional[list[str]] = Field(default=None, description="Files the task expects to touch")
    action: str = Field(default="", description="What to do")
    verify: str = Field(default="", description="How to check it worked")
    done: str = Field(default="", description="Completion criteria")


class CheckpointVerifyTask(_TaskBase):
    """A human checks what was built before the run continues."""

    type: Literal["checkpoint:human-verify"] = CHECKPOINT_VERIFY
    what_built: str = ""
    verification_steps: list[str] = Field(default_factory=list)
    resume_signal: str = ""


class DecisionOption(BaseModel):
    id: str
    name: str = ""
    pros: str = ""
    cons: str = ""
    is_default: bool = False


class CheckpointDecisionTask(_TaskBase):
    """A human picks one of several options before the run continues."""

    type: Literal["checkpoint:decision"] = CHECKPOINT_DECISION
    decision: str = ""
    context: str = ""
    options: list[DecisionOption] = Field(default_factory=list)
    resume_signal: str = ""

    def get_option(self, option_id: str) -> Optional[DecisionOption]:
        for option in self.options:
            if option.id.lower() == option_id.lower():
                return option
        return None


Task = Annotated[
    Union[AutoTask, CheckpointVerifyTask, CheckpointDecisionTask],
    Field(discriminator="type"),
]


class ExecutionPlan(BaseModel):
    """A parsed plan document."""

    phase_id: str = Field(description="Phase identifier from frontmatter, e.g. 04-api")
    plan_identifier: str = Field(default="01", description="Plan id, verbatim (e.g. 01, 03-FIX)")
    objective: str
    purpose: str = ""
    tasks: list[Task] = Field(default_factory=list)
    verification_checklist: list[str] = Field(default_factory=list)
    success_criteria: list[str] = Field(default_factory=list)
    source_path: Optional[str] = None

    @property
    def phase_number(self) -> str:
        digits = ""
        for ch in self.phase_id:
            if ch.isdigit() or (ch == "." and digits):
                digits += ch
            else:
                break
        return digits.rstrip(".") or "00"

    def progress_summary(self) -> str:
        done = sum(1 for t in self.tasks if t.status == TaskStatus.COMPLETED)
        return f"{done}/{len(self.tasks)} tasks complete"


class ExecutionResult(BaseModel):
    """Outcome of one task."""

    task_id: int
    success: bool
    name: str = ""
    output: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 0
    files: list[str] = Field(default_factory=list)


class ExecutionState(BaseModel):
    """Position of a plan run, persisted between invocations."""

    plan_path: str
    current_task_index: int = 0
    completed_task_ids: set[int] = Field(
        default_factory=set, description="0-based indices of completed tasks"
    )
    decisions_made: dict[int, str] = Field(default_factory=dict, description="task id -> option id")
    paused_at_checkpoint: bool = False
    checkpoint_type: Optional[str] = None
    saved_at: float = Field(default_factory=time.time)
    started_at: float = Field(default_factory=time.time)
    results: list[ExecutionResult] = Field(default_factory=list)
    total_tasks: Optional[int] = Field(default=None, description="Task count of the plan when the run started")
    task_types: list[str] = Field(default_factory=list, description="Task type per position when the run started")

    @model_validator(mode="after")
    def _completed_before_current(self) -> "ExecutionState":
        beyond = {i for i in self.completed_task_ids if i < 0 or i >= self.current_task_index}
        if beyond:
            raise ValueError(
                f"completed_task_ids {sorted(beyond)} not below current_task_index {self.current_task_index}"
            )
        return self

    def advance_to(self, index: int, completed_index: Optional[int] = None) -> None:
        """Move the cursor forward, optionally recording a completed index first."""
        if index < self.current_task_index:
            raise InvalidTransition(f"Cannot move back from task index {self.current_task_index} to {index}")
        self.current_task_index = index
        if completed_index is not None:
            if completed_index >= index:
                raise InvalidTransition(f"Completed index {completed_index} is not before {index}")
            self.completed_task_ids.add(completed_index)

    def record_result(self, result: ExecutionResult) -> None:
        self.results = [r for r in self.results if r.task_id != result.task_id]
        self.results.append(result)


class CancelledExecutionInfo(BaseModel):
    plan_path: str
    paused_task_index: int
    results_so_far: list[ExecutionResult] = Field(default_factory=list)
    expires_at: float


class ActiveExecutionMarker(BaseModel):
    plan_path: str
    last_activity_at: float


class PendingExecutionContext(BaseModel):
    plan_path: str
    text: str
    created_at: float


class IssueRecord(BaseModel):
    """An entry in a plan's issue log."""

    id: str
    severity: str = "major"
    description: str
    timestamp: float = Field(default_factory=time.time)
    task_id: Optional[int] = None
    task_name: str = ""
    plan_file: str = ""
    phase: str = ""


def restore_progress(plan: ExecutionPlan, state: ExecutionState) -> None:
    """Rebuild task statuses from persisted state on a fresh parse of the plan."""
    failed = {r.task_id for r in state.results if not r.success}
    for index, task in enumerate(plan.tasks):
        if index in state.completed_task_ids:
            task.status = TaskStatus.COMPLETED
        elif index < state.current_task_index and task.id in failed:
            task.status = TaskStatus.FAILED
