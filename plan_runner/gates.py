"""Checkpoint gate: whether a task pauses the run under the current execution mode."""

from dataclasses import dataclass
from typing import Optional

from .config import ExecutionMode
from .models import AUTO, CHECKPOINT_DECISION, CHECKPOINT_VERIFY, DecisionOption

MODE_DESCRIPTIONS = {
    ExecutionMode.YOLO: "Autonomous - checkpoints auto-resolve, failures go to the issue log",
    ExecutionMode.GUIDED: "Guided - pauses at checkpoint tasks only",
    ExecutionMode.MANUAL: "Manual - pauses for confirmation before every task",
}

CHECKPOINT_KINDS = {
    CHECKPOINT_VERIFY: "human-verify",
    CHECKPOINT_DECISION: "decision",
}
CONFIRM_CHECKPOINT = "confirm"


@dataclass
class GateDecision:
    pause: bool
    checkpoint_type: Optional[str] = None   # "human-verify", "decision" or "confirm"
    auto_choice: Optional[str] = None       # option id picked when a decision auto-resolves


def should_pause_at_checkpoint(mode: ExecutionMode, task_type: str) -> bool:
    if task_type == AUTO:
        return False
    return mode != ExecutionMode.YOLO


def should_confirm_task(mode: ExecutionMode, task_type: str) -> bool:
    """Manual mode asks before auto tasks too; checkpoints already pause on their own."""
    return mode == ExecutionMode.MANUAL and task_type == AUTO


def describe_mode(mode: ExecutionMode) -> str:
    return MODE_DESCRIPTIONS[ExecutionMode(mode)]


def default_option(task) -> Optional[DecisionOption]:
    """The option marked default, else the first one."""
    for option in task.options:
        if option.is_default:
            return option
    return task.options[0] if task.options else None


def evaluate_gate(task, mode: ExecutionMode) -> GateDecision:
    """Decide what happens when the run reaches ``task``."""
    if task.type == AUTO:
        if should_confirm_task(mode, task.type):
            return GateDecision(pause=True, checkpoint_type=CONFIRM_CHECKPOINT)
        return GateDecision(pause=False)

    kind = CHECKPOINT_KINDS[task.type]
    if should_pause_at_checkpoint(mode, task.type):
        return GateDecision(pause=True, checkpoint_type=kind)

    if task.type == CHECKPOINT_DECISION:
        option = default_option(task)
        return GateDecision(pause=False, checkpoint_type=kind, auto_choice=option.id if option else None)
    return GateDecision(pause=False, checkpoint_type=kind)
