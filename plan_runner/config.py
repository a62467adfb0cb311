"""Execution configuration stored in .planning/config.json."""

import json
import os
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

from .notification import notify_warning
from .store import PLANNING_DIR, atomic_write

CONFIG_FILE = f"{PLANNING_DIR}/config.json"

MODEL_ENV_VAR = "PLAN_RUNNER_MODEL"
DEFAULT_MODEL = "claude-sonnet-4-5"


class ExecutionMode(str, Enum):
    YOLO = "yolo"        # never pause
    GUIDED = "guided"    # pause at checkpoints only
    MANUAL = "manual"    # pause before every task


class PlanningDepth(str, Enum):
    QUICK = "quick"
    STANDARD = "standard"
    COMPREHENSIVE = "comprehensive"


class PlanningConfig(BaseModel):
    execution_mode: ExecutionMode = Field(default=ExecutionMode.GUIDED, alias="executionMode")
    planning_depth: PlanningDepth = Field(default=PlanningDepth.STANDARD, alias="planningDepth")

    model_config = {"populate_by_name": True}

    def to_json(self) -> str:
        return json.dumps(self.model_dump(mode="json", by_alias=True), indent=2) + "\n"


def _config_path(cwd: str) -> Path:
    return Path(cwd) / CONFIG_FILE


def load_config(cwd: str = ".") -> PlanningConfig:
    """
    Load the planning config.

    A missing file gives defaults. Invalid JSON or invalid values fall back to the
    default for each bad field, with a warning on the side channel.
    """
    path = _config_path(cwd)
    if not path.exists():
        return PlanningConfig()

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError) as e:
        notify_warning("Config unreadable", f"{path}: {e}. Using defaults.")
        return PlanningConfig()
    if not isinstance(raw, dict):
        notify_warning("Config unreadable", f"{path}: expected a JSON object. Using defaults.")
        return PlanningConfig()

    config = PlanningConfig()
    mode = raw.get("executionMode")
    if mode is not None:
        try:
            config.execution_mode = ExecutionMode(mode)
        except ValueError:
            allowed = ", ".join(m.value for m in ExecutionMode)
            notify_warning("Invalid executionMode", f"'{mode}' is not one of: {allowed}. Using guided.")
    depth = raw.get("planningDepth")
    if depth is not None:
        try:
            config.planning_depth = PlanningDepth(depth)
        except ValueError:
            allowed = ", ".join(d.value for d in PlanningDepth)
            notify_warning("Invalid planningDepth", f"'{depth}' is not one of: {allowed}. Using standard.")
    return config


def save_config(cwd: str, config: PlanningConfig) -> None:
    atomic_write(_config_path(cwd), config.to_json())


def set_execution_mode(cwd: str, mode: ExecutionMode) -> PlanningConfig:
    config = load_config(cwd)
    config.execution_mode = ExecutionMode(mode)
    save_config(cwd, config)
    return config


def resolve_mode(cwd: str, override: Optional[str] = None) -> ExecutionMode:
    """CLI override first, then config file."""
    if override:
        return ExecutionMode(override)
    return load_config(cwd).execution_mode


def model_name() -> str:
    return os.environ.get(MODEL_ENV_VAR) or DEFAULT_MODEL
