"""
Run logging.

Provides structured logging for:
- Run events (tasks, attempts, retries, checkpoints, cancellations)
- Tool calls (one JSONL line per invocation)
- Aggregate metrics per run

Everything lands under .planning/logs/. Retries are recorded here in full;
the console only ever shows the final outcome of a task.
"""

import json
import os
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

from .store import PLANNING_DIR

LOGS_DIR = f"{PLANNING_DIR}/logs"
TOOL_CALLS_FILE = f"{LOGS_DIR}/tool_calls.jsonl"
METRICS_FILE = f"{LOGS_DIR}/metrics.json"

CONTEXT_EVENTS = {
    "stashed": "context_stashed",
    "resume": "context_resumed",
    "rejected": "context_rejected",
}


def truncate(text: str, limit: int = 200) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + f"...({len(text)} chars)"


def _summarize_tool_input(tool_input: dict) -> dict:
    """Loggable copy of a tool input with long strings cut to 500 chars."""
    summary = {}
    for k, v in tool_input.items():
        if isinstance(v, str) and len(v) > 500:
            summary[k] = v[:500] + f"...({len(v)} chars)"
        else:
            summary[k] = v
    return summary


def log_tool_call(cwd: str, plan: str, tool_name: str, tool_input: dict, is_error: bool = False) -> None:
    """Append a tool call record to tool_calls.jsonl."""
    log_path = Path(cwd) / TOOL_CALLS_FILE
    log_path.parent.mkdir(parents=True, exist_ok=True)
    record = {
        "ts": datetime.now().isoformat(),
        "plan": plan,
        "tool": tool_name,
        "input": _summarize_tool_input(tool_input),
        "is_error": is_error,
    }
    with open(log_path, "a") as f:
        f.write(json.dumps(record, ensure_ascii=False, default=str) + "\n")


def format_duration(seconds: float) -> str:
    """Human-readable duration. e.g., 45s / 2m 15s / 1h 5m"""
    if seconds < 60:
        return f"{seconds:.0f}s"
    minutes = int(seconds // 60)
    secs = int(seconds % 60)
    if minutes < 60:
        return f"{minutes}m {secs}s" if secs else f"{minutes}m"
    hours = minutes // 60
    mins = minutes % 60
    return f"{hours}h {mins}m" if mins else f"{hours}h"


def shorten_path(path: str, cwd: str = "") -> str:
    if cwd and path.startswith(cwd):
        path = path[len(cwd):].lstrip("/") or "."
    home = os.path.expanduser("~")
    if path.startswith(home):
        path = "~" + path[len(home):]
    return path


def format_tool_line(tool_name: str, tool_input: dict, cwd: str = "") -> str:
    """One compact markdown line describing a tool invocation."""
    if tool_name == "write_file":
        path = shorten_path(tool_input.get("file_path", "?"), cwd)
        lines = len(str(tool_input.get("content", "")).split("\n"))
        return f"**Write** `{path}` ({lines} lines)"
    if tool_name == "read_file":
        return f"**Read** `{shorten_path(tool_input.get('file_path', '?'), cwd)}`"
    if tool_name == "create_directory":
        return f"**Create directory** `{shorten_path(tool_input.get('dir_path', '?'), cwd)}`"
    if tool_name == "list_directory":
        return f"**List** `{shorten_path(tool_input.get('dir_path', '?'), cwd)}`"
    if tool_name == "run_command":
        cmd = str(tool_input.get("command", "?"))
        if len(cmd) > 80:
            cmd = cmd[:77] + "..."
        return f"**Run** `{cmd}`"
    if tool_name == "wait_for_port":
        host = tool_input.get("host", "localhost")
        return f"**Wait for port** {host}:{tool_input.get('port', '?')}"
    return f"**{tool_name}**"


@dataclass
class RunMetrics:
    """Aggregated metrics for one invocation of a plan run."""
    session_id: str
    plan_path: str
    started_at: str
    ended_at: Optional[str] = None
    tasks_completed: int = 0
    tasks_failed: int = 0
    attempts: int = 0
    retries: int = 0
    tool_calls: int = 0
    issues_logged: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    duration_seconds: float = 0.0
    status: str = "running"  # running, completed, paused, cancelled, failed
    mode: str = ""
    outcomes: dict = field(default_factory=dict)  # task id -> final outcome


class RunLogger:
    """JSONL event log for one invocation of a plan run."""

    def __init__(self, cwd: str = ".", plan_path: str = ""):
        self.cwd = Path(cwd)
        self.logs_dir = self.cwd / LOGS_DIR
        self.logs_dir.mkdir(parents=True, exist_ok=True)

        self.session_id = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
        self.log_file = self.logs_dir / f"session_{self.session_id}.jsonl"
        self.metrics_file = self.cwd / METRICS_FILE
        self.metrics = RunMetrics(
            session_id=self.session_id,
            plan_path=plan_path,
            started_at=datetime.now().isoformat(),
        )
        self._start_time = datetime.now()

    def _write_event(self, event: dict) -> None:
        event["ts"] = datetime.now().isoformat()
        with open(self.log_file, "a") as f:
            f.write(json.dumps(event, ensure_ascii=False, default=str) + "\n")

    def _save_metrics(self) -> None:
        self.metrics.duration_seconds = (datetime.now() - self._start_time).total_seconds()
        with open(self.metrics_file, "w") as f:
            json.dump(asdict(self.metrics), f, indent=2)

    def events(self) -> list[dict]:
        """Events written so far by this logger."""
        if not self.log_file.exists():
            return []
        with open(self.log_file) as f:
            return [json.loads(line) for line in f if line.strip()]

    def log_run_start(self, plan_path: str, mode: str, start_index: int, total_tasks: int) -> None:
        self.metrics.mode = mode
        self._write_event({
            "event": "run_start",
            "plan": plan_path,
            "mode": mode,
            "start_index": start_index,
            "total_tasks": total_tasks,
        })
        self._save_metrics()

    def log_task_start(self, task_id: int, task_type: str, name: str) -> None:
        self._write_event({"event": "task_start", "task_id": task_id, "task_type": task_type, "name": name[:200]})

    def log_attempt_end(
        self,
        task_id: int,
        attempt: int,
        outcome: str,
        tool_calls: int = 0,
        iterations: int = 0,
        signature: Optional[str] = None,
    ) -> None:
        self.metrics.attempts += 1
        self.metrics.tool_calls += tool_calls
        self._write_event({
            "event": "attempt_end",
            "task_id": task_id,
            "attempt": attempt,
            "outcome": outcome,
            "tool_calls": tool_calls,
            "iterations": iterations,
            "signature": signature,
        })

    def log_retry_scheduled(self, task_id: int, attempt: int, delay: float, reason: str) -> None:
        self.metrics.retries += 1
        self._write_event({
            "event": "retry_scheduled",
            "task_id": task_id,
            "attempt": attempt,
            "delay": delay,
            "reason": reason[:200],
        })

    def log_tool_avoidance(self, task_id: int, narration: str) -> None:
        self._write_event({"event": "tool_avoidance", "task_id": task_id, "narration": narration[:200]})

    def log_iteration_cap(self, task_id: int, iterations: int) -> None:
        self._write_event({"event": "iteration_cap", "task_id": task_id, "iterations": iterations})

    def log_usage(self, usage: Optional[dict]) -> None:
        if not usage:
            return
        self.metrics.input_tokens += usage.get("input_tokens", 0) or 0
        self.metrics.output_tokens += usage.get("output_tokens", 0) or 0

    def log_checkpoint_paused(self, task_id: int, checkpoint_type: str) -> None:
        self._write_event({"event": "checkpoint_paused", "task_id": task_id, "checkpoint_type": checkpoint_type})

    def log_checkpoint_resolved(self, task_id: int, checkpoint_type: str, resolution: str, automatic: bool) -> None:
        self._write_event({
            "event": "checkpoint_auto_resolved" if automatic else "checkpoint_resolved",
            "task_id": task_id,
            "checkpoint_type": checkpoint_type,
            "resolution": resolution,
            "automatic": automatic,
        })

    def log_task_end(self, task_id: int, success: bool, attempts: int = 0, error: Optional[str] = None) -> None:
        if success:
            self.metrics.tasks_completed += 1
        else:
            self.metrics.tasks_failed += 1
        self.metrics.outcomes[str(task_id)] = "completed" if success else "failed"
        self._write_event({
            "event": "task_end",
            "task_id": task_id,
            "success": success,
            "attempts": attempts,
            "error": error[:500] if error else None,
        })
        self._save_metrics()

    def log_task_skipped(self, task_id: int, reason: str) -> None:
        self.metrics.outcomes[str(task_id)] = "skipped"
        self._write_event({"event": "task_skipped", "task_id": task_id, "reason": reason[:200]})

    def log_issue(self, issue_id: str, task_id: int, created: bool) -> None:
        if created:
            self.metrics.issues_logged += 1
        self._write_event({"event": "issue_logged", "issue_id": issue_id, "task_id": task_id, "created": created})
        self._save_metrics()

    def log_cancelled(self, plan_path: str, task_index: int) -> None:
        self._write_event({"event": "cancelled", "plan": plan_path, "task_index": task_index})

    def log_context(self, plan_path: str, action: str, chars: int) -> None:
        """action is stashed, resume or rejected."""
        event = CONTEXT_EVENTS.get(action, f"context_{action}")
        self._write_event({"event": event, "plan": plan_path, "chars": chars})

    def log_error(self, error: str, context: Optional[dict] = None) -> None:
        self._write_event({"event": "error", "error": error, "context": context or {}})

    def log_run_end(self, status: str, reason: str = "") -> None:
        self.metrics.ended_at = datetime.now().isoformat()
        self.metrics.status = status
        self._save_metrics()
        self._write_event({
            "event": "run_end",
            "status": status,
            "reason": reason,
            "tasks_completed": self.metrics.tasks_completed,
            "tasks_failed": self.metrics.tasks_failed,
            "retries": self.metrics.retries,
            "duration_seconds": self.metrics.duration_seconds,
        })


def get_run_summary(cwd: str = ".") -> Optional[dict]:
    """Metrics of the most recent run invocation."""
    metrics_file = Path(cwd) / METRICS_FILE
    if not metrics_file.exists():
        return None
    with open(metrics_file) as f:
        return json.load(f)
