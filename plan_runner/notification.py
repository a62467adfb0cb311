"""
Side-channel notifications.

The primary response stream can stop accepting writes at any moment (the user
pressed stop, the transport closed). Anything the user must see regardless,
pause notices above all, goes through this module instead. It renders rich
panels on its own stderr console and never touches the primary stream.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel

console = Console(stderr=True)


def set_console(new_console: Console) -> None:
    """Point the side channel at another console (tests capture with ``Console(file=...)``)."""
    global console
    console = new_console


class NotificationType(Enum):
    INFO = "info"
    WARNING = "warning"
    PAUSED = "paused"           # run stopped, waiting for context or a resume
    CHECKPOINT = "checkpoint"   # waiting on a human at a checkpoint task
    DECISION = "decision"       # checkpoint resolved automatically
    ISSUE = "issue"             # failure written to the issue log
    ERROR = "error"
    COMPLETE = "complete"


@dataclass
class Notification:
    type: NotificationType
    title: str
    message: str
    task_id: Optional[int] = None
    timestamp: str = ""
    details: Optional[dict] = None

    def __post_init__(self):
        if not self.timestamp:
            self.timestamp = datetime.now().strftime("%H:%M:%S")


NOTIFICATION_STYLES = {
    NotificationType.INFO: {"icon": "ℹ️", "border_style": "blue", "title_style": "bold blue"},
    NotificationType.WARNING: {"icon": "⚠️", "border_style": "yellow", "title_style": "bold yellow"},
    NotificationType.PAUSED: {"icon": "⏸", "border_style": "magenta", "title_style": "bold magenta"},
    NotificationType.CHECKPOINT: {"icon": "📍", "border_style": "green", "title_style": "bold green"},
    NotificationType.DECISION: {"icon": "🤖", "border_style": "bright_cyan", "title_style": "bold bright_cyan"},
    NotificationType.ISSUE: {"icon": "📝", "border_style": "red", "title_style": "bold red"},
    NotificationType.ERROR: {"icon": "❌", "border_style": "bright_red", "title_style": "bold bright_red"},
    NotificationType.COMPLETE: {"icon": "✅", "border_style": "bright_green", "title_style": "bold bright_green"},
}


def notify(notification: Notification) -> None:
    """Render a notification on the side channel."""
    style = NOTIFICATION_STYLES.get(notification.type, NOTIFICATION_STYLES[NotificationType.INFO])

    title = escape(f"{style['icon']} {notification.title}")
    if notification.task_id is not None:
        title = f"{title} \\[task {notification.task_id}]"

    content_lines = [escape(notification.message)]
    if notification.details:
        content_lines.append("")
        for key, value in notification.details.items():
            content_lines.append(f"[dim]{escape(str(key))}:[/dim] {escape(str(value))}")

    console.print()
    console.print(
        Panel(
            "\n".join(content_lines),
            title=f"[{style['title_style']}]{title}[/{style['title_style']}]",
            subtitle=f"[dim]{notification.timestamp}[/dim]",
            border_style=style["border_style"],
            padding=(0, 1),
        )
    )


def _send(kind: NotificationType, title: str, message: str, task_id: Optional[int], details: dict) -> None:
    notify(Notification(
        type=kind,
        title=title,
        message=message,
        task_id=task_id,
        details=details if details else None,
    ))


def notify_info(title: str, message: str, task_id: int = None, **details) -> None:
    _send(NotificationType.INFO, title, message, task_id, details)


def notify_warning(title: str, message: str, task_id: int = None, **details) -> None:
    _send(NotificationType.WARNING, title, message, task_id, details)


def notify_error(title: str, message: str, task_id: int = None, **details) -> None:
    _send(NotificationType.ERROR, title, message, task_id, details)


def notify_paused(plan_path: str, task_index: int, window_seconds: int) -> None:
    """
    Tell the user a run is paused and how to continue it.

    Sent after cancellation, when the primary stream may already be gone.
    """
    minutes = max(1, window_seconds // 60)
    notify(Notification(
        type=NotificationType.PAUSED,
        title="Execution paused",
        message=(
            f"Stopped at task {task_index + 1}. Send more context within {minutes} min "
            "to resume with it, e.g. plan-runner context \"use retries=5\"."
        ),
        task_id=task_index + 1,
        details={"plan": plan_path},
    ))


def notify_checkpoint(task_id: int, kind: str, resume_hint: str) -> None:
    notify(Notification(
        type=NotificationType.CHECKPOINT,
        title="Checkpoint reached",
        message=f"Waiting on {kind}.",
        task_id=task_id,
        details={"resume with": resume_hint},
    ))


def notify_decision(decision: str, reason: str, task_id: int = None) -> None:
    """Report a checkpoint that was resolved without asking."""
    notify(Notification(
        type=NotificationType.DECISION,
        title="Auto-resolved checkpoint",
        message=reason,
        task_id=task_id,
        details={"choice": decision},
    ))


def notify_issue_logged(issue_id: str, log_path: str, task_id: int = None) -> None:
    notify(Notification(
        type=NotificationType.ISSUE,
        title="Issue logged",
        message=f"{issue_id} recorded; continuing with the next task.",
        task_id=task_id,
        details={"log": log_path},
    ))


def notify_complete(title: str, message: str, **details) -> None:
    _send(NotificationType.COMPLETE, title, message, None, details)
