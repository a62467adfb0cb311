"""
Plan-scoped issue log (<plan>-ISSUES.md next to the plan file).

Two kinds of entries live under ``## Open Issues``:

- ``EXE-<phase>-<plan>-<task>`` written automatically when a task fails in
  yolo mode and the run moves on
- ``UAT-NNN`` written when a human reports a problem at a verify checkpoint

``parse_issues`` reads both back for fix planning.
"""

import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

from .models import ExecutionPlan, IssueRecord
from .store import atomic_write, file_lock

OPEN_HEADER = "## Open Issues"
RESOLVED_HEADER = "## Resolved Issues"
LAST_UPDATED_RE = re.compile(r"\*Last updated:.*\*")
ISSUE_BLOCK_RE = re.compile(
    r"^### ((?:UAT|EXE)-[\w.-]+):\s*([^\n]+)\n(.*?)(?=^### (?:UAT|EXE)-|^## |\Z)",
    re.DOTALL | re.MULTILINE,
)
UAT_ID_RE = re.compile(r"### UAT-(\d+):")

ISSUES_TEMPLATE = f"""# Issues Log

Problems found while executing this plan. Address them with a fix plan.

{OPEN_HEADER}

{RESOLVED_HEADER}

---

*Last updated: {{date}}*
"""


def issues_path_for(plan_path: str) -> Path:
    """04-01-PLAN.md -> 04-01-ISSUES.md in the same directory."""
    path = Path(plan_path)
    stem = path.stem
    if stem.upper().endswith("-PLAN"):
        stem = stem[: -len("-PLAN")]
    elif stem.upper() == "PLAN":
        stem = ""
    name = f"{stem}-ISSUES.md" if stem else "ISSUES.md"
    return path.with_name(name)


def _today() -> str:
    return datetime.now().strftime("%Y-%m-%d")


def _one_line(text: str, limit: int = 400) -> str:
    text = " ".join(text.split())
    return text if len(text) <= limit else text[: limit - 3] + "..."


@dataclass
class ParsedIssue:
    id: str
    title: str
    severity: str = ""
    type: str = ""
    impact: str = ""
    description: str = ""
    task_id: Optional[int] = None
    error_output: str = ""

    @property
    def is_execution_issue(self) -> bool:
        return self.id.startswith("EXE-")


def _field(body: str, name: str) -> str:
    match = re.search(rf"\*\*{re.escape(name)}:\*\*\s*([^\n]+)", body)
    return match.group(1).strip() if match else ""


def parse_issues(content: str) -> list[ParsedIssue]:
    """Open issues from an issues log, in file order."""
    start = content.find(OPEN_HEADER)
    if start == -1:
        return []
    section = content[start + len(OPEN_HEADER):]
    end = section.find(RESOLVED_HEADER)
    if end != -1:
        section = section[:end]

    issues = []
    for match in ISSUE_BLOCK_RE.finditer(section):
        body = match.group(3)
        task_id = _field(body, "Task ID")
        output = re.search(r"\*\*Error Output:\*\*\s*```\w*\n(.*?)```", body, re.DOTALL)
        issues.append(ParsedIssue(
            id=match.group(1),
            title=match.group(2).strip(),
            severity=_field(body, "Severity"),
            type=_field(body, "Type"),
            impact=_field(body, "Impact"),
            description=_field(body, "Description"),
            task_id=int(task_id) if task_id.isdigit() else None,
            error_output=output.group(1).strip() if output else "",
        ))
    return issues


class IssueLog:
    """Issue log for one plan."""

    def __init__(self, plan: ExecutionPlan, plan_path: str):
        self.plan = plan
        self.plan_path = plan_path
        self.path = issues_path_for(plan_path)

    def _read(self) -> str:
        if self.path.exists():
            return self.path.read_text(encoding="utf-8")
        return ISSUES_TEMPLATE.format(date=_today())

    def _insert(self, content: str, entry: str) -> str:
        index = content.find(OPEN_HEADER)
        if index == -1:
            content = content.rstrip() + f"\n\n{OPEN_HEADER}\n"
            index = content.find(OPEN_HEADER)
        insert_at = index + len(OPEN_HEADER)
        content = content[:insert_at] + "\n\n" + entry.rstrip() + "\n\n" + content[insert_at:].lstrip("\n")
        return LAST_UPDATED_RE.sub(f"*Last updated: {_today()}*", content)

    def _issue_id(self, task_id: int) -> str:
        return f"EXE-{self.plan.phase_number}-{self.plan.plan_identifier}-{task_id:02d}"

    def read(self) -> list[ParsedIssue]:
        if not self.path.exists():
            return []
        return parse_issues(self.path.read_text(encoding="utf-8"))

    def log_task_failure(
        self,
        task,
        error: str,
        severity: str = "major",
        output: str = "",
    ) -> tuple[IssueRecord, bool]:
        """
        Record a failed task. Returns (record, created).

        The id is derived from phase, plan and task, so logging the same task
        twice leaves the file unchanged and returns created=False.
        """
        issue_id = self._issue_id(task.id)
        plan_file = Path(self.plan_path).name
        record = IssueRecord(
            id=issue_id,
            severity=severity,
            description=f'Task "{task.name}" failed: {_one_line(error)}',
            task_id=task.id,
            task_name=task.name,
            plan_file=plan_file,
            phase=self.plan.phase_id,
        )
        with file_lock(self.path.with_name(f".{self.path.name}.lock")):
            content = self._read()
            if re.search(rf"^### {re.escape(issue_id)}:", content, re.MULTILINE):
                return record, False

            lines = [
                f"### {issue_id}: Task failure in {plan_file}",
                "",
                f"- **Discovered:** Execution of {plan_file} ({_today()})",
                "- **Type:** Execution Failure",
                f"- **Severity:** {severity}",
                f"- **Description:** {record.description}",
                "- **Impact:** Blocking (task did not complete)",
                "- **Suggested fix:** Review the error, adjust the plan or retry manually",
                f"- **Phase:** {self.plan.phase_id}",
                f"- **Task ID:** {task.id}",
            ]
            if output:
                lines += ["- **Error Output:**", "```", output.strip(), "```"]
            atomic_write(self.path, self._insert(content, "\n".join(lines) + "\n"))
        return record, True

    def log_reported_issue(self, task, description: str, severity: str = "major") -> IssueRecord:
        """Record a problem a human reported at a checkpoint."""
        with file_lock(self.path.with_name(f".{self.path.name}.lock")):
            content = self._read()
            numbers = [int(n) for n in UAT_ID_RE.findall(content)]
            next_number = max(numbers) + 1 if numbers else 1
            issue_id = f"UAT-{next_number:03d}"
            record = IssueRecord(
                id=issue_id,
                severity=severity,
                description=_one_line(description),
                task_id=task.id,
                task_name=task.name,
                plan_file=Path(self.plan_path).name,
                phase=self.plan.phase_id,
            )
            entry = "\n".join([
                f"### {issue_id}: {_one_line(description, 80)}",
                "",
                f"- **Discovered:** Checkpoint review of {record.plan_file} ({_today()})",
                f"- **Severity:** {severity}",
                f"- **Feature:** {task.name}",
                f"- **Description:** {record.description}",
                f"- **Task ID:** {task.id}",
            ]) + "\n"
            atomic_write(self.path, self._insert(content, entry))
        return record
