"""Completion report, SUMMARY.md, and plan path resolution."""

import re
from datetime import datetime
from pathlib import Path
from typing import Optional

from .errors import PlanParseError
from .logger import format_duration
from .models import AUTO, CHECKPOINT_DECISION, ExecutionPlan, ExecutionResult
from .store import PLANNING_DIR

PHASES_DIR = f"{PLANNING_DIR}/phases"
SHORT_ID_RE = re.compile(r"^(\d+(?:\.\d+)?)-([\w-]+)$")


def resolve_plan_path(cwd: str, identifier: str) -> Path:
    """
    Turn a plan argument into a plan file path.

    Accepts a path (absolute or relative to ``cwd``) or a short id like
    ``04-01`` that names ``.planning/phases/04-*/04-01-PLAN.md``.
    """
    base = Path(cwd)
    candidate = Path(identifier)
    if not candidate.is_absolute():
        candidate = base / candidate
    if candidate.is_file():
        return candidate.resolve()

    match = SHORT_ID_RE.match(identifier)
    if match:
        phase = match.group(1)
        phases_dir = base / PHASES_DIR
        if phases_dir.is_dir():
            for phase_dir in sorted(phases_dir.iterdir()):
                if not phase_dir.is_dir():
                    continue
                if phase_dir.name == phase or phase_dir.name.startswith(f"{phase}-"):
                    plan_file = phase_dir / f"{identifier}-PLAN.md"
                    if plan_file.is_file():
                        return plan_file.resolve()
    raise PlanParseError("plan file not found", identifier)


def _task_files(plan: ExecutionPlan, results: list[ExecutionResult]) -> list[str]:
    seen = []
    by_id = {r.task_id: r for r in results}
    for task in plan.tasks:
        result = by_id.get(task.id)
        if not result or not result.success:
            continue
        files = result.files or (task.target_files if task.type == AUTO else None) or []
        for f in files:
            if f not in seen:
                seen.append(f)
    return seen


def render_completion_report(
    plan: ExecutionPlan,
    results: list[ExecutionResult],
    decisions: dict[int, str],
    duration_seconds: Optional[float] = None,
    issue_ids: Optional[list[str]] = None,
) -> str:
    """Markdown report shown when a plan run finishes."""
    succeeded = [r for r in results if r.success]
    failed = [r for r in results if not r.success]
    skipped = len(plan.tasks) - len(results)

    lines = ["## Plan Execution Complete", ""]
    summary = f"**{len(succeeded)}/{len(plan.tasks)} tasks completed**"
    if failed:
        summary += f", {len(failed)} failed"
    if skipped > 0:
        summary += f", {skipped} skipped"
    if duration_seconds is not None:
        summary += f" in {format_duration(duration_seconds)}"
    lines += [summary, ""]

    lines += ["### Task Summary", ""]
    by_id = {r.task_id: r for r in results}
    for task in plan.tasks:
        result = by_id.get(task.id)
        if result is None:
            mark = "⏭"
        elif result.success:
            mark = "✅"
        else:
            mark = "❌"
        line = f"- {mark} Task {task.id}: {task.name}"
        if result is not None and not result.success and result.error:
            line += f" ({result.error.splitlines()[0][:120]})"
        lines.append(line)
    lines.append("")

    if decisions:
        lines += ["### Decisions Made", ""]
        for task in plan.tasks:
            if task.id in decisions:
                choice = decisions[task.id]
                label = choice
                if task.type == CHECKPOINT_DECISION:
                    option = task.get_option(choice)
                    if option and option.name != option.id:
                        label = f"{option.id} ({option.name})"
                lines.append(f"- Task {task.id} ({task.name}): {label}")
        lines.append("")

    files = _task_files(plan, results)
    if files:
        lines += ["### Files Modified", ""]
        lines += [f"- `{f}`" for f in files]
        lines.append("")

    if plan.verification_checklist:
        lines += ["### Plan Verification", ""]
        lines += [f"- [ ] {item}" for item in plan.verification_checklist]
        lines.append("")

    if plan.success_criteria:
        lines += ["### Success Criteria", ""]
        lines += [f"- {item}" for item in plan.success_criteria]
        lines.append("")

    lines += ["### Next Steps", ""]
    if failed or skipped > 0:
        if issue_ids:
            lines.append(f"- Review logged issues: {', '.join(issue_ids)}")
        lines.append("- Fix the failed tasks, or re-run the plan after adjusting it")
    else:
        lines.append("- Walk through the verification checklist above")
        lines.append("- Continue with the next plan in this phase")
    lines.append("")
    return "\n".join(lines)


def summary_path_for(plan_path: str) -> Path:
    path = Path(plan_path)
    stem = path.stem
    if stem.upper().endswith("-PLAN"):
        stem = stem[: -len("-PLAN")]
    return path.with_name(f"{stem}-SUMMARY.md")


def write_summary(
    plan: ExecutionPlan,
    plan_path: str,
    results: list[ExecutionResult],
    decisions: dict[int, str],
    duration_seconds: float,
    issue_ids: Optional[list[str]] = None,
) -> Path:
    """Write <plan>-SUMMARY.md next to the plan and return its path."""
    completed = datetime.now().strftime("%Y-%m-%d")
    frontmatter = "\n".join([
        "---",
        f"phase: {plan.phase_id}",
        f"plan: {plan.plan_identifier}",
        f"duration: {format_duration(duration_seconds)}",
        f"completed: {completed}",
        "---",
        "",
    ])
    body = [
        f"# Phase {plan.phase_id} Plan {plan.plan_identifier}: Summary",
        "",
        f"**{plan.objective}**",
        "",
    ]
    if plan.purpose:
        body += [f"Purpose: {plan.purpose}", ""]
    report = render_completion_report(plan, results, decisions, duration_seconds, issue_ids)
    # drop the report's own heading; the summary has one
    report = report.split("\n", 2)[2] if report.startswith("## ") else report

    path = summary_path_for(plan_path)
    path.write_text(frontmatter + "\n".join(body) + report, encoding="utf-8")
    return path
