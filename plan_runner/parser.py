"""
Plan document parser.

A plan is frontmatter (``key: value`` lines between ``---`` fences) followed by
tagged sections::

    <objective> ... </objective>
    <tasks>
      <task type="auto"> <name/> <files/> <action/> <verify/> <done/> </task>
      <task type="checkpoint:human-verify"> <what-built/> <how-to-verify/> <resume-signal/> </task>
      <task type="checkpoint:decision"> <decision/> <context/> <options/> <resume-signal/> </task>
    </tasks>
    <verification> - [ ] item </verification>
    <success_criteria> - item </success_criteria>

Parsing either yields a complete ExecutionPlan or raises PlanParseError.
"""

import re
from pathlib import Path
from typing import Optional

from .errors import PlanParseError
from .models import (
    AUTO,
    CHECKPOINT_DECISION,
    CHECKPOINT_VERIFY,
    TASK_TYPES,
    AutoTask,
    CheckpointDecisionTask,
    CheckpointVerifyTask,
    DecisionOption,
    ExecutionPlan,
)

FRONTMATTER_RE = re.compile(r"^---\r?\n(.*?)\r?\n---\r?\n(.*)$", re.DOTALL)
TASK_RE = re.compile(r"<task\b([^>]*)>(.*?)</task>", re.DOTALL | re.IGNORECASE)
OPTION_RE = re.compile(r"<option\b([^>]*)>(.*?)</option>", re.DOTALL | re.IGNORECASE)
ATTR_RE = re.compile(r"""([\w:-]+)\s*=\s*["']([^"']*)["']""")
TASK_PREFIX_RE = re.compile(r"^Task\s+\d+:\s*(.+)$", re.IGNORECASE | re.DOTALL)
STEP_MARKER_RE = re.compile(r"^\s*\d+[.)]\s*")
CHECKBOX_RE = re.compile(r"^\s*-\s*\[[xX ]\]\s*(.+)$")
BULLET_RE = re.compile(r"^\s*-\s+(.+)$")
PURPOSE_RE = re.compile(r"Purpose:\s*(.+?)(?:\n|$)")
PLACEHOLDER_RE = re.compile(r"^(\[.*\]|\{.*\})$")
OPTIONS_BLOCK_RE = re.compile(r"<options>.*?</options>", re.DOTALL | re.IGNORECASE)


def parse_frontmatter(content: str) -> tuple[dict[str, str], str]:
    """Split ``content`` into (frontmatter dict, body). Missing frontmatter gives ({}, content)."""
    match = FRONTMATTER_RE.match(content)
    if not match:
        return {}, content

    frontmatter = {}
    for line in match.group(1).splitlines():
        key, sep, value = line.partition(":")
        if sep and key.strip():
            frontmatter[key.strip()] = value.strip()
    return frontmatter, match.group(2)


def extract_section(content: str, tag: str) -> Optional[str]:
    match = re.search(rf"<{re.escape(tag)}>(.*?)</{re.escape(tag)}>", content, re.DOTALL | re.IGNORECASE)
    return match.group(1).strip() if match else None


def _attrs(raw: str) -> dict[str, str]:
    return {k.lower(): v for k, v in ATTR_RE.findall(raw)}


def _tag(content: str, tag: str) -> str:
    return extract_section(content, tag) or ""


def _strip_task_prefix(name: str) -> str:
    match = TASK_PREFIX_RE.match(name)
    return match.group(1).strip() if match else name


def parse_files(raw: str) -> list[str]:
    """Comma-separated file list with empty and placeholder tokens removed."""
    files = []
    for token in re.split(r",\s*", raw.strip()):
        token = token.strip()
        if token and not PLACEHOLDER_RE.match(token):
            files.append(token)
    return files


def parse_steps(raw: str) -> list[str]:
    """Verification steps: one per non-empty line, leading ``N.`` / ``N)`` stripped."""
    steps = []
    for line in raw.splitlines():
        step = STEP_MARKER_RE.sub("", line, count=1).strip()
        if step:
            steps.append(step)
    return steps


def parse_options(raw: str) -> list[DecisionOption]:
    options = []
    for index, match in enumerate(OPTION_RE.finditer(raw), start=1):
        attrs = _attrs(match.group(1))
        body = match.group(2)
        option_id = attrs.get("id") or _tag(body, "id") or f"option-{index}"
        options.append(DecisionOption(
            id=option_id,
            name=_tag(body, "name") or option_id,
            pros=_tag(body, "pros"),
            cons=_tag(body, "cons"),
            is_default=attrs.get("default", "").lower() == "true",
        ))
    return options


def parse_tasks(tasks_section: str) -> list:
    """Parse every ``<task>`` block. Unknown ``type`` values fall back to auto."""
    tasks = []
    for position, match in enumerate(TASK_RE.finditer(tasks_section), start=1):
        attrs = _attrs(match.group(1))
        body = match.group(2)
        task_type = attrs.get("type", AUTO).strip().lower()
        if task_type not in TASK_TYPES:
            task_type = AUTO

        # option blocks carry their own <name> tags
        head = OPTIONS_BLOCK_RE.sub("", body)
        name = _strip_task_prefix(_tag(head, "name"))

        if task_type == CHECKPOINT_VERIFY:
            what_built = _tag(body, "what-built")
            tasks.append(CheckpointVerifyTask(
                id=position,
                name=name or what_built or f"Task {position}",
                what_built=what_built,
                verification_steps=parse_steps(_tag(body, "how-to-verify")),
                resume_signal=_tag(body, "resume-signal"),
            ))
        elif task_type == CHECKPOINT_DECISION:
            decision = _tag(body, "decision")
            tasks.append(CheckpointDecisionTask(
                id=position,
                name=name or decision or f"Task {position}",
                decision=decision,
                context=_tag(body, "context"),
                options=parse_options(_tag(body, "options")),
                resume_signal=_tag(body, "resume-signal"),
            ))
        else:
            files_raw = extract_section(body, "files")
            tasks.append(AutoTask(
                id=position,
                name=name or f"Task {position}",
                target_files=parse_files(files_raw) if files_raw is not None else None,
                action=_tag(body, "action"),
                verify=_tag(body, "verify"),
                done=_tag(body, "done"),
            ))
    return tasks


def _items(section: Optional[str], pattern: re.Pattern) -> list[str]:
    if not section:
        return []
    items = []
    for line in section.splitlines():
        match = pattern.match(line)
        if match:
            items.append(match.group(1).strip())
    return items


def parse_plan(content: str, plan_path: Optional[str] = None) -> ExecutionPlan:
    """Parse a plan document. Raises PlanParseError on missing phase, objective or tasks."""
    frontmatter, body = parse_frontmatter(content.lstrip("\ufeff"))

    phase = frontmatter.get("phase", "").strip()
    if not phase:
        raise PlanParseError("missing 'phase' in frontmatter", plan_path)

    objective_section = extract_section(body, "objective")
    if not objective_section:
        raise PlanParseError("missing <objective> section", plan_path)

    objective = objective_section
    purpose = ""
    purpose_match = PURPOSE_RE.search(objective_section)
    if purpose_match:
        purpose = purpose_match.group(1).strip()
        objective = re.split(r"\n\s*\n", objective_section)[0].strip()

    tasks_section = extract_section(body, "tasks")
    if tasks_section is None:
        raise PlanParseError("missing <tasks> section", plan_path)

    tasks = parse_tasks(tasks_section)
    if not tasks:
        raise PlanParseError("no <task> entries in <tasks>", plan_path)

    return ExecutionPlan(
        phase_id=phase,
        plan_identifier=frontmatter.get("plan", "").strip() or "01",
        objective=objective,
        purpose=purpose,
        tasks=tasks,
        verification_checklist=_items(extract_section(body, "verification"), CHECKBOX_RE),
        success_criteria=_items(extract_section(body, "success_criteria"), BULLET_RE),
        source_path=plan_path,
    )


def load_plan(path) -> ExecutionPlan:
    """Read and parse a plan file."""
    path = Path(path)
    try:
        content = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise PlanParseError("plan file not found", str(path))
    return parse_plan(content, plan_path=str(path))


# -----------------------------------------------------------------------------
# Writing plans back out
# -----------------------------------------------------------------------------

def _render_task(task) -> list[str]:
    lines = [f'<task type="{task.type}">', f"  <name>{task.name}</name>"]
    if task.type == AUTO:
        if task.target_files is not None:
            lines.append(f"  <files>{', '.join(task.target_files)}</files>")
        lines.append(f"  <action>{task.action}</action>")
        lines.append(f"  <verify>{task.verify}</verify>")
        lines.append(f"  <done>{task.done}</done>")
    elif task.type == CHECKPOINT_VERIFY:
        lines.append(f"  <what-built>{task.what_built}</what-built>")
        lines.append("  <how-to-verify>")
        lines.extend(f"    {i}. {step}" for i, step in enumerate(task.verification_steps, start=1))
        lines.append("  </how-to-verify>")
        lines.append(f"  <resume-signal>{task.resume_signal}</resume-signal>")
    elif task.type == CHECKPOINT_DECISION:
        lines.append(f"  <decision>{task.decision}</decision>")
        lines.append(f"  <context>{task.context}</context>")
        lines.append("  <options>")
        for option in task.options:
            default = ' default="true"' if option.is_default else ""
            lines.append(f'    <option id="{option.id}"{default}>')
            lines.append(f"      <name>{option.name}</name>")
            lines.append(f"      <pros>{option.pros}</pros>")
            lines.append(f"      <cons>{option.cons}</cons>")
            lines.append("    </option>")
        lines.append("  </options>")
        lines.append(f"  <resume-signal>{task.resume_signal}</resume-signal>")
    lines.append("</task>")
    return lines


def render_plan(plan: ExecutionPlan) -> str:
    """Serialize a plan back into the document format ``parse_plan`` reads."""
    objective = plan.objective
    if plan.purpose:
        objective = f"{objective}\n\nPurpose: {plan.purpose}"

    lines = [
        "---",
        f"phase: {plan.phase_id}",
        f"plan: {plan.plan_identifier}",
        "---",
        "",
        "<objective>",
        objective,
        "</objective>",
        "",
        "<tasks>",
    ]
    for task in plan.tasks:
        lines.extend(_render_task(task))
        lines.append("")
    lines.append("</tasks>")
    lines.append("")
    lines.append("<verification>")
    lines.extend(f"- [ ] {item}" for item in plan.verification_checklist)
    lines.append("</verification>")
    lines.append("")
    lines.append("<success_criteria>")
    lines.extend(f"- {item}" for item in plan.success_criteria)
    lines.append("</success_criteria>")
    return "\n".join(lines) + "\n"
