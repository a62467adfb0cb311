"""
Plan executor.

Runs a plan's tasks strictly in order. Auto tasks go through the tool loop
(model turn -> tool calls -> results -> next turn) and are judged by the
failure classifier; checkpoint tasks go through the gate. Position is saved
after every task so a run can pause at a checkpoint, or be cancelled, and be
picked up by a later, unrelated invocation.

Cancellation is cooperative. It is checked before every write to the primary
stream, before every model turn and before every tool call. A tool call that
is already running finishes, and its result is thrown away.
"""

import asyncio
import contextlib
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Optional

from .cancellation import RESUME, CancellationToken, ContextRoute, ResumeManager
from .chat import ChatService, TextDelta, ToolCallRequest, TurnEnd
from .classifier import AttemptOutcome, RetryPolicy, backoff, classify_results
from .config import ExecutionMode, load_config
from .errors import (
    CancellationObserved,
    InvalidResumeSignal,
    ModelUnavailableError,
    TransientToolError,
    VerifyFailure,
)
from .gates import CONFIRM_CHECKPOINT, evaluate_gate
from .issues import IssueLog
from .logger import RunLogger, format_tool_line, log_tool_call
from .models import (
    AUTO,
    CHECKPOINT_DECISION,
    CHECKPOINT_VERIFY,
    ExecutionPlan,
    ExecutionResult,
    ExecutionState,
    TaskStatus,
    restore_progress,
)
from .notification import (
    notify_checkpoint,
    notify_complete,
    notify_decision,
    notify_error,
    notify_issue_logged,
    notify_warning,
)
from .output import ConsoleStream, ResponseStream
from .parser import load_plan
from .report import render_completion_report, write_summary
from .store import StateStore
from .tools import (
    CHECKED_TOOL_NAMES,
    configure_workspace,
    select_capability,
    tool_schemas,
    tool_timeout,
    tools_for,
)

MAX_TOOL_ITERATIONS = 50
MAX_SNIPPET_DISPLAY = 500

SYSTEM_PROMPT = """You are executing one task of a software project plan inside the user's workspace.

Carry the task out with the tools you are given. Do not describe what you would do; do it.
All file paths passed to tools must be absolute paths inside the workspace.
Run the task's verification when it can be run, and report honestly if it fails.
When the task is done, reply with a short summary and stop calling tools."""


def build_task_prompt(plan: ExecutionPlan, task, workspace_root: str, extra_context: Optional[str] = None) -> str:
    """Prompt for one auto task."""
    files_line = ""
    if task.target_files:
        files_line = f"**Files to modify:** {', '.join(task.target_files)}\n\n"

    prompt = f"""**Task:** {task.name}

{files_line}**Action to perform:**
{task.action}

**Done when:**
{task.done}

**Verification:**
{task.verify}

**Plan objective:** {plan.objective}

**Workspace root:** {workspace_root}
Use absolute paths, e.g. {workspace_root}/src/main.py instead of src/main.py.
"""
    if extra_context:
        prompt += f"""
**Additional context from the user (takes priority over the plan where they conflict):**
{extra_context}
"""
    return prompt


def render_checkpoint(task, index: int, total: int) -> str:
    """Markdown shown on the primary stream when the run pauses at ``task``."""
    header = f"\n### Task {index + 1}/{total}: "
    if task.type == CHECKPOINT_VERIFY:
        lines = [header + "Checkpoint - Verify Implementation", "", f"**What was built:** {task.what_built}", ""]
        if task.verification_steps:
            lines.append("**Please verify:**")
            lines += [f"{i}. {step}" for i, step in enumerate(task.verification_steps, start=1)]
            lines.append("")
        lines.append(f"*{task.resume_signal or 'Resume with: approved'}*")
    elif task.type == CHECKPOINT_DECISION:
        lines = [header + "Checkpoint - Decision Required", "", f"**Decision:** {task.decision}", ""]
        if task.context:
            lines += [f"**Context:** {task.context}", ""]
        for option in task.options:
            lines.append(f"**{option.id}: {option.name}**")
            if option.pros:
                lines.append(f"- *Pros:* {option.pros}")
            if option.cons:
                lines.append(f"- *Cons:* {option.cons}")
            lines.append("")
        lines.append(f"*{task.resume_signal or 'Resume with: decision:<option id>'}*")
    else:
        lines = [header + f"{task.name} (confirmation required)", ""]
        if task.target_files:
            lines += [f"**Files:** {', '.join(task.target_files)}", ""]
        lines += ["**Action:**", task.action, "", "*Resume with: confirm (run it) or skip*"]
    return "\n".join(lines) + "\n"


def resume_hint(task, checkpoint_type: str) -> str:
    if checkpoint_type == CONFIRM_CHECKPOINT:
        return "confirm | skip"
    if task.type == CHECKPOINT_DECISION:
        ids = [o.id for o in task.options] or ["<id>"]
        return " | ".join(f"decision:{i}" for i in ids)
    return "approved | issue:<description>"


# -----------------------------------------------------------------------------
# Tool loop
# -----------------------------------------------------------------------------

@dataclass
class ToolLoopResult:
    narration: str = ""
    transcript: list[str] = field(default_factory=list)
    iterations: int = 0
    tool_calls: int = 0
    hit_iteration_cap: bool = False
    files_touched: list[str] = field(default_factory=list)
    # (tool name, output) of command runs and failed calls, in call order
    checked: list[tuple[str, str]] = field(default_factory=list)

    def transcript_text(self) -> str:
        return "\n\n".join(self.transcript)


async def invoke_tool(tools_by_name: dict, call: ToolCallRequest) -> tuple[str, bool]:
    """Run one tool call. Every failure comes back as (error text, True), never as an exception."""
    tool = tools_by_name.get(call.name)
    if tool is None:
        available = ", ".join(sorted(tools_by_name)) or "none"
        return f"Error: unknown tool '{call.name}'. Available tools: {available}", True

    timeout = tool_timeout(call.name)
    try:
        result = await asyncio.wait_for(tool.handler(call.input or {}), timeout=timeout)
    except asyncio.TimeoutError:
        return f"Error: tool {call.name} timed out after {timeout:.0f}s", True
    except Exception as e:
        return f"Error: tool {call.name} raised {type(e).__name__}: {e}", True

    texts = [
        block.get("text", "")
        for block in (result or {}).get("content", [])
        if isinstance(block, dict) and block.get("type") == "text"
    ]
    return "\n".join(texts), bool((result or {}).get("is_error"))


def _append_user_text(messages: list[dict], text: str) -> None:
    """Add text to the trailing user turn, or start a new one."""
    block = {"type": "text", "text": text}
    if messages and messages[-1]["role"] == "user":
        content = messages[-1]["content"]
        if isinstance(content, str):
            content = [{"type": "text", "text": content}]
        messages[-1]["content"] = content + [block]
    else:
        messages.append({"role": "user", "content": [block]})


class ToolLoop:
    """One attempt at a task: model turns and tool calls until the model stops asking for tools."""

    def __init__(
        self,
        chat: ChatService,
        stream: ResponseStream,
        token: CancellationToken,
        logger: RunLogger,
        cwd: str,
        plan_path: str,
        pending_context: Callable[[], Optional[str]] = lambda: None,
        heartbeat: Callable[[], None] = lambda: None,
        max_iterations: int = MAX_TOOL_ITERATIONS,
    ):
        self.chat = chat
        self.stream = stream
        self.token = token
        self.logger = logger
        self.cwd = cwd
        self.plan_path = plan_path
        self.pending_context = pending_context
        self.heartbeat = heartbeat
        self.max_iterations = max_iterations

    def emit(self, text: str) -> None:
        emit_gated(self.stream, self.token, text)

    async def run(self, system: str, prompt: str, tools: list, task_id: int) -> ToolLoopResult:
        result = ToolLoopResult()
        messages: list[dict] = [{"role": "user", "content": prompt}]
        tools_by_name = {t.name: t for t in tools}
        schemas = tool_schemas(tools)

        for iteration in range(1, self.max_iterations + 1):
            self.token.raise_if_cancelled()
            self.heartbeat()
            extra = self.pending_context()
            if extra:
                _append_user_text(messages, f"Additional context from the user:\n{extra}")

            result.iterations = iteration
            narration_parts: list[str] = []
            calls: list[ToolCallRequest] = []

            response = self.chat.stream(system, messages, schemas)
            try:
                async for event in response:
                    if isinstance(event, TextDelta):
                        self.emit(event.text)
                        narration_parts.append(event.text)
                    elif isinstance(event, ToolCallRequest):
                        calls.append(event)
                    elif isinstance(event, TurnEnd):
                        self.logger.log_usage(event.usage)
            finally:
                aclose = getattr(response, "aclose", None)
                if aclose is not None:
                    with contextlib.suppress(RuntimeError, GeneratorExit, asyncio.CancelledError):
                        await aclose()

            narration = "".join(narration_parts)
            result.narration += narration
            assistant_blocks = []
            if narration.strip():
                assistant_blocks.append({"type": "text", "text": narration})
            for call in calls:
                assistant_blocks.append({"type": "tool_use", "id": call.id, "name": call.name, "input": call.input})
            if assistant_blocks:
                messages.append({"role": "assistant", "content": assistant_blocks})

            if not calls:
                if iteration == 1:
                    self.logger.log_tool_avoidance(task_id, narration)
                    notify_warning(
                        "No tools used",
                        "The model answered with narration only on its first turn; nothing was changed on disk.",
                        task_id=task_id,
                    )
                break

            tool_results = []
            for call in calls:
                self.token.raise_if_cancelled()
                self.emit(f"\n\n{format_tool_line(call.name, call.input, self.cwd)}\n")
                output, is_error = await invoke_tool(tools_by_name, call)
                if self.token.cancelled:
                    # the call finished after cancellation won; drop its result
                    raise CancellationObserved(self.token.reason)
                log_tool_call(self.cwd, self.plan_path, call.name, call.input, is_error)
                result.tool_calls += 1
                result.transcript.append(f"$ {call.name}\n{output}")
                if is_error or call.name in CHECKED_TOOL_NAMES:
                    result.checked.append((call.name, output))
                if is_error:
                    self.emit(f"*{call.name} failed*\n")
                elif call.name == "write_file":
                    path = call.input.get("file_path", "")
                    if path and path not in result.files_touched:
                        result.files_touched.append(path)
                tool_results.append({
                    "type": "tool_result",
                    "tool_use_id": call.id,
                    "content": output or "(no output)",
                    "is_error": is_error,
                })
            messages.append({"role": "user", "content": tool_results})
        else:
            result.hit_iteration_cap = True
            self.logger.log_iteration_cap(task_id, result.iterations)

        return result


async def run_tool_loop(
    chat: ChatService,
    system: str,
    prompt: str,
    tools: list,
    *,
    stream: ResponseStream,
    token: CancellationToken,
    logger: RunLogger,
    task_id: int,
    cwd: str = "",
    plan_path: str = "",
    pending_context: Callable[[], Optional[str]] = lambda: None,
    max_iterations: int = MAX_TOOL_ITERATIONS,
) -> ToolLoopResult:
    loop = ToolLoop(
        chat,
        stream,
        token,
        logger,
        cwd or os.getcwd(),
        plan_path,
        pending_context=pending_context,
        max_iterations=max_iterations,
    )
    return await loop.run(system, prompt, tools, task_id)


def emit_gated(stream: ResponseStream, token: CancellationToken, text: str) -> None:
    """Write to the primary stream only if the run has not been cancelled.

    A stream that fails mid-write is treated as a cancellation.
    """
    token.raise_if_cancelled()
    if getattr(stream, "closed", False):
        token.cancel("response stream closed")
        raise CancellationObserved(token.reason)
    try:
        stream.write(text)
    except (ConnectionError, ValueError) as e:
        token.cancel(f"response stream failed: {e}")
        raise CancellationObserved(token.reason) from e


# -----------------------------------------------------------------------------
# Plan executor
# -----------------------------------------------------------------------------

COMPLETED = "completed"
PAUSED = "paused"
CANCELLED = "cancelled"
FAILED = "failed"


@dataclass
class RunOutcome:
    status: str
    plan_path: str
    current_task_index: int = 0
    checkpoint_type: Optional[str] = None
    results: list[ExecutionResult] = field(default_factory=list)
    summary_path: Optional[str] = None
    error: Optional[str] = None
    issue_ids: list[str] = field(default_factory=list)


class PlanExecutor:
    """Executes plans against one workspace."""

    def __init__(
        self,
        cwd: str = ".",
        chat: Optional[ChatService] = None,
        mode: Optional[ExecutionMode] = None,
        store: Optional[StateStore] = None,
        stream: Optional[ResponseStream] = None,
        token: Optional[CancellationToken] = None,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        max_iterations: int = MAX_TOOL_ITERATIONS,
        logger: Optional[RunLogger] = None,
    ):
        self.cwd = os.path.abspath(cwd)
        self.chat = chat
        self.mode = ExecutionMode(mode) if mode else load_config(self.cwd).execution_mode
        self.store = store or StateStore(self.cwd)
        self.stream = stream or ConsoleStream()
        self.token = token or CancellationToken()
        self.policy = policy or RetryPolicy()
        self.sleep = sleep
        self.max_iterations = max_iterations
        self.resume_manager = ResumeManager(self.store)
        self._fixed_logger = logger
        self.logger: Optional[RunLogger] = logger
        self._issue_ids: list[str] = []

    # --- primary stream ---

    def _emit(self, text: str) -> None:
        emit_gated(self.stream, self.token, text)

    # --- public entry points ---

    async def run(self, plan_path: str, signal: Optional[str] = None) -> RunOutcome:
        """
        Start or continue a plan run.

        Args:
            plan_path: Path to the plan document
            signal: Resume signal when the run is paused at a checkpoint:
                approved | issue[:text] | decision:<id> | confirm | skip

        Raises:
            PlanParseError: The plan cannot be parsed; nothing is executed
            InvalidResumeSignal: ``signal`` does not fit the paused checkpoint
        """
        plan_path = os.path.abspath(plan_path)
        plan = load_plan(plan_path)
        configure_workspace(self.cwd)
        self._use_logger(plan_path)
        self._issue_ids = []

        state = self._load_state(plan, plan_path)
        restore_progress(plan, state)

        confirmed_index = None
        if state.paused_at_checkpoint:
            paused = self._apply_signal(plan, state, signal)
            if paused is not None:
                return paused
            if signal and signal.strip().lower() == "confirm":
                confirmed_index = state.current_task_index

        self.logger.log_run_start(plan_path, self.mode.value, state.current_task_index, len(plan.tasks))
        try:
            self.store.mark_active(plan_path)
            if state.current_task_index == 0 and not state.results:
                self._emit(f"## Executing {Path(plan_path).name}\n\n*{plan.objective}*\n")
            while state.current_task_index < len(plan.tasks):
                index = state.current_task_index
                task = plan.tasks[index]
                self.token.raise_if_cancelled()
                self.store.touch_active(plan_path)

                gate = evaluate_gate(task, self.mode)
                if gate.pause and not (gate.checkpoint_type == CONFIRM_CHECKPOINT and confirmed_index == index):
                    return self._pause(plan, state, task, gate.checkpoint_type)

                if task.type == AUTO:
                    await self._execute_auto(plan, task, state)
                elif task.type == CHECKPOINT_VERIFY:
                    self._auto_approve(plan, task, state)
                elif task.type == CHECKPOINT_DECISION:
                    self._auto_decide(plan, task, state, gate.auto_choice)
                self.store.save_execution_state(state)
        except CancellationObserved:
            self.store.save_execution_state(state)
            self.resume_manager.record_cancellation(plan_path, state.current_task_index, state.results)
            self.logger.log_run_end(CANCELLED, self.token.reason)
            return RunOutcome(CANCELLED, plan_path, state.current_task_index, results=list(state.results))
        except ModelUnavailableError as e:
            self.store.save_execution_state(state)
            self.logger.log_error(str(e), {"task_index": state.current_task_index})
            self.logger.log_run_end(FAILED, str(e))
            notify_error("Model unavailable", "The run stopped. Fix the model connection and re-run.", error=str(e))
            return RunOutcome(FAILED, plan_path, state.current_task_index, results=list(state.results), error=str(e))
        finally:
            self.store.clear_active_marker(plan_path)

        return self._complete(plan, plan_path, state)

    async def resume_with_context(self, text: str, plan_path: Optional[str] = None) -> tuple[ContextRoute, Optional[RunOutcome]]:
        """
        Treat ``text`` as user input that is not a command.

        Stashed for a live run, or used to re-enter a run cancelled within the
        resume window. Returns the route taken and, for a resume, the outcome.
        """
        if plan_path:
            plan_path = os.path.abspath(plan_path)
        self._use_logger(plan_path or "")
        route = self.resume_manager.route_input(text, plan_path)
        if route.action != RESUME:
            return route, None
        outcome = await self.run(route.plan_path)
        return route, outcome

    def _use_logger(self, plan_path: str) -> None:
        """One session log per invocation; a context command and the run it resumes share it."""
        if self._fixed_logger is not None:
            self.logger = self._fixed_logger
        elif self.logger is None or self.logger.metrics.plan_path not in ("", plan_path):
            self.logger = RunLogger(self.cwd, plan_path)
        if plan_path:
            self.logger.metrics.plan_path = plan_path
        self.resume_manager.logger = self.logger

    # --- state ---

    def _load_state(self, plan: ExecutionPlan, plan_path: str) -> ExecutionState:
        state = self.store.get_execution_state(plan_path)
        if state is None:
            return self._fresh_state(plan, plan_path)

        total = len(plan.tasks)
        types = [task.type for task in plan.tasks]
        problem = None
        if state.total_tasks is not None and state.total_tasks != total:
            problem = f"the plan had {state.total_tasks} tasks when the run was saved and has {total} now"
        elif state.task_types and state.task_types != types:
            problem = "task types changed since the run was saved"
        elif state.current_task_index > total:
            problem = f"saved position {state.current_task_index} is past the plan's {total} tasks"
        elif any(r.task_id < 1 or r.task_id > total for r in state.results):
            problem = "saved results reference tasks that are not in the plan"
        elif any(task_id > total for task_id in state.decisions_made):
            problem = "saved decisions reference tasks that are not in the plan"
        elif state.paused_at_checkpoint:
            if state.current_task_index >= total:
                problem = "paused past the last task"
            else:
                task = plan.tasks[state.current_task_index]
                expected = {
                    "human-verify": CHECKPOINT_VERIFY,
                    "decision": CHECKPOINT_DECISION,
                    CONFIRM_CHECKPOINT: AUTO,
                }.get(state.checkpoint_type or "")
                if expected != task.type:
                    problem = f"paused at a {state.checkpoint_type} checkpoint but task {task.id} is {task.type}"

        if problem:
            notify_warning("Saved progress discarded", f"{problem}; the plan changed. Starting from task 1.")
            self.store.clear_execution_state(plan_path)
            return self._fresh_state(plan, plan_path)
        # records saved before the plan shape was stored
        state.total_tasks = total
        state.task_types = types
        return state

    def _fresh_state(self, plan: ExecutionPlan, plan_path: str) -> ExecutionState:
        return ExecutionState(
            plan_path=plan_path,
            started_at=self.store.clock(),
            total_tasks=len(plan.tasks),
            task_types=[task.type for task in plan.tasks],
        )

    def _finish_task(self, task, state: ExecutionState, result: ExecutionResult) -> None:
        index = task.id - 1
        state.record_result(result)
        if result.success:
            state.advance_to(index + 1, completed_index=index)
        else:
            state.advance_to(index + 1)
        self.logger.log_task_end(task.id, result.success, result.attempts, result.error)

    # --- checkpoints ---

    def _pause(self, plan: ExecutionPlan, state: ExecutionState, task, checkpoint_type: str) -> RunOutcome:
        state.paused_at_checkpoint = True
        state.checkpoint_type = checkpoint_type
        self.store.save_execution_state(state)
        self.logger.log_checkpoint_paused(task.id, checkpoint_type)
        self.logger.log_run_end(PAUSED, checkpoint_type)
        notify_checkpoint(task.id, checkpoint_type, resume_hint(task, checkpoint_type))
        self._emit(render_checkpoint(task, state.current_task_index, len(plan.tasks)))
        return RunOutcome(
            PAUSED,
            state.plan_path,
            state.current_task_index,
            checkpoint_type=checkpoint_type,
            results=list(state.results),
        )

    def _still_paused(self, plan: ExecutionPlan, state: ExecutionState, note: str = "") -> RunOutcome:
        task = plan.tasks[state.current_task_index]
        text = f"\n## Execution Paused\n\n{note}" if note else "\n## Execution Paused\n"
        self._emit(text + render_checkpoint(task, state.current_task_index, len(plan.tasks)))
        return RunOutcome(
            PAUSED,
            state.plan_path,
            state.current_task_index,
            checkpoint_type=state.checkpoint_type,
            results=list(state.results),
        )

    def _apply_signal(self, plan: ExecutionPlan, state: ExecutionState, signal: Optional[str]) -> Optional[RunOutcome]:
        """
        Resolve the checkpoint the run is paused at.

        Returns a RunOutcome when the run stays paused, None when it can go on.
        """
        index = state.current_task_index
        task = plan.tasks[index]
        checkpoint_type = state.checkpoint_type
        if not signal or not signal.strip():
            return self._still_paused(plan, state)

        raw = signal.strip()
        keyword, _, argument = raw.partition(":")
        keyword = keyword.strip().lower()
        argument = argument.strip()

        if checkpoint_type == CONFIRM_CHECKPOINT:
            if keyword == "confirm":
                self._clear_pause(state)
                return None
            if keyword == "skip":
                task.advance(TaskStatus.SKIPPED)
                self._clear_pause(state)
                self.logger.log_task_skipped(task.id, "skipped at confirmation")
                self._finish_task(task, state, ExecutionResult(
                    task_id=task.id, success=False, name=task.name, error="Skipped by user",
                ))
                self.store.save_execution_state(state)
                return None
            raise InvalidResumeSignal(f"Task {task.id} is waiting for 'confirm' or 'skip', got '{raw}'")

        if task.type == CHECKPOINT_VERIFY:
            if keyword == "approved":
                task.advance(TaskStatus.RUNNING)
                task.advance(TaskStatus.COMPLETED)
                self._clear_pause(state)
                self.logger.log_checkpoint_resolved(task.id, checkpoint_type, "approved", automatic=False)
                self._finish_task(task, state, ExecutionResult(task_id=task.id, success=True, name=task.name))
                self.store.save_execution_state(state)
                self._emit("**Checkpoint approved.** Resuming execution...\n")
                return None
            if keyword == "issue":
                note = "Describe the problem with `issue:<description>`, fix it, then resume with `approved`.\n\n"
                if argument:
                    record = IssueLog(plan, state.plan_path).log_reported_issue(task, argument)
                    note = f"Recorded **{record.id}**. Fix it, then resume with `approved`.\n\n"
                return self._still_paused(plan, state, note)
            raise InvalidResumeSignal(f"Task {task.id} is waiting for 'approved' or 'issue', got '{raw}'")

        if task.type == CHECKPOINT_DECISION:
            if keyword != "decision" or not argument:
                raise InvalidResumeSignal(f"Task {task.id} is waiting for 'decision:<option id>', got '{raw}'")
            choice = argument
            if task.options:
                option = task.get_option(argument)
                if option is None:
                    valid = ", ".join(o.id for o in task.options)
                    raise InvalidResumeSignal(f"Unknown option '{argument}' for task {task.id}; choose one of: {valid}")
                choice = option.id
            task.advance(TaskStatus.RUNNING)
            task.advance(TaskStatus.COMPLETED)
            state.decisions_made[task.id] = choice
            self._clear_pause(state)
            self.logger.log_checkpoint_resolved(task.id, checkpoint_type, choice, automatic=False)
            self._finish_task(task, state, ExecutionResult(task_id=task.id, success=True, name=task.decision or task.name))
            self.store.save_execution_state(state)
            self._emit(f"**Decision recorded:** {choice}. Resuming execution...\n")
            return None

        raise InvalidResumeSignal(f"Task {task.id} is not a checkpoint")

    @staticmethod
    def _clear_pause(state: ExecutionState) -> None:
        state.paused_at_checkpoint = False
        state.checkpoint_type = None

    def _auto_approve(self, plan: ExecutionPlan, task, state: ExecutionState) -> None:
        self._emit(f"\n### Task {task.id}/{len(plan.tasks)}: Checkpoint (auto-approved)\n\n*{task.what_built}*\n")
        task.advance(TaskStatus.RUNNING)
        task.advance(TaskStatus.COMPLETED)
        self.logger.log_checkpoint_resolved(task.id, "human-verify", "approved", automatic=True)
        notify_decision("approved", f"Verification of '{task.what_built or task.name}' skipped in yolo mode.", task.id)
        self._finish_task(task, state, ExecutionResult(task_id=task.id, success=True, name=task.name))

    def _auto_decide(self, plan: ExecutionPlan, task, state: ExecutionState, choice: Optional[str]) -> None:
        label = choice or "no options"
        option = task.get_option(choice) if choice else None
        if option:
            label = f"{option.id} ({option.name})"
        self._emit(
            f"\n### Task {task.id}/{len(plan.tasks)}: Decision (auto-selected)\n\n"
            f"**Decision:** {task.decision}\n**Selected:** {label}\n"
        )
        task.advance(TaskStatus.RUNNING)
        task.advance(TaskStatus.COMPLETED)
        if choice:
            state.decisions_made[task.id] = choice
        self.logger.log_checkpoint_resolved(task.id, "decision", label, automatic=True)
        notify_decision(label, f"'{task.decision or task.name}' resolved with the default option in yolo mode.", task.id)
        self._finish_task(task, state, ExecutionResult(task_id=task.id, success=True, name=task.decision or task.name))

    # --- auto tasks ---

    async def _execute_auto(self, plan: ExecutionPlan, task, state: ExecutionState) -> None:
        task.advance(TaskStatus.RUNNING)
        self.logger.log_task_start(task.id, task.type, task.name)
        self._emit(f"\n### Task {task.id}/{len(plan.tasks)}: {task.name}\n\n")

        result = await self._run_with_retries(plan, task, state.plan_path)
        task.advance(TaskStatus.COMPLETED if result.success else TaskStatus.FAILED)
        self._finish_task(task, state, result)

        if result.success:
            self._emit(f"\n\n**Task {task.id} complete.**\n")
            return

        # the issue must exist before any gated write can observe a cancel
        if self.mode == ExecutionMode.YOLO:
            issue_log = IssueLog(plan, state.plan_path)
            record, created = issue_log.log_task_failure(task, result.error or "unknown error", output=result.output or "")
            self.logger.log_issue(record.id, task.id, created)
            self._issue_ids.append(record.id)
            notify_issue_logged(record.id, str(issue_log.path), task.id)
        self._emit(f"\n\n**Task {task.id} failed.**\n\n```\n{(result.error or '')[:MAX_SNIPPET_DISPLAY]}\n```\n")

    async def _run_with_retries(self, plan: ExecutionPlan, task, plan_path: str) -> ExecutionResult:
        """Attempt ``task`` until it succeeds, fails terminally, or the retry budget runs out."""
        if self.chat is None:
            raise ModelUnavailableError("No chat service configured")

        extra = self.store.pop_pending_context(plan_path)
        prompt = build_task_prompt(plan, task, self.cwd, extra)
        tools = tools_for(select_capability(task))
        files = list(task.target_files or [])

        for attempt in range(1, self.policy.max_attempts + 1):
            self.token.raise_if_cancelled()
            try:
                loop_result = await self._attempt(task, prompt, tools, plan_path, attempt)
            except TransientToolError as e:
                if attempt < self.policy.max_attempts:
                    self.logger.log_retry_scheduled(task.id, attempt, self.policy.delay(attempt), str(e))
                    await backoff(self.policy, attempt, self.token, self.sleep)
                    continue
                return ExecutionResult(
                    task_id=task.id,
                    success=False,
                    name=task.name,
                    attempts=attempt,
                    error=f"Transient failure persisted after {attempt} attempts: {e}",
                    files=files,
                )
            except VerifyFailure as e:
                return ExecutionResult(
                    task_id=task.id,
                    success=False,
                    name=task.name,
                    attempts=attempt,
                    error=f"Verification failed ({e.signature}): {e.snippet}",
                    output=e.snippet,
                    files=files,
                )
            return ExecutionResult(
                task_id=task.id,
                success=True,
                name=task.name,
                attempts=attempt,
                output=loop_result.narration[-2000:],
                files=loop_result.files_touched or files,
            )

        # unreachable with max_attempts >= 1
        return ExecutionResult(task_id=task.id, success=False, name=task.name, error="No attempts made")

    async def _attempt(self, task, prompt: str, tools: list, plan_path: str, attempt: int) -> ToolLoopResult:
        """
        One pass through the tool loop, judged by the classifier.

        Raises:
            TransientToolError: Output (or the model transport) shows a retryable failure
            VerifyFailure: Output carries a terminal failure signature
        """
        loop = ToolLoop(
            chat=self.chat,
            stream=self.stream,
            token=self.token,
            logger=self.logger,
            cwd=self.cwd,
            plan_path=plan_path,
            pending_context=lambda: self.store.pop_pending_context(plan_path),
            heartbeat=lambda: self.store.touch_active(plan_path),
            max_iterations=self.max_iterations,
        )
        try:
            result = await loop.run(SYSTEM_PROMPT, prompt, tools, task.id)
        except TransientToolError:
            self.logger.log_attempt_end(task.id, attempt, AttemptOutcome.TRANSIENT.value, signature="model transport")
            raise

        classification = classify_results(result.checked)
        self.logger.log_attempt_end(
            task.id,
            attempt,
            classification.outcome.value,
            tool_calls=result.tool_calls,
            iterations=result.iterations,
            signature=classification.signature,
        )
        if classification.outcome == AttemptOutcome.TRANSIENT:
            raise TransientToolError(f"{classification.signature}: {classification.snippet}")
        if classification.outcome == AttemptOutcome.FAILED:
            raise VerifyFailure(classification.signature, classification.snippet)
        if result.hit_iteration_cap:
            raise VerifyFailure(
                "iteration cap",
                f"stopped after {result.iterations} model turns without the task finishing",
            )
        return result

    # --- completion ---

    def _complete(self, plan: ExecutionPlan, plan_path: str, state: ExecutionState) -> RunOutcome:
        duration = max(0.0, self.store.clock() - state.started_at)
        issue_ids = list(self._issue_ids)
        summary = write_summary(plan, plan_path, state.results, state.decisions_made, duration, issue_ids)
        self.store.clear_all(plan_path)
        self.logger.log_run_end(COMPLETED)

        report = render_completion_report(plan, state.results, state.decisions_made, duration, issue_ids)
        with contextlib.suppress(CancellationObserved):
            self._emit("\n" + report)
        failed = sum(1 for r in state.results if not r.success)
        notify_complete(
            "Plan complete",
            f"{len(state.results) - failed}/{len(plan.tasks)} tasks succeeded.",
            summary=str(summary),
        )
        return RunOutcome(
            COMPLETED,
            plan_path,
            len(plan.tasks),
            results=list(state.results),
            summary_path=str(summary),
            issue_ids=issue_ids,
        )
