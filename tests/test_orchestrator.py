"""
End-to-end tests for the plan executor.

The model is replaced by ScriptedChat, which replays canned turns (text
deltas, tool calls, callables that poke the run mid-stream). Tools run for
real against tmp_path. Backoff sleeps are recorded, not slept.
"""

import asyncio
import copy
import io
from pathlib import Path

import pytest
from rich.console import Console

from plan_runner import notification
from plan_runner.cancellation import REJECTED, RESUME, STASHED, CancellationToken
from plan_runner.chat import TextDelta, ToolCallRequest, TurnEnd
from plan_runner.classifier import RetryPolicy
from plan_runner.config import ExecutionMode
from plan_runner.errors import InvalidResumeSignal, ModelUnavailableError, TransientToolError
from plan_runner.logger import RunLogger
from plan_runner.models import ExecutionState
from plan_runner.orchestrator import (
    CANCELLED,
    COMPLETED,
    FAILED,
    PAUSED,
    PlanExecutor,
    ToolLoopResult,
    build_task_prompt,
    run_tool_loop,
)
from plan_runner.parser import parse_plan
from plan_runner.store import CANCEL_WINDOW_SECONDS, StateStore
from plan_runner.tools import FILE_TOOLS, configure_workspace


def _run(coro):
    """Run an async function synchronously."""
    return asyncio.run(coro)


# =============================================================================
# Fakes
# =============================================================================


class ScriptedChat:
    """Replays scripted model turns.

    A turn is a list of events, or an exception to raise instead. Callables in
    a turn are invoked at that point of the stream. When the script runs out
    the model just says it is done.
    """

    def __init__(self, turns=()):
        self.turns = list(turns)
        self.calls = []

    async def stream(self, system, messages, tools):
        self.calls.append({
            "system": system,
            "messages": copy.deepcopy(messages),
            "tools": [t["name"] for t in tools],
        })
        turn = self.turns.pop(0) if self.turns else done()
        if isinstance(turn, Exception):
            raise turn
        for event in turn:
            if callable(event):
                event()
                continue
            yield event


class RecordingStream:
    def __init__(self):
        self.chunks = []
        self.closed = False

    def write(self, markdown):
        self.chunks.append(markdown)

    @property
    def text(self):
        return "".join(self.chunks)


class FakeClock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def done(text="Done."):
    return [TextDelta(text), TurnEnd("end_turn", {"input_tokens": 10, "output_tokens": 5})]


def tool_turn(*calls, text=""):
    events = [TextDelta(text)] if text else []
    return events + list(calls) + [TurnEnd("tool_use")]


def write_call(path, content="x = 1\n", call_id="w1"):
    return ToolCallRequest(id=call_id, name="write_file", input={"file_path": str(path), "content": content})


def shell_call(command, call_id="c1"):
    return ToolCallRequest(id=call_id, name="run_command", input={"command": command})


def auto_task(name, action="Run the step", verify="Output looks right"):
    return (
        f'<task type="auto">\n  <name>{name}</name>\n  <action>{action}</action>\n'
        f"  <verify>{verify}</verify>\n  <done>Finished</done>\n</task>\n"
    )


def verify_task(what="Login page"):
    return (
        f'<task type="checkpoint:human-verify">\n  <what-built>{what}</what-built>\n'
        "  <how-to-verify>\n    1. Open the page\n  </how-to-verify>\n"
        '  <resume-signal>Type "approved"</resume-signal>\n</task>\n'
    )


def decision_task():
    return (
        '<task type="checkpoint:decision">\n  <decision>Token storage</decision>\n'
        "  <context>Refresh tokens</context>\n  <options>\n"
        '    <option id="a"><name>Redis</name><pros>Fast</pros><cons>Infra</cons></option>\n'
        '    <option id="b" default="true"><name>Database</name><pros>Simple</pros><cons>Slow</cons></option>\n'
        "  </options>\n  <resume-signal>decision:a or decision:b</resume-signal>\n</task>\n"
    )


def make_plan(*tasks):
    return (
        "---\nphase: 04-auth\nplan: 01\n---\n\n<objective>\nShip login\n</objective>\n\n"
        f"<tasks>\n{''.join(tasks)}</tasks>\n\n<verification>\n- [ ] login works\n</verification>\n"
    )


@pytest.fixture
def side_channel():
    buffer = io.StringIO()
    original = notification.console
    notification.set_console(Console(file=buffer, width=120))
    yield buffer
    notification.set_console(original)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def workspace(tmp_path):
    return tmp_path


@pytest.fixture
def store(workspace, clock):
    return StateStore(str(workspace), clock=clock)


def write_plan(workspace, *tasks):
    path = workspace / ".planning" / "phases" / "04-auth" / "04-01-PLAN.md"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(make_plan(*tasks), encoding="utf-8")
    return str(path)


class Harness:
    """Executor plus the fakes it was built with."""

    def __init__(self, workspace, store, mode, turns=(), **kwargs):
        self.chat = ScriptedChat(turns)
        self.stream = RecordingStream()
        self.token = CancellationToken()
        self.sleeps = []

        async def fake_sleep(seconds):
            self.sleeps.append(seconds)

        self.executor = PlanExecutor(
            cwd=str(workspace),
            chat=self.chat,
            mode=mode,
            store=store,
            stream=self.stream,
            token=self.token,
            policy=RetryPolicy(),
            sleep=fake_sleep,
            **kwargs,
        )

    def run(self, plan_path, signal=None):
        return _run(self.executor.run(plan_path, signal))


# =============================================================================
# Prompt
# =============================================================================


class TestBuildTaskPrompt:
    def test_contains_task_fields(self, tmp_path):
        plan = parse_plan(make_plan(auto_task("Add route", action="Add GET /health", verify="curl it")))
        prompt = build_task_prompt(plan, plan.tasks[0], str(tmp_path))
        assert "**Task:** Add route" in prompt
        assert "Add GET /health" in prompt
        assert "curl it" in prompt
        assert str(tmp_path) in prompt
        assert "Additional context" not in prompt

    def test_extra_context(self, tmp_path):
        plan = parse_plan(make_plan(auto_task("Add route")))
        prompt = build_task_prompt(plan, plan.tasks[0], str(tmp_path), "use retries=5")
        assert "use retries=5" in prompt


# =============================================================================
# Tool loop
# =============================================================================


class TestToolLoop:
    def _loop(self, workspace, chat, token=None, **kwargs):
        configure_workspace(str(workspace))
        return run_tool_loop(
            chat,
            "system",
            "prompt",
            FILE_TOOLS,
            stream=RecordingStream(),
            token=token or CancellationToken(),
            logger=RunLogger(str(workspace), "plan"),
            task_id=1,
            cwd=str(workspace),
            plan_path="plan",
            **kwargs,
        )

    def test_tool_results_fed_back(self, workspace, side_channel):
        target = workspace / "a.py"
        chat = ScriptedChat([tool_turn(write_call(target), text="Writing"), done()])
        result = _run(self._loop(workspace, chat))
        assert isinstance(result, ToolLoopResult)
        assert result.iterations == 2
        assert result.tool_calls == 1
        assert result.files_touched == [str(target)]
        assert target.exists()

        second = chat.calls[1]["messages"]
        assert second[1]["role"] == "assistant"
        assert [b["type"] for b in second[1]["content"]] == ["text", "tool_use"]
        tool_result = second[2]["content"][0]
        assert tool_result["type"] == "tool_result"
        assert tool_result["tool_use_id"] == "w1"
        assert tool_result["is_error"] is False

    def test_tool_error_returned_to_model(self, workspace, side_channel):
        call = ToolCallRequest(id="x1", name="write_file", input={"file_path": "relative.py", "content": ""})
        chat = ScriptedChat([tool_turn(call), done()])
        result = _run(self._loop(workspace, chat))
        tool_result = chat.calls[1]["messages"][-1]["content"][0]
        assert tool_result["is_error"] is True
        assert "absolute" in tool_result["content"]
        assert "absolute" in result.transcript_text()

    def test_only_errors_and_command_output_checked(self, workspace, side_channel):
        (workspace / "a.py").write_text("requests.get(url, timeout=10)\n")
        read = ToolCallRequest(id="r1", name="read_file", input={"file_path": str(workspace / "a.py")})
        bad = ToolCallRequest(id="r2", name="read_file", input={"file_path": "a.py"})
        chat = ScriptedChat([tool_turn(read, bad), done()])
        result = _run(self._loop(workspace, chat))
        assert len(result.transcript) == 2
        assert [name for name, _ in result.checked] == ["read_file"]
        assert "absolute" in result.checked[0][1]

    def test_unknown_tool(self, workspace, side_channel):
        call = ToolCallRequest(id="x1", name="delete_everything", input={})
        chat = ScriptedChat([tool_turn(call), done()])
        _run(self._loop(workspace, chat))
        tool_result = chat.calls[1]["messages"][-1]["content"][0]
        assert tool_result["is_error"] is True
        assert "unknown tool" in tool_result["content"]

    def test_narration_only_warns(self, workspace, side_channel):
        chat = ScriptedChat([done("I would create the file like this...")])
        result = _run(self._loop(workspace, chat))
        assert result.tool_calls == 0
        assert "No tools used" in side_channel.getvalue()

    def test_iteration_cap(self, workspace, side_channel):
        listing = ToolCallRequest(id="l", name="list_directory", input={"dir_path": str(workspace)})
        chat = ScriptedChat([tool_turn(listing)] * 5)
        result = _run(self._loop(workspace, chat, max_iterations=3))
        assert result.hit_iteration_cap is True
        assert result.iterations == 3
        assert len(chat.calls) == 3

    def test_pending_context_joins_next_turn(self, workspace, side_channel):
        pending = ["Use tabs"]

        def take():
            return pending.pop() if pending else None

        chat = ScriptedChat([tool_turn(write_call(workspace / "a.py")), done()])
        _run(self._loop(workspace, chat, pending_context=take))
        first_user = chat.calls[0]["messages"][0]["content"]
        assert any("Use tabs" in block["text"] for block in first_user if block["type"] == "text")


# =============================================================================
# Auto tasks
# =============================================================================


class TestAutoTasks:
    def test_completes_and_writes_summary(self, workspace, store, side_channel):
        plan_path = write_plan(workspace, auto_task("Create model", action="Create the model file"))
        target = workspace / "src" / "user.py"
        h = Harness(workspace, store, ExecutionMode.GUIDED, [tool_turn(write_call(target)), done()])

        outcome = h.run(plan_path)

        assert outcome.status == COMPLETED
        assert target.exists()
        assert outcome.results[0].success is True
        assert outcome.results[0].attempts == 1
        assert outcome.results[0].files == [str(target)]
        assert Path(outcome.summary_path).name == "04-01-SUMMARY.md"
        assert store.get_execution_state(plan_path) is None
        assert store.get_active_marker(plan_path) is None
        assert "**Write**" in h.stream.text
        assert "## Plan Execution Complete" in h.stream.text

    def test_failure_signature_overrides_claimed_success(self, workspace, store, side_channel):
        plan_path = write_plan(workspace, auto_task("Run tests"))
        h = Harness(workspace, store, ExecutionMode.GUIDED, [
            tool_turn(shell_call("echo 'FAILED tests/test_a.py::test_x'; exit 1")),
            done("All tests pass!"),
        ])

        outcome = h.run(plan_path)

        result = outcome.results[0]
        assert outcome.status == COMPLETED
        assert result.success is False
        assert result.attempts == 1
        assert "FAILED tests/test_a.py::test_x" in result.error
        assert h.sleeps == []
        # issues are only logged automatically in yolo mode
        assert not (workspace / ".planning" / "phases" / "04-auth" / "04-01-ISSUES.md").exists()

    def test_transient_then_success_on_third_attempt(self, workspace, store, side_channel):
        plan_path = write_plan(workspace, auto_task("Run migration"))
        rate_limited = "echo 'Error: 429 Too Many Requests'; exit 1"
        h = Harness(workspace, store, ExecutionMode.GUIDED, [
            tool_turn(shell_call(rate_limited)), done(),
            tool_turn(shell_call(rate_limited)), done(),
            tool_turn(shell_call("echo migrated")), done(),
        ])

        outcome = h.run(plan_path)

        result = outcome.results[0]
        assert result.success is True
        assert result.attempts == 3
        assert h.sleeps == [1.0, 2.0]
        assert h.stream.text.count("### Task 1/1") == 1
        assert h.stream.text.count("**Task 1 complete.**") == 1

    def test_transient_recovered_within_one_attempt(self, workspace, store, side_channel):
        plan_path = write_plan(workspace, auto_task("Run migration"))
        rate_limited = "echo 'Error: 429 Too Many Requests'; exit 1"
        h = Harness(workspace, store, ExecutionMode.GUIDED, [
            tool_turn(shell_call(rate_limited, "c1")),
            tool_turn(shell_call(rate_limited, "c2")),
            tool_turn(shell_call("echo migrated", "c3")),
            done(),
        ])

        outcome = h.run(plan_path)

        result = outcome.results[0]
        assert result.success is True
        assert result.attempts == 1
        assert h.sleeps == []
        assert len(h.chat.calls) == 4

    def test_file_contents_are_not_judged(self, workspace, store, side_channel):
        plan_path = write_plan(workspace, auto_task("Add retries", action="Edit the client"))
        client = workspace / "client.py"
        client.write_text(
            '"""HTTP client.\n\nError: raised when the server is overloaded or the rate limit is hit.\n"""\n'
            "resp = requests.get(url, timeout=10)\n"
        )
        read = ToolCallRequest(id="r1", name="read_file", input={"file_path": str(client)})
        h = Harness(workspace, store, ExecutionMode.GUIDED, [tool_turn(read), done()])

        outcome = h.run(plan_path)

        result = outcome.results[0]
        assert result.success is True
        assert result.attempts == 1
        assert h.sleeps == []

    def test_retry_budget_is_three_attempts(self, workspace, store, side_channel):
        plan_path = write_plan(workspace, auto_task("Call the API"), auto_task("Write notes", action="Write notes"))
        h = Harness(workspace, store, ExecutionMode.GUIDED, [
            TransientToolError("rate limited"),
            TransientToolError("rate limited"),
            TransientToolError("rate limited"),
            tool_turn(write_call(workspace / "notes.md")), done(),
        ])

        outcome = h.run(plan_path)

        first, second = outcome.results
        assert first.success is False
        assert first.attempts == 3
        assert "after 3 attempts" in first.error
        assert h.sleeps == [1.0, 2.0]
        assert second.success is True
        assert outcome.status == COMPLETED

    def test_model_unavailable_stops_run(self, workspace, store, side_channel):
        plan_path = write_plan(workspace, auto_task("One"), auto_task("Two"))
        h = Harness(workspace, store, ExecutionMode.GUIDED, [ModelUnavailableError("invalid x-api-key")])

        outcome = h.run(plan_path)

        assert outcome.status == FAILED
        assert "invalid x-api-key" in outcome.error
        state = store.get_execution_state(plan_path)
        assert state.current_task_index == 0
        assert store.get_active_marker(plan_path) is None
        assert len(h.chat.calls) == 1

    def test_iteration_cap_fails_task(self, workspace, store, side_channel):
        plan_path = write_plan(workspace, auto_task("Loop forever", action="Edit files"))
        listing = ToolCallRequest(id="l", name="list_directory", input={"dir_path": str(workspace)})
        h = Harness(workspace, store, ExecutionMode.GUIDED, [tool_turn(listing)] * 2, max_iterations=2)

        outcome = h.run(plan_path)

        assert outcome.results[0].success is False
        assert "iteration cap" in outcome.results[0].error

    def test_stale_state_discarded(self, workspace, store, side_channel):
        plan_path = write_plan(workspace, auto_task("Only", action="Edit files"))
        store.save_execution_state(ExecutionState(plan_path=plan_path, current_task_index=4))
        h = Harness(workspace, store, ExecutionMode.GUIDED, [done()])

        outcome = h.run(plan_path)

        assert outcome.status == COMPLETED
        assert len(h.chat.calls) == 1
        assert "Saved progress discarded" in side_channel.getvalue()

    def test_plan_task_count_changed_between_runs(self, workspace, store, side_channel):
        edit = "Edit files"
        plan_path = write_plan(workspace, auto_task("One", action=edit), auto_task("Two", action=edit), auto_task("Three", action=edit))
        Harness(workspace, store, ExecutionMode.MANUAL).run(plan_path)
        confirmed = Harness(workspace, store, ExecutionMode.MANUAL, [done()]).run(plan_path, "confirm")
        assert (confirmed.status, confirmed.current_task_index) == (PAUSED, 1)

        write_plan(workspace, auto_task("Uno", action=edit), auto_task("Dos", action=edit))
        h = Harness(workspace, store, ExecutionMode.MANUAL)
        outcome = h.run(plan_path)

        assert (outcome.status, outcome.current_task_index) == (PAUSED, 0)
        assert outcome.results == []
        assert "Saved progress discarded" in side_channel.getvalue()
        assert store.get_execution_state(plan_path).total_tasks == 2

    def test_task_types_changed_between_runs(self, workspace, store, side_channel):
        plan_path = write_plan(workspace, auto_task("Prep", action="Edit files"), auto_task("After", action="Edit files"))
        store.save_execution_state(ExecutionState(
            plan_path=plan_path,
            current_task_index=1,
            completed_task_ids={0},
            total_tasks=2,
            task_types=["auto", "checkpoint:decision"],
        ))
        h = Harness(workspace, store, ExecutionMode.GUIDED, [done(), done()])

        outcome = h.run(plan_path)

        assert outcome.status == COMPLETED
        assert [r.task_id for r in outcome.results] == [1, 2]
        assert "Saved progress discarded" in side_channel.getvalue()


# =============================================================================
# Yolo mode
# =============================================================================


class TestYoloMode:
    def test_failure_logged_and_run_continues(self, workspace, store, side_channel):
        plan_path = write_plan(workspace, auto_task("Step one"), auto_task("Step two"), auto_task("Step three"))
        h = Harness(workspace, store, ExecutionMode.YOLO, [
            tool_turn(shell_call("echo one")), done(),
            tool_turn(shell_call("echo 'SyntaxError: invalid syntax'; exit 1")), done(),
            tool_turn(shell_call("echo three")), done(),
        ])

        outcome = h.run(plan_path)

        assert outcome.status == COMPLETED
        assert [r.success for r in outcome.results] == [True, False, True]
        assert outcome.issue_ids == ["EXE-04-01-02"]
        issues = (workspace / ".planning" / "phases" / "04-auth" / "04-01-ISSUES.md").read_text()
        assert "### EXE-04-01-02:" in issues
        assert "SyntaxError" in issues
        assert "Issue logged" in side_channel.getvalue()

    def test_issue_logged_when_stream_closes_after_failure(self, workspace, store, side_channel):
        plan_path = write_plan(workspace, auto_task("Step one"), auto_task("Step two"))
        h = Harness(workspace, store, ExecutionMode.YOLO)
        h.chat.turns = [
            tool_turn(shell_call("echo 'SyntaxError: invalid syntax'; exit 1")),
            [lambda: setattr(h.stream, "closed", True), TurnEnd("end_turn")],
        ]

        outcome = h.run(plan_path)

        assert outcome.status == CANCELLED
        assert outcome.current_task_index == 1
        assert [(r.task_id, r.success) for r in outcome.results] == [(1, False)]
        issues = (workspace / ".planning" / "phases" / "04-auth" / "04-01-ISSUES.md").read_text()
        assert "### EXE-04-01-01:" in issues
        assert "Issue logged" in side_channel.getvalue()

    def test_checkpoints_auto_resolved(self, workspace, store, side_channel):
        plan_path = write_plan(workspace, verify_task(), decision_task())
        h = Harness(workspace, store, ExecutionMode.YOLO)

        outcome = h.run(plan_path)

        assert outcome.status == COMPLETED
        assert [r.success for r in outcome.results] == [True, True]
        assert h.chat.calls == []
        summary = Path(outcome.summary_path).read_text()
        assert "b (Database)" in summary
        assert "Auto-resolved checkpoint" in side_channel.getvalue()
        events = [e["event"] for e in h.executor.logger.events()]
        assert events.count("checkpoint_auto_resolved") == 2
        assert "checkpoint_resolved" not in events


# =============================================================================
# Checkpoints
# =============================================================================


class TestCheckpoints:
    def test_guided_pauses_at_decision(self, workspace, store, side_channel):
        plan_path = write_plan(workspace, auto_task("Prep", action="Edit files"), decision_task(), auto_task("After", action="Edit files"))
        h = Harness(workspace, store, ExecutionMode.GUIDED, [done()])

        outcome = h.run(plan_path)

        assert outcome.status == PAUSED
        assert outcome.checkpoint_type == "decision"
        assert outcome.current_task_index == 1
        state = store.get_execution_state(plan_path)
        assert state.paused_at_checkpoint is True
        assert state.checkpoint_type == "decision"
        assert state.current_task_index == 1
        assert state.completed_task_ids == {0}
        assert len(h.chat.calls) == 1
        assert "Decision Required" in h.stream.text
        assert store.get_active_marker(plan_path) is None

    def test_decision_resume(self, workspace, store, side_channel):
        plan_path = write_plan(workspace, auto_task("Prep", action="Edit files"), decision_task(), auto_task("After", action="Edit files"))
        Harness(workspace, store, ExecutionMode.GUIDED, [done()]).run(plan_path)

        h = Harness(workspace, store, ExecutionMode.GUIDED, [done()])
        outcome = h.run(plan_path, "decision:A")

        assert outcome.status == COMPLETED
        assert len(h.chat.calls) == 1
        assert [r.task_id for r in outcome.results] == [1, 2, 3]
        assert "a (Redis)" in Path(outcome.summary_path).read_text()

    def test_unknown_option_rejected(self, workspace, store, side_channel):
        plan_path = write_plan(workspace, decision_task())
        Harness(workspace, store, ExecutionMode.GUIDED).run(plan_path)

        with pytest.raises(InvalidResumeSignal):
            Harness(workspace, store, ExecutionMode.GUIDED).run(plan_path, "decision:zzz")
        with pytest.raises(InvalidResumeSignal):
            Harness(workspace, store, ExecutionMode.GUIDED).run(plan_path, "approved")
        assert store.get_execution_state(plan_path).paused_at_checkpoint is True

    def test_verify_issue_then_approved(self, workspace, store, side_channel):
        plan_path = write_plan(workspace, verify_task(), auto_task("After", action="Edit files"))
        first = Harness(workspace, store, ExecutionMode.GUIDED).run(plan_path)
        assert (first.status, first.checkpoint_type) == (PAUSED, "human-verify")

        again = Harness(workspace, store, ExecutionMode.GUIDED).run(plan_path)
        assert again.status == PAUSED

        reported = Harness(workspace, store, ExecutionMode.GUIDED).run(plan_path, "issue:Button misaligned")
        assert reported.status == PAUSED
        issues = (workspace / ".planning" / "phases" / "04-auth" / "04-01-ISSUES.md").read_text()
        assert "### UAT-001: Button misaligned" in issues

        h = Harness(workspace, store, ExecutionMode.GUIDED, [done()])
        outcome = h.run(plan_path, "approved")
        assert outcome.status == COMPLETED
        assert [r.success for r in outcome.results] == [True, True]
        assert "checkpoint_resolved" in [e["event"] for e in h.executor.logger.events()]

    def test_manual_confirm_and_skip(self, workspace, store, side_channel):
        plan_path = write_plan(workspace, auto_task("One", action="Edit files"), auto_task("Two", action="Edit files"))

        h = Harness(workspace, store, ExecutionMode.MANUAL)
        outcome = h.run(plan_path)
        assert (outcome.status, outcome.checkpoint_type, outcome.current_task_index) == (PAUSED, "confirm", 0)
        assert h.chat.calls == []

        h = Harness(workspace, store, ExecutionMode.MANUAL, [done()])
        outcome = h.run(plan_path, "confirm")
        assert (outcome.status, outcome.current_task_index) == (PAUSED, 1)
        assert len(h.chat.calls) == 1

        h = Harness(workspace, store, ExecutionMode.MANUAL)
        outcome = h.run(plan_path, "skip")
        assert outcome.status == COMPLETED
        assert h.chat.calls == []
        skipped = outcome.results[1]
        assert skipped.success is False
        assert skipped.error == "Skipped by user"


# =============================================================================
# Cancellation and resume
# =============================================================================


class TestCancellation:
    def _cancel_mid_stream(self, workspace, store, plan_path):
        h = Harness(workspace, store, ExecutionMode.GUIDED)
        h.chat.turns = [[TextDelta("Starting"), lambda: h.token.cancel("stop pressed"), TextDelta("never shown")]]
        return h, h.run(plan_path)

    def test_cancel_pauses_run(self, workspace, store, side_channel):
        plan_path = write_plan(workspace, auto_task("Long task", action="Edit files"), auto_task("Next", action="Edit files"))
        h, outcome = self._cancel_mid_stream(workspace, store, plan_path)

        assert outcome.status == CANCELLED
        assert outcome.current_task_index == 0
        assert "Starting" in h.stream.text
        assert "never shown" not in h.stream.text
        info = store.get_cancelled(plan_path)
        assert info.paused_task_index == 0
        assert store.get_active_marker(plan_path) is None
        assert "Execution paused" in side_channel.getvalue()

    def test_context_resumes_within_window(self, workspace, store, clock, side_channel):
        plan_path = write_plan(workspace, auto_task("Long task", action="Edit files"))
        self._cancel_mid_stream(workspace, store, plan_path)
        clock.advance(120)

        h = Harness(workspace, store, ExecutionMode.GUIDED, [done()])
        route, outcome = _run(h.executor.resume_with_context("use retries=5"))

        assert route.action == RESUME
        assert route.task_index == 0
        assert outcome.status == COMPLETED
        assert "use retries=5" in h.chat.calls[0]["messages"][0]["content"]
        assert store.get_cancelled(plan_path) is None
        events = [e["event"] for e in h.executor.logger.events()]
        assert events[0] == "context_resumed"
        assert "run_start" in events

    def test_context_rejected_after_window(self, workspace, store, clock, side_channel):
        plan_path = write_plan(workspace, auto_task("Long task", action="Edit files"))
        self._cancel_mid_stream(workspace, store, plan_path)
        clock.advance(CANCEL_WINDOW_SECONDS + 1)

        h = Harness(workspace, store, ExecutionMode.GUIDED)
        route, outcome = _run(h.executor.resume_with_context("use retries=5"))

        assert route.action == REJECTED
        assert outcome is None
        assert h.chat.calls == []

    def test_context_stashed_for_live_run(self, workspace, store, side_channel):
        plan_path = write_plan(workspace, auto_task("Long task"))
        store.mark_active(plan_path)

        h = Harness(workspace, store, ExecutionMode.GUIDED)
        route, outcome = _run(h.executor.resume_with_context("prefer tabs", plan_path))

        assert route.action == STASHED
        assert outcome is None
        assert store.peek_pending_context(plan_path) == "prefer tabs"
        event = h.executor.logger.events()[0]
        assert (event["event"], event["chars"]) == ("context_stashed", len("prefer tabs"))

    def test_live_run_picks_up_stash(self, workspace, store, side_channel):
        plan_path = write_plan(workspace, auto_task("Edit", action="Edit files"))
        h = Harness(workspace, store, ExecutionMode.GUIDED)
        h.chat.turns = [
            tool_turn(write_call(workspace / "a.py"), lambda: store.stash_pending_context(plan_path, "prefer tabs")),
            done(),
        ]

        outcome = h.run(plan_path)

        assert outcome.status == COMPLETED
        last_user = h.chat.calls[1]["messages"][-1]["content"]
        assert any(b["type"] == "text" and "prefer tabs" in b["text"] for b in last_user)

    def test_no_tool_call_after_cancel(self, workspace, store, side_channel):
        plan_path = write_plan(workspace, auto_task("Write", action="Edit files"))
        target = workspace / "late.py"
        h = Harness(workspace, store, ExecutionMode.GUIDED)
        h.chat.turns = [tool_turn(write_call(target), lambda: h.token.cancel())]

        outcome = h.run(plan_path)

        assert outcome.status == CANCELLED
        assert not target.exists()

    def test_closed_stream_counts_as_cancel(self, workspace, store, side_channel):
        plan_path = write_plan(workspace, auto_task("Write", action="Edit files"))
        h = Harness(workspace, store, ExecutionMode.GUIDED)
        h.stream.closed = True

        outcome = h.run(plan_path)

        assert outcome.status == CANCELLED
        assert h.token.cancelled
        assert store.get_cancelled(plan_path) is not None
