"""Tests for execution mode configuration and the checkpoint gate."""

import json

import pytest

from plan_runner.config import (
    CONFIG_FILE,
    DEFAULT_MODEL,
    MODEL_ENV_VAR,
    ExecutionMode,
    PlanningConfig,
    PlanningDepth,
    load_config,
    model_name,
    resolve_mode,
    save_config,
    set_execution_mode,
)
from plan_runner.gates import (
    CONFIRM_CHECKPOINT,
    default_option,
    describe_mode,
    evaluate_gate,
)
from plan_runner.models import AutoTask, CheckpointDecisionTask, CheckpointVerifyTask, DecisionOption


def _decision(*options):
    return CheckpointDecisionTask(id=2, name="Pick", decision="Pick", options=list(options))


AUTO_TASK = AutoTask(id=1, name="Build")
VERIFY_TASK = CheckpointVerifyTask(id=2, name="Check", what_built="UI")
DECISION_TASK = _decision(
    DecisionOption(id="a", name="A"),
    DecisionOption(id="b", name="B", is_default=True),
)


# =============================================================================
# Config
# =============================================================================


class TestConfig:
    def _write(self, tmp_path, content):
        path = tmp_path / CONFIG_FILE
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)

    def test_defaults_without_file(self, tmp_path):
        config = load_config(str(tmp_path))
        assert config.execution_mode == ExecutionMode.GUIDED
        assert config.planning_depth == PlanningDepth.STANDARD

    def test_reads_aliases(self, tmp_path):
        self._write(tmp_path, json.dumps({"executionMode": "yolo", "planningDepth": "quick"}))
        config = load_config(str(tmp_path))
        assert config.execution_mode == ExecutionMode.YOLO
        assert config.planning_depth == PlanningDepth.QUICK

    def test_invalid_field_falls_back_alone(self, tmp_path):
        self._write(tmp_path, json.dumps({"executionMode": "turbo", "planningDepth": "comprehensive"}))
        config = load_config(str(tmp_path))
        assert config.execution_mode == ExecutionMode.GUIDED
        assert config.planning_depth == PlanningDepth.COMPREHENSIVE

    def test_bad_json_gives_defaults(self, tmp_path):
        self._write(tmp_path, "{oops")
        assert load_config(str(tmp_path)) == PlanningConfig()

    def test_non_object_gives_defaults(self, tmp_path):
        self._write(tmp_path, "[1, 2]")
        assert load_config(str(tmp_path)) == PlanningConfig()

    def test_save_uses_aliases(self, tmp_path):
        save_config(str(tmp_path), PlanningConfig(execution_mode=ExecutionMode.MANUAL))
        data = json.loads((tmp_path / CONFIG_FILE).read_text())
        assert data == {"executionMode": "manual", "planningDepth": "standard"}

    def test_set_execution_mode_keeps_depth(self, tmp_path):
        self._write(tmp_path, json.dumps({"executionMode": "guided", "planningDepth": "quick"}))
        set_execution_mode(str(tmp_path), ExecutionMode.YOLO)
        config = load_config(str(tmp_path))
        assert config.execution_mode == ExecutionMode.YOLO
        assert config.planning_depth == PlanningDepth.QUICK

    def test_override_beats_file(self, tmp_path):
        set_execution_mode(str(tmp_path), ExecutionMode.YOLO)
        assert resolve_mode(str(tmp_path)) == ExecutionMode.YOLO
        assert resolve_mode(str(tmp_path), "manual") == ExecutionMode.MANUAL

    def test_invalid_override_raises(self, tmp_path):
        with pytest.raises(ValueError):
            resolve_mode(str(tmp_path), "turbo")

    def test_model_name_from_env(self, monkeypatch):
        monkeypatch.delenv(MODEL_ENV_VAR, raising=False)
        assert model_name() == DEFAULT_MODEL
        monkeypatch.setenv(MODEL_ENV_VAR, "claude-opus-4-1")
        assert model_name() == "claude-opus-4-1"


# =============================================================================
# Gate
# =============================================================================


class TestGate:
    def test_auto_never_pauses_outside_manual(self):
        for mode in (ExecutionMode.YOLO, ExecutionMode.GUIDED):
            assert evaluate_gate(AUTO_TASK, mode).pause is False

    def test_manual_confirms_auto_tasks(self):
        gate = evaluate_gate(AUTO_TASK, ExecutionMode.MANUAL)
        assert gate.pause is True
        assert gate.checkpoint_type == CONFIRM_CHECKPOINT

    @pytest.mark.parametrize("mode", [ExecutionMode.GUIDED, ExecutionMode.MANUAL])
    def test_checkpoints_pause(self, mode):
        verify = evaluate_gate(VERIFY_TASK, mode)
        decision = evaluate_gate(DECISION_TASK, mode)
        assert (verify.pause, verify.checkpoint_type) == (True, "human-verify")
        assert (decision.pause, decision.checkpoint_type) == (True, "decision")
        assert decision.auto_choice is None

    def test_yolo_approves_verify(self):
        gate = evaluate_gate(VERIFY_TASK, ExecutionMode.YOLO)
        assert gate.pause is False
        assert gate.checkpoint_type == "human-verify"

    def test_yolo_picks_default_option(self):
        gate = evaluate_gate(DECISION_TASK, ExecutionMode.YOLO)
        assert gate.pause is False
        assert gate.auto_choice == "b"

    def test_yolo_falls_back_to_first_option(self):
        task = _decision(DecisionOption(id="x"), DecisionOption(id="y"))
        assert evaluate_gate(task, ExecutionMode.YOLO).auto_choice == "x"

    def test_yolo_decision_without_options(self):
        assert default_option(_decision()) is None
        assert evaluate_gate(_decision(), ExecutionMode.YOLO).auto_choice is None

    def test_describe_mode(self):
        for mode in ExecutionMode:
            assert describe_mode(mode)
        assert describe_mode("yolo") == describe_mode(ExecutionMode.YOLO)
