"""Tests for CLI apply, destroy, refresh and output commands."""

import json
from pathlib import Path

import pytest
from driftwood.cli.apply import apply_command, destroy_command, print_apply_summary
from driftwood.cli.plan import plan_command
from driftwood.cli.show import output_command, refresh_command
from driftwood.core.errors import ExitCode
from driftwood.execution import ApplyResult, NodeResult, NodeStatus
from driftwood.planning.models import ActionType

CONFIG = """
resources:
  memory_item:
    a:
      name: a
      value: first
    b:
      name: b
      value: "${memory_item.a.id}"

outputs:
  a_id:
    value: "${memory_item.a.id}"
  b_endpoint:
    value: "${memory_item.b.endpoint}"
    sensitive: true
"""


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "main.yaml"
    path.write_text(CONFIG)
    return str(path)


@pytest.fixture
def state_file(tmp_path):
    return str(tmp_path / "state.json")


def read_state(path):
    return json.loads(Path(path).read_text())


class TestApplyCommand:
    """Tests for apply_command."""

    def test_apply_records_state_and_outputs(self, config_file, state_file, capsys):
        exit_code = apply_command(config_file, state_path=state_file, auto_approve=True)

        assert exit_code == 0
        state = read_state(state_file)
        assert sorted(state["records"]) == ["memory_item.a", "memory_item.b"]
        assert state["outputs"]["b_endpoint"] == {"value": "b.memory.local", "sensitive": True}
        out = capsys.readouterr().out
        assert "Apply complete: 2 applied" in out
        assert "b.memory.local" not in out

    def test_apply_json(self, config_file, state_file, capsys):
        exit_code = apply_command(
            config_file, state_path=state_file, auto_approve=True, output_format="json"
        )

        assert exit_code == 0
        output = json.loads(capsys.readouterr().out)
        assert output["success"] is True
        assert [n["status"] for n in output["nodes"]] == ["applied", "applied"]
        assert output["outputs"]["b_endpoint"] == "(sensitive)"

    def test_refuses_without_approval_when_not_interactive(self, config_file, state_file):
        exit_code = apply_command(config_file, state_path=state_file)

        assert exit_code == ExitCode.VALIDATION_ERROR
        assert not Path(state_file).exists()

    def test_no_changes_needs_no_approval(self, tmp_path, state_file):
        path = tmp_path / "empty.yaml"
        path.write_text("resources: {}\n")
        assert apply_command(str(path), state_path=state_file) == 0

    def test_saved_plan(self, config_file, state_file, tmp_path):
        plan_path = str(tmp_path / "plan.json")
        plan_command(config_file, state_path=state_file, out=plan_path)

        exit_code = apply_command(config_file, state_path=state_file, plan_file=plan_path)

        assert exit_code == 0
        assert len(read_state(state_file)["records"]) == 2

    def test_stale_saved_plan_is_rejected(self, config_file, state_file, tmp_path):
        plan_path = str(tmp_path / "plan.json")
        plan_command(config_file, state_path=state_file, out=plan_path)
        apply_command(config_file, state_path=state_file, auto_approve=True)

        exit_code = apply_command(config_file, state_path=state_file, plan_file=plan_path)

        assert exit_code == ExitCode.STATE_CONFLICT

    def test_saved_plan_requires_the_planned_configuration(
        self, config_file, state_file, tmp_path
    ):
        plan_path = str(tmp_path / "plan.json")
        plan_command(config_file, state_path=state_file, out=plan_path)
        Path(config_file).write_text(CONFIG.replace("value: first", "value: unreviewed"))

        exit_code = apply_command(config_file, state_path=state_file, plan_file=plan_path)

        assert exit_code == ExitCode.VALIDATION_ERROR
        assert not Path(state_file).exists()

    def test_missing_plan_file(self, config_file, state_file, tmp_path):
        exit_code = apply_command(
            config_file, state_path=state_file, plan_file=str(tmp_path / "missing.json")
        )
        assert exit_code == ExitCode.VALIDATION_ERROR

    def test_prevent_destroy(self, tmp_path, state_file):
        path = tmp_path / "main.yaml"
        path.write_text(
            "resources:\n  memory_item:\n    a:\n      name: a\n"
            "      lifecycle: {prevent_destroy: true}\n"
        )
        apply_command(str(path), state_path=state_file, auto_approve=True)
        path.write_text("resources: {}\n")

        exit_code = apply_command(str(path), state_path=state_file, auto_approve=True)

        assert exit_code == ExitCode.VALIDATION_ERROR
        assert "memory_item.a" in read_state(state_file)["records"]


class TestDestroyCommand:
    """Tests for destroy_command."""

    def test_destroy_empties_state(self, config_file, state_file, capsys):
        apply_command(config_file, state_path=state_file, auto_approve=True)

        exit_code = destroy_command(config_file, state_path=state_file, auto_approve=True)

        assert exit_code == 0
        state = read_state(state_file)
        assert state["records"] == {}
        assert state["outputs"] == {}
        assert "All managed objects destroyed" in capsys.readouterr().out


class TestOutputCommand:
    """Tests for output_command."""

    def test_all_outputs_mask_sensitive_values(self, config_file, state_file, capsys):
        apply_command(config_file, state_path=state_file, auto_approve=True)
        capsys.readouterr()

        assert output_command(state_path=state_file) == 0

        out = capsys.readouterr().out
        assert "a_id" in out
        assert "(sensitive)" in out
        assert "b.memory.local" not in out

    def test_single_output_prints_raw_value(self, config_file, state_file, capsys):
        apply_command(config_file, state_path=state_file, auto_approve=True)
        capsys.readouterr()

        assert output_command("b_endpoint", state_path=state_file) == 0
        assert capsys.readouterr().out == "b.memory.local\n"

    def test_unknown_output(self, state_file):
        assert output_command("nope", state_path=state_file) == ExitCode.VALIDATION_ERROR

    def test_no_state(self, state_file, capsys):
        assert output_command(state_path=state_file, output_format="json") == 0
        assert json.loads(capsys.readouterr().out) == {}


class TestRefreshCommand:
    """Tests for refresh_command."""

    def test_refresh(self, config_file, state_file, capsys):
        apply_command(config_file, state_path=state_file, auto_approve=True)
        capsys.readouterr()

        exit_code = refresh_command(config_file, state_path=state_file, output_format="json")

        # every CLI run gets a fresh in-memory provider, so the objects are gone
        assert exit_code == 0
        report = json.loads(capsys.readouterr().out)
        assert report["removed"] == ["memory_item.a", "memory_item.b"]
        assert read_state(state_file)["records"] == {}


class TestPrintApplySummary:
    """Tests for print_apply_summary."""

    def test_failures_and_output_errors(self, capsys):
        result = ApplyResult(
            run_id="r",
            nodes={
                "memory_item.a": NodeResult(
                    "memory_item.a", ActionType.CREATE, NodeStatus.FAILED, error="boom"
                ),
                "memory_item.b": NodeResult(
                    "memory_item.b",
                    ActionType.CREATE,
                    NodeStatus.SKIPPED,
                    error="skipped: depends on memory_item.a",
                ),
            },
            output_errors={"b_id": "depends on memory_item.b, which did not apply"},
        )

        print_apply_summary(result)

        out = capsys.readouterr().out
        assert "Apply finished with errors: 0 applied, 1 failed, 1 skipped" in out
        assert "boom" in out
        assert "output b_id" in out
