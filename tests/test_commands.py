"""Tests for phaseflow CLI commands (phaseflow.commands.*)."""

import json
from types import SimpleNamespace

import pytest

from phaseflow.commands.advance import cmd_advance, parse_payload
from phaseflow.commands.approve import cmd_approve, cmd_reject
from phaseflow.commands.output import exit_code_for
from phaseflow.commands.remember import cmd_remember
from phaseflow.commands.status import cmd_status
from phaseflow.lib.constants import EXIT_CONFLICT, EXIT_ERROR, EXIT_OK, EXIT_REFUSED
from phaseflow.router import CommandResult, CommandRouter
from phaseflow.state.store import StateStore
from phaseflow.workflow.engine import WorkflowEngine
from phaseflow.workflow.models import Stage


class StubRenderer:
    def render(self, request):
        return f"# {request.stage.value}\n"


@pytest.fixture
def router(tmp_path):
    return CommandRouter(WorkflowEngine(StateStore(tmp_path / ".phaseflow"), StubRenderer()))


def _advance_args(stage, phase_id="st01-demo", **kwargs):
    defaults = dict(stage=stage, id=phase_id, set=None, input=None, json=False)
    defaults.update(kwargs)
    return SimpleNamespace(**defaults)


class TestParsePayload:
    """Tests for building an advance payload."""

    def test_set_pairs(self):
        assert parse_payload(["goal=Login", " owner = auth-team "], None) == {
            "goal": "Login", "owner": "auth-team",
        }

    def test_value_may_contain_equals(self):
        assert parse_payload(["expr=a=b"], None) == {"expr": "a=b"}

    def test_input_file_then_overrides(self, tmp_path):
        path = tmp_path / "payload.yaml"
        path.write_text("goal: Login\nrisks:\n  - tokens\n")
        assert parse_payload(["goal=SSO"], str(path)) == {"goal": "SSO", "risks": ["tokens"]}

    def test_malformed_pair(self):
        with pytest.raises(ValueError, match="expected key=value"):
            parse_payload(["goal"], None)

    def test_input_must_be_mapping(self, tmp_path):
        path = tmp_path / "payload.yaml"
        path.write_text("- a\n")
        with pytest.raises(ValueError, match="mapping"):
            parse_payload(None, str(path))


class TestCmdAdvance:
    """Tests for phaseflow <stage>."""

    def test_success(self, router, capsys):
        assert cmd_advance(_advance_args("spec", set=["goal=Login"]), router) == EXIT_OK
        out = capsys.readouterr().out
        assert "st01-demo: spec is in_progress (revision 1)" in out
        assert "phaseflow approve st01-demo spec" in out

    def test_refused(self, router, capsys):
        assert cmd_advance(_advance_args("research"), router) == EXIT_REFUSED
        err = capsys.readouterr().err
        assert "ERROR [PrerequisiteNotMet]" in err

    def test_bad_phase_id(self, router, capsys):
        assert cmd_advance(_advance_args("spec", phase_id="demo"), router) == EXIT_ERROR
        assert "InvalidPhaseFormat" in capsys.readouterr().err

    def test_bad_payload(self, router, capsys):
        assert cmd_advance(_advance_args("spec", set=["oops"]), router) == EXIT_ERROR
        assert "expected key=value" in capsys.readouterr().err

    def test_json_output(self, router, capsys):
        assert cmd_advance(_advance_args("spec", json=True), router) == EXIT_OK
        data = json.loads(capsys.readouterr().out)
        assert data["ok"] is True
        assert data["data"]["document"] == "phases/st01-demo/st01-demo-spec.md"


class TestCmdApproveReject:
    """Tests for phaseflow approve / reject."""

    def test_approve(self, router, capsys):
        cmd_advance(_advance_args("spec"), router)
        args = SimpleNamespace(id="st01-demo", stage="spec", comment="ship it", json=False)
        assert cmd_approve(args, router) == EXIT_OK
        assert "Run 'phaseflow research st01-demo' to continue" in capsys.readouterr().out

    def test_approve_twice_refused(self, router, capsys):
        cmd_advance(_advance_args("spec"), router)
        args = SimpleNamespace(id="st01-demo", stage="spec", comment=None, json=False)
        cmd_approve(args, router)
        assert cmd_approve(args, router) == EXIT_REFUSED
        assert "AlreadyApproved" in capsys.readouterr().err

    def test_reject_with_feedback(self, router, capsys):
        cmd_advance(_advance_args("spec"), router)
        args = SimpleNamespace(id="st01-demo", stage="spec", feedback="Add scope", json=False)
        assert cmd_reject(args, router) == EXIT_OK
        out = capsys.readouterr().out
        assert "Add scope" in out
        assert "to regenerate" in out

        state = router.engine.store.load("st01-demo")
        assert state.record(Stage.SPEC).approvals[0].comment == "Add scope"

    def test_approve_unknown_phase(self, router):
        args = SimpleNamespace(id="st09-none", stage="spec", comment=None, json=False)
        assert cmd_approve(args, router) == EXIT_REFUSED


class TestCmdStatus:
    """Tests for phaseflow status."""

    def test_empty_listing(self, router, capsys):
        assert cmd_status(SimpleNamespace(id=None, json=False), router) == EXIT_OK
        assert "No phases yet" in capsys.readouterr().out

    def test_listing(self, router, capsys):
        cmd_advance(_advance_args("spec"), router)
        capsys.readouterr()
        assert cmd_status(SimpleNamespace(id=None, json=False), router) == EXIT_OK
        out = capsys.readouterr().out
        assert "st01-demo" in out
        assert "in_progress" in out

    def test_phase_detail(self, router, capsys):
        cmd_advance(_advance_args("spec"), router)
        capsys.readouterr()
        assert cmd_status(SimpleNamespace(id="st01-demo", json=False), router) == EXIT_OK
        out = capsys.readouterr().out
        assert "Phase: st01-demo" in out
        assert "Next action:    approve spec" in out
        assert "[~] spec" in out

    def test_unknown_phase(self, router):
        assert cmd_status(SimpleNamespace(id="st09-none", json=False), router) == EXIT_REFUSED


class TestCmdRemember:
    """Tests for phaseflow remember."""

    def test_remember_joins_words(self, router, capsys):
        args = SimpleNamespace(text=["All", "APIs", "use", "OAuth2"], list=False, json=False)
        assert cmd_remember(args, router) == EXIT_OK
        assert "Remembered: All APIs use OAuth2" in capsys.readouterr().out
        assert router.engine.store.load_memory() == ["All APIs use OAuth2"]

    def test_list(self, router, capsys):
        router.remember("Use OAuth2")
        assert cmd_remember(SimpleNamespace(text=[], list=True, json=False), router) == EXIT_OK
        assert "- Use OAuth2" in capsys.readouterr().out

    def test_list_empty(self, router, capsys):
        assert cmd_remember(SimpleNamespace(text=[], list=False, json=False), router) == EXIT_OK
        assert "No directives recorded." in capsys.readouterr().out

    def test_list_as_json(self, router, capsys):
        router.remember("Use OAuth2")
        assert cmd_remember(SimpleNamespace(text=[], list=True, json=True), router) == EXIT_OK
        data = json.loads(capsys.readouterr().out)
        assert data["ok"] is True
        assert data["data"]["memory"] == ["Use OAuth2"]


class TestExitCodes:
    def test_conflict(self):
        result = CommandResult(ok=False, command="spec", error_kind="ConcurrentModification")
        assert exit_code_for(result) == EXIT_CONFLICT

    def test_corruption_is_error(self):
        result = CommandResult(ok=False, command="spec", error_kind="StateCorruption")
        assert exit_code_for(result) == EXIT_ERROR
