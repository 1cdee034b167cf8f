"""Tests for phaseflow.cli entrypoint."""

import json

import pytest

from phaseflow.cli import build_parser, main


@pytest.fixture(autouse=True)
def no_env_override(monkeypatch):
    monkeypatch.delenv("PHASEFLOW_STATE_DIR", raising=False)


class TestParser:
    """Tests for argument parsing."""

    def test_stage_subcommand(self):
        args = build_parser().parse_args(["plan", "st01-demo", "--set", "a=1", "-s", "b=2"])
        assert args.stage == "plan"
        assert args.id == "st01-demo"
        assert args.set == ["a=1", "b=2"]

    def test_reject_feedback(self):
        args = build_parser().parse_args(["reject", "st01-demo", "spec", "-f", "More detail"])
        assert args.feedback == "More detail"

    def test_approve_rejects_unknown_stage(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["approve", "st01-demo", "deploy"])

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


class TestMain:
    """End-to-end runs against a temporary project."""

    def test_demo_workflow(self, tmp_path, capsys):
        project = ["--project-dir", str(tmp_path)]

        assert main(project + ["spec", "st01-demo", "--set", "goal=Login"]) == 0
        assert main(project + ["research", "st01-demo"]) == 1
        assert main(project + ["approve", "st01-demo", "spec"]) == 0
        assert main(project + ["research", "st01-demo"]) == 0

        document = tmp_path / ".phaseflow" / "phases" / "st01-demo" / "st01-demo-research.md"
        assert document.exists()
        assert "Demo" in document.read_text()

    def test_remember_reaches_document(self, tmp_path):
        project = ["--project-dir", str(tmp_path)]
        assert main(project + ["remember", "All", "APIs", "must", "use", "OAuth2"]) == 0
        assert main(project + ["spec", "st01-demo"]) == 0

        document = tmp_path / ".phaseflow" / "phases" / "st01-demo" / "st01-demo-spec.md"
        assert "All APIs must use OAuth2" in document.read_text()

    def test_config_state_dir(self, tmp_path):
        (tmp_path / "phaseflow.yaml").write_text("state_dir: docs/state\n")
        assert main(["--project-dir", str(tmp_path), "spec", "st01-demo"]) == 0
        assert (tmp_path / "docs" / "state" / "phases" / "st01-demo" / "state.json").exists()

    def test_json_status(self, tmp_path, capsys):
        project = ["--project-dir", str(tmp_path)]
        main(project + ["spec", "st01-demo"])
        capsys.readouterr()

        assert main(["--json"] + project + ["status", "st01-demo"]) == 0
        data = json.loads(capsys.readouterr().out)
        assert data["data"]["next_action"] == "approve spec"
