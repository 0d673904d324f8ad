import json
import re
from pathlib import Path

import click
import pytest
from click.testing import CliRunner

from conductor import cli
from conductor.cli import load_workflow_file, main


@pytest.fixture
def runner(settings, monkeypatch) -> CliRunner:
    monkeypatch.setattr(cli, "settings", settings)
    return CliRunner()


def _write(tmp_path, payload) -> Path:
    path = tmp_path / "workflow.json"
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


def test_load_workflow_file_validates(tmp_path) -> None:
    good = {"name": "ship", "phases": [{"name": "plan"}, {"name": "build", "loop_to": 0}]}
    assert load_workflow_file(_write(tmp_path, good))["name"] == "ship"

    for bad in (
        {"name": "ship", "phases": []},
        {"phases": [{"name": "plan"}]},
        {"name": "ship", "phases": [{"prompt_template": "x"}]},
        {"name": "ship", "phases": [{"name": "plan", "timeout": 30}]},
    ):
        with pytest.raises(click.BadParameter):
            load_workflow_file(_write(tmp_path, bad))

    broken = tmp_path / "broken.json"
    broken.write_text("{", encoding="utf-8")
    with pytest.raises(click.BadParameter):
        load_workflow_file(broken)


def test_setup_commands(runner, git_repo, tmp_path) -> None:
    result = runner.invoke(main, ["init-db"])
    assert result.exit_code == 0, result.output
    assert "Schema ready" in result.output

    result = runner.invoke(main, ["repo-add", "app", str(git_repo)])
    assert result.exit_code == 0, result.output
    repo_id = re.search(r"Repo added: (\S+)", result.output).group(1)

    result = runner.invoke(main, ["workspace-create", "main", repo_id])
    assert result.exit_code == 0, result.output
    assert "Workspace created" in result.output

    workflow = _write(tmp_path, {"name": "ship", "phases": [{"name": "plan"}, {"name": "build"}]})
    result = runner.invoke(main, ["workflow-load", str(workflow)])
    assert result.exit_code == 0, result.output
    assert "(ship, 2 phases)" in result.output

    result = runner.invoke(main, ["sessions"])
    assert result.exit_code == 0
    assert "No sessions found" in result.output

    result = runner.invoke(main, ["approvals"])
    assert "No pending approvals" in result.output


def test_bad_workflow_file_is_a_usage_error(runner, tmp_path) -> None:
    runner.invoke(main, ["init-db"])
    workflow = _write(tmp_path, {"name": "ship", "phases": [{"name": "plan", "retries": 2}]})

    result = runner.invoke(main, ["workflow-load", str(workflow)])

    assert result.exit_code == 2
    assert "unknown keys" in result.output


def test_resolving_a_missing_approval_fails(runner) -> None:
    runner.invoke(main, ["init-db"])

    result = runner.invoke(main, ["approve", "nope"])

    assert result.exit_code == 1
    assert "not found" in result.output
