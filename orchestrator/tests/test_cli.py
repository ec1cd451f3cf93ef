"""Tests for the pipelinex command line."""

import json

import pytest

from orchestrator.src.config import get_settings
from orchestrator.src.main import (
    EXIT_ABORTED,
    EXIT_BUILD_FAILURE,
    EXIT_INFRA_FAILURE,
    EXIT_INVALID,
    EXIT_SUCCEEDED,
    exit_code_for,
    main,
)
from orchestrator.src.models.run import RunResult, RunStatus


@pytest.fixture(autouse=True)
def cli_settings(tmp_path, monkeypatch):
    monkeypatch.setenv("PIPELINEX_DATABASE_URL", f"sqlite:///{tmp_path / 'runs.db'}")
    monkeypatch.setenv("PIPELINEX_ARTIFACT_ROOT", str(tmp_path / "artifacts"))
    monkeypatch.setenv("PIPELINEX_WORKSPACE_ROOT", str(tmp_path / "workspaces"))
    monkeypatch.setenv("PIPELINEX_EXECUTOR", "local")
    monkeypatch.setenv("PIPELINEX_POLL_INTERVAL", "0.02")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def write_pipeline(tmp_path, content):
    path = tmp_path / "pipeline.yml"
    path.write_text(content)
    return str(path)


def test_run_success(tmp_path, capsys):
    path = write_pipeline(tmp_path, """
name: Hello
stages:
  - name: Greet
    steps:
      - echo hello > greeting.txt
      - cat greeting.txt
""")
    assert main(["run", path]) == EXIT_SUCCEEDED
    out = capsys.readouterr().out
    assert "Run #1: SUCCEEDED" in out
    assert "Greet" in out


def test_run_build_failure(tmp_path, capsys):
    path = write_pipeline(tmp_path, """
stages:
  - name: Build
    steps:
      - echo compiling; exit 2
  - name: Publish
    steps:
      - echo never
""")
    assert main(["run", path]) == EXIT_BUILD_FAILURE
    out = capsys.readouterr().out
    assert "FAILED" in out
    assert "First failing stage: Build" in out
    assert "compiling" in out


def test_run_invalid_pipeline(tmp_path, capsys):
    path = write_pipeline(tmp_path, "stages: []\n")
    assert main(["run", path]) == EXIT_INVALID
    assert "Invalid pipeline" in capsys.readouterr().err


def test_run_cyclic_pipeline(tmp_path, capsys):
    path = write_pipeline(tmp_path, """
stages:
  - name: A
    depends_on: [B]
  - name: B
    depends_on: [A]
""")
    assert main(["run", path]) == EXIT_INVALID
    assert "Cyclic dependency" in capsys.readouterr().err


def test_run_missing_mount_is_infrastructure_failure(tmp_path, monkeypatch):
    monkeypatch.setenv("PIPELINEX_PROVISION_RETRIES", "0")
    get_settings.cache_clear()
    path = write_pipeline(tmp_path, f"""
stages:
  - name: Build
    environment:
      mounts: ["{tmp_path / 'missing'}:src"]
    steps: [ls src]
""")
    assert main(["run", path]) == EXIT_INFRA_FAILURE


def test_status_and_list(tmp_path, capsys):
    path = write_pipeline(tmp_path, "stages:\n  - name: Build\n    steps: [echo built]\n")
    main(["run", path])
    capsys.readouterr()

    assert main(["status", "1"]) == EXIT_SUCCEEDED
    assert "Run #1 (Unnamed Pipeline): SUCCEEDED" in capsys.readouterr().out

    assert main(["status", "1", "--json"]) == EXIT_SUCCEEDED
    data = json.loads(capsys.readouterr().out)
    assert data["status"] == "succeeded"
    assert data["stages"][0]["name"] == "Build"

    assert main(["list"]) == EXIT_SUCCEEDED
    assert "No incomplete runs" in capsys.readouterr().out


def test_status_unknown_run(capsys):
    assert main(["status", "404"]) == EXIT_INVALID
    assert "not found" in capsys.readouterr().err


def test_cancel_finished_run(tmp_path, capsys):
    path = write_pipeline(tmp_path, "stages:\n  - name: Build\n    steps: ['true']\n")
    main(["run", path])
    capsys.readouterr()

    assert main(["cancel", "1"]) == EXIT_SUCCEEDED
    assert "already finished" in capsys.readouterr().out


def test_resume_unknown_run(capsys):
    assert main(["resume", "7"]) == EXIT_INVALID


def test_resume_finished_run(tmp_path, capsys):
    path = write_pipeline(tmp_path, "stages:\n  - name: Build\n    steps: ['true']\n")
    main(["run", path])
    assert main(["resume", "1"]) == EXIT_INVALID


def test_gc_deletes_expired_artifacts(tmp_path, capsys):
    path = write_pipeline(tmp_path, "stages:\n  - name: Build\n    steps: [echo output]\n")
    main(["run", path])
    capsys.readouterr()

    assert main(["gc", "--days", "1"]) == EXIT_SUCCEEDED
    assert "Deleted 0 artifact blobs" in capsys.readouterr().out

    assert main(["gc", "--days", "-1"]) == EXIT_SUCCEEDED
    assert "Deleted 1 artifact blobs" in capsys.readouterr().out


def test_unknown_executor(tmp_path, monkeypatch, capsys):
    monkeypatch.setenv("PIPELINEX_EXECUTOR", "docker")
    get_settings.cache_clear()
    path = write_pipeline(tmp_path, "stages:\n  - name: Build\n    steps: ['true']\n")
    assert main(["run", path]) == EXIT_INVALID


@pytest.mark.parametrize("status, infrastructure, expected", [
    (RunStatus.SUCCEEDED, False, EXIT_SUCCEEDED),
    (RunStatus.FAILED, False, EXIT_BUILD_FAILURE),
    (RunStatus.FAILED, True, EXIT_INFRA_FAILURE),
    (RunStatus.ABORTED, False, EXIT_ABORTED),
])
def test_exit_code_for(status, infrastructure, expected):
    result = RunResult(run_id=1, status=status, stages={}, infrastructure_failure=infrastructure)
    assert exit_code_for(result) == expected
