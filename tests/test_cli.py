import json
from pathlib import Path

from click.testing import CliRunner, Result
from conftest import APPROVE_REVIEW, REVIEWERS

from porch.cli import cli
from porch.state import StateStore


def _invoke(workspace: Path, *args: str) -> Result:
    return CliRunner().invoke(cli, ["--workspace", str(workspace), *args])


def _init(workspace: Path) -> None:
    result = _invoke(workspace, "init", "spir", "0099", "demo")
    assert result.exit_code == 0, result.output


def _store(workspace: Path) -> StateStore:
    return StateStore(workspace / "codev/projects/0099-demo/status.json")


def _write_reviews(workspace: Path) -> None:
    for reviewer in REVIEWERS:
        path = workspace / f"codev/projects/0099-demo/0099-specify-iter1-{reviewer}.txt"
        path.write_text(APPROVE_REVIEW, encoding="utf-8")


def test_init_is_idempotent(workspace: Path) -> None:
    first = _invoke(workspace, "init", "spir", "0099", "demo")
    second = _invoke(workspace, "init", "SPIR", "0099", "demo")

    assert first.exit_code == 0, first.output
    assert "Project initialized: 0099-demo" in first.output
    assert second.exit_code == 0, second.output
    assert "already exists" in second.output
    assert _store(workspace).read().phase == "specify"


def test_init_rejects_bad_input(workspace: Path) -> None:
    bad_title = _invoke(workspace, "init", "spir", "0099", "bad title")
    bad_protocol = _invoke(workspace, "init", "nope", "0099", "demo")

    assert bad_title.exit_code == 1
    assert "Invalid project title" in bad_title.output
    assert bad_protocol.exit_code == 1
    assert "not found" in bad_protocol.output
    assert not (workspace / "codev/projects").exists()


def test_status_text_and_json(workspace: Path) -> None:
    _init(workspace)

    text = _invoke(workspace, "status", "0099")
    single = _invoke(workspace, "status", "0099", "--json")
    listing = _invoke(workspace, "status", "--json")

    assert text.exit_code == 0, text.output
    assert "Phase:     specify" in text.output
    assert "specify_approval: pending" in text.output
    payload = json.loads(single.stdout)
    assert payload["id"] == "0099"
    assert payload["gates"] == {"specify_approval": {"status": "pending"}}
    assert [item["id"] for item in json.loads(listing.stdout)] == ["0099"]


def test_status_of_unknown_project_fails(workspace: Path) -> None:
    result = _invoke(workspace, "status", "0100")

    assert result.exit_code == 1
    assert "Project 0100 not found" in result.output


def test_next_prints_task_json(workspace: Path) -> None:
    _init(workspace)

    result = _invoke(workspace, "next", "0099")

    assert result.exit_code == 0, result.output
    payload = json.loads(result.stdout)
    assert payload["status"] == "tasks"
    assert payload["tasks"][0]["subject"] == "Specify: Build artifact"


def test_gate_approval_requires_explicit_human_flag(workspace: Path) -> None:
    _init(workspace)
    gate = _invoke(workspace, "gate", "0099")
    assert gate.exit_code == 0, gate.output
    assert "GATE: specify_approval" in gate.output

    refused = _invoke(workspace, "approve", "0099", "specify_approval")

    assert refused.exit_code != 0
    assert "--a-human-explicitly-approved-this" in refused.output
    assert _store(workspace).read().gates["specify_approval"].status == "pending"

    approved = _invoke(workspace, "approve", "0099", "specify_approval", "--a-human-explicitly-approved-this")
    repeated = _invoke(workspace, "approve", "0099", "specify_approval", "--a-human-explicitly-approved-this")

    assert approved.exit_code == 0, approved.output
    assert "Gate specify_approval approved." in approved.output
    assert "already approved" in repeated.output
    gate_state = _store(workspace).read().gates["specify_approval"]
    assert gate_state.status == "approved"
    assert gate_state.approved_at is not None


def test_pending_lists_waiting_gates(workspace: Path) -> None:
    _init(workspace)
    assert "No pending gates." in _invoke(workspace, "pending").output

    _invoke(workspace, "gate", "0099")
    result = _invoke(workspace, "pending")

    assert "0099-demo: specify_approval (requested " in result.output


def test_done_walks_build_verify_phase(workspace: Path) -> None:
    _init(workspace)
    unbuilt = _invoke(workspace, "done", "0099")
    assert unbuilt.exit_code == 1
    assert "not found for phase specify" in unbuilt.output
    spec = workspace / "codev/specs/0099-demo.md"
    spec.parent.mkdir(parents=True)
    spec.write_text("# Spec\n", encoding="utf-8")

    built = _invoke(workspace, "done", "0099")
    assert built.exit_code == 0, built.output
    assert "Build complete." in built.output

    unverified = _invoke(workspace, "done", "0099")
    assert unverified.exit_code == 1
    assert "Verification required" in unverified.output

    _write_reviews(workspace)
    gated = _invoke(workspace, "done", "0099")
    assert gated.exit_code == 0, gated.output
    assert "must be approved" in gated.output

    _invoke(workspace, "approve", "0099", "specify_approval", "--a-human-explicitly-approved-this")
    advanced = _invoke(workspace, "done", "0099")
    assert "Advanced to plan" in advanced.output
    assert _store(workspace).read().phase == "plan"


def test_check_override_from_config_fails_done(workspace: Path) -> None:
    _init(workspace)
    with _store(workspace).transaction() as state:
        state.phase = "review"
    (workspace / "porch.toml").write_text('[checks."tests"]\ncommand = "false"\n', encoding="utf-8")

    check = _invoke(workspace, "check", "0099")
    done = _invoke(workspace, "done", "0099")

    assert check.exit_code == 1
    assert "[FAIL] tests" in check.output
    assert "Some checks failed." in check.output
    assert done.exit_code == 1
    assert "Checks failed for phase review: tests" in done.output
    assert _store(workspace).read().phase == "review"


def test_done_completes_once_phase(workspace: Path) -> None:
    _init(workspace)
    with _store(workspace).transaction() as state:
        state.phase = "review"

    result = _invoke(workspace, "done", "0099")

    assert result.exit_code == 0, result.output
    assert "[PASS] tests" in result.output
    assert _store(workspace).read().phase == "complete"
    assert json.loads(_invoke(workspace, "next", "0099").stdout)["status"] == "complete"


def test_rollback_and_answer_errors(workspace: Path) -> None:
    _init(workspace)

    forward = _invoke(workspace, "rollback", "0099", "review")
    answer = _invoke(workspace, "answer", "0099", "Postgres")

    assert forward.exit_code == 1
    assert "Cannot rollback forward" in forward.output
    assert answer.exit_code == 1
    assert "not waiting for input" in answer.output


def test_run_halts_when_worker_binary_is_missing(workspace: Path) -> None:
    _init(workspace)
    (workspace / "porch.toml").write_text(
        '[build]\nbinary = "no-such-claude-xyz"\nmax_retries = 0\nretry_backoff_seconds = 0\n',
        encoding="utf-8",
    )

    result = _invoke(workspace, "run", "0099")

    assert result.exit_code == 1
    assert "consecutive times" in result.output
    assert _store(workspace).read().build_failures == 3
