from __future__ import annotations

import json
import re
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from mission_control import main
from mission_control.controllers import MissionControlCliController
from mission_control.main import mission_control
from mission_control.scheduler.briefing import PhaseBriefing
from mission_control.scheduler.repository import WorkStore
from tests.fakes import FakeGateway

pytestmark = [
    allure.epic("Scheduling Core"),
    allure.feature("Operator CLI"),
]


@pytest.fixture()
def cli_gateway(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> FakeGateway:
    gateway = FakeGateway()
    monkeypatch.setattr(
        main,
        "CONTROLLER",
        MissionControlCliController(gateway_factory=lambda _settings: gateway),
    )
    monkeypatch.delenv("MISSION_CONTROL_AGENTS", raising=False)
    monkeypatch.setenv("MISSION_CONTROL_GATEWAY_CONFIG_PATH", str(tmp_path / "absent.json"))
    return gateway


def _invoke(runner: CliRunner, db_path: Path, *args: str) -> str:
    group, command, *rest = args
    result = runner.invoke(mission_control, [group, command, "--db-path", str(db_path), *rest])
    assert result.exit_code == 0, result.output
    return result.output


def _field(output: str, name: str) -> str:
    match = re.search(rf"{name}=(\S+)", output)
    assert match is not None, output
    return match.group(1)


def test_phase_flow_from_creation_to_done(tmp_path: Path, cli_gateway: FakeGateway) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()

    assert "Database ready" in _invoke(runner, db_path, "db", "init")
    _invoke(runner, db_path, "agent", "add", "main", "--name", "Main")
    created = _invoke(
        runner,
        db_path,
        "task",
        "create",
        "--title",
        "Ship billing",
        "--agent",
        "main",
        "--work-dir",
        "/srv/billing",
    )
    task_id = _field(created, "task_id")
    added = _invoke(runner, db_path, "phase", "add", task_id, "--title", "Build")
    phase_id = _field(added, "phase_id")

    dispatched = _invoke(runner, db_path, "dispatch", "phases", task_id)
    assert "outcome=dispatched" in dispatched
    assert cli_gateway.labels == [f"gsd-phase-{phase_id}"]
    briefing = cli_gateway.requests[0].briefing
    assert isinstance(briefing, PhaseBriefing)

    completed = _invoke(
        runner,
        db_path,
        "callback",
        "phase-complete",
        phase_id,
        "--token",
        briefing.token,
        "--summary",
        "built it",
        "--artifacts",
        '{"commit": "abc"}',
    )
    assert "next: outcome=completed" in completed

    shown = _invoke(runner, db_path, "task", "show", task_id, "--format", "json")
    payload = json.loads(shown)
    assert payload["status"] == "done"
    assert payload["phases"][0]["status"] == "done"

    reused = runner.invoke(
        mission_control,
        [
            "callback",
            "phase-complete",
            "--db-path",
            str(db_path),
            phase_id,
            "--token",
            briefing.token,
            "--summary",
            "again",
        ],
    )
    assert reused.exit_code != 0
    assert "already used" in reused.output


def test_queue_flow_and_event_stream(tmp_path: Path, cli_gateway: FakeGateway) -> None:
    db_path = tmp_path / "queue.db"
    runner = CliRunner()
    _invoke(runner, db_path, "agent", "add", "main")
    first = _field(
        _invoke(runner, db_path, "task", "create", "--title", "first", "--agent", "main"),
        "task_id",
    )
    second = _field(
        _invoke(
            runner,
            db_path,
            "task",
            "create",
            "--title",
            "second",
            "--agent",
            "main",
            "--queued",
        ),
        "task_id",
    )

    _invoke(runner, db_path, "phase", "add", first, "--title", "work")
    _invoke(runner, db_path, "dispatch", "phases", first)
    busy = _invoke(runner, db_path, "queue", "dequeue", "main")
    assert "agent=main busy" in busy

    store = WorkStore(db_path)
    try:
        store.fail_task(
            task_id=first,
            status_from=store.require_task(first).status,
            error_summary="session crashed",
        )
    finally:
        store.close()

    swept = _invoke(runner, db_path, "queue", "sweep")
    assert f"dequeued task_id={second}" in swept

    listed = _invoke(runner, db_path, "task", "list", "--status", "failed")
    assert "Tasks: 1" in listed
    assert first in listed

    retried = _invoke(runner, db_path, "task", "retry", first)
    assert f"Task returned to backlog: {first}" in retried

    events = runner.invoke(mission_control, ["events", "--db-path", str(db_path), "--task", first])
    assert events.exit_code == 0
    assert "task_manual_retry" in events.output


def test_agent_sync_marks_unlisted_agents_orphaned(
    tmp_path: Path,
    cli_gateway: FakeGateway,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    db_path = tmp_path / "agents.db"
    runner = CliRunner()
    _invoke(runner, db_path, "agent", "add", "legacy")
    monkeypatch.setenv("MISSION_CONTROL_AGENTS", "main:Main,coder")

    synced = _invoke(runner, db_path, "agent", "sync", "--no-gateway-config")

    assert "created=2 updated=0 orphaned=1" in synced
    assert "orphaned agent_id=legacy" in synced
    listed = _invoke(runner, db_path, "agent", "list")
    assert "agent_id=legacy name=legacy status=orphaned" in listed


def test_queued_task_without_agent_is_a_usage_error(
    tmp_path: Path,
    cli_gateway: FakeGateway,
) -> None:
    result = CliRunner().invoke(
        mission_control,
        ["task", "create", "--db-path", str(tmp_path / "x.db"), "--title", "t", "--queued"],
    )

    assert result.exit_code != 0
    assert "Queued tasks require an agent" in result.output


def test_serve_runs_for_a_bounded_duration(tmp_path: Path, cli_gateway: FakeGateway) -> None:
    result = CliRunner().invoke(
        mission_control,
        ["serve", "--db-path", str(tmp_path / "serve.db"), "--duration", "0"],
    )

    assert result.exit_code == 0, result.output
    assert "Scheduler stopped (0 dispatch loops were running)" in result.output
