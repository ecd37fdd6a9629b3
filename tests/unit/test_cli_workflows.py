import asyncio
from datetime import timedelta
import textwrap

import pytest
from typer.testing import CliRunner

import flowkeeper.persistence as persistence
from flowkeeper.cli import app
from flowkeeper.domain import StepRun, StepStatus, WorkflowInstance, WorkflowState
from flowkeeper.persistence import InMemoryRepositories
from flowkeeper.utils.time import utcnow

DEFINITIONS = textwrap.dedent(
    """
    from flowkeeper import StepDefinition, WorkflowDefinition

    definitions = [
        WorkflowDefinition(
            key="order_fulfilment",
            steps=[
                StepDefinition(key="reserve_stock", job="reserve", compensation="release"),
                StepDefinition(key="charge_card", job="charge"),
            ],
        )
    ]
    """
)


def _setup_repos() -> InMemoryRepositories:
    repos = InMemoryRepositories()
    persistence._repositories_instance = repos
    return repos


@pytest.fixture
def definitions_module(tmp_path, monkeypatch):
    (tmp_path / "cli_workflows_defs.py").write_text(DEFINITIONS)
    monkeypatch.syspath_prepend(str(tmp_path))
    return "cli_workflows_defs:definitions"


def _save(repos, workflow: WorkflowInstance, *runs: StepRun) -> None:
    asyncio.run(repos.workflows.save(workflow))
    for run in runs:
        asyncio.run(repos.step_runs.save(run))


def test_workflows_command_lists_workflows():
    repos = _setup_repos()
    done = WorkflowInstance(
        definition_key="order_fulfilment", definition_version="1.0.0", state=WorkflowState.SUCCEEDED
    )
    running = WorkflowInstance(
        definition_key="order_fulfilment",
        definition_version="1.0.0",
        state=WorkflowState.RUNNING,
        current_step_key="charge_card",
    )
    _save(repos, done)
    _save(repos, running)

    runner = CliRunner()
    result = runner.invoke(app, ["workflow", "list"])
    assert result.exit_code == 0, f"Command failed with exit code {result.exit_code}. Output: {result.stdout}"
    assert done.id in result.stdout, f"Workflow {done.id} not found in output: {result.stdout}"
    assert f"{running.id}\torder_fulfilment\trunning\tcharge_card" in result.stdout

    filtered = runner.invoke(app, ["workflow", "list", "--state", "succeeded"])
    assert filtered.exit_code == 0
    assert done.id in filtered.stdout
    assert running.id not in filtered.stdout


def test_workflows_command_without_workflows():
    _setup_repos()
    result = CliRunner().invoke(app, ["workflow", "list"])
    assert result.exit_code == 0
    assert "No workflows found" in result.stdout


def test_workflow_command_shows_details_and_missing():
    repos = _setup_repos()
    wf = WorkflowInstance(
        definition_key="order_fulfilment",
        definition_version="1.0.0",
        state=WorkflowState.FAILED,
        current_step_key="charge_card",
        payload={"order_id": 42},
        failure_code="STEP_FAILED",
        failure_message="1 of 1 jobs failed",
    )
    reserved = StepRun(workflow_id=wf.id, step_key="reserve_stock", status="succeeded")
    charged = StepRun(
        workflow_id=wf.id, step_key="charge_card", status="failed", failure_code="STEP_FAILED"
    )
    _save(repos, wf, reserved, charged)

    runner = CliRunner()
    result = runner.invoke(app, ["workflow", "show", wf.id])
    assert result.exit_code == 0, f"Command failed with exit code {result.exit_code}. Output: {result.stdout}"
    output = result.stdout
    assert f"Workflow {wf.id}: failed" in output
    assert "Definition: order_fulfilment@1.0.0" in output
    assert 'Payload: {"order_id": 42}' in output
    assert "Failure: STEP_FAILED 1 of 1 jobs failed" in output
    assert "- reserve_stock #1: succeeded" in output
    assert "- charge_card #1: failed (STEP_FAILED)" in output

    result_missing = runner.invoke(app, ["workflow", "show", "missing-id"])
    assert (
        result_missing.exit_code == 1
    ), f"Expected exit code 1 for missing workflow, got {result_missing.exit_code}. Output: {result_missing.stdout}"
    assert "Workflow not found" in result_missing.stdout


def test_start_and_cancel_workflow(definitions_module):
    repos = _setup_repos()
    runner = CliRunner()

    result = runner.invoke(
        app,
        [
            "workflow",
            "start",
            "order_fulfilment",
            "--payload",
            '{"order_id": 7}',
            "-d",
            definitions_module,
        ],
    )
    assert result.exit_code == 0, result.stdout
    [wf] = asyncio.run(repos.workflows.list_workflows())
    assert f"Started workflow {wf.id}" in result.stdout
    assert f"Workflow {wf.id}: running" in result.stdout
    assert wf.payload == {"order_id": 7}
    assert wf.current_step_key == "reserve_stock"

    result = runner.invoke(app, ["workflow", "cancel", wf.id, "-d", definitions_module])
    assert result.exit_code == 0, result.stdout
    assert f"Workflow {wf.id}: cancelled" in result.stdout

    again = runner.invoke(app, ["workflow", "cancel", wf.id, "-d", definitions_module])
    assert again.exit_code == 2
    assert "already cancelled" in again.stdout


def test_start_rejects_invalid_payload(definitions_module):
    _setup_repos()
    result = CliRunner().invoke(
        app,
        ["workflow", "start", "order_fulfilment", "--payload", "{not json", "-d", definitions_module],
    )
    assert result.exit_code == 2
    assert "Invalid payload" in result.stdout


def test_unknown_workflow_exits_with_not_found(definitions_module):
    _setup_repos()
    result = CliRunner().invoke(app, ["workflow", "retry", "missing-id", "-d", definitions_module])
    assert result.exit_code == 1
    assert "Workflow missing-id not found" in result.stdout


def test_resolve_failed_workflow(definitions_module, monkeypatch):
    repos = _setup_repos()
    monkeypatch.setenv("FLOWKEEPER_DEFINITIONS", definitions_module)
    wf = WorkflowInstance(
        definition_key="order_fulfilment",
        definition_version="1.0.0",
        state=WorkflowState.FAILED,
        current_step_key="charge_card",
    )
    _save(repos, wf)

    result = CliRunner().invoke(
        app, ["workflow", "resolve", wf.id, "cancel", "--by", "alice", "--reason", "duplicate"]
    )
    assert result.exit_code == 0, result.stdout
    assert f"Workflow {wf.id}: cancelled" in result.stdout
    [decision] = asyncio.run(repos.decisions.find_by_workflow_id(wf.id))
    assert decision.decided_by == "alice"


def test_tick_commands_report_counts():
    _setup_repos()
    runner = CliRunner()
    assert "Retried 0 workflows" in runner.invoke(app, ["tick", "auto-retries"]).stdout
    assert "Dispatched 0 polls" in runner.invoke(app, ["tick", "polls"]).stdout
    assert "Marked 0 zombie jobs as failed" in runner.invoke(app, ["tick", "zombies"]).stdout
    assert "Timed out 0 steps" in runner.invoke(app, ["tick", "step-timeouts"]).stdout


def test_tick_step_timeouts_fails_overdue_step(definitions_module):
    repos = _setup_repos()
    wf = WorkflowInstance(
        definition_key="order_fulfilment",
        definition_version="1.0.0",
        state=WorkflowState.RUNNING,
        current_step_key="charge_card",
    )
    run = StepRun(
        workflow_id=wf.id,
        step_key="charge_card",
        status=StepStatus.RUNNING,
        started_at=utcnow() - timedelta(minutes=10),
        total_job_count=1,
    )
    _save(repos, wf, run)

    runner = CliRunner()
    lenient = runner.invoke(app, ["tick", "step-timeouts", "-d", definitions_module])
    assert lenient.exit_code == 0, lenient.stdout
    assert "Timed out 0 steps" in lenient.stdout

    strict = runner.invoke(
        app, ["tick", "step-timeouts", "--step-timeout", "60", "-d", definitions_module]
    )
    assert strict.exit_code == 0, strict.stdout
    assert "Timed out 1 steps" in strict.stdout
    stored = asyncio.run(repos.step_runs.find(run.id))
    assert stored.status == StepStatus.FAILED
    assert stored.failure_code == "STEP_TIMEOUT"
    assert asyncio.run(repos.workflows.find(wf.id)).state == WorkflowState.FAILED
