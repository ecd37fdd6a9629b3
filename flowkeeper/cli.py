"""Command line interface for operating flowkeeper workflows."""

from __future__ import annotations

import asyncio
import json
import os
from typing import List, Optional

import typer

from flowkeeper import get_repositories, get_transport
from flowkeeper.config import configure_logging, load_config
from flowkeeper.definition.registry import WorkflowDefinitionRegistry, load_registry
from flowkeeper.domain.models import ResolutionDecisionType, RetryMode
from flowkeeper.domain.states import WorkflowState
from flowkeeper.engine import WorkflowEngine
from flowkeeper.errors import FlowkeeperError, NotFoundError
from flowkeeper.orchestration.retry_from_step import RetryFromStepRequest

app = typer.Typer(help="CLI for flowkeeper workflows")

# Command groups
workflow_app = typer.Typer(help="Commands for inspecting and managing workflows")
compensation_app = typer.Typer(help="Commands for managing compensation episodes")
tick_app = typer.Typer(help="Run the time-based checks once")

app.add_typer(workflow_app, name="workflow")
app.add_typer(compensation_app, name="compensation")
app.add_typer(tick_app, name="tick")

DefinitionsOption = typer.Option(
    None,
    "--definitions",
    "-d",
    help="Workflow definitions to load, as 'module:attribute'",
)


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(None, help="Logging level for this run"),
) -> None:
    """flowkeeper CLI entry point."""
    if log_level:
        configure_logging(log_level)


def _engine(definitions: Optional[str]) -> WorkflowEngine:
    target = definitions or os.getenv("FLOWKEEPER_DEFINITIONS")
    registry = load_registry(target) if target else WorkflowDefinitionRegistry()
    config = load_config()
    return WorkflowEngine(
        registry,
        repositories=get_repositories(),
        transport=get_transport(config=config),
        config=config,
    )


def _run(coro):
    """Run ``coro`` and turn flowkeeper errors into a failed exit code."""
    try:
        return asyncio.run(coro)
    except NotFoundError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    except FlowkeeperError as exc:
        typer.secho(f"Error: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=2)


def _echo_state(workflow) -> None:
    typer.echo(f"Workflow {workflow.id}: {workflow.state.value}")


@workflow_app.command("list")
def workflow_list(
    state: Optional[WorkflowState] = typer.Option(None, help="Only show workflows in this state"),
) -> None:
    """
    List workflows with their current state.

    Example:
        flowkeeper workflow list
        flowkeeper workflow list --state failed
        # Output: abc123-def456-789    order_fulfilment    running    charge_card
    """
    repos = get_repositories()
    workflows = asyncio.run(repos.workflows.list_workflows(state))
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        typer.echo(
            f"{wf.id}\t{wf.definition_key}\t{wf.state.value}\t{wf.current_step_key or '-'}"
        )


@workflow_app.command("show")
def workflow_show(workflow_id: str) -> None:
    """
    Show a workflow with its step runs and compensation runs.

    Superseded runs are listed too, marked with the run that replaced them.

    Example:
        flowkeeper workflow show abc123-def456-789
        # Output: Workflow abc123-def456-789: failed
        #         Definition: order_fulfilment@1.0.0
        #         Failure: STEP_FAILED 1 of 1 jobs failed
        #         - reserve_stock #1: succeeded
        #         - charge_card #1: failed (STEP_FAILED)
    """
    repos = get_repositories()
    wf = asyncio.run(repos.workflows.find(workflow_id))
    if wf is None:
        typer.echo("Workflow not found")
        raise typer.Exit(code=1)
    typer.echo(f"Workflow {wf.id}: {wf.state.value}")
    typer.echo(f"Definition: {wf.definition_key}@{wf.definition_version}")
    if wf.current_step_key:
        typer.echo(f"Current step: {wf.current_step_key}")
    if wf.payload:
        typer.echo(f"Payload: {json.dumps(wf.payload, default=str)}")
    if wf.failure_code:
        typer.echo(f"Failure: {wf.failure_code} {wf.failure_message or ''}".rstrip())
    if wf.paused_reason:
        typer.echo(f"Paused: {wf.paused_reason}")

    for run in asyncio.run(repos.step_runs.find_by_workflow_id(workflow_id)):
        line = f"- {run.step_key} #{run.attempt}: {run.status.value}"
        if run.failure_code:
            line += f" ({run.failure_code})"
        if run.skip_reason:
            line += f" ({run.skip_reason.value})"
        if run.superseded_by_id:
            line += f" -> {run.superseded_by_id}"
        typer.echo(line)

    for comp in asyncio.run(repos.compensations.find_by_workflow_id(workflow_id)):
        typer.echo(
            f"  compensation {comp.execution_order}. {comp.step_key}: {comp.status.value} "
            f"(attempt {comp.attempt}/{comp.max_attempts})"
        )


@workflow_app.command("start")
def workflow_start(
    definition_key: str,
    payload: Optional[str] = typer.Option(None, help="JSON payload for the workflow"),
    version: Optional[str] = typer.Option(None, help="Definition version (default: latest)"),
    definitions: Optional[str] = DefinitionsOption,
) -> None:
    """
    Start a workflow for a registered definition and print its id.

    Example:
        flowkeeper workflow start order_fulfilment -d myapp.workflows:registry \\
            --payload '{"order_id": 42}'
    """
    try:
        data = json.loads(payload) if payload else {}
    except json.JSONDecodeError as exc:
        typer.secho(f"Invalid payload: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=2)
    engine = _engine(definitions)
    wf = _run(engine.manager.start(definition_key, data, version=version))
    typer.echo(f"Started workflow {wf.id}")
    _echo_state(wf)


@workflow_app.command("pause")
def workflow_pause(
    workflow_id: str,
    reason: str = typer.Option("Paused by operator", help="Reason recorded on the workflow"),
    definitions: Optional[str] = DefinitionsOption,
) -> None:
    """Pause a running workflow."""
    _echo_state(_run(_engine(definitions).manager.pause(workflow_id, reason)))


@workflow_app.command("resume")
def workflow_resume(
    workflow_id: str, definitions: Optional[str] = DefinitionsOption
) -> None:
    """Resume a paused workflow."""
    _echo_state(_run(_engine(definitions).manager.resume(workflow_id)))


@workflow_app.command("cancel")
def workflow_cancel(
    workflow_id: str, definitions: Optional[str] = DefinitionsOption
) -> None:
    """Cancel a workflow."""
    _echo_state(_run(_engine(definitions).manager.cancel(workflow_id)))


@workflow_app.command("retry")
def workflow_retry(
    workflow_id: str, definitions: Optional[str] = DefinitionsOption
) -> None:
    """Retry a failed workflow from its failed step."""
    _echo_state(_run(_engine(definitions).manager.retry(workflow_id)))


@workflow_app.command("resolve")
def workflow_resolve(
    workflow_id: str,
    decision: ResolutionDecisionType,
    decided_by: Optional[str] = typer.Option(None, "--by", help="Who took the decision"),
    reason: Optional[str] = typer.Option(None, help="Why the decision was taken"),
    step: Optional[str] = typer.Option(None, help="Step to retry from (retry_from_step)"),
    compensate: Optional[List[str]] = typer.Option(
        None, help="Steps to compensate (compensate); repeat for several"
    ),
    definitions: Optional[str] = DefinitionsOption,
) -> None:
    """
    Apply a resolution decision to a failed workflow.

    Example:
        flowkeeper workflow resolve abc123 retry --by alice --reason "card fixed"
        flowkeeper workflow resolve abc123 compensate --compensate charge_card
    """
    engine = _engine(definitions)
    wf = _run(
        engine.manager.resolve_failure(
            workflow_id,
            decision,
            decided_by=decided_by,
            reason=reason,
            retry_from_step_key=step,
            compensate_step_keys=compensate or None,
        )
    )
    _echo_state(wf)


@workflow_app.command("retry-from-step")
def workflow_retry_from_step(
    workflow_id: str,
    step_key: str,
    compensate: bool = typer.Option(
        False, help="Compensate the affected steps before retrying"
    ),
    initiated_by: Optional[str] = typer.Option(None, "--by", help="Who initiated the retry"),
    reason: Optional[str] = typer.Option(None, help="Why the retry was initiated"),
    definitions: Optional[str] = DefinitionsOption,
) -> None:
    """
    Rewind a failed or compensated workflow to a step and run it again.

    Example:
        flowkeeper workflow retry-from-step abc123 reserve_stock --compensate
    """
    engine = _engine(definitions)
    result = _run(
        engine.retry_from_step.execute(
            RetryFromStepRequest(
                workflow_id=workflow_id,
                retry_from_step_key=step_key,
                retry_mode=(
                    RetryMode.COMPENSATE_THEN_RETRY if compensate else RetryMode.RETRY_ONLY
                ),
                initiated_by=initiated_by,
                reason=reason,
            )
        )
    )
    if result.awaiting_compensation:
        typer.echo("Compensation in progress; the step is retried once it completes")
    else:
        typer.echo(
            f"Superseded {result.superseded_count} step runs, "
            f"cleared {result.cleared_output_count} outputs"
        )
    _echo_state(result.workflow)


@compensation_app.command("retry")
def compensation_retry(
    workflow_id: str, definitions: Optional[str] = DefinitionsOption
) -> None:
    """Retry the failed compensations of a workflow."""
    _echo_state(_run(_engine(definitions).compensation.retry_compensation(workflow_id)))


@compensation_app.command("skip-remaining")
def compensation_skip_remaining(
    workflow_id: str, definitions: Optional[str] = DefinitionsOption
) -> None:
    """Skip every compensation that has not succeeded and finish the episode."""
    _echo_state(_run(_engine(definitions).compensation.skip_remaining(workflow_id)))


@tick_app.command("auto-retries")
def tick_auto_retries(definitions: Optional[str] = DefinitionsOption) -> None:
    """Retry failed workflows whose auto-retry is due."""
    retried = _run(_engine(definitions).resolution.process_auto_retries())
    typer.echo(f"Retried {len(retried)} workflows")


@tick_app.command("polls")
def tick_polls(definitions: Optional[str] = DefinitionsOption) -> None:
    """Dispatch polls that are due."""
    runs = _run(_engine(definitions).polling.dispatch_due_polls())
    typer.echo(f"Dispatched {len(runs)} polls")


@tick_app.command("triggers")
def tick_triggers(definitions: Optional[str] = DefinitionsOption) -> None:
    """Apply trigger timeouts and scheduled resumes that are due."""
    engine = _engine(definitions)
    timed_out = _run(engine.triggers.check_trigger_timeouts())
    resumed = _run(engine.triggers.process_scheduled_resumes())
    typer.echo(f"Timed out {len(timed_out)} triggers, resumed {len(resumed)} workflows")


@tick_app.command("zombies")
def tick_zombies(
    threshold_minutes: Optional[int] = typer.Option(
        None, help="Minutes without a report before a running job is failed"
    ),
    definitions: Optional[str] = DefinitionsOption,
) -> None:
    """Fail running jobs that stopped reporting."""
    zombies = _run(_engine(definitions).job_lifecycle.detect_zombie_jobs(threshold_minutes))
    typer.echo(f"Marked {len(zombies)} zombie jobs as failed")


@tick_app.command("step-timeouts")
def tick_step_timeouts(
    step_timeout: Optional[int] = typer.Option(
        None, help="Seconds a step may run when it declares no timeout of its own"
    ),
    definitions: Optional[str] = DefinitionsOption,
) -> None:
    """Fail running steps that exceeded their timeout."""
    timed_out = _run(_engine(definitions).step_timeouts.check_step_timeouts(step_timeout))
    typer.echo(f"Timed out {len(timed_out)} steps")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
