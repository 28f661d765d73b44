"""Command line interface for waystone workflows."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

import typer
import yaml

from waystone import BackgroundRunner, WorkflowEngine, get_repository, load_config
from waystone.contracts import ProposedAction, Workflow
from waystone.errors import WaystoneError

app = typer.Typer(help="CLI for waystone workflows")

# Command groups
workflow_app = typer.Typer(help="Commands for managing workflows")
checkpoint_app = typer.Typer(help="Commands for reviewing checkpoints")
dlq_app = typer.Typer(help="Commands for the dead-letter queue")
scheduler_app = typer.Typer(help="Commands for running triggers")

app.add_typer(workflow_app, name="workflow")
app.add_typer(checkpoint_app, name="checkpoint")
app.add_typer(dlq_app, name="dlq")
app.add_typer(scheduler_app, name="scheduler")

UserOption = typer.Option("local", "--user", "-u", envvar="WAYSTONE_USER", help="Owner user id")


@app.callback()
def main() -> None:
    """Waystone CLI entry point."""
    config = load_config()
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _engine() -> WorkflowEngine:
    return WorkflowEngine(get_repository(), config=load_config())


def _run(coro):
    try:
        return asyncio.run(coro)
    except WaystoneError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _echo_execution(execution) -> None:
    typer.echo(f"Execution: {execution.id}")
    typer.echo(f"Status: {execution.status}")
    for result in execution.step_results:
        typer.echo(f"  - {result.step_id}: {result.status} {result.output_summary}")


# ----------------------------------------------------------------------
# workflow


@workflow_app.command("list")
def workflow_list(user: str = UserOption) -> None:
    """List workflows with their status and trigger type."""
    workflows = _run(_engine().list_workflows(user))
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        typer.echo(f"{wf.id}\t{wf.status}\t{wf.trigger.type}\t{wf.name}")


@workflow_app.command("show")
def workflow_show(workflow_id: str, user: str = UserOption) -> None:
    """Show a workflow definition and its recent executions."""
    engine = _engine()

    async def _show():
        workflow = await engine.get_workflow(user, workflow_id)
        executions = await engine.list_executions(user, workflow_id)
        return workflow, executions

    workflow, executions = _run(_show())
    typer.echo(f"Workflow: {workflow.id}")
    typer.echo(f"Name: {workflow.name}")
    typer.echo(f"Status: {workflow.status}")
    typer.echo(f"Trigger: {workflow.trigger.type}")
    typer.echo("Steps:")
    for step in workflow.steps:
        typer.echo(f"  - {step.id} [{step.kind}] {step.title} ({step.action_id})")
    if executions:
        typer.echo("Executions:")
        for execution in executions:
            typer.echo(
                f"  - {execution.id} {execution.status} started {execution.started_at.isoformat()}"
            )


@workflow_app.command("create")
def workflow_create(prompt: str, user: str = UserOption) -> None:
    """Compile a workflow from a natural-language prompt and save it."""
    workflow = _run(_engine().create_from_prompt(user, prompt))
    typer.echo(f"Created workflow {workflow.id}: {workflow.name}")


@workflow_app.command("save")
def workflow_save(definition: Path, user: str = UserOption) -> None:
    """Save a workflow definition from a YAML or JSON file."""
    if not definition.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    data = yaml.safe_load(definition.read_text()) or {}
    data.setdefault("user_id", user)
    workflow = _run(_engine().save_workflow(Workflow.model_validate(data)))
    typer.echo(f"Saved workflow {workflow.id}: {workflow.name}")


@workflow_app.command("run")
def workflow_run(
    workflow_id: str,
    user: str = UserOption,
    background: bool = typer.Option(False, help="Retry failed runs and dead-letter the last one"),
    variables: Optional[str] = typer.Option(None, help="JSON object of run variables"),
) -> None:
    """Run a workflow from its entry step."""
    engine = _engine()
    run_variables = json.loads(variables) if variables else None
    if background:
        runner = BackgroundRunner(engine)
        execution = _run(
            runner.run_in_background(
                user,
                workflow_id,
                on_heartbeat=lambda at: typer.echo(f"heartbeat {at.isoformat()}"),
                variables=run_variables,
            )
        )
    else:
        execution = _run(engine.run_workflow_by_id(user, workflow_id, variables=run_variables))
    _echo_execution(execution)


@workflow_app.command("run-step")
def workflow_run_step(workflow_id: str, step_id: str, user: str = UserOption) -> None:
    """Run a single step in isolation."""
    _echo_execution(_run(_engine().run_step_by_id(user, workflow_id, step_id)))


@workflow_app.command("pause")
def workflow_pause(workflow_id: str, user: str = UserOption) -> None:
    workflow = _run(_engine().pause_workflow(user, workflow_id))
    typer.echo(f"{workflow.id}\t{workflow.status}")


@workflow_app.command("resume")
def workflow_resume(workflow_id: str, user: str = UserOption) -> None:
    workflow = _run(_engine().resume_workflow(user, workflow_id))
    typer.echo(f"{workflow.id}\t{workflow.status}")


@workflow_app.command("cancel")
def workflow_cancel(workflow_id: str, user: str = UserOption) -> None:
    """Archive a workflow and disable its trigger."""
    workflow = _run(_engine().cancel_workflow(user, workflow_id))
    typer.echo(f"{workflow.id}\t{workflow.status}")


@workflow_app.command("history")
def workflow_history(
    workflow_id: str,
    user: str = UserOption,
    limit: int = typer.Option(20, help="Maximum number of entries"),
) -> None:
    """List change-history entries, newest first."""
    entries = _run(_engine().list_change_history(user, workflow_id, limit=limit))
    if not entries:
        typer.echo("No history found")
        return
    for entry in entries:
        typer.echo(f"{entry.id}\t{entry.change_type}\t{entry.created_at.isoformat()}\t{entry.summary}")


@workflow_app.command("diff")
def workflow_diff(left_entry_id: str, right_entry_id: str, user: str = UserOption) -> None:
    """Show step and branch differences between two history entries."""
    diff = _run(_engine().diff_change_entries(user, left_entry_id, right_entry_id))
    if diff.is_empty:
        typer.echo("No differences")
        return
    for field_name, ids in diff.model_dump().items():
        if ids:
            typer.echo(f"{field_name}: {', '.join(ids)}")


# ----------------------------------------------------------------------
# checkpoint


@checkpoint_app.command("list")
def checkpoint_list(user: str = UserOption) -> None:
    """List checkpoints waiting for review."""
    requests = _run(_engine().list_pending_checkpoints(user))
    if not requests:
        typer.echo("No pending checkpoints")
        return
    for request in requests:
        typer.echo(
            f"{request.id}\t{request.workflow_id}\t{request.risk_level}\t"
            f"{request.proposed_action.title}"
        )


@checkpoint_app.command("resolve")
def checkpoint_resolve(
    request_id: str,
    decision: str = typer.Option(..., help="approve, reject or edit"),
    user: str = UserOption,
    reason: Optional[str] = typer.Option(None, help="Rejection reason"),
    title: str = typer.Option("", help="Edited action title"),
    action_id: str = typer.Option("", help="Edited action id"),
    input_template: Optional[str] = typer.Option(None, help="Edited input template"),
) -> None:
    """Approve, reject or edit a pending checkpoint."""
    if decision not in ("approve", "reject", "edit"):
        typer.secho("Decision must be approve, reject or edit", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    edited = None
    if decision == "edit":
        edited = ProposedAction(title=title, action_id=action_id, input_template=input_template)
    resolution = _run(
        _engine().resolve_checkpoint(
            user, request_id, decision, edited_action=edited, rejection_reason=reason
        )
    )
    typer.echo(f"Checkpoint {resolution.checkpoint.id}: {resolution.checkpoint.status}")
    if resolution.execution is not None:
        _echo_execution(resolution.execution)


# ----------------------------------------------------------------------
# dlq


@dlq_app.command("list")
def dlq_list(
    user: str = UserOption,
    all_entries: bool = typer.Option(False, "--all", help="Include resolved entries"),
) -> None:
    """List dead-lettered runs, newest first."""
    entries = _run(_engine().dead_letters.list(user, include_resolved=all_entries))
    if not entries:
        typer.echo("Dead-letter queue is empty")
        return
    for entry in entries:
        typer.echo(f"{entry.id}\t{entry.workflow_id}\t{entry.status}\t{entry.reason}")


@dlq_app.command("resolve")
def dlq_resolve(entry_id: str, user: str = UserOption) -> None:
    """Mark an entry resolved without re-running its workflow."""
    entry = _run(_engine().dead_letters.mark_resolved(user, entry_id))
    typer.echo(f"{entry.id}\t{entry.status}")


# ----------------------------------------------------------------------
# scheduler


@scheduler_app.command("run")
def scheduler_run(
    user: str = UserOption,
    lifespan: Optional[float] = typer.Option(None, help="Seconds to run (default: forever)"),
) -> None:
    """Tick schedule triggers for the user's workflows until stopped."""
    engine = _engine()

    async def _serve() -> None:
        registered = await engine.register_triggers(user)
        typer.echo(f"Watching {len(registered)} workflow trigger(s)")
        engine.triggers.start()
        try:
            if lifespan is None:
                await asyncio.Event().wait()
            else:
                await asyncio.sleep(lifespan)
        finally:
            await engine.triggers.stop()

    _run(_serve())


if __name__ == "__main__":
    app()
