"""Command line interface for onboarding workflows."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import typer

from .config import OnboardingConfig, load_config
from .contracts import DecisionKind, WorkflowStatus
from .dispatch import SignalDispatcher
from .engine import StageStateMachine, create_engine
from .errors import ConfigurationError, OnboardingError
from .events import project_state
from .transports import get_transport
from .worker import WorkflowWorker

T = TypeVar("T")

app = typer.Typer(help="CLI for onboarding workflows")

workflow_app = typer.Typer(help="Inspect and drive workflows")
decision_app = typer.Typer(help="Deliver human decisions")
quote_app = typer.Typer(help="Quote service callbacks")
notifications_app = typer.Typer(help="Applicant notifications")
worker_app = typer.Typer(help="Signal-consuming worker")

app.add_typer(workflow_app, name="workflow")
app.add_typer(decision_app, name="decision")
app.add_typer(quote_app, name="quote")
app.add_typer(notifications_app, name="notifications")
app.add_typer(worker_app, name="worker")


@app.callback()
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to config.yaml"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
) -> None:
    """onboardflow CLI entry point."""
    logging.basicConfig(level=logging.DEBUG if verbose else logging.WARNING)
    ctx.obj = {"config_path": config}


def _config(ctx: typer.Context) -> OnboardingConfig:
    try:
        return load_config((ctx.obj or {}).get("config_path")).validate_for_startup()
    except ConfigurationError as exc:
        typer.secho(f"Configuration error: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=2)


def _run(ctx: typer.Context, fn: Callable[[StageStateMachine], Awaitable[T]]) -> T:
    engine = create_engine(_config(ctx))

    async def runner() -> T:
        try:
            return await fn(engine)
        finally:
            await engine.gateway.aclose()

    try:
        return asyncio.run(runner())
    except OnboardingError as exc:
        typer.secho(f"{type(exc).__name__}: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _json_option(value: Optional[str]) -> Dict[str, Any]:
    if not value:
        return {}
    try:
        data = json.loads(value)
    except json.JSONDecodeError as exc:
        raise typer.BadParameter(f"invalid JSON: {exc}")
    if not isinstance(data, dict):
        raise typer.BadParameter("expected a JSON object")
    return data


def _print_instance(instance) -> None:
    if instance is None:
        typer.echo("Workflow was terminated; nothing to do")
        return
    typer.echo(
        f"{instance.id}\t{instance.status.value}\t{instance.stage.label}"
        + (f"\t{instance.failure_reason}" if instance.failure_reason else "")
    )


# ----------------------------------------------------------------------
# workflow


@workflow_app.command("start")
def workflow_start(
    ctx: typer.Context,
    applicant_id: int,
    applicant: Optional[str] = typer.Option(None, help="Applicant record as JSON"),
    workflow_id: Optional[str] = typer.Option(None, "--workflow-id"),
    drive: bool = typer.Option(True, help="Advance until the workflow suspends"),
    publish: bool = typer.Option(False, help="Publish a start signal instead of running here"),
) -> None:
    """
    Start onboarding for an applicant.

    Example:
        onboardflow workflow start 42 --applicant '{"business_type": "company"}'
    """
    record = _json_option(applicant)

    if publish:
        config = _config(ctx)
        dispatcher = SignalDispatcher(get_transport(config))
        typer.echo(asyncio.run(dispatcher.start(applicant_id, record, workflow_id)))
        return

    async def go(engine: StageStateMachine):
        instance = await engine.start(applicant_id, record, workflow_id)
        return await engine.drive(instance.id) if drive else instance

    _print_instance(_run(ctx, go))


@workflow_app.command("list")
def workflow_list(
    ctx: typer.Context,
    applicant_id: Optional[int] = typer.Option(None, "--applicant-id"),
    status: Optional[WorkflowStatus] = typer.Option(None),
) -> None:
    """List workflows with their status and stage."""
    workflows = _run(ctx, lambda e: e.repository.list_workflows(applicant_id, status))
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        _print_instance(wf)


@workflow_app.command("show")
def workflow_show(ctx: typer.Context, workflow_id: str) -> None:
    """Show a workflow, its pending decision and its context."""
    wf = _run(ctx, lambda e: e.repository.get_workflow(workflow_id))
    if wf is None:
        typer.echo("Workflow not found")
        raise typer.Exit(code=1)
    typer.echo(f"Workflow {wf.id}: {wf.status.value} at {wf.stage.label} (applicant {wf.applicant_id})")
    if wf.failure_reason:
        typer.echo(f"Reason: {wf.failure_reason}")
    if wf.pending:
        deadline = wf.pending.deadline.isoformat() if wf.pending.deadline else "none"
        typer.echo(
            f"Pending: {wf.pending.kind.value} (answered={wf.pending.answered}, deadline={deadline})"
        )
    typer.echo(f"Context: {wf.context.model_dump_json()}")


@workflow_app.command("events")
def workflow_events(ctx: typer.Context, workflow_id: str) -> None:
    """Print the event log of a workflow in append order."""
    events = _run(ctx, lambda e: e.events.history(workflow_id))
    if not events:
        typer.echo("No events found")
        return
    for ev in events:
        typer.echo(
            f"{ev.sequence}\t{ev.timestamp.isoformat()}\t{ev.event_type.value}\t"
            f"{ev.stage.label if ev.stage else '-'}\t{json.dumps(ev.payload, default=str)}"
        )
    projected = project_state(events)
    if projected:
        typer.echo(f"Projected: {projected[0].value} at {projected[1].label}")


@workflow_app.command("advance")
def workflow_advance(ctx: typer.Context, workflow_id: str) -> None:
    """Drive a workflow until it suspends or finishes."""
    _print_instance(_run(ctx, lambda e: e.drive(workflow_id)))


@workflow_app.command("terminate")
def workflow_terminate(
    ctx: typer.Context,
    workflow_id: str,
    reason: str = typer.Option("operator_request", help="Reason recorded with the kill switch"),
    actor: Optional[str] = typer.Option(None, help="Operator id"),
    publish: bool = typer.Option(False, help="Publish a terminate signal instead"),
) -> None:
    """Kill switch: terminate a workflow immediately."""
    if publish:
        dispatcher = SignalDispatcher(get_transport(_config(ctx)))
        signal = asyncio.run(dispatcher.terminate(workflow_id, reason, actor))
        typer.echo(signal.message_id)
        return
    _print_instance(_run(ctx, lambda e: e.terminate(workflow_id, reason, actor)))


# ----------------------------------------------------------------------
# decisions and callbacks


@decision_app.command("deliver")
def decision_deliver(
    ctx: typer.Context,
    workflow_id: str,
    kind: DecisionKind,
    payload: Optional[str] = typer.Option(None, help="Decision payload as JSON"),
    actor: Optional[str] = typer.Option(None, help="Deciding user id"),
) -> None:
    """
    Deliver a human decision to a suspended workflow.

    Example:
        onboardflow decision deliver wf-123 quote_approval --payload '{"action": "approve"}'
    """
    data = _json_option(payload)
    result = _run(
        ctx, lambda e: e.gatekeeper.deliver_decision(workflow_id, kind, data, actor_id=actor)
    )
    typer.echo(result.value)


@quote_app.command("callback")
def quote_callback(
    ctx: typer.Context,
    workflow_id: str,
    payload: str = typer.Option(..., help='Quote as JSON, e.g. {"quoteId": "Q-1", "amount": 100}'),
) -> None:
    """Deliver an asynchronous quote from the quote service."""
    data = _json_option(payload)
    result = _run(ctx, lambda e: e.gatekeeper.deliver_quote_callback(workflow_id, data))
    typer.echo(result.value)


# ----------------------------------------------------------------------
# notifications


@notifications_app.command("list")
def notifications_list(
    ctx: typer.Context,
    applicant_id: int,
    unread: bool = typer.Option(False, "--unread", help="Only unread notifications"),
) -> None:
    """List notifications for an applicant."""
    items = _run(ctx, lambda e: e.dispatcher.list_notifications(applicant_id, unread))
    if not items:
        typer.echo("No notifications")
        return
    for n in items:
        flags = ("!" if n.actionable else " ") + (" " if n.read else "*")
        typer.echo(f"{n.id}\t{flags}\t{n.type.value}\t{n.workflow_id}\t{n.title}: {n.message}")


@notifications_app.command("mark-read")
def notifications_mark_read(ctx: typer.Context, notification_id: int) -> None:
    """Mark a notification as read."""
    if not _run(ctx, lambda e: e.dispatcher.mark_read(notification_id)):
        typer.echo("Notification not found")
        raise typer.Exit(code=1)
    typer.echo("ok")


# ----------------------------------------------------------------------
# worker


@worker_app.command("run")
def worker_run(
    ctx: typer.Context,
    lifespan: Optional[float] = typer.Option(None, help="Stop after this many seconds"),
    concurrency: Optional[int] = typer.Option(None, help="Maximum concurrent signals"),
) -> None:
    """
    Consume workflow signals from the configured transport.

    Example:
        onboardflow worker run --lifespan 300
    """
    config = _config(ctx)

    async def go(engine: StageStateMachine) -> int:
        worker = WorkflowWorker(engine, get_transport(config), max_concurrency=concurrency)
        await worker.start(lifespan=lifespan)
        return worker.processed

    typer.echo("Starting onboarding worker")
    processed = _run(ctx, go)
    typer.echo(f"Processed {processed} signal(s)")


@app.command("sweep")
def sweep(ctx: typer.Context) -> None:
    """Apply timeout policy to expired decisions and recover stalled workflows."""

    async def go(engine: StageStateMachine):
        expired = await engine.gatekeeper.check_timeouts()
        recovered = await engine.gatekeeper.recover()
        return expired, recovered

    expired, recovered = _run(ctx, go)
    typer.echo(f"Expired: {len(expired)}  Recovered: {len(recovered)}")
    for workflow_id in expired:
        typer.echo(f"timeout\t{workflow_id}")
    for workflow_id in recovered:
        typer.echo(f"recovered\t{workflow_id}")


if __name__ == "__main__":
    app()
