"""Command line interface for administering ticket workflows."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

import typer

from ticketflow import ChatbotResponder, WorkflowEngine, get_dispatcher, get_repository
from ticketflow.contracts import Outcome
from ticketflow.definitions import WorkflowRegistry
from ticketflow.errors import TicketflowError

app = typer.Typer(help="CLI for ticketflow workflows")

# Command groups
workflow_app = typer.Typer(help="Commands for managing workflow definitions")
execution_app = typer.Typer(help="Commands for managing ticket executions")
chatbot_app = typer.Typer(help="Commands for the support chatbot")

app.add_typer(workflow_app, name="workflow")
app.add_typer(execution_app, name="execution")
app.add_typer(chatbot_app, name="chatbot")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Ticketflow CLI entry point."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _fail(outcome: Outcome) -> None:
    typer.secho(f"Error ({outcome.error.value}): {outcome.detail}", fg=typer.colors.RED)
    raise typer.Exit(code=1)


async def _run_with_engine(operation):
    dispatcher = get_dispatcher()
    engine = WorkflowEngine(get_repository(), dispatcher=dispatcher)
    try:
        outcome = await operation(engine)
        await outcome.settle()
        return outcome
    finally:
        if dispatcher is not None:
            await dispatcher.close()


@workflow_app.command("load")
def workflow_load(path: Path) -> None:
    """
    Create workflow definitions from a YAML file.

    The file holds a list of workflows (or a mapping with a ``workflows`` key),
    each with a name, optional category_id and a non-empty list of steps.

    Example:
        ticketflow workflow load ./workflows.yaml
    """
    if not path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    registry = WorkflowRegistry(get_repository())
    try:
        workflows = registry.load_file(path)
        created = asyncio.run(registry.create_many(workflows))
    except TicketflowError as e:
        typer.secho(f"Could not load workflows: {e}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    for wf in created:
        typer.echo(f"{wf.id}\t{wf.name}\t{len(wf.steps)} steps")


@workflow_app.command("list")
def workflow_list() -> None:
    """List active workflow definitions."""
    registry = WorkflowRegistry(get_repository())
    workflows = asyncio.run(registry.list_active())
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        category = wf.category_id or "-"
        typer.echo(f"{wf.id}\t{wf.name}\t{category}\t{len(wf.steps)} steps")


@execution_app.command("start")
def execution_start(
    workflow_id: str,
    ticket_id: str,
    assigned_to: Optional[str] = typer.Option(None, help="Actor the execution is assigned to"),
) -> None:
    """Start a workflow execution for a ticket and print its id."""
    outcome = asyncio.run(
        _run_with_engine(
            lambda engine: engine.start_execution(
                workflow_id, ticket_id, assigned_to=assigned_to
            )
        )
    )
    if not outcome:
        _fail(outcome)
    typer.echo(outcome.value)


@execution_app.command("show")
def execution_show(ticket_id: str) -> None:
    """
    Show the execution of a ticket and where it stands in its workflow.

    Example:
        ticketflow execution show T-1042
        # Output: Execution 5f0c...: in_progress (step 2/3)
        #         [x] Triage (auto)
        #         [x] Manager approval (approval, manager)
        #         [ ] Fulfilment (manual, technician)
    """
    outcome = asyncio.run(_run_with_engine(lambda engine: engine.fetch_execution(ticket_id)))
    if not outcome:
        _fail(outcome)
    ex = outcome.value
    steps = ex.workflow.steps if ex.workflow else []
    shown_step = min(ex.current_step + 1, len(steps))
    typer.echo(f"Execution {ex.id}: {ex.status} (step {shown_step}/{len(steps)})")
    for index, step in enumerate(steps):
        mark = "x" if index < ex.current_step else " "
        details = step.kind + (f", {step.role}" if step.role else "")
        typer.echo(f"  [{mark}] {step.name} ({details})")


@execution_app.command("advance")
def execution_advance(
    execution_id: str,
    notes: Optional[str] = typer.Option(None, help="Notes recorded on the log entry"),
    user: Optional[str] = typer.Option(None, help="Actor completing the step"),
    notify: Optional[str] = typer.Option(None, help="Email address to notify"),
) -> None:
    """Complete the current step of an execution."""
    outcome = asyncio.run(
        _run_with_engine(
            lambda engine: engine.advance(
                execution_id, notes=notes, user_id=user, notify=notify
            )
        )
    )
    if not outcome:
        _fail(outcome)
    ex = outcome.value
    typer.echo(f"Execution {ex.id}: {ex.status} at step {ex.current_step}")


@execution_app.command("cancel")
def execution_cancel(
    execution_id: str,
    notes: Optional[str] = typer.Option(None, help="Reason for cancelling"),
    user: Optional[str] = typer.Option(None, help="Actor cancelling the execution"),
) -> None:
    """Cancel a pending or in-progress execution."""
    outcome = asyncio.run(
        _run_with_engine(
            lambda engine: engine.cancel(execution_id, notes=notes, user_id=user)
        )
    )
    if not outcome:
        _fail(outcome)
    typer.echo(f"Execution {outcome.value.id}: {outcome.value.status}")


@execution_app.command("logs")
def execution_logs(execution_id: str) -> None:
    """Print the audit log of an execution."""
    outcome = asyncio.run(_run_with_engine(lambda engine: engine.list_logs(execution_id)))
    if not outcome:
        _fail(outcome)
    if not outcome.value:
        typer.echo("No log entries")
        return
    for entry in outcome.value:
        typer.echo(
            f"{entry.created_at:%Y-%m-%d %H:%M}\tstep {entry.step_number}\t"
            f"{entry.action}\t{entry.notes or ''}"
        )


@chatbot_app.command("ask")
def chatbot_ask(question: str) -> None:
    """Answer a question from the stored chatbot responses."""

    async def _ask():
        match = await ChatbotResponder(get_repository()).find_best_response(question)
        if match is not None and match.usage_recorded is not None:
            await match.usage_recorded
        return match

    match = asyncio.run(_ask())
    if match is None:
        typer.echo("No answer found")
        raise typer.Exit(code=1)
    typer.echo(match.response.answer)


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
