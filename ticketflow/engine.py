"""Workflow execution engine for ticket routing."""

from __future__ import annotations

import html
import logging
from typing import Any, Callable, Optional

from .contracts import ExecutionState, Outcome, schedule_side_effect
from .definitions import WorkflowRegistry, validate_definition
from .errors import (
    ConcurrencyConflict,
    ErrorKind,
    IllegalTransition,
    TicketflowError,
)
from .notifications import NotificationDispatcher
from .persistence import (
    Workflow,
    WorkflowExecution,
    WorkflowLog,
    WorkflowRepository,
    get_repository,
)

logger = logging.getLogger(__name__)

STEP_COMPLETED = "step_completed"
CANCELLED = "cancelled"

StateStep = Callable[[ExecutionState, int], ExecutionState]


class WorkflowEngine:
    """Creates, advances and cancels per-ticket workflow executions.

    Every operation returns an :class:`Outcome`; store failures are logged and
    reported through ``Outcome.error`` rather than raised. Execution writes are
    conditional on the row version, so concurrent ``advance`` calls against
    the same execution serialise on the store instead of losing updates.
    """

    def __init__(
        self,
        repository: WorkflowRepository | None = None,
        dispatcher: NotificationDispatcher | None = None,
        registry: WorkflowRegistry | None = None,
    ) -> None:
        self._repository = repository or get_repository()
        self._dispatcher = dispatcher
        self.registry = registry or WorkflowRegistry(self._repository)

    def _failed(self, operation: str, error: TicketflowError) -> Outcome[Any]:
        if error.kind in (ErrorKind.NOT_FOUND, ErrorKind.ILLEGAL_TRANSITION):
            logger.warning(f"{operation} rejected: {error}")
        else:
            logger.error(f"{operation} failed: {error}")
        return Outcome.fail(error.kind, str(error))

    # ------------------------------------------------------------------
    # Definitions
    async def resolve_workflow_for_category(self, category_id: str) -> Outcome[Workflow]:
        """Return the active workflow bound to ``category_id``."""
        try:
            workflow = await self.registry.for_category(category_id)
        except TicketflowError as e:
            return self._failed(f"Resolve workflow for category {category_id}", e)
        return Outcome.success(workflow)

    async def create_workflow_definition(self, workflow: Workflow) -> Outcome[str]:
        """Insert ``workflow`` with all of its steps, or nothing."""
        try:
            validate_definition(workflow)
            created = await self.registry.create(workflow)
        except TicketflowError as e:
            return self._failed(f"Create workflow {workflow.name!r}", e)
        return Outcome.success(created.id)

    # ------------------------------------------------------------------
    # Executions
    async def start_execution(
        self,
        workflow_id: str,
        ticket_id: str,
        assigned_to: Optional[str] = None,
        data: Optional[dict[str, Any]] = None,
    ) -> Outcome[str]:
        """Create a pending execution at step 0 for ``ticket_id``.

        Existing executions for the same ticket are not checked; callers that
        want one execution per ticket must call :meth:`fetch_execution` first.
        """
        execution = WorkflowExecution(
            workflow_id=workflow_id,
            ticket_id=ticket_id,
            assigned_to=assigned_to,
            data=data or {},
        )
        try:
            created = await self._repository.create_execution(execution)
        except TicketflowError as e:
            return self._failed(f"Start workflow {workflow_id} for ticket {ticket_id}", e)
        logger.info(
            f"Started execution {created.id} of workflow {workflow_id} for ticket {ticket_id}"
        )
        return Outcome.success(created.id)

    async def fetch_execution(self, ticket_id: str) -> Outcome[WorkflowExecution]:
        """Return the one execution for ``ticket_id`` joined with its workflow."""
        try:
            rows = await self._repository.find_executions(ticket_id=ticket_id)
        except TicketflowError as e:
            return self._failed(f"Fetch execution for ticket {ticket_id}", e)
        if len(rows) != 1:
            detail = f"Expected one execution for ticket {ticket_id}, found {len(rows)}"
            logger.warning(detail)
            return Outcome.fail(ErrorKind.NOT_FOUND, detail)
        return Outcome.success(rows[0])

    async def list_executions(
        self, ticket_id: Optional[str] = None
    ) -> Outcome[list[WorkflowExecution]]:
        try:
            rows = await self._repository.find_executions(ticket_id=ticket_id)
        except TicketflowError as e:
            return self._failed("List executions", e)
        return Outcome.success(rows)

    async def list_logs(self, execution_id: str) -> Outcome[list[WorkflowLog]]:
        try:
            logs = await self._repository.list_logs(execution_id)
        except TicketflowError as e:
            return self._failed(f"List logs of execution {execution_id}", e)
        return Outcome.success(logs)

    async def _transition(
        self, operation: str, execution_id: str, step: StateStep
    ) -> Outcome[tuple[WorkflowExecution, WorkflowExecution]]:
        """Read, compute and conditionally write one state change.

        Loops only when the conditional write loses to another writer, which
        means the row has already progressed; the next read sees that progress.
        """
        while True:
            try:
                execution = await self._repository.get_execution(execution_id)
            except TicketflowError as e:
                return self._failed(operation, e)
            if execution is None:
                detail = f"Execution {execution_id} not found"
                logger.warning(f"{operation} rejected: {detail}")
                return Outcome.fail(ErrorKind.NOT_FOUND, detail)
            if execution.workflow is None:
                detail = f"Workflow {execution.workflow_id} of execution {execution_id} not found"
                logger.warning(f"{operation} rejected: {detail}")
                return Outcome.fail(ErrorKind.NOT_FOUND, detail)

            try:
                next_state = step(execution.state, len(execution.workflow.steps))
            except ValueError as e:
                # stored status/step pair is not a valid state
                return self._failed(operation, IllegalTransition(str(e)))
            except IllegalTransition as e:
                return self._failed(operation, e)

            try:
                updated = await self._repository.update_execution(
                    execution_id,
                    execution.version,
                    {"current_step": next_state.step, "status": next_state.status},
                )
            except ConcurrencyConflict as e:
                logger.debug(f"{operation}: {e}; re-reading")
                continue
            except TicketflowError as e:
                return self._failed(operation, e)
            return Outcome.success((execution, updated))

    async def _append_log(self, entry: WorkflowLog) -> None:
        try:
            await self._repository.append_log(entry)
        except TicketflowError as e:
            # the transition already happened; the audit trail may under-report
            logger.error(
                f"Failed to log '{entry.action}' for execution "
                f"{entry.workflow_execution_id} at step {entry.step_number}: {e}"
            )

    def _notify(self, to: Optional[str], subject: str, body: str, severity: str) -> list:
        if not to or self._dispatcher is None:
            return []
        send = self._dispatcher.send(
            to=to,
            subject=subject,
            category="default",
            body_html=f"<p>{html.escape(body)}</p>",
            severity=severity,  # type: ignore[arg-type]
        )
        return [schedule_side_effect(send, f"notify {to}: {subject}")]

    async def advance(
        self,
        execution_id: str,
        notes: Optional[str] = None,
        user_id: Optional[str] = None,
        notify: Optional[str] = None,
    ) -> Outcome[WorkflowExecution]:
        """Complete the current step and move exactly one step forward.

        Args:
            execution_id: Execution to advance.
            notes: Log notes; defaults to ``"Completed step: <step name>"``.
            user_id: Actor recorded on the log entry.
            notify: Optional email address told about the progress. Delivery
                runs in the background and is exposed via ``Outcome.effects``.

        Returns:
            The updated execution on success. Completed or cancelled
            executions are rejected with ``ILLEGAL_TRANSITION`` and left as is.
        """
        result = await self._transition(
            f"Advance execution {execution_id}",
            execution_id,
            lambda state, count: state.advance(count),
        )
        if not result:
            return Outcome.fail(result.error, result.detail)
        before, updated = result.value
        workflow = before.workflow
        finished = workflow.steps[before.current_step]

        await self._append_log(
            WorkflowLog(
                workflow_execution_id=execution_id,
                step_number=before.current_step,
                action=STEP_COMPLETED,
                notes=notes or f"Completed step: {finished.name}",
                user_id=user_id,
            )
        )
        logger.info(
            f"Execution {execution_id} completed step {before.current_step} "
            f"({finished.name}); now {updated.status} at step {updated.current_step}"
        )

        if updated.status == "completed":
            effects = self._notify(
                notify,
                f"Workflow completed: {workflow.name}",
                f"Ticket {updated.ticket_id} finished all {len(workflow.steps)} steps "
                f"of {workflow.name}.",
                "success",
            )
        else:
            upcoming = workflow.steps[updated.current_step]
            effects = self._notify(
                notify,
                f"Step completed: {finished.name}",
                f"Ticket {updated.ticket_id} moved to step "
                f"{updated.current_step + 1}/{len(workflow.steps)}: {upcoming.name}.",
                "info",
            )
        return Outcome.success(updated, effects)

    async def cancel(
        self,
        execution_id: str,
        notes: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> Outcome[WorkflowExecution]:
        """Force a pending or in-progress execution into ``cancelled``."""
        result = await self._transition(
            f"Cancel execution {execution_id}",
            execution_id,
            lambda state, count: state.cancel(),
        )
        if not result:
            return Outcome.fail(result.error, result.detail)
        before, updated = result.value
        await self._append_log(
            WorkflowLog(
                workflow_execution_id=execution_id,
                step_number=before.current_step,
                action=CANCELLED,
                notes=notes or "Workflow cancelled",
                user_id=user_id,
            )
        )
        logger.info(f"Execution {execution_id} cancelled at step {before.current_step}")
        return Outcome.success(updated)

