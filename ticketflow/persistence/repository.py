"""Repository abstraction for ticketing record persistence."""

from __future__ import annotations

from typing import Any, Protocol

from .models import (
    AutoResponse,
    ChatbotResponse,
    Workflow,
    WorkflowExecution,
    WorkflowLog,
)


class WorkflowRepository(Protocol):
    """Protocol for record store backends.

    Implementations raise :class:`~ticketflow.errors.ValidationRejected` when a
    write violates a constraint, :class:`~ticketflow.errors.NotFound` when a
    keyed row is missing, and :class:`~ticketflow.errors.TransientIOFailure`
    when the store itself fails.
    """

    # Workflow definitions -------------------------------------------------
    async def create_workflow(self, workflow: Workflow) -> Workflow:
        """Insert a workflow with its full step sequence in one write."""

    async def create_workflows(self, workflows: list[Workflow]) -> list[Workflow]:
        """Insert several workflows; all or none are persisted."""

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        """Retrieve a workflow by id, active or not."""

    async def find_workflows(
        self, category_id: str | None = None, active_only: bool = True
    ) -> list[Workflow]:
        """Return workflows ordered by name, optionally bound to a category."""

    # Executions -----------------------------------------------------------
    async def create_execution(self, execution: WorkflowExecution) -> WorkflowExecution:
        """Persist a new execution. Rejects dangling workflow references."""

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        """Retrieve an execution joined with its workflow."""

    async def find_executions(
        self, ticket_id: str | None = None
    ) -> list[WorkflowExecution]:
        """Return executions joined with their workflows, newest first."""

    async def update_execution(
        self, execution_id: str, expected_version: int, changes: dict[str, Any]
    ) -> WorkflowExecution:
        """Apply ``changes`` only if the stored version equals ``expected_version``.

        Bumps the version on success. Raises ``ConcurrencyConflict`` when the
        row has moved on, ``NotFound`` when it does not exist.
        """

    # Audit log ------------------------------------------------------------
    async def append_log(self, entry: WorkflowLog) -> WorkflowLog:
        """Append an immutable log entry."""

    async def list_logs(self, execution_id: str) -> list[WorkflowLog]:
        """Return log entries for an execution ordered by step, then insertion."""

    # Matcher candidates ---------------------------------------------------
    async def create_chatbot_response(self, response: ChatbotResponse) -> ChatbotResponse:
        """Persist a chatbot response."""

    async def list_chatbot_responses(
        self, active_only: bool = True, by_usage: bool = False
    ) -> list[ChatbotResponse]:
        """Return chatbot responses in insertion order, or by usage descending."""

    async def increment_chatbot_usage(self, response_id: str) -> None:
        """Atomically add one to a response's usage counter."""

    async def create_auto_response(self, response: AutoResponse) -> AutoResponse:
        """Persist an auto response."""

    async def list_auto_responses(self, active_only: bool = True) -> list[AutoResponse]:
        """Return auto responses by ascending priority, insertion order on ties."""

    async def update_auto_response(
        self, response_id: str, changes: dict[str, Any]
    ) -> AutoResponse:
        """Patch an auto response."""

    async def delete_auto_response(self, response_id: str) -> None:
        """Remove an auto response."""
