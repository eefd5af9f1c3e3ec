"""In-memory implementation of the workflow repository."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List

from pydantic import ValidationError

from ..errors import ConcurrencyConflict, NotFound, ValidationRejected
from .models import (
    AutoResponse,
    ChatbotResponse,
    Workflow,
    WorkflowExecution,
    WorkflowLog,
)
from .repository import WorkflowRepository

EXECUTION_MUTABLE_FIELDS = frozenset({"current_step", "status", "assigned_to", "data"})
AUTO_RESPONSE_MUTABLE_FIELDS = frozenset(
    {
        "name",
        "trigger_keywords",
        "trigger_categories",
        "response_template",
        "is_active",
        "priority",
    }
)


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store ticketing records in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Rows are copied on the way in and
    out so callers never hold a reference to stored state.
    """

    def __init__(self) -> None:
        self._workflows: Dict[str, Workflow] = {}
        self._executions: Dict[str, WorkflowExecution] = {}
        self._logs: List[WorkflowLog] = []
        self._chatbot: Dict[str, ChatbotResponse] = {}
        self._auto: Dict[str, AutoResponse] = {}
        self._log_id = 0

    # ------------------------------------------------------------------
    # Workflow definitions
    def _check_workflow(self, workflow: Workflow) -> None:
        if not workflow.steps:
            raise ValidationRejected(f"Workflow {workflow.name!r} has no steps")
        if workflow.id in self._workflows:
            raise ValidationRejected(f"Workflow {workflow.id} already exists")

    async def create_workflow(self, workflow: Workflow) -> Workflow:
        self._check_workflow(workflow)
        self._workflows[workflow.id] = workflow.model_copy(deep=True)
        return workflow.model_copy(deep=True)

    async def create_workflows(self, workflows: list[Workflow]) -> list[Workflow]:
        seen: set[str] = set()
        for workflow in workflows:
            self._check_workflow(workflow)
            if workflow.id in seen:
                raise ValidationRejected(f"Workflow {workflow.id} listed twice")
            seen.add(workflow.id)
        for workflow in workflows:
            self._workflows[workflow.id] = workflow.model_copy(deep=True)
        return [w.model_copy(deep=True) for w in workflows]

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        wf = self._workflows.get(workflow_id)
        return wf.model_copy(deep=True) if wf else None

    async def find_workflows(
        self, category_id: str | None = None, active_only: bool = True
    ) -> list[Workflow]:
        rows = [
            wf
            for wf in self._workflows.values()
            if (not active_only or wf.is_active)
            and (category_id is None or wf.category_id == category_id)
        ]
        rows.sort(key=lambda wf: wf.name)
        return [wf.model_copy(deep=True) for wf in rows]

    # ------------------------------------------------------------------
    # Executions
    def _joined(self, execution: WorkflowExecution) -> WorkflowExecution:
        joined = execution.model_copy(deep=True)
        wf = self._workflows.get(execution.workflow_id)
        joined.workflow = wf.model_copy(deep=True) if wf else None
        return joined

    async def create_execution(self, execution: WorkflowExecution) -> WorkflowExecution:
        if execution.workflow_id not in self._workflows:
            raise ValidationRejected(
                f"Workflow {execution.workflow_id} does not exist"
            )
        if execution.id in self._executions:
            raise ValidationRejected(f"Execution {execution.id} already exists")
        stored = execution.model_copy(deep=True, update={"workflow": None})
        self._executions[stored.id] = stored
        return self._joined(stored)

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        execution = self._executions.get(execution_id)
        return self._joined(execution) if execution else None

    async def find_executions(
        self, ticket_id: str | None = None
    ) -> list[WorkflowExecution]:
        rows = [
            ex
            for ex in self._executions.values()
            if ticket_id is None or ex.ticket_id == ticket_id
        ]
        # dicts keep insertion order; reverse it for newest first on equal timestamps
        rows = list(reversed(rows))
        rows.sort(key=lambda ex: ex.created_at, reverse=True)
        return [self._joined(ex) for ex in rows]

    async def update_execution(
        self, execution_id: str, expected_version: int, changes: dict[str, Any]
    ) -> WorkflowExecution:
        unknown = set(changes) - EXECUTION_MUTABLE_FIELDS
        if unknown:
            raise ValidationRejected(f"Cannot update fields: {sorted(unknown)}")
        current = self._executions.get(execution_id)
        if current is None:
            raise NotFound(f"Execution {execution_id} not found")
        if current.version != expected_version:
            raise ConcurrencyConflict(
                f"Execution {execution_id} is at version {current.version}, "
                f"expected {expected_version}"
            )
        data = current.model_dump()
        data.update(changes)
        data["version"] = current.version + 1
        data["updated_at"] = datetime.now(timezone.utc)
        try:
            updated = WorkflowExecution.model_validate(data)
        except ValidationError as e:
            raise ValidationRejected(str(e)) from e
        self._executions[execution_id] = updated
        return self._joined(updated)

    # ------------------------------------------------------------------
    # Audit log
    async def append_log(self, entry: WorkflowLog) -> WorkflowLog:
        if entry.workflow_execution_id not in self._executions:
            raise ValidationRejected(
                f"Execution {entry.workflow_execution_id} does not exist"
            )
        self._log_id += 1
        stored = entry.model_copy(update={"id": self._log_id})
        self._logs.append(stored)
        return stored.model_copy()

    async def list_logs(self, execution_id: str) -> list[WorkflowLog]:
        rows = [log for log in self._logs if log.workflow_execution_id == execution_id]
        rows.sort(key=lambda log: (log.step_number, log.id))
        return [log.model_copy() for log in rows]

    # ------------------------------------------------------------------
    # Matcher candidates
    async def create_chatbot_response(self, response: ChatbotResponse) -> ChatbotResponse:
        if response.id in self._chatbot:
            raise ValidationRejected(f"Chatbot response {response.id} already exists")
        self._chatbot[response.id] = response.model_copy(deep=True)
        return response.model_copy(deep=True)

    async def list_chatbot_responses(
        self, active_only: bool = True, by_usage: bool = False
    ) -> list[ChatbotResponse]:
        rows = [r for r in self._chatbot.values() if not active_only or r.is_active]
        if by_usage:
            rows.sort(key=lambda r: r.usage_count, reverse=True)
        return [r.model_copy(deep=True) for r in rows]

    async def increment_chatbot_usage(self, response_id: str) -> None:
        response = self._chatbot.get(response_id)
        if response is None:
            raise NotFound(f"Chatbot response {response_id} not found")
        response.usage_count += 1

    async def create_auto_response(self, response: AutoResponse) -> AutoResponse:
        if response.id in self._auto:
            raise ValidationRejected(f"Auto response {response.id} already exists")
        self._auto[response.id] = response.model_copy(deep=True)
        return response.model_copy(deep=True)

    async def list_auto_responses(self, active_only: bool = True) -> list[AutoResponse]:
        rows = [r for r in self._auto.values() if not active_only or r.is_active]
        rows.sort(key=lambda r: r.priority)
        return [r.model_copy(deep=True) for r in rows]

    async def update_auto_response(
        self, response_id: str, changes: dict[str, Any]
    ) -> AutoResponse:
        unknown = set(changes) - AUTO_RESPONSE_MUTABLE_FIELDS
        if unknown:
            raise ValidationRejected(f"Cannot update fields: {sorted(unknown)}")
        current = self._auto.get(response_id)
        if current is None:
            raise NotFound(f"Auto response {response_id} not found")
        try:
            updated = AutoResponse.model_validate({**current.model_dump(), **changes})
        except ValidationError as e:
            raise ValidationRejected(str(e)) from e
        self._auto[response_id] = updated
        return updated.model_copy(deep=True)

    async def delete_auto_response(self, response_id: str) -> None:
        if self._auto.pop(response_id, None) is None:
            raise NotFound(f"Auto response {response_id} not found")
