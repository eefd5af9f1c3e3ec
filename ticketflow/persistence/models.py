"""Data models for persisted ticketing records."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..contracts import ExecutionState, ExecutionStatus, state_from_row

StepKind = Literal["auto", "manual", "approval"]
StepRole = Literal["admin", "technician", "manager", "user"]


def _new_id() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowStep(BaseModel):
    """One stage of a workflow. Kind is descriptive only."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str
    kind: StepKind = Field(default="manual", alias="type")
    role: Optional[StepRole] = None
    description: str = ""


class Workflow(BaseModel):
    """Named, ordered template of steps a ticket can be routed through."""

    id: str = Field(default_factory=_new_id)
    name: str
    description: Optional[str] = None
    category_id: Optional[str] = None
    steps: List[WorkflowStep] = Field(default_factory=list)
    is_active: bool = True
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


class WorkflowExecution(BaseModel):
    """One ticket's progress through a workflow."""

    id: str = Field(default_factory=_new_id)
    workflow_id: str
    ticket_id: str
    current_step: int = 0
    status: ExecutionStatus = "pending"
    assigned_to: Optional[str] = None
    data: dict[str, Any] = Field(default_factory=dict)
    version: int = 1
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)
    workflow: Optional[Workflow] = None

    @property
    def state(self) -> ExecutionState:
        return state_from_row(self.status, self.current_step)


class WorkflowLog(BaseModel):
    """Append-only audit entry for an execution."""

    id: Optional[int] = None
    workflow_execution_id: str
    step_number: int
    action: str
    notes: Optional[str] = None
    user_id: Optional[str] = None
    created_at: datetime = Field(default_factory=_now)


class ChatbotResponse(BaseModel):
    """Canned answer selected by keyword score."""

    id: str = Field(default_factory=_new_id)
    question: str
    answer: str
    keywords: List[str] = Field(default_factory=list)
    category: Optional[str] = None
    usage_count: int = 0
    is_active: bool = True


class AutoResponse(BaseModel):
    """Reply template triggered by keywords or ticket category."""

    id: str = Field(default_factory=_new_id)
    name: str
    trigger_keywords: List[str] = Field(default_factory=list)
    trigger_categories: List[str] = Field(default_factory=list)
    response_template: str
    is_active: bool = True
    priority: int = 0
