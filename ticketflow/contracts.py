"""Execution state machine and operation result contracts."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Annotated, Any, Awaitable, Generic, List, Literal, Optional, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from .errors import ErrorKind, IllegalTransition

logger = logging.getLogger(__name__)

T = TypeVar("T")


class _State(BaseModel):
    model_config = ConfigDict(frozen=True)

    step: int = Field(default=0, ge=0)

    @property
    def is_terminal(self) -> bool:
        return False

    def advance(self, step_count: int) -> "ExecutionState":
        """Move exactly one step forward in a workflow of ``step_count`` steps."""
        if self.step >= step_count:
            raise IllegalTransition(
                f"step {self.step} is out of range for a {step_count}-step workflow"
            )
        next_step = self.step + 1
        if next_step >= step_count:
            return Completed(step=step_count)
        return InProgress(step=next_step)

    def cancel(self) -> "Cancelled":
        return Cancelled(step=self.step)


class Pending(_State):
    """Execution created but no step completed yet."""

    status: Literal["pending"] = "pending"
    step: Literal[0] = 0


class InProgress(_State):
    """At least one step completed, more remain."""

    status: Literal["in_progress"] = "in_progress"


class Completed(_State):
    """Every step completed. ``step`` equals the workflow's step count."""

    status: Literal["completed"] = "completed"

    @property
    def is_terminal(self) -> bool:
        return True

    def advance(self, step_count: int) -> "ExecutionState":
        raise IllegalTransition("execution is already completed")

    def cancel(self) -> "Cancelled":
        raise IllegalTransition("cannot cancel a completed execution")


class Cancelled(_State):
    """Stopped by an external actor; never resumes."""

    status: Literal["cancelled"] = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return True

    def advance(self, step_count: int) -> "ExecutionState":
        raise IllegalTransition("execution was cancelled")

    def cancel(self) -> "Cancelled":
        raise IllegalTransition("execution is already cancelled")


ExecutionState = Annotated[
    Union[Pending, InProgress, Completed, Cancelled], Field(discriminator="status")
]
ExecutionStatus = Literal["pending", "in_progress", "completed", "cancelled"]

_state_adapter: TypeAdapter[ExecutionState] = TypeAdapter(ExecutionState)


def state_from_row(status: str, current_step: int) -> ExecutionState:
    """Build the tagged state from the flat ``status``/``current_step`` columns."""
    return _state_adapter.validate_python({"status": status, "step": current_step})


# Strong references to running side effects so they are not garbage collected.
_background: set[asyncio.Task] = set()


def schedule_side_effect(
    operation: Awaitable[Any], description: str
) -> "asyncio.Task[bool]":
    """Run ``operation`` in the background and report whether it succeeded.

    The returned task resolves to ``True`` on success and ``False`` when the
    operation raised. Callers may await it or drop it.
    """

    async def _run() -> bool:
        try:
            await operation
        except Exception as e:
            logger.error(f"Side effect '{description}' failed: {e}")
            return False
        logger.debug(f"Side effect '{description}' completed")
        return True

    task = asyncio.ensure_future(_run())
    _background.add(task)
    task.add_done_callback(_background.discard)
    return task


@dataclass
class Outcome(Generic[T]):
    """Result of an engine operation.

    Truthy on success. On failure ``error`` names the category and ``detail``
    carries the diagnostic that was logged.
    """

    value: Optional[T] = None
    error: Optional[ErrorKind] = None
    detail: Optional[str] = None
    effects: List["asyncio.Task[bool]"] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None

    def __bool__(self) -> bool:
        return self.ok

    @classmethod
    def success(
        cls, value: T, effects: Optional[List["asyncio.Task[bool]"]] = None
    ) -> "Outcome[T]":
        return cls(value=value, effects=effects or [])

    @classmethod
    def fail(cls, kind: ErrorKind, detail: str) -> "Outcome[T]":
        return cls(error=kind, detail=detail)

    async def settle(self) -> List[bool]:
        """Wait for all side effects and return their success flags."""
        if not self.effects:
            return []
        return list(await asyncio.gather(*self.effects))
