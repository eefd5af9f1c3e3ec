"""Workflow definition registry."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict

import yaml
from pydantic import ValidationError

from .errors import NotFound, ValidationRejected
from .persistence import Workflow, WorkflowRepository

logger = logging.getLogger(__name__)


def validate_definition(workflow: Workflow) -> None:
    """Reject definitions that can never be executed."""
    if not workflow.steps:
        raise ValidationRejected(f"Workflow {workflow.name!r} must have at least one step")
    names = [step.name for step in workflow.steps]
    if any(not name.strip() for name in names):
        raise ValidationRejected(f"Workflow {workflow.name!r} has an unnamed step")


class WorkflowRegistry:
    """Read access to workflow definitions, plus creation.

    Definitions fetched by id are cached: steps never change once a workflow
    is referenced by an execution. Category lookups and listings always hit
    the repository because ``is_active`` may be toggled.
    """

    def __init__(self, repository: WorkflowRepository) -> None:
        self._repository = repository
        self._cache: Dict[str, Workflow] = {}

    async def get(self, workflow_id: str) -> Workflow:
        cached = self._cache.get(workflow_id)
        if cached is not None:
            return cached.model_copy(deep=True)
        workflow = await self._repository.get_workflow(workflow_id)
        if workflow is None:
            raise NotFound(f"Workflow {workflow_id} not found")
        self._cache[workflow_id] = workflow.model_copy(deep=True)
        return workflow

    async def for_category(self, category_id: str) -> Workflow:
        """Return the single active workflow bound to ``category_id``."""
        matches = await self._repository.find_workflows(category_id=category_id)
        if not matches:
            raise NotFound(f"No active workflow for category {category_id}")
        if len(matches) > 1:
            raise NotFound(
                f"{len(matches)} active workflows bound to category {category_id}; "
                "expected exactly one"
            )
        return matches[0]

    async def list_active(self) -> list[Workflow]:
        return await self._repository.find_workflows()

    async def create(self, workflow: Workflow) -> Workflow:
        validate_definition(workflow)
        created = await self._repository.create_workflow(workflow)
        logger.info(f"Created workflow {created.name!r} ({created.id})")
        return created

    async def create_many(self, workflows: list[Workflow]) -> list[Workflow]:
        for workflow in workflows:
            validate_definition(workflow)
        created = await self._repository.create_workflows(workflows)
        logger.info(f"Created {len(created)} workflows")
        return created

    @staticmethod
    def load_file(path: str | Path) -> list[Workflow]:
        """Parse workflow definitions from a YAML document.

        The document is either a list of workflows or a mapping with a
        ``workflows`` key. Steps accept ``type`` as an alias for ``kind``.
        """
        with open(path) as f:
            data = yaml.safe_load(f) or []
        if isinstance(data, dict):
            data = data.get("workflows", [])
        if not isinstance(data, list):
            raise ValidationRejected(f"{path}: expected a list of workflows")
        try:
            workflows = [Workflow.model_validate(item) for item in data]
        except ValidationError as e:
            raise ValidationRejected(f"{path}: {e}") from e
        for workflow in workflows:
            validate_definition(workflow)
        return workflows
