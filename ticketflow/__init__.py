"""Ticketflow: workflow routing and keyword matching for IT support tickets."""

from .contracts import Outcome
from .definitions import WorkflowRegistry
from .engine import WorkflowEngine
from .errors import ErrorKind
from .matching import AutoResponder, BestScoreStrategy, ChatbotResponder, FirstMatchStrategy
from .notifications import get_dispatcher
from .persistence import (
    Workflow,
    WorkflowExecution,
    WorkflowLog,
    WorkflowStep,
    get_repository,
)

__version__ = "0.1.0"
__all__ = [
    "AutoResponder",
    "BestScoreStrategy",
    "ChatbotResponder",
    "ErrorKind",
    "FirstMatchStrategy",
    "Outcome",
    "Workflow",
    "WorkflowEngine",
    "WorkflowExecution",
    "WorkflowLog",
    "WorkflowRegistry",
    "WorkflowStep",
    "get_dispatcher",
    "get_repository",
]
