"""Keyword matching for chatbot answers and automatic ticket replies.

Two strategies with deliberately different selection rules:

* :class:`BestScoreStrategy` scores every candidate and keeps the best one.
* :class:`FirstMatchStrategy` walks candidates in priority order and stops at
  the first hit.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Generic, Iterable, List, Optional, Sequence, TypeVar

from .contracts import schedule_side_effect
from .errors import TicketflowError
from .persistence import AutoResponse, ChatbotResponse, WorkflowRepository

logger = logging.getLogger(__name__)

C = TypeVar("C")

KEYWORD_WEIGHT = 2
QUESTION_WEIGHT = 3


def keyword_hits(text: str, keywords: Iterable[str]) -> int:
    """Count keywords that occur in ``text`` as case-insensitive substrings.

    Empty keywords never count, although an empty string is a substring of
    any text.
    """
    lowered = text.lower()
    return sum(1 for keyword in keywords if keyword and keyword.lower() in lowered)


def chatbot_score(text: str, candidate: ChatbotResponse) -> int:
    """Additive score of ``candidate`` against ``text``.

    +2 for each keyword found in the text, +3 when the text and the
    candidate's question contain one another.
    """
    score = KEYWORD_WEIGHT * keyword_hits(text, candidate.keywords)
    query = text.lower()
    question = candidate.question.lower()
    if query in question or question in query:
        score += QUESTION_WEIGHT
    return score


@dataclass
class ScoredMatch(Generic[C]):
    candidate: C
    score: int


class BestScoreStrategy:
    """Pick the highest-scoring chatbot response with a score above zero.

    Ties go to the candidate seen first, so the result depends on the order
    the candidates were supplied in (insertion order for every repository).
    Blank text selects nothing; it would otherwise be contained in every
    question.
    """

    def select(
        self, text: str, candidates: Sequence[ChatbotResponse]
    ) -> Optional[ScoredMatch[ChatbotResponse]]:
        if not text.strip():
            return None
        best: Optional[ScoredMatch[ChatbotResponse]] = None
        for candidate in candidates:
            if not candidate.is_active:
                continue
            score = chatbot_score(text, candidate)
            if score > 0 and (best is None or score > best.score):
                best = ScoredMatch(candidate, score)
        return best


class FirstMatchStrategy:
    """Return the first auto response, by ascending priority, that applies.

    A response applies when any trigger keyword occurs in the text or when
    its trigger categories contain ``category``.
    """

    def select(
        self,
        text: str,
        candidates: Sequence[AutoResponse],
        category: Optional[str] = None,
    ) -> Optional[AutoResponse]:
        ordered = sorted(
            (c for c in candidates if c.is_active), key=lambda c: c.priority
        )
        for candidate in ordered:
            if keyword_hits(text, candidate.trigger_keywords):
                return candidate
            if category and category in candidate.trigger_categories:
                return candidate
        return None


@dataclass
class ChatbotMatch:
    """A chatbot answer plus the pending usage counter update."""

    response: ChatbotResponse
    score: int
    usage_recorded: Optional["asyncio.Task[bool]"] = field(default=None, repr=False)


class ChatbotResponder:
    """Answers free-text questions from the stored chatbot responses."""

    def __init__(
        self,
        repository: WorkflowRepository,
        strategy: Optional[BestScoreStrategy] = None,
    ) -> None:
        self._repository = repository
        self._strategy = strategy or BestScoreStrategy()

    async def find_best_response(self, text: str) -> Optional[ChatbotMatch]:
        """Return the best answer for ``text``, or ``None``.

        A match schedules a +1 on the response's usage counter. The update runs
        in the background; await ``match.usage_recorded`` to wait for it.
        """
        try:
            candidates = await self._repository.list_chatbot_responses(active_only=True)
        except TicketflowError as e:
            logger.error(f"Error fetching chatbot responses: {e}")
            return None

        best = self._strategy.select(text, candidates)
        if best is None:
            return None
        usage = schedule_side_effect(
            self._repository.increment_chatbot_usage(best.candidate.id),
            f"usage count of chatbot response {best.candidate.id}",
        )
        logger.debug(f"Chatbot matched response {best.candidate.id} with score {best.score}")
        return ChatbotMatch(best.candidate, best.score, usage)

    async def list_responses(self) -> List[ChatbotResponse]:
        """All responses, most used first."""
        try:
            return await self._repository.list_chatbot_responses(
                active_only=False, by_usage=True
            )
        except TicketflowError as e:
            logger.error(f"Error fetching chatbot responses: {e}")
            return []

    async def create_response(self, response: ChatbotResponse) -> bool:
        try:
            await self._repository.create_chatbot_response(
                response.model_copy(update={"usage_count": 0})
            )
        except TicketflowError as e:
            logger.error(f"Error creating chatbot response: {e}")
            return False
        return True


class AutoResponder:
    """Selects the automatic reply for a newly created ticket."""

    def __init__(
        self,
        repository: WorkflowRepository,
        strategy: Optional[FirstMatchStrategy] = None,
    ) -> None:
        self._repository = repository
        self._strategy = strategy or FirstMatchStrategy()

    async def find_matching_response(
        self, title: str, description: str, category: Optional[str] = None
    ) -> Optional[AutoResponse]:
        try:
            candidates = await self._repository.list_auto_responses(active_only=True)
        except TicketflowError as e:
            logger.error(f"Error fetching auto responses: {e}")
            return None
        return self._strategy.select(f"{title} {description}", candidates, category)

    async def list_responses(self) -> List[AutoResponse]:
        try:
            return await self._repository.list_auto_responses(active_only=False)
        except TicketflowError as e:
            logger.error(f"Error fetching auto responses: {e}")
            return []

    async def create_response(self, response: AutoResponse) -> bool:
        try:
            await self._repository.create_auto_response(response)
        except TicketflowError as e:
            logger.error(f"Error creating auto response: {e}")
            return False
        return True

    async def update_response(self, response_id: str, changes: dict) -> bool:
        try:
            await self._repository.update_auto_response(response_id, changes)
        except TicketflowError as e:
            logger.error(f"Error updating auto response {response_id}: {e}")
            return False
        return True

    async def delete_response(self, response_id: str) -> bool:
        try:
            await self._repository.delete_auto_response(response_id)
        except TicketflowError as e:
            logger.error(f"Error deleting auto response {response_id}: {e}")
            return False
        return True
