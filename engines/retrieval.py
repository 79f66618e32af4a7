"""Context retriever: advisory exemplars from the similarity store."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Mapping, Optional, Tuple

from pydantic import ValidationError

from config import OrchestratorConfig
from engines.base import PipelinePhase, PipelineState, Stage
from rag import SimilarityStore
from schemas import GenerationRequest, RetrievedExemplar

logger = logging.getLogger(__name__)


def build_query(request: GenerationRequest, category: str) -> Tuple[str, Dict[str, Any]]:
    """Query text and metadata filters for one request."""

    query = f"{category} grade {request.grade_level} {request.difficulty} {request.topic}"
    filters = {"grade": request.grade_level, "topic": category, "difficulty": request.difficulty}
    return query, filters


class ContextRetriever(Stage):
    """Wrap a ``SimilarityStore`` with a timeout and an empty-list fallback."""

    name = "retrieve"

    def __init__(self, store: Optional[SimilarityStore], config: OrchestratorConfig) -> None:
        self.store = store
        self.config = config

    async def _search(
        self,
        query_text: str,
        filters: Mapping[str, Any],
        k: int,
    ) -> Tuple[List[RetrievedExemplar], Optional[str]]:
        if self.store is None:
            return [], None
        try:
            raw = await asyncio.wait_for(
                asyncio.to_thread(
                    self.store.similarity_search,
                    query_text,
                    dict(filters),
                    k,
                    timeout=self.config.per_stage_timeout_s,
                ),
                timeout=self.config.per_stage_timeout_s,
            )
        except asyncio.TimeoutError:
            logger.warning("Retrieval timed out after %sms; continuing without exemplars", self.config.per_stage_timeout_ms)
            return [], "retrieval_timeout"
        except Exception:
            logger.exception("Retrieval failed; continuing without exemplars")
            return [], "retrieval_unavailable"

        exemplars: List[RetrievedExemplar] = []
        for entry in raw or []:
            if not isinstance(entry, Mapping):
                continue
            try:
                score = max(0.0, min(1.0, float(entry.get("score") or 0.0)))
                exemplars.append(
                    RetrievedExemplar(
                        text=str(entry.get("text") or ""),
                        answer=entry.get("answer") if entry.get("answer") is not None else "",
                        score=score,
                        difficulty=entry.get("difficulty"),
                        category=entry.get("category"),
                    )
                )
            except (TypeError, ValueError, ValidationError) as exc:
                logger.debug("Skipping malformed exemplar %r: %s", entry, exc)
        exemplars = [ex for ex in exemplars if ex.text.strip()]
        exemplars.sort(key=lambda ex: ex.score, reverse=True)
        return exemplars[: max(0, k)], None

    async def retrieve(self, query_text: str, filters: Mapping[str, Any], k: int) -> List[RetrievedExemplar]:
        """Return at most ``k`` exemplars ordered by score; never raises."""

        exemplars, _ = await self._search(query_text, filters, k)
        return exemplars

    async def run(self, state: PipelineState) -> PipelineState:
        state.phase = PipelinePhase.RETRIEVE
        query, filters = build_query(state.request, state.category)
        exemplars, problem = await self._search(query, filters, self.config.retrieval_k)
        state.exemplars = exemplars
        if problem:
            state.note(problem)
        return state


__all__ = ["ContextRetriever", "build_query"]
