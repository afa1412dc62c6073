from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional, Protocol, Sequence, runtime_checkable

from pydantic import BaseModel, Field

from local_rag.errors import StoreNotReadyError
from local_rag.models import Attachment, ConversationTurn, RetrievalResult
from local_rag.pipeline import DocumentAssistant
from local_rag.prompting import ChatTemplate

_log = logging.getLogger(__name__)


class GenerationParams(BaseModel):
    """Sampling parameters handed to the inference engine unchanged."""

    temperature: float = Field(default=0.7, ge=0.0)
    top_k: int = Field(default=40, ge=0)
    top_p: float = Field(default=0.9, ge=0.0, le=1.0)
    repeat_penalty: float = Field(default=1.1, ge=0.0)
    max_tokens: int = Field(default=512, gt=0)


@runtime_checkable
class InferenceEngine(Protocol):
    """Local model runtime: takes a finished prompt, returns generated text."""

    async def complete(self, prompt: str, params: GenerationParams) -> str: ...


@runtime_checkable
class StreamingInferenceEngine(InferenceEngine, Protocol):
    def stream(self, prompt: str, params: GenerationParams) -> AsyncIterator[str]: ...


class ChatTurnPlan(BaseModel):
    """Agent's plan for answering one user turn."""

    question: str
    template: ChatTemplate
    k: int = Field(default=3, ge=0)
    attachments: List[Attachment] = Field(default_factory=list)


class SourceRef(BaseModel):
    """Reference to a document that contributed evidence to the prompt."""

    document_id: str
    chunk_indexes: List[int]
    score: float


class PreparedTurn(BaseModel):
    """Prompt and evidence for one turn, computed from a single retrieval."""

    plan: ChatTurnPlan
    prompt: str
    results: List[RetrievalResult]
    sources: List[SourceRef]
    documents_available: bool = True
    degraded_embeddings: bool = False


class ChatAnswer(BaseModel):
    answer: str
    sources: List[SourceRef]
    template: ChatTemplate
    documents_available: bool = True
    degraded_embeddings: bool = False


def collect_sources(results: Sequence[RetrievalResult]) -> List[SourceRef]:
    """Group retrieved chunks by document, keeping the best score per document."""
    by_doc: dict[str, SourceRef] = {}
    for res in results:
        doc_id = res.chunk.document_id
        existing = by_doc.get(doc_id)
        if existing is None:
            by_doc[doc_id] = SourceRef(
                document_id=doc_id,
                chunk_indexes=[res.chunk.chunk_index],
                score=res.score,
            )
            continue
        if res.chunk.chunk_index not in existing.chunk_indexes:
            existing.chunk_indexes.append(res.chunk.chunk_index)
        existing.score = max(existing.score, res.score)
    return list(by_doc.values())


@dataclass
class DocumentChatAgent:
    """Orchestrates one chat turn: retrieval, prompt assembly and generation."""

    assistant: DocumentAssistant
    max_k: int = 10

    def plan(
        self,
        question: str,
        template: ChatTemplate | str | None = None,
        k: Optional[int] = None,
        attachments: Sequence[Attachment] = (),
    ) -> ChatTurnPlan:
        settings = self.assistant.settings
        if k is None:
            k = settings.top_k
        return ChatTurnPlan(
            question=question,
            template=ChatTemplate(template or settings.default_template),
            k=max(0, min(k, self.max_k)),
            attachments=list(attachments),
        )

    async def prepare(self, plan: ChatTurnPlan, history: Sequence[ConversationTurn]) -> PreparedTurn:
        """
        Retrieve once and build the prompt from that result.

        The same result list feeds the returned sources, so what the caller
        displays always matches what the model saw. If the store is not
        available the turn proceeds with the general-knowledge prompt.
        """
        documents_available = True
        try:
            results = await self.assistant.query(plan.question, plan.k)
        except StoreNotReadyError as exc:
            _log.warning("Documents unavailable for this turn: %s", exc)
            results = []
            documents_available = False

        prompt = self.assistant.assemble(
            history,
            plan.question,
            results,
            template=plan.template,
            attachments=plan.attachments,
        )
        return PreparedTurn(
            plan=plan,
            prompt=prompt,
            results=results,
            sources=collect_sources(results),
            documents_available=documents_available,
            degraded_embeddings=self.assistant.provider.degraded,
        )

    async def answer(
        self,
        turn: PreparedTurn,
        engine: InferenceEngine,
        params: Optional[GenerationParams] = None,
    ) -> ChatAnswer:
        """Generate a completion for a prepared turn."""
        if params is None:
            params = GenerationParams()

        text = self._or_source_summary(turn, await engine.complete(turn.prompt, params))
        return ChatAnswer(
            answer=text,
            sources=turn.sources,
            template=turn.plan.template,
            documents_available=turn.documents_available,
            degraded_embeddings=turn.degraded_embeddings,
        )

    async def stream_answer(
        self,
        turn: PreparedTurn,
        engine: InferenceEngine,
        params: Optional[GenerationParams] = None,
    ) -> AsyncIterator[str]:
        """
        Yield generated text incrementally when the engine supports streaming.

        If nothing but whitespace was generated, the source summary is
        yielded instead, as in `answer`.
        """
        if params is None:
            params = GenerationParams()

        if not isinstance(engine, StreamingInferenceEngine):
            yield self._or_source_summary(turn, await engine.complete(turn.prompt, params))
            return

        produced = False
        async for token in engine.stream(turn.prompt, params):
            if token.strip():
                produced = True
            yield token
        if not produced:
            yield self._or_source_summary(turn, "")

    async def chat(
        self,
        history: Sequence[ConversationTurn],
        question: str,
        engine: InferenceEngine,
        template: ChatTemplate | str | None = None,
        params: Optional[GenerationParams] = None,
    ) -> ChatAnswer:
        plan = self.plan(question, template=template)
        turn = await self.prepare(plan, history)
        return await self.answer(turn, engine, params)

    @classmethod
    def _or_source_summary(cls, turn: PreparedTurn, text: Optional[str]) -> str:
        """Return `text`, or the source summary when the engine produced nothing."""
        if text and text.strip():
            return text
        _log.warning("Inference engine returned an empty answer, falling back to a source summary")
        return cls._source_summary(turn)

    @staticmethod
    def _source_summary(turn: PreparedTurn) -> str:
        if not turn.sources:
            return "The model did not return an answer for this question."

        lines = [
            "The model did not return an answer. These documents were found relevant:",
        ]
        for src in turn.sources:
            indexes = ", ".join(str(i) for i in src.chunk_indexes)
            lines.append(f"- {src.document_id} (chunks {indexes}, score {src.score:.2f})")
        return "\n".join(lines)


__all__ = [
    "ChatAnswer",
    "ChatTurnPlan",
    "DocumentChatAgent",
    "GenerationParams",
    "InferenceEngine",
    "PreparedTurn",
    "SourceRef",
    "StreamingInferenceEngine",
    "collect_sources",
]
