from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from agents.chat_agent import DocumentChatAgent, PreparedTurn, SourceRef
from local_rag.errors import DocumentNotFoundError, StoreNotReadyError
from local_rag.models import Attachment, ConversationTurn, Document, DocumentUpload, RetrievalResult
from local_rag.pipeline import DocumentAssistant
from local_rag.prompting import ChatTemplate

_log = logging.getLogger(__name__)

app = FastAPI(title="Local Document Chat API")

# Local UI only; no credentials involved.
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Created on first use so that importing the app does not touch the store.
_assistant: DocumentAssistant | None = None


def get_assistant() -> DocumentAssistant:
    """Return the process-wide assistant, creating it on first use."""
    global _assistant
    if _assistant is None:
        _assistant = DocumentAssistant.from_settings()
    return _assistant


class IngestRequest(BaseModel):
    id: Optional[str] = None
    name: str
    mime_type: str = Field(default="text/plain")
    size: Optional[int] = Field(default=None, ge=0)
    text: str


class DocumentSummary(BaseModel):
    id: str
    name: str
    mime_type: str
    byte_size: int
    chunk_count: int
    skipped_chunks: List[int]
    processed_at: str

    @classmethod
    def from_document(cls, doc: Document) -> "DocumentSummary":
        return cls(
            id=doc.id,
            name=doc.name,
            mime_type=doc.mime_type,
            byte_size=doc.byte_size,
            chunk_count=len(doc.chunks),
            skipped_chunks=doc.skipped_chunks,
            processed_at=doc.processed_at.isoformat(),
        )


class QueryRequest(BaseModel):
    question: str
    k: Optional[int] = Field(default=None, ge=0)


class RetrievalHit(BaseModel):
    document_id: str
    chunk_id: str
    chunk_index: int
    text: str
    score: float

    @classmethod
    def from_result(cls, res: RetrievalResult) -> "RetrievalHit":
        return cls(
            document_id=res.chunk.document_id,
            chunk_id=res.chunk.id,
            chunk_index=res.chunk.chunk_index,
            text=res.chunk.text,
            score=res.score,
        )


class PromptResponse(BaseModel):
    prompt: str
    template: ChatTemplate
    sources: List[SourceRef]
    documents_available: bool
    degraded_embeddings: bool

    @classmethod
    def from_turn(cls, turn: PreparedTurn) -> "PromptResponse":
        return cls(
            prompt=turn.prompt,
            template=turn.plan.template,
            sources=turn.sources,
            documents_available=turn.documents_available,
            degraded_embeddings=turn.degraded_embeddings,
        )


class PromptRequest(BaseModel):
    message: str
    history: List[ConversationTurn] = Field(default_factory=list)
    attachments: List[Attachment] = Field(default_factory=list)
    template: Optional[ChatTemplate] = None
    k: Optional[int] = Field(default=None, ge=0)


@app.get("/health")
async def health(assistant: DocumentAssistant = Depends(get_assistant)) -> dict:
    try:
        return {"status": "ok", **(await assistant.status())}
    except StoreNotReadyError as exc:
        return {"status": "degraded", "error": str(exc)}


@app.get("/documents", response_model=List[DocumentSummary])
async def list_documents(assistant: DocumentAssistant = Depends(get_assistant)) -> List[DocumentSummary]:
    try:
        documents = await assistant.list_documents()
    except StoreNotReadyError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return [DocumentSummary.from_document(doc) for doc in documents]


@app.get("/documents/{document_id}", response_model=DocumentSummary)
async def get_document(document_id: str, assistant: DocumentAssistant = Depends(get_assistant)) -> DocumentSummary:
    try:
        doc = await assistant.store.get(document_id)
    except DocumentNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except StoreNotReadyError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return DocumentSummary.from_document(doc)


@app.post("/documents", response_model=DocumentSummary, status_code=201)
async def ingest_document(req: IngestRequest, assistant: DocumentAssistant = Depends(get_assistant)) -> DocumentSummary:
    upload = DocumentUpload(id=req.id, name=req.name, mime_type=req.mime_type, size=req.size)
    try:
        doc = await assistant.ingest(upload, req.text)
    except StoreNotReadyError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except Exception as exc:  # noqa: BLE001
        _log.exception("Ingestion failed for %s", req.name)
        raise HTTPException(status_code=500, detail=f"Ingestion failed: {exc}") from exc
    return DocumentSummary.from_document(doc)


@app.delete("/documents/{document_id}")
async def delete_document(document_id: str, assistant: DocumentAssistant = Depends(get_assistant)) -> dict:
    try:
        removed = await assistant.delete_document(document_id)
    except StoreNotReadyError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return {"deleted": removed}


@app.post("/query", response_model=List[RetrievalHit])
async def query(req: QueryRequest, assistant: DocumentAssistant = Depends(get_assistant)) -> List[RetrievalHit]:
    try:
        results = await assistant.query(req.question, req.k)
    except StoreNotReadyError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return [RetrievalHit.from_result(res) for res in results]


@app.post("/prompt", response_model=PromptResponse)
async def prompt(req: PromptRequest, assistant: DocumentAssistant = Depends(get_assistant)) -> PromptResponse:
    """Retrieve evidence once and return the prompt together with its sources."""
    agent = DocumentChatAgent(assistant)
    plan = agent.plan(req.message, template=req.template, k=req.k, attachments=req.attachments)
    turn = await agent.prepare(plan, req.history)
    return PromptResponse.from_turn(turn)


__all__ = ["app", "get_assistant"]
