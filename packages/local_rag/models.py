from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, model_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EmbeddingVector(BaseModel):
    """A vector together with the tag of the provider that produced it."""

    values: List[float] = Field(..., description="Fixed-length numeric vector.")
    provider: str = Field(
        ...,
        description="Provider tag, e.g. 'fallback-384' or 'native:BAAI/bge-m3'.",
    )

    @property
    def dim(self) -> int:
        return len(self.values)


class Chunk(BaseModel):
    """A retrievable slice of a document together with its embedding."""

    id: str = Field(..., description="Stable identifier of the chunk.")
    document_id: str = Field(..., description="Identifier of the parent document.")
    text: str = Field(..., description="Chunk text used for embeddings and prompts.")
    embedding: List[float] = Field(default_factory=list)
    embedding_provider: str = Field(
        default="",
        description="Tag of the provider that produced the embedding.",
    )
    chunk_index: int = Field(..., ge=0, description="Position of the chunk in the document.")
    start_offset: int = Field(..., ge=0)
    end_offset: int = Field(..., ge=0)

    @model_validator(mode="after")
    def _check_offsets(self) -> "Chunk":
        if self.start_offset >= self.end_offset:
            raise ValueError(
                f"start_offset ({self.start_offset}) must be < end_offset ({self.end_offset})"
            )
        return self


class Document(BaseModel):
    """A processed document with its chunks stored inline."""

    id: str
    name: str
    mime_type: str = Field(default="text/plain")
    byte_size: int = Field(default=0, ge=0)
    raw_content_preview: str = Field(
        default="",
        description="First characters of the extracted text.",
    )
    processed_at: datetime = Field(default_factory=_utcnow)
    chunks: List[Chunk] = Field(default_factory=list)
    skipped_chunks: List[int] = Field(
        default_factory=list,
        description="Chunk indexes dropped because their embedding failed.",
    )


class DocumentUpload(BaseModel):
    """Caller-supplied description of a document that is about to be ingested."""

    id: Optional[str] = None
    name: str
    mime_type: str = Field(default="text/plain")
    size: Optional[int] = Field(default=None, ge=0)


class Attachment(BaseModel):
    """A file attached to a conversation turn, already converted to text."""

    name: str
    content: str = ""


class ConversationTurn(BaseModel):
    role: Literal["user", "assistant"]
    content: str
    attachments: Optional[List[Attachment]] = None


class RetrievalResult(BaseModel):
    """A scored chunk returned for a single query."""

    chunk: Chunk
    score: float


__all__ = [
    "Attachment",
    "Chunk",
    "ConversationTurn",
    "Document",
    "DocumentUpload",
    "EmbeddingVector",
    "RetrievalResult",
]
