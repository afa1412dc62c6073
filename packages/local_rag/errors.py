from __future__ import annotations


class LocalRagError(Exception):
    """Base class for errors raised by the local RAG core."""


class StoreNotReadyError(LocalRagError):
    """The chunk store could not be initialized (missing, unreadable or corrupt file)."""


class DocumentNotFoundError(LocalRagError):
    """The store is ready but holds no document with the requested id."""

    def __init__(self, document_id: str) -> None:
        super().__init__(f"Document not found: {document_id}")
        self.document_id = document_id


class EmbeddingUnavailableError(LocalRagError):
    """The native embedding path could not produce a vector."""


__all__ = [
    "LocalRagError",
    "StoreNotReadyError",
    "DocumentNotFoundError",
    "EmbeddingUnavailableError",
]
