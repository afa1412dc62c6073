from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from .chunking import split_into_spans
from .config import LocalRagSettings, get_settings
from .embeddings import EmbeddingProvider, NativeLoader
from .models import Attachment, Chunk, ConversationTurn, Document, DocumentUpload, RetrievalResult
from .prompting import ChatTemplate, assemble_prompt
from .retrieval import RetrievalEngine
from .store import JsonChunkStore

_log = logging.getLogger(__name__)


def _make_document_id(name: str) -> str:
    return f"{name}-{int(time.time() * 1000)}"


@dataclass
class DocumentAssistant:
    """Ingestion, retrieval and prompt assembly over one store and one provider."""

    settings: LocalRagSettings
    provider: EmbeddingProvider
    store: JsonChunkStore
    engine: RetrievalEngine

    @classmethod
    def from_settings(
        cls,
        settings: Optional[LocalRagSettings] = None,
        loader: Optional[NativeLoader] = None,
    ) -> "DocumentAssistant":
        if settings is None:
            settings = get_settings()
        provider = EmbeddingProvider.from_settings(settings, loader=loader)
        store = JsonChunkStore(settings.store_path)
        engine = RetrievalEngine(store=store, provider=provider, min_score=settings.min_score)
        return cls(settings=settings, provider=provider, store=store, engine=engine)

    async def ingest(self, upload: DocumentUpload, text: str) -> Document:
        """
        Chunk, embed and store a document.

        A chunk whose embedding fails, or whose vector comes from a different
        provider than the document's first chunk, is skipped and recorded in
        `Document.skipped_chunks`; the rest of the document is still stored.
        The document becomes visible to `query` only once the store write
        has completed.
        """
        document_id = upload.id or _make_document_id(upload.name)
        spans = split_into_spans(
            text,
            size=self.settings.chunk_size,
            overlap=self.settings.chunk_overlap,
        )
        _log.info("Ingesting %s: %d chunks", upload.name, len(spans))

        chunks: list[Chunk] = []
        skipped: list[int] = []
        # All chunks of a document share the provider of its first vector.
        pinned_provider: Optional[str] = None
        for index, span in enumerate(spans):
            try:
                vector = await self.provider.embed(span.text)
            except Exception as exc:
                _log.error("Failed to embed chunk %d of %s: %s", index, upload.name, exc, exc_info=True)
                skipped.append(index)
                continue

            if pinned_provider is None:
                pinned_provider = vector.provider
            elif vector.provider != pinned_provider:
                _log.warning(
                    "Skipping chunk %d of %s: embedded by %s, document uses %s",
                    index,
                    upload.name,
                    vector.provider,
                    pinned_provider,
                )
                skipped.append(index)
                continue

            chunks.append(
                Chunk(
                    id=f"{document_id}-chunk-{index}",
                    document_id=document_id,
                    text=span.text,
                    embedding=vector.values,
                    embedding_provider=vector.provider,
                    chunk_index=index,
                    start_offset=span.start_offset,
                    end_offset=span.end_offset,
                )
            )

        if skipped:
            _log.warning("Skipped %d of %d chunks for %s", len(skipped), len(spans), upload.name)

        document = Document(
            id=document_id,
            name=upload.name,
            mime_type=upload.mime_type,
            byte_size=upload.size if upload.size is not None else len(text.encode("utf-8")),
            raw_content_preview=text[: self.settings.preview_chars],
            chunks=chunks,
            skipped_chunks=skipped,
        )
        return await self.store.put(document)

    async def query(self, text: str, k: Optional[int] = None) -> List[RetrievalResult]:
        return await self.engine.retrieve(text, k=self.settings.top_k if k is None else k)

    def assemble(
        self,
        history: Sequence[ConversationTurn],
        new_message: str,
        results: Sequence[RetrievalResult],
        template: ChatTemplate | str | None = None,
        attachments: Sequence[Attachment] = (),
    ) -> str:
        return assemble_prompt(
            history,
            new_message,
            results,
            template=template or self.settings.default_template,
            attachments=attachments,
            history_window=self.settings.history_window,
        )

    async def delete_document(self, document_id: str) -> bool:
        return await self.store.delete(document_id)

    async def list_documents(self) -> List[Document]:
        return await self.store.get_all()

    async def status(self) -> Dict[str, Any]:
        """Embedding and store status, for display and health checks."""
        documents = await self.store.get_all()
        return {
            "embedding_status": self.provider.status.value,
            "embedding_provider": self.provider.tag,
            "degraded": self.provider.degraded,
            "last_error": self.provider.last_error,
            "documents": len(documents),
            "chunks": sum(len(d.chunks) for d in documents),
        }


__all__ = ["DocumentAssistant"]
