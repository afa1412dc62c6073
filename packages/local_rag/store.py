"""
Durable document store.

All documents live in a single JSON file, each with its chunks (and their
vectors) inline. Writes go to a temporary file that then replaces the store
file, so a failed write never leaves half a document behind.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import ValidationError

from .errors import DocumentNotFoundError, StoreNotReadyError
from .models import Chunk, Document

_log = logging.getLogger(__name__)

STORE_VERSION = 1


def _read_documents(path: Path) -> Dict[str, Document]:
    if not path.exists():
        return {}

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise StoreNotReadyError(f"Could not read document store {path}: {exc}") from exc

    if not isinstance(data, dict) or not isinstance(data.get("documents"), list):
        raise StoreNotReadyError(f"Malformed document store {path}")

    documents: dict[str, Document] = {}
    try:
        for record in data["documents"]:
            doc = Document.model_validate(record)
            documents[doc.id] = doc
    except ValidationError as exc:
        raise StoreNotReadyError(f"Invalid document record in {path}: {exc}") from exc
    return documents


def _write_documents(path: Path, documents: List[Document]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = {
        "version": STORE_VERSION,
        "documents": [doc.model_dump(mode="json") for doc in documents],
    }

    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(payload, f, ensure_ascii=False)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class JsonChunkStore:
    """Document -> chunks store persisted to a JSON file."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._documents: Optional[Dict[str, Document]] = None
        self._init_task: Optional[asyncio.Task] = None
        self._write_lock = asyncio.Lock()

    @property
    def ready(self) -> bool:
        return self._documents is not None

    async def init(self) -> None:
        """Load the store from disk. Concurrent callers share one load."""
        if self._documents is not None:
            return

        if self._init_task is None:
            self._init_task = asyncio.ensure_future(asyncio.to_thread(_read_documents, self.path))

        task = self._init_task
        try:
            documents = await asyncio.shield(task)
        finally:
            if task.done() and self._init_task is task:
                self._init_task = None

        if self._documents is None:
            self._documents = documents
            _log.info("Loaded %d documents from %s", len(documents), self.path)

    def _require_ready(self) -> Dict[str, Document]:
        if self._documents is None:
            raise StoreNotReadyError(f"Document store {self.path} is not initialized")
        return self._documents

    async def put(self, document: Document) -> Document:
        """
        Insert or replace a document together with its full chunk set.

        Readers keep seeing the previous state until the file write succeeds.
        """
        await self.init()
        async with self._write_lock:
            updated = dict(self._require_ready())
            updated[document.id] = document
            try:
                await asyncio.to_thread(_write_documents, self.path, self._ordered(updated))
            except Exception:
                _log.error("Failed to persist document %s", document.id, exc_info=True)
                raise
            self._documents = updated

        _log.info("Stored document %s (%d chunks)", document.id, len(document.chunks))
        return document

    async def get(self, document_id: str) -> Document:
        await self.init()
        documents = self._require_ready()
        try:
            return documents[document_id]
        except KeyError:
            raise DocumentNotFoundError(document_id) from None

    async def get_all(self) -> List[Document]:
        """Return all documents ordered by processing time."""
        await self.init()
        return self._ordered(self._require_ready())

    async def delete(self, document_id: str) -> bool:
        """Remove a document and its chunks. Deleting a missing id is not an error."""
        await self.init()
        async with self._write_lock:
            updated = dict(self._require_ready())
            if updated.pop(document_id, None) is None:
                return False
            try:
                await asyncio.to_thread(_write_documents, self.path, self._ordered(updated))
            except Exception:
                _log.error("Failed to delete document %s", document_id, exc_info=True)
                raise
            self._documents = updated

        _log.info("Deleted document %s", document_id)
        return True

    async def scan_all_chunks(self) -> List[Chunk]:
        """Return every stored chunk across all documents."""
        chunks: list[Chunk] = []
        for doc in await self.get_all():
            chunks.extend(doc.chunks)
        return chunks

    @staticmethod
    def _ordered(documents: Dict[str, Document]) -> List[Document]:
        return sorted(documents.values(), key=lambda d: d.processed_at)


__all__ = ["JsonChunkStore", "STORE_VERSION"]
