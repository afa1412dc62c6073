from __future__ import annotations

import pytest
from pydantic import ValidationError

from local_rag.config import LocalRagSettings


def test_defaults():
    settings = LocalRagSettings()
    assert (settings.chunk_size, settings.chunk_overlap) == (500, 50)
    assert settings.min_score == 0.3
    assert settings.store_path.name == "documents.json"


def test_reads_prefixed_environment(monkeypatch):
    monkeypatch.setenv("LOCAL_RAG_CHUNK_SIZE", "800")
    monkeypatch.setenv("LOCAL_RAG_TOP_K", "5")
    settings = LocalRagSettings()
    assert settings.chunk_size == 800
    assert settings.top_k == 5


@pytest.mark.parametrize("size, overlap", [(500, 600), (500, 500), (100, -1)])
def test_rejects_overlap_outside_chunk(size, overlap):
    with pytest.raises(ValidationError):
        LocalRagSettings(chunk_size=size, chunk_overlap=overlap)


def test_rejects_overlap_from_environment(monkeypatch):
    monkeypatch.setenv("LOCAL_RAG_CHUNK_OVERLAP", "600")
    with pytest.raises(ValidationError):
        LocalRagSettings()
