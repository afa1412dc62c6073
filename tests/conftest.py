"""
Shared fixtures for the local RAG test suite.

Async tests are marked explicitly with `pytest.mark.asyncio`.
"""
from __future__ import annotations

from typing import Dict, List, Sequence

import pytest

from local_rag.config import LocalRagSettings
from local_rag.pipeline import DocumentAssistant

SAMPLE_TEXT = (
    "The lighthouse keeper logs the weather every morning. Storm warnings are raised when the "
    "barometer falls quickly.\n\n"
    "Supplies arrive by boat on the first Monday of each month. The boat carries fuel, food and "
    "spare lamp parts for the rotating lens.\n\n"
    "In winter the keeper paints the railings and checks the fog horn. Visitors are welcome on "
    "Sundays between noon and four in the afternoon, weather permitting. "
) * 4


class FakeEmbedder:
    """Native embedder stand-in: fixed vectors per text, a default otherwise."""

    def __init__(self, vectors: Dict[str, Sequence[float]] | None = None, default: Sequence[float] = (0.0, 0.0, 1.0)):
        self.vectors = dict(vectors or {})
        self.default = list(default)
        self.calls: List[str] = []

    def embed(self, text: str) -> List[float]:
        self.calls.append(text)
        return list(self.vectors.get(text, self.default))


@pytest.fixture
def settings(tmp_path) -> LocalRagSettings:
    return LocalRagSettings(project_root=tmp_path, data_dir=tmp_path / "data", native_enabled=False)


@pytest.fixture
def assistant(settings) -> DocumentAssistant:
    return DocumentAssistant.from_settings(settings)


@pytest.fixture
def sample_text() -> str:
    return SAMPLE_TEXT
