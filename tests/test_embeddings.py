from __future__ import annotations

import asyncio
from collections import Counter

import pytest

from local_rag.config import LocalRagSettings
from local_rag.embeddings import (
    EmbeddingProvider,
    EmbeddingStatus,
    FallbackEmbedding,
    word_hash,
)

from .conftest import FakeEmbedder


class TestFallbackEmbedding:
    def test_is_deterministic(self):
        fb = FallbackEmbedding()
        text = "How does the barometer predict storms? It falls quickly."
        assert fb.embed(text) == fb.embed(text)
        assert FallbackEmbedding().embed(text) == fb.embed(text)

    def test_fixed_length(self):
        fb = FallbackEmbedding()
        for text in ("", "a", "one two three", "x " * 5000):
            assert len(fb.embed(text)) == 384
        assert len(FallbackEmbedding(dim=64).embed("custom size")) == 64

    def test_values_stay_in_unit_interval(self):
        vec = FallbackEmbedding().embed("information " * 40 + "what why how")
        assert all(0.0 <= v <= 1.0 for v in vec)

    def test_word_hash_matches_rolling_hash(self):
        assert word_hash("ab") == 97 * 31 + 98
        assert word_hash("") == 0
        h = word_hash("supercalifragilisticexpialidocious" * 3)
        assert -(2**31) <= h < 2**31

    def test_statistics_slots(self):
        fb = FallbackEmbedding()
        question = fb.embed("Is it raining?")
        statement = fb.embed("It is raining")
        assert question[1] == pytest.approx(0.9)
        assert statement[1] == pytest.approx(0.1)
        assert statement[0] == pytest.approx(3 / 150)
        assert fb.embed("word " * 300)[0] == 1.0

    @pytest.mark.parametrize(
        "word, weight",
        [("what", 0.4), ("find", 0.35), ("information", 0.25), ("boat", 0.15)],
    )
    def test_word_weights(self, word, weight):
        fb = FallbackEmbedding()
        vec = fb.embed(word)
        h = word_hash(word)
        counts = Counter(abs(h + i * 7919) % fb.dim for i in range(4))
        single = [idx for idx, n in counts.items() if n == 1 and idx > 2]
        assert single
        for idx in single:
            assert vec[idx] == pytest.approx(weight)

    def test_short_and_symbol_words_ignored(self):
        fb = FallbackEmbedding()
        vec = fb.embed("a ! ?")
        assert sum(vec[3:]) == 0.0

    def test_similar_texts_score_higher(self):
        from local_rag.retrieval import cosine_similarity

        fb = FallbackEmbedding()
        base = fb.embed("lighthouse keeper paints railings")
        near = fb.embed("the lighthouse keeper paints the railings")
        far = fb.embed("quarterly budget spreadsheet totals")
        assert cosine_similarity(base, near) > cosine_similarity(base, far)


class TestEmbeddingProvider:
    @pytest.mark.asyncio
    async def test_without_loader_uses_fallback(self):
        provider = EmbeddingProvider(loader=None)
        vec = await provider.embed("hello there")
        assert vec.provider == "fallback-384"
        assert vec.dim == 384
        assert provider.status is EmbeddingStatus.DEGRADED
        assert provider.degraded

    @pytest.mark.asyncio
    async def test_native_path(self):
        provider = EmbeddingProvider(loader=lambda: FakeEmbedder(default=(1.0, 2.0)), model_name="fake")
        assert provider.status is EmbeddingStatus.UNINITIALIZED
        vec = await provider.embed("anything")
        assert provider.status is EmbeddingStatus.READY
        assert vec.provider == "native:fake"
        assert vec.values == [1.0, 2.0]
        assert provider.tag == "native:fake"

    @pytest.mark.asyncio
    async def test_concurrent_init_loads_once(self):
        calls = 0

        async def loader():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.01)
            return FakeEmbedder()

        provider = EmbeddingProvider(loader=loader, model_name="fake")
        statuses = await asyncio.gather(*(provider.init() for _ in range(5)))
        assert calls == 1
        assert statuses == [EmbeddingStatus.READY] * 5

        await provider.init()
        assert calls == 1

    @pytest.mark.asyncio
    async def test_failed_init_is_retried(self):
        attempts = []

        def loader():
            attempts.append(1)
            if len(attempts) == 1:
                raise RuntimeError("model download failed")
            return FakeEmbedder()

        provider = EmbeddingProvider(loader=loader, model_name="fake")
        assert await provider.init() is EmbeddingStatus.DEGRADED
        assert provider.last_error == "model download failed"
        assert await provider.init() is EmbeddingStatus.READY
        assert provider.last_error is None
        assert len(attempts) == 2

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_failure(self):
        calls = 0

        async def loader():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.01)
            raise RuntimeError("no model")

        provider = EmbeddingProvider(loader=loader)
        statuses = await asyncio.gather(*(provider.init() for _ in range(3)))
        assert calls == 1
        assert statuses == [EmbeddingStatus.DEGRADED] * 3

    @pytest.mark.asyncio
    async def test_embed_throttles_retries_after_failure(self):
        attempts = []

        def loader():
            attempts.append(1)
            raise RuntimeError("still broken")

        provider = EmbeddingProvider(loader=loader, retry_interval=3600)
        first = await provider.embed("one")
        second = await provider.embed("two")
        assert len(attempts) == 1
        assert first.provider == second.provider == "fallback-384"

        eager = EmbeddingProvider(loader=loader, retry_interval=0)
        await eager.embed("one")
        await eager.embed("two")
        assert len(attempts) == 3

    @pytest.mark.asyncio
    async def test_native_call_failure_falls_back(self):
        class Broken:
            def embed(self, text):
                raise RuntimeError("inference error")

        provider = EmbeddingProvider(loader=lambda: Broken(), model_name="broken")
        vec = await provider.embed("text")
        assert provider.status is EmbeddingStatus.READY
        assert vec.provider == "fallback-384"
        assert vec.values == FallbackEmbedding().embed("text")

    def test_from_settings_respects_native_flag(self):
        disabled = EmbeddingProvider.from_settings(LocalRagSettings(native_enabled=False, fallback_dim=128))
        assert disabled.loader is None
        assert disabled.fallback.dim == 128

        enabled = EmbeddingProvider.from_settings(LocalRagSettings(native_enabled=True))
        assert enabled.loader is not None
        assert enabled.model_name == "BAAI/bge-m3"
