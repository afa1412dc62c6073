"""
Embedding provider with a native model path and a deterministic fallback.

The native path wraps a real embedding model (BGE-M3 by default). When it cannot
be loaded, or a single call fails, vectors come from `FallbackEmbedding`, a
hashed bag-of-words vector. Fallback vectors are NOT semantically accurate: they
only give a rough lexical similarity signal, and the provider reports itself as
degraded while it serves them.
"""

from __future__ import annotations

import asyncio
import enum
import inspect
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Protocol, Sequence, Union

from .config import LocalRagSettings
from .errors import EmbeddingUnavailableError
from .models import EmbeddingVector

_log = logging.getLogger(__name__)

FALLBACK_DIM = 384
_HASH_SPREAD = 4
_HASH_STRIDE = 7919

QUESTION_WORDS = frozenset(
    ("what", "how", "why", "when", "where", "who", "which", "explain", "describe", "show")
)
IMPORTANT_VERBS = frozenset(
    ("analyze", "compare", "calculate", "find", "list", "identify", "summarize")
)

_NON_ALNUM = re.compile(r"[^a-z0-9]")
_WHITESPACE = re.compile(r"\s+")
_SENTENCE_SPLIT = re.compile(r"[.!?]+")


class EmbeddingStatus(str, enum.Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    DEGRADED = "degraded"


class NativeEmbedder(Protocol):
    """Anything that can turn a text into a dense vector."""

    def embed(self, text: str) -> Sequence[float]: ...


NativeLoader = Callable[[], Union[NativeEmbedder, Awaitable[NativeEmbedder]]]


def _int32(value: int) -> int:
    value &= 0xFFFFFFFF
    return value - 0x100000000 if value & 0x80000000 else value


def word_hash(word: str) -> int:
    """32-bit signed rolling hash (h * 31 + code point), stable across processes."""
    h = 0
    for ch in word:
        h = _int32((h << 5) - h + ord(ch))
    return h


def _word_weight(word: str) -> float:
    weight = 0.15
    if word in QUESTION_WORDS:
        weight = 0.4
    if word in IMPORTANT_VERBS:
        weight = 0.35
    if len(word) > 6:
        # Longer words tend to be more specific.
        weight = 0.25
    return weight


@dataclass(frozen=True)
class FallbackEmbedding:
    """Deterministic hashed bag-of-words embedding."""

    dim: int = FALLBACK_DIM

    @property
    def tag(self) -> str:
        return f"fallback-{self.dim}"

    def embed(self, text: str) -> List[float]:
        vector = [0.0] * self.dim
        words = _WHITESPACE.split(text.lower())
        sentences = _SENTENCE_SPLIT.split(text)

        for word in words:
            clean = _NON_ALNUM.sub("", word)
            if len(clean) < 2:
                continue

            h = word_hash(clean)
            weight = _word_weight(clean)
            for i in range(_HASH_SPREAD):
                index = abs(h + i * _HASH_STRIDE) % self.dim
                vector[index] = (vector[index] + weight) % 1.0

        # Reserved slots: coarse document statistics.
        vector[0] = min(len(words) / 150, 1.0)
        vector[1] = 0.9 if "?" in text else 0.1
        vector[2] = min(len(sentences) / 15, 1.0)
        return vector


@dataclass
class NativeEmbedding:
    """A loaded native model; calls run in a worker thread."""

    embedder: NativeEmbedder
    name: str

    @property
    def tag(self) -> str:
        return f"native:{self.name}"

    async def embed(self, text: str) -> List[float]:
        values = await asyncio.to_thread(self.embedder.embed, text)
        vector = [float(x) for x in values]
        if not vector:
            raise EmbeddingUnavailableError(f"Native model {self.name} returned an empty vector")
        return vector


class BGEM3Embedder:
    """Dense BGE-M3 embeddings through FlagEmbedding."""

    def __init__(self, model: Any, max_length: int = 8192) -> None:
        self._model = model
        self._max_length = max_length

    def embed(self, text: str) -> List[float]:
        outputs = self._model.encode(
            [text],
            batch_size=1,
            max_length=self._max_length,
            return_dense=True,
            return_sparse=False,
            return_colbert_vecs=False,
        )
        return [float(x) for x in outputs["dense_vecs"][0]]


def _get_device() -> str:
    """Return device string, prefer GPU when available."""
    import torch

    if torch.cuda.is_available():
        return "cuda"
    return "cpu"


def load_bge_m3(model_name: str = "BAAI/bge-m3", max_length: int = 8192) -> BGEM3Embedder:
    """
    Load the BGE-M3 model.

    Heavy imports happen here rather than at module import time, so that the
    fallback path keeps working on machines without FlagEmbedding/torch.
    """
    from FlagEmbedding import BGEM3FlagModel

    device = _get_device()
    use_fp16 = device == "cuda"
    _log.info("Loading BGEM3FlagModel '%s' on device=%s (fp16=%s)", model_name, device, use_fp16)
    model = BGEM3FlagModel(model_name, use_fp16=use_fp16, device=device)
    return BGEM3Embedder(model, max_length=max_length)


@dataclass
class EmbeddingProvider:
    """
    Explicitly owned embedding provider.

    Lifecycle: uninitialized -> initializing -> ready | degraded. Concurrent
    `init()` callers share one in-flight attempt; a failed attempt is not
    cached, so the next `init()` tries again. `embed()` never raises because
    of the native model: it degrades to `FallbackEmbedding`.
    """

    loader: Optional[NativeLoader] = None
    model_name: str = "BAAI/bge-m3"
    fallback: FallbackEmbedding = field(default_factory=FallbackEmbedding)
    retry_interval: float = 30.0

    status: EmbeddingStatus = field(default=EmbeddingStatus.UNINITIALIZED, init=False)
    last_error: Optional[str] = field(default=None, init=False)
    _native: Optional[NativeEmbedding] = field(default=None, init=False, repr=False)
    _init_task: Optional[asyncio.Task] = field(default=None, init=False, repr=False)
    _failed_at: Optional[float] = field(default=None, init=False, repr=False)

    @classmethod
    def from_settings(
        cls,
        settings: LocalRagSettings,
        loader: Optional[NativeLoader] = None,
    ) -> "EmbeddingProvider":
        if loader is None and settings.native_enabled:
            model_name = settings.native_model_name
            max_length = settings.native_max_length

            def _load_default() -> NativeEmbedder:
                return load_bge_m3(model_name, max_length=max_length)

            loader = _load_default

        return cls(
            loader=loader,
            model_name=settings.native_model_name,
            fallback=FallbackEmbedding(dim=settings.fallback_dim),
            retry_interval=settings.init_retry_interval,
        )

    @property
    def degraded(self) -> bool:
        return self.status is not EmbeddingStatus.READY

    @property
    def tag(self) -> str:
        """Tag of the vectors the provider currently produces."""
        if self._native is not None:
            return self._native.tag
        return self.fallback.tag

    async def init(self) -> EmbeddingStatus:
        """Initialize the native path once; return the resulting status."""
        if self.status is EmbeddingStatus.READY:
            return self.status

        if self.loader is None:
            self.status = EmbeddingStatus.DEGRADED
            return self.status

        if self._init_task is None:
            self._init_task = asyncio.ensure_future(self._load_native())

        task = self._init_task
        try:
            return await asyncio.shield(task)
        finally:
            if task.done() and self._init_task is task:
                self._init_task = None

    async def _load_native(self) -> EmbeddingStatus:
        self.status = EmbeddingStatus.INITIALIZING
        try:
            if inspect.iscoroutinefunction(self.loader):
                result = await self.loader()
            else:
                result = await asyncio.to_thread(self.loader)
            if inspect.isawaitable(result):
                result = await result
            self._native = NativeEmbedding(embedder=result, name=self.model_name)
        except Exception as exc:
            self._failed_at = time.monotonic()
            self.last_error = str(exc)
            self.status = EmbeddingStatus.DEGRADED
            _log.warning(
                "Native embedding model unavailable, using fallback embeddings: %s",
                exc,
                exc_info=True,
            )
            return self.status

        self.last_error = None
        self.status = EmbeddingStatus.READY
        _log.info("Native embedding model '%s' ready", self.model_name)
        return self.status

    def _should_retry(self) -> bool:
        if self.loader is None:
            return False
        if self._failed_at is None:
            return True
        return time.monotonic() - self._failed_at >= self.retry_interval

    async def embed(self, text: str) -> EmbeddingVector:
        """Embed text with the native model, or the fallback when it is unavailable."""
        if self.status is EmbeddingStatus.UNINITIALIZED or (
            self.status is not EmbeddingStatus.READY and self._should_retry()
        ):
            await self.init()

        if self._native is not None:
            try:
                values = await self._native.embed(text)
                return EmbeddingVector(values=values, provider=self._native.tag)
            except Exception as exc:
                _log.warning("Native embedding failed, using fallback for this call: %s", exc)

        return EmbeddingVector(values=self.fallback.embed(text), provider=self.fallback.tag)


__all__ = [
    "BGEM3Embedder",
    "EmbeddingProvider",
    "EmbeddingStatus",
    "FALLBACK_DIM",
    "FallbackEmbedding",
    "NativeEmbedder",
    "NativeEmbedding",
    "load_bge_m3",
    "word_hash",
]
