from __future__ import annotations

from pathlib import Path
from typing import Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings


class LocalRagSettings(BaseSettings):
    """Configuration for the local document chat pipeline."""

    project_root: Path = Field(
        default_factory=lambda: Path(__file__).resolve().parents[2],
        description="Repository root directory.",
    )

    data_dir: Path = Field(
        default_factory=lambda: Path("data"),
        description="Directory holding the persisted document store.",
    )
    store_filename: str = Field(
        default="documents.json",
        description="File name of the JSON document store inside data_dir.",
    )

    # Chunking. Sizes are in characters, not tokens.
    chunk_size: int = Field(default=500, gt=0)
    chunk_overlap: int = Field(default=50, ge=0)
    preview_chars: int = Field(
        default=1000,
        ge=0,
        description="How much raw text is kept on the document record as a preview.",
    )

    # Retrieval
    min_score: float = Field(
        default=0.3,
        description="Relevance floor; chunks scoring at or below it are dropped.",
    )
    top_k: int = Field(default=3, gt=0)

    # Embeddings
    fallback_dim: int = Field(default=384, gt=3)
    native_enabled: bool = Field(
        default=True,
        description="Try to load the native embedding model before falling back.",
    )
    native_model_name: str = Field(default="BAAI/bge-m3")
    native_max_length: int = Field(default=8192, gt=0)
    init_retry_interval: float = Field(
        default=30.0,
        ge=0.0,
        description="Seconds before embed() retries a failed native initialization.",
    )

    # Prompting
    default_template: str = Field(default="gemma")
    history_window: Optional[int] = Field(
        default=None,
        ge=0,
        description="Keep only the last N history turns in the prompt (None keeps all).",
    )

    class Config:
        env_prefix = "LOCAL_RAG_"
        env_file = ".env"
        env_file_encoding = "utf-8"

    @model_validator(mode="after")
    def _check_chunking(self) -> "LocalRagSettings":
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError(
                f"chunk_overlap ({self.chunk_overlap}) must be smaller than chunk_size ({self.chunk_size})"
            )
        return self

    @property
    def store_path(self) -> Path:
        return self.data_dir / self.store_filename

    def resolve_paths(self) -> "LocalRagSettings":
        """Return a copy with data_dir resolved against project_root."""
        if self.data_dir.is_absolute():
            return self
        return self.model_copy(update={"data_dir": self.project_root / self.data_dir})


def get_settings() -> LocalRagSettings:
    """Return settings with resolved paths."""
    return LocalRagSettings().resolve_paths()


__all__ = ["LocalRagSettings", "get_settings"]
