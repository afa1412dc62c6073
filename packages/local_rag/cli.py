from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import List, Optional

import click
from pydantic import TypeAdapter

from agents.chat_agent import DocumentChatAgent

from .config import get_settings
from .errors import LocalRagError
from .models import ConversationTurn, DocumentUpload
from .pipeline import DocumentAssistant
from .prompting import ChatTemplate

_log = logging.getLogger(__name__)

_history_adapter = TypeAdapter(List[ConversationTurn])


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def _assistant(ctx: click.Context) -> DocumentAssistant:
    return ctx.obj["assistant"]


def _run(coro):
    try:
        return asyncio.run(coro)
    except LocalRagError as exc:
        raise click.ClickException(str(exc)) from exc


@click.group()
@click.option("--data-dir", type=click.Path(file_okay=False, path_type=Path), default=None,
              help="Directory of the document store (overrides LOCAL_RAG_DATA_DIR).")
@click.option("--no-native", is_flag=True, help="Skip the native embedding model, use fallback vectors.")
@click.option("-v", "--verbose", is_flag=True)
@click.pass_context
def main(ctx: click.Context, data_dir: Optional[Path], no_native: bool, verbose: bool) -> None:
    """Index local documents and build grounded prompts for a local model."""
    _configure_logging(verbose)

    settings = get_settings()
    updates: dict = {}
    if data_dir is not None:
        updates["data_dir"] = data_dir.resolve()
    if no_native:
        updates["native_enabled"] = False
    if updates:
        settings = settings.model_copy(update=updates)

    ctx.ensure_object(dict)
    ctx.obj["assistant"] = DocumentAssistant.from_settings(settings)


@main.command("ingest")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--name", default=None, help="Display name (defaults to the file name).")
@click.option("--mime-type", default="text/plain", show_default=True)
@click.option("--id", "document_id", default=None, help="Explicit document id.")
@click.pass_context
def ingest(ctx: click.Context, path: Path, name: Optional[str], mime_type: str, document_id: Optional[str]) -> None:
    """
    Chunk, embed and store a plain-text document.

    Binary formats (PDF, DOC) must be converted to text beforehand.
    """
    text = path.read_text(encoding="utf-8", errors="replace")
    upload = DocumentUpload(
        id=document_id,
        name=name or path.name,
        mime_type=mime_type,
        size=path.stat().st_size,
    )
    assistant = _assistant(ctx)
    document = _run(assistant.ingest(upload, text))

    click.echo(f"Stored {document.id}: {len(document.chunks)} chunks")
    if document.skipped_chunks:
        click.echo(f"Skipped chunks: {', '.join(str(i) for i in document.skipped_chunks)}")
    if assistant.provider.degraded:
        click.echo("Warning: fallback embeddings in use (degraded retrieval quality)")


@main.command("list")
@click.pass_context
def list_documents(ctx: click.Context) -> None:
    """List stored documents."""
    documents = _run(_assistant(ctx).list_documents())
    if not documents:
        click.echo("No documents stored.")
        return
    for doc in documents:
        click.echo(
            f"{doc.id}\t{doc.name}\t{len(doc.chunks)} chunks\t"
            f"{doc.byte_size / 1024:.1f} KB\t{doc.processed_at.isoformat()}"
        )


@main.command("delete")
@click.argument("document_id")
@click.pass_context
def delete(ctx: click.Context, document_id: str) -> None:
    """Delete a document and all its chunks."""
    removed = _run(_assistant(ctx).delete_document(document_id))
    click.echo(f"Deleted {document_id}" if removed else f"No document {document_id}")


@main.command("query")
@click.argument("question")
@click.option("-k", "--top-k", "k", type=int, default=None, help="Maximum number of chunks.")
@click.option("--json", "as_json", is_flag=True, help="Print results as JSON.")
@click.pass_context
def query(ctx: click.Context, question: str, k: Optional[int], as_json: bool) -> None:
    """Show the chunks most relevant to a question."""
    results = _run(_assistant(ctx).query(question, k))

    if as_json:
        click.echo(json.dumps([r.model_dump(mode="json", exclude={"chunk": {"embedding"}}) for r in results], indent=2))
        return
    if not results:
        click.echo("No relevant chunks found.")
        return
    for rank, res in enumerate(results, 1):
        preview = res.chunk.text[:120].replace("\n", " ")
        click.echo(f"{rank}. [{res.score:.3f}] {res.chunk.document_id} #{res.chunk.chunk_index}: {preview}")


@main.command("prompt")
@click.argument("question")
@click.option("--template", type=click.Choice([t.value for t in ChatTemplate]), default=None,
              help="Chat template (defaults to LOCAL_RAG_DEFAULT_TEMPLATE).")
@click.option("--history", "history_path", type=click.Path(exists=True, dir_okay=False, path_type=Path),
              default=None, help="JSON file with a list of {role, content} turns.")
@click.option("-k", "--top-k", "k", type=int, default=None)
@click.pass_context
def prompt(ctx: click.Context, question: str, template: Optional[str], history_path: Optional[Path],
           k: Optional[int]) -> None:
    """Print the prompt that would be sent to the model for a question."""
    history: list[ConversationTurn] = []
    if history_path is not None:
        history = _history_adapter.validate_json(history_path.read_text(encoding="utf-8"))

    assistant = _assistant(ctx)
    agent = DocumentChatAgent(assistant)
    plan = agent.plan(question, template=template, k=k)
    turn = _run(agent.prepare(plan, history))
    if not turn.documents_available:
        click.echo("Warning: documents unavailable, answering from general knowledge", err=True)
    click.echo(turn.prompt)


@main.command("status")
@click.option("--probe", is_flag=True, help="Try to load the native embedding model first.")
@click.pass_context
def status(ctx: click.Context, probe: bool) -> None:
    """Show embedding and store status."""
    assistant = _assistant(ctx)

    async def _collect() -> dict:
        if probe:
            await assistant.provider.init()
        return await assistant.status()

    for key, value in _run(_collect()).items():
        click.echo(f"{key}: {value}")


if __name__ == "__main__":
    main()
