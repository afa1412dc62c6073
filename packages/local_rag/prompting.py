"""
Prompt assembly for the supported chat-markup grammars.

Retrieved evidence takes precedence over conversation history: when chunks are
present the prompt is a plain reference-document prompt and the history is not
rendered at all. Without evidence, history and the question are wrapped in the
turn delimiters of the selected template.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from .models import Attachment, ConversationTurn, RetrievalResult

_log = logging.getLogger(__name__)

ATTACHMENT_PREVIEW_CHARS = 1000

DOCUMENT_PREAMBLE = (
    "You have access to the following documents. Use this information to answer the question. "
    "If the answer can be found in these documents, prioritize this information over general knowledge.\n\n"
)
DOCUMENT_INSTRUCTIONS = (
    "INSTRUCTIONS:\n"
    "- Answer based on the reference documents above\n"
    "- If the documents contain the answer, use them as the primary source\n"
    "- Only use general knowledge if the documents don't contain the answer\n"
    "- Be precise and cite information from the documents when possible\n"
    "ANSWER: "
)


class ChatTemplate(str, enum.Enum):
    GEMMA = "gemma"
    QWEN = "qwen"
    LLAMA = "llama"
    CHATML = "chatml"


@dataclass(frozen=True)
class TurnFormat:
    """Turn delimiters of one chat grammar. `{role}` and `{content}` are substituted."""

    user: str
    assistant: str
    assistant_opener: str

    def render(self, role: str, content: str) -> str:
        pattern = self.user if role == "user" else self.assistant
        return pattern.format(role=role, content=content)


TURN_FORMATS: Dict[ChatTemplate, TurnFormat] = {
    ChatTemplate.GEMMA: TurnFormat(
        user="<start_of_turn>user\n{content}<end_of_turn>",
        assistant="<start_of_turn>model\n{content}<end_of_turn>",
        assistant_opener="<start_of_turn>model\n",
    ),
    ChatTemplate.QWEN: TurnFormat(
        user="<|im_start|>user\n{content}<|im_end|>",
        assistant="<|im_start|>assistant\n{content}<|im_end|>",
        assistant_opener="<|im_start|>assistant\n",
    ),
    ChatTemplate.LLAMA: TurnFormat(
        user="[INST] {content} [/INST]",
        assistant="{content}",
        assistant_opener="",
    ),
    ChatTemplate.CHATML: TurnFormat(
        user="<|im_start|>{role}\n{content}<|im_end|>",
        assistant="<|im_start|>{role}\n{content}<|im_end|>",
        assistant_opener="<|im_start|>assistant\n",
    ),
}


def _render_attachments(attachments: Sequence[Attachment]) -> str:
    if not attachments:
        return ""

    parts = ["Newly attached files:\n\n"]
    for attachment in attachments:
        content = attachment.content
        if len(content) > ATTACHMENT_PREVIEW_CHARS:
            content = content[:ATTACHMENT_PREVIEW_CHARS] + "... [truncated]"
        parts.append(f"--- FILE: {attachment.name} ---\n{content}\n\n")
    return "".join(parts)


def build_document_prompt(
    question: str,
    results: Sequence[RetrievalResult],
    attachments: Sequence[Attachment] = (),
) -> str:
    """Prompt that asks the model to answer from the retrieved chunks."""
    parts = [DOCUMENT_PREAMBLE, "REFERENCE DOCUMENTS:\n", "====================\n"]
    for i, result in enumerate(results, 1):
        parts.append(f"[DOCUMENT {i} - {result.chunk.document_id}]:\n")
        parts.append(f"{result.chunk.text}\n\n")

    parts.append(_render_attachments(attachments))
    parts.append(f"QUESTION: {question}\n\n")
    parts.append(DOCUMENT_INSTRUCTIONS)
    return "".join(parts)


def general_knowledge_question(question: str, attachments: Sequence[Attachment] = ()) -> str:
    return f"{_render_attachments(attachments)}Question: {question}\n\nAnswer based on your general knowledge: "


def build_conversation_prompt(
    history: Sequence[ConversationTurn],
    question: str,
    template: ChatTemplate,
    attachments: Sequence[Attachment] = (),
) -> str:
    """History and the framed question wrapped in the template's turn delimiters."""
    fmt = TURN_FORMATS[template]
    lines = [fmt.render(turn.role, turn.content) for turn in history]
    lines.append(fmt.render("user", general_knowledge_question(question, attachments)))
    return "\n".join(lines) + "\n" + fmt.assistant_opener


def assemble_prompt(
    history: Sequence[ConversationTurn],
    new_message: str,
    results: Sequence[RetrievalResult],
    template: ChatTemplate | str = ChatTemplate.GEMMA,
    attachments: Sequence[Attachment] = (),
    history_window: Optional[int] = None,
) -> str:
    """
    Build the single prompt string sent to the inference engine.

    If `results` is non-empty the reference-document prompt is returned and
    the history is ignored for this turn. Otherwise the last `history_window`
    turns (all when None) are rendered with `template`.
    """
    template = ChatTemplate(template)
    if results:
        _log.debug("Assembling document prompt with %d chunks", len(results))
        return build_document_prompt(new_message, results, attachments)

    turns: List[ConversationTurn] = list(history)
    if history_window is not None:
        turns = turns[-history_window:] if history_window > 0 else []
    return build_conversation_prompt(turns, new_message, template, attachments)


__all__ = [
    "ChatTemplate",
    "TURN_FORMATS",
    "TurnFormat",
    "assemble_prompt",
    "build_conversation_prompt",
    "build_document_prompt",
    "general_knowledge_question",
]
