"""Generative completion services used by the response synthesizer."""

from __future__ import annotations

import re
from dataclasses import dataclass
from collections.abc import Sequence
from typing import Any, Protocol

import structlog
from langchain_core.messages import SystemMessage
from langchain_core.prompts import ChatPromptTemplate

from rag_engine.config import SynthesisConfig
from rag_engine.errors import UpstreamCompletionError
from rag_engine.types import TokenUsage

log = structlog.get_logger(__name__)

DEFAULT_SYSTEM_PROMPT = """
You are a document assistant answering questions for a single workspace.

Rules:
1) Answer only from the provided context sections.
2) Cite supporting sources inline using their labels, e.g. [Source 2].
3) If the context does not contain the answer, say that you could not find it
   in the documents instead of guessing.
4) Prefer concise, accurate answers.
""".strip()

_HUMAN_TEMPLATE = "Context:\n{context}\n\nQuestion: {question}"


@dataclass(slots=True)
class ChatSettings:
    """Caller-supplied overrides for one completion."""

    system_prompt: str | None = None
    model: str | None = None


@dataclass(slots=True)
class Completion:
    text: str
    token_usage: TokenUsage | None = None


class CompletionService(Protocol):
    def complete(
        self,
        context: str,
        query: str,
        settings: ChatSettings,
        evidence: Sequence[str] = (),
    ) -> Completion:
        """Generate an answer for `query` grounded in `context`.

        `evidence` holds the text of each source in the order of its
        `[Source n]` label in `context`.
        """


class LangChainCompletionService:
    """Completion over any LangChain chat model.

    Token usage is read from the returned message's `usage_metadata` when the
    provider reports it. A per-request model override is applied with
    `bind(model=...)`.
    """

    def __init__(self, llm: Any, config: SynthesisConfig | None = None) -> None:
        self.llm = llm
        self.config = config or SynthesisConfig()

    def complete(
        self,
        context: str,
        query: str,
        settings: ChatSettings,
        evidence: Sequence[str] = (),
    ) -> Completion:
        prompt = ChatPromptTemplate.from_messages(
            [
                SystemMessage(content=settings.system_prompt or DEFAULT_SYSTEM_PROMPT),
                ("human", _HUMAN_TEMPLATE),
            ]
        )
        runnable = self.llm.bind(model=settings.model) if settings.model else self.llm
        try:
            message = (prompt | runnable).invoke({"context": context, "question": query})
        except Exception as exc:  # provider and transport errors vary by backend
            log.error("completion_failed", model=settings.model or self.config.model, error=str(exc))
            raise UpstreamCompletionError(f"Completion service failed: {exc}") from exc

        return Completion(text=_message_text(message), token_usage=_token_usage(message))


class ExtractiveCompletionService:
    """Answers from retrieved evidence without an LLM dependency.

    Keeps the `CompletionService` contract for local/offline environments where
    `OPENAI_API_KEY` is not configured: the answer lists the leading sentence
    of the first few sources with their labels. Sources are read from
    `evidence`, not parsed back out of the rendered context.
    """

    def __init__(self, max_sources: int = 3, max_chars: int = 220) -> None:
        self.max_sources = max_sources
        self.max_chars = max_chars

    def complete(
        self,
        context: str,
        query: str,
        settings: ChatSettings,
        evidence: Sequence[str] = (),
    ) -> Completion:
        del context, query, settings  # extractive answers ignore phrasing and overrides
        sources = [
            (f"Source {position}", text)
            for position, text in enumerate(evidence, start=1)
            if text.strip()
        ]
        if not sources:
            return Completion(text="I could not find this in the documents.")

        lines: list[str] = []
        for idx, (label, body) in enumerate(sources[: self.max_sources], start=1):
            lines.append(f"{idx}. {_lead_sentence(body, self.max_chars)} [{label}]")
        return Completion(text="\n".join(lines))


def create_chat_model(config: SynthesisConfig, api_key: str | None) -> Any:
    if not api_key:
        return None

    from langchain_openai import ChatOpenAI

    return ChatOpenAI(
        model=config.model,
        temperature=config.temperature,
        api_key=api_key,
        timeout=config.request_timeout_seconds,
        max_retries=0,
    )


def _lead_sentence(text: str, max_chars: int) -> str:
    flat = " ".join(text.split())
    sentence = re.split(r"(?<=[.!?。！？])\s+", flat, maxsplit=1)[0]
    if len(sentence) <= max_chars:
        return sentence
    return sentence[: max_chars - 3] + "..."


def _message_text(message: Any) -> str:
    content = getattr(message, "content", message)
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict) and "text" in item:
                parts.append(str(item["text"]))
            else:
                parts.append(str(item))
        return " ".join(parts).strip()
    return str(content).strip()


def _token_usage(message: Any) -> TokenUsage | None:
    usage = getattr(message, "usage_metadata", None)
    if not usage:
        return None
    prompt_tokens = int(usage.get("input_tokens", 0))
    completion_tokens = int(usage.get("output_tokens", 0))
    total = usage.get("total_tokens")
    return TokenUsage(
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        total_tokens=int(total) if total is not None else prompt_tokens + completion_tokens,
    )
