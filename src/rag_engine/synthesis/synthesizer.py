"""Turns retrieved chunks and graph context into a grounded answer."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field

import structlog

from rag_engine.config import SynthesisConfig
from rag_engine.obs.tracing import estimate_token_count
from rag_engine.synthesis.completion import ChatSettings, CompletionService
from rag_engine.types import ScoredChunk, ScoredEntity, ScoredRelation, TokenUsage

log = structlog.get_logger(__name__)

NO_INFORMATION_ANSWER = (
    "I couldn't find any relevant information in your documents to answer this question."
)


@dataclass(slots=True)
class SynthesisResult:
    text: str
    sources: list[ScoredChunk] = field(default_factory=list)
    entities: list[ScoredEntity] = field(default_factory=list)
    token_usage: TokenUsage | None = None
    context: str = ""


@dataclass(slots=True)
class BuiltContext:
    """Rendered prompt context plus the evidence that made it in."""

    text: str
    chunks: list[ScoredChunk]
    entities: list[ScoredEntity]
    relations: list[ScoredRelation]
    token_count: int


class ContextBuilder:
    """Renders entities, relationships and sources under a token budget.

    Chunks are budgeted first, in rank order. The top chunk is always kept;
    later chunks are dropped whole once the budget is spent. Entity and
    relationship lines then fill whatever budget remains.
    """

    def __init__(self, max_tokens: int) -> None:
        self.max_tokens = max_tokens

    def build(
        self,
        chunks: Sequence[ScoredChunk],
        entities: Sequence[ScoredEntity] = (),
        relations: Sequence[ScoredRelation] = (),
    ) -> BuiltContext:
        used = 0
        kept_chunks: list[ScoredChunk] = []
        source_blocks: list[str] = []
        for scored in chunks:
            block = _source_block(len(kept_chunks) + 1, scored)
            cost = estimate_token_count(block)
            if kept_chunks and used + cost > self.max_tokens:
                break
            kept_chunks.append(scored)
            source_blocks.append(block)
            used += cost

        kept_entities: list[ScoredEntity] = []
        entity_lines: list[str] = []
        for scored in entities:
            line = _entity_line(scored)
            cost = estimate_token_count(line)
            if used + cost > self.max_tokens:
                break
            kept_entities.append(scored)
            entity_lines.append(line)
            used += cost

        names = {scored.entity.entity_id: scored.entity.name for scored in entities}
        kept_relations: list[ScoredRelation] = []
        relation_lines: list[str] = []
        for scored in relations:
            line = _relation_line(scored, names)
            cost = estimate_token_count(line)
            if used + cost > self.max_tokens:
                break
            kept_relations.append(scored)
            relation_lines.append(line)
            used += cost

        sections: list[str] = []
        if entity_lines:
            sections.append("## Entities\n" + "\n".join(entity_lines))
        if relation_lines:
            sections.append("## Relationships\n" + "\n".join(relation_lines))
        if source_blocks:
            sections.append("## Sources\n" + "\n\n".join(source_blocks))

        return BuiltContext(
            text="\n\n".join(sections),
            chunks=kept_chunks,
            entities=kept_entities,
            relations=kept_relations,
            token_count=used,
        )


class ResponseSynthesizer:
    """Builds the prompt context and asks the completion service for an answer.

    With no chunks the fixed no-information answer is returned and the
    completion service is never called. Completion failures surface as
    `UpstreamCompletionError`; nothing is fabricated in their place.
    """

    def __init__(self, completion: CompletionService, config: SynthesisConfig | None = None) -> None:
        self.completion = completion
        self.config = config or SynthesisConfig()
        self.context_builder = ContextBuilder(self.config.max_context_tokens)

    def synthesize(
        self,
        query: str,
        chunks: Sequence[ScoredChunk],
        entities: Sequence[ScoredEntity],
        settings: ChatSettings | None = None,
        relations: Sequence[ScoredRelation] = (),
    ) -> SynthesisResult:
        if not chunks:
            log.info("synthesis_skipped", reason="no_chunks")
            return SynthesisResult(text=NO_INFORMATION_ANSWER)

        built = self.context_builder.build(chunks, entities, relations)
        if len(built.chunks) < len(chunks):
            log.info(
                "context_truncated",
                kept=len(built.chunks),
                dropped=len(chunks) - len(built.chunks),
                budget=self.config.max_context_tokens,
            )

        completion = self.completion.complete(
            built.text,
            query,
            settings or ChatSettings(),
            evidence=[scored.chunk.content for scored in built.chunks],
        )
        log.info(
            "synthesis_complete",
            sources=len(built.chunks),
            entities=len(built.entities),
            context_tokens=built.token_count,
        )
        return SynthesisResult(
            text=completion.text,
            sources=built.chunks,
            entities=list(entities),
            token_usage=completion.token_usage,
            context=built.text,
        )


def _source_block(label: int, scored: ScoredChunk) -> str:
    return f"[Source {label}] (similarity: {scored.similarity:.3f})\n{scored.chunk.content}"


def _entity_line(scored: ScoredEntity) -> str:
    entity = scored.entity
    line = f"- {entity.name} ({entity.entity_type})"
    return f"{line}: {entity.description}" if entity.description else line


def _relation_line(scored: ScoredRelation, names: dict[str, str]) -> str:
    relation = scored.relation
    source = names.get(relation.source_entity_id, relation.source_entity_id)
    target = names.get(relation.target_entity_id, relation.target_entity_id)
    line = f"- {source} --[{relation.relation_type}]--> {target}"
    return f"{line}: {relation.description}" if relation.description else line
