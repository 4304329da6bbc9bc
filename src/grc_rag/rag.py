"""LangGraph question-answering pipeline over hybrid retrieval."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, replace
from time import perf_counter
from typing import TypedDict

from langgraph.graph import END, START, StateGraph

from .chunking import estimate_tokens
from .errors import ConfigurationError, GenerationError
from .fusion import FusionMethod
from .llm import LLMService
from .models import RAGContext, RAGResponse, RAGSource, RetrievedDocument, SearchResult
from .namespaces import NamespaceRegistry
from .observability import traced_span
from .records import RecordStore
from .search import HybridSearchEngine

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are a governance, risk and compliance assistant. Answer using only the context "
    "retrieved from the organisation's risk register, incident log, control library and "
    "policy documents. If the context does not cover the question, say so plainly."
)

GENERATION_FAILED_ANSWER = (
    "I apologize, but I was unable to generate an answer right now. "
    "Please try again later or review the sources below directly."
)

CITATION_PATTERN = re.compile(r"\[Source (\d+)\]")

UNCERTAINTY_PHRASES = (
    "i don't know",
    "i do not know",
    "insufficient information",
    "not enough information",
    "cannot determine",
    "unable to determine",
    "no relevant information",
)

EXCERPT_CHARS = 200


@dataclass(frozen=True, slots=True)
class RAGQueryConfig:
    top_k: int = 5
    max_context_tokens: int = 3000
    min_relevance_score: float = 0.3
    temperature: float = 0.7
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    use_hybrid: bool = True
    include_metadata: bool = False


PRESETS: dict[str, RAGQueryConfig] = {
    "concise": RAGQueryConfig(
        top_k=3,
        max_context_tokens=1500,
        min_relevance_score=0.5,
        temperature=0.3,
        system_prompt=DEFAULT_SYSTEM_PROMPT + " Keep the answer to a few sentences.",
    ),
    "detailed": RAGQueryConfig(
        top_k=8,
        max_context_tokens=4000,
        min_relevance_score=0.3,
        temperature=0.7,
        system_prompt=DEFAULT_SYSTEM_PROMPT + " Give a thorough answer with actionable recommendations.",
        include_metadata=True,
    ),
    "technical": RAGQueryConfig(
        top_k=10,
        max_context_tokens=6000,
        min_relevance_score=0.4,
        temperature=0.2,
        system_prompt=DEFAULT_SYSTEM_PROMPT
        + " Audience is security engineers: reference control ids, frameworks and root causes precisely.",
        include_metadata=True,
    ),
    "executive": RAGQueryConfig(
        top_k=5,
        max_context_tokens=2000,
        min_relevance_score=0.5,
        temperature=0.4,
        system_prompt=DEFAULT_SYSTEM_PROMPT
        + " Audience is executive leadership: summarise business impact and priorities without jargon.",
    ),
}


def resolve_preset(name: str) -> RAGQueryConfig:
    try:
        return PRESETS[name]
    except KeyError:
        raise ConfigurationError(f"Unknown RAG preset '{name}'. Available: {', '.join(PRESETS)}") from None


def select_within_budget(candidates: list[RetrievedDocument], max_tokens: int) -> list[RetrievedDocument]:
    """Greedy prefix of ``candidates`` that fits the token budget.

    Selection stops at the first document that would overflow; later, smaller
    documents are not considered.
    """

    selected: list[RetrievedDocument] = []
    total = 0
    for document in candidates:
        if total + document.token_count > max_tokens:
            break
        selected.append(document)
        total += document.token_count
    return selected


def build_prompt(question: str, documents: list[RetrievedDocument], config: RAGQueryConfig) -> str:
    parts = [config.system_prompt.strip()]
    if documents:
        blocks = []
        for number, document in enumerate(documents, start=1):
            lines = [
                f"[Source {number}] {document.title}",
                f"Namespace: {document.namespace}",
                f"Relevance: {document.relevance_score * 100:.1f}%",
                document.content,
            ]
            if config.include_metadata:
                extras = {
                    key: value
                    for key, value in document.metadata.items()
                    if key not in ("namespace", "record_id", "title") and value not in (None, "")
                }
                if extras:
                    lines.append("Metadata: " + ", ".join(f"{key}={value}" for key, value in sorted(extras.items())))
            blocks.append("\n".join(lines))
        parts.append("Relevant context:\n\n" + "\n\n".join(blocks))
    else:
        parts.append("No directly relevant context was found.")
    parts.append(f"Question: {question}")
    parts.append(
        "Instructions: Answer the question based on the context provided. "
        "Cite the sources you rely on using [Source N] notation."
    )
    return "\n\n".join(parts)


def parse_citations(answer: str, source_count: int) -> list[int]:
    """Zero-based indexes of cited sources, in order of first citation."""

    indexes: list[int] = []
    for match in CITATION_PATTERN.finditer(answer):
        index = int(match.group(1)) - 1
        if 0 <= index < source_count and index not in indexes:
            indexes.append(index)
    return indexes


def score_confidence(answer: str) -> float:
    confidence = 0.7
    if CITATION_PATTERN.search(answer):
        confidence += 0.15
    if len(answer) < 100:
        confidence -= 0.2
    elif len(answer) > 500:
        confidence += 0.1
    lowered = answer.lower()
    if any(phrase in lowered for phrase in UNCERTAINTY_PHRASES):
        confidence -= 0.3
    return round(max(0.0, min(1.0, confidence)), 4)


def excerpt_of(content: str) -> str:
    return content if len(content) <= EXCERPT_CHARS else content[:EXCERPT_CHARS] + "..."


class RAGState(TypedDict, total=False):
    question: str
    namespace: str | None
    options: RAGQueryConfig
    started: float
    context: RAGContext
    answer: str
    generated: bool
    generation_time_ms: float
    response: RAGResponse


class RAGPipeline:
    """Retrieve, budget, prompt, generate, then score and cite."""

    def __init__(
        self,
        search_engine: HybridSearchEngine,
        records: RecordStore,
        llm: LLMService,
        namespaces: NamespaceRegistry | None = None,
        default_preset: str = "detailed",
        use_hybrid: bool = True,
    ) -> None:
        self.search_engine = search_engine
        self.records = records
        self.llm = llm
        self.namespaces = namespaces or records.namespaces
        self.use_hybrid = use_hybrid
        self.default_config = replace(resolve_preset(default_preset), use_hybrid=use_hybrid)
        self.graph = self._build_graph().compile()

    def preset(self, name: str, **overrides: object) -> RAGQueryConfig:
        """Named preset with this pipeline's hybrid switch and any non-None overrides applied."""

        return with_overrides(replace(resolve_preset(name), use_hybrid=self.use_hybrid), **overrides)

    def query(
        self,
        question: str,
        namespace: str | None = None,
        config: RAGQueryConfig | str | None = None,
    ) -> RAGResponse:
        options = self._resolve(config)
        if namespace is not None:
            self.namespaces.get(namespace)
        with traced_span("rag_query", namespace=namespace or "all"):
            state = self.graph.invoke(
                {"question": question, "namespace": namespace, "options": options, "started": perf_counter()}
            )
        response: RAGResponse = state["response"]
        logger.info(
            "RAG query %r answered with %d sources (confidence %.2f, %.0fms)",
            question[:50],
            len(response.sources),
            response.confidence,
            response.total_time_ms,
        )
        return response

    def batch_query(
        self,
        questions: list[str],
        namespace: str | None = None,
        config: RAGQueryConfig | str | None = None,
    ) -> list[RAGResponse]:
        responses: list[RAGResponse] = []
        for question in questions:
            try:
                responses.append(self.query(question, namespace, config))
            except Exception as exc:  # noqa: BLE001
                logger.error("Batch query failed for %r: %s", question[:50], exc)
                responses.append(
                    RAGResponse(
                        query=question,
                        answer=f"Error processing question: {exc}",
                        confidence=0.0,
                        sources=[],
                        generation_time_ms=0.0,
                        total_time_ms=0.0,
                        model="error",
                    )
                )
        return responses

    def build_context(
        self,
        question: str,
        namespace: str | None = None,
        config: RAGQueryConfig | str | None = None,
    ) -> RAGContext:
        options = self._resolve(config)
        start = perf_counter()
        results = self.retrieve(question, namespace, options)
        candidates = self._load_documents(results, namespace)
        documents = select_within_budget(candidates, options.max_context_tokens)
        return RAGContext(
            query=question,
            retrieved_documents=documents,
            total_tokens=sum(document.token_count for document in documents),
            retrieval_time_ms=(perf_counter() - start) * 1000,
        )

    def retrieve(self, question: str, namespace: str | None, options: RAGQueryConfig) -> list[SearchResult]:
        fusion = self.search_engine.get_config().merged(method=FusionMethod.WEIGHTED)
        if namespace is None:
            results = self.search_engine.search_namespaces(
                question, self.namespaces.names, top_k=options.top_k, config=fusion, hybrid=options.use_hybrid
            )
        elif options.use_hybrid:
            results = self.search_engine.search(question, namespace, top_k=options.top_k, config=fusion)
        else:
            results = self.search_engine.semantic_search(question, namespace, top_k=options.top_k)
        return [result for result in results if result.fused_score >= options.min_relevance_score]

    def extract_sources(self, answer: str, documents: list[RetrievedDocument]) -> list[RAGSource]:
        cited = parse_citations(answer, len(documents))
        chosen = [documents[index] for index in cited] if cited else documents
        return [
            RAGSource(
                document_id=document.id,
                namespace=document.namespace,
                title=document.title,
                excerpt=excerpt_of(document.content),
                relevance_score=document.relevance_score,
                url=self.namespaces.get(document.namespace).url_for(document.id),
            )
            for document in chosen
        ]

    def _resolve(self, config: RAGQueryConfig | str | None) -> RAGQueryConfig:
        if config is None:
            return self.default_config
        if isinstance(config, str):
            return self.preset(config)
        return config

    def _load_documents(self, results: list[SearchResult], namespace: str | None) -> list[RetrievedDocument]:
        wanted: dict[str, list[str]] = {}
        for result in results:
            wanted.setdefault(result.namespace or namespace or "", []).append(result.id)
        rows = {name: self.records.fetch_many(name, ids) for name, ids in wanted.items() if name in self.namespaces}

        documents: list[RetrievedDocument] = []
        for result in results:
            name = result.namespace or namespace or ""
            row = rows.get(name, {}).get(result.id)
            if row is None:
                logger.debug("Skipping %s/%s: record no longer exists", name, result.id)
                continue
            spec = self.namespaces.get(name)
            content = spec.build_text(row)
            documents.append(
                RetrievedDocument(
                    id=result.id,
                    namespace=name,
                    title=spec.title_of(row),
                    content=content,
                    metadata=dict(result.metadata),
                    relevance_score=result.fused_score,
                    token_count=estimate_tokens(content),
                )
            )
        return documents

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(RAGState)
        graph.add_node("retrieve", self._retrieve_node)
        graph.add_node("generate", self._generate_node)
        graph.add_node("finalize", self._finalize_node)
        graph.add_edge(START, "retrieve")
        graph.add_edge("retrieve", "generate")
        graph.add_edge("generate", "finalize")
        graph.add_edge("finalize", END)
        return graph

    def _retrieve_node(self, state: RAGState) -> RAGState:
        context = self.build_context(state["question"], state.get("namespace"), state["options"])
        return {"context": context}

    def _generate_node(self, state: RAGState) -> RAGState:
        options = state["options"]
        prompt = build_prompt(state["question"], state["context"].retrieved_documents, options)
        start = perf_counter()
        try:
            answer = self.llm.complete(prompt, temperature=options.temperature)
            generated = True
        except GenerationError as exc:
            logger.error("Generation failed, returning fallback answer: %s", exc)
            answer = GENERATION_FAILED_ANSWER
            generated = False
        return {"answer": answer, "generated": generated, "generation_time_ms": (perf_counter() - start) * 1000}

    def _finalize_node(self, state: RAGState) -> RAGState:
        context = state["context"]
        answer = state["answer"]
        response = RAGResponse(
            query=state["question"],
            answer=answer,
            confidence=score_confidence(answer) if state["generated"] else 0.0,
            sources=self.extract_sources(answer, context.retrieved_documents),
            generation_time_ms=state["generation_time_ms"],
            total_time_ms=(perf_counter() - state["started"]) * 1000,
            model=self.llm.model_name if state["generated"] else "unknown",
            context=context,
        )
        return {"response": response}


def with_overrides(config: RAGQueryConfig, **overrides: object) -> RAGQueryConfig:
    """Copy of ``config`` with the non-None overrides applied."""

    return replace(config, **{key: value for key, value in overrides.items() if value is not None})
