"""Generation orchestrator: analyze -> retrieve (or reuse cache) -> generate -> validate."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Awaitable, Callable

from core.config import settings
from core.errors import CodeValidationError, GeneratorError
from core.models import (
    CachedRAGResult,
    DocChunk,
    DocReference,
    ExampleProgram,
    GenerateRequest,
    GenerateResponse,
    Message,
    ProgramReference,
    QueryAnalysis,
    StreamEvent,
    TextGenerationRequest,
    TextGenerationResponse,
    Usage,
)
from generation.prompt import build_system_prompt, get_cheatsheet
from generation.response import (
    analyze_response,
    format_retry_prompt,
    is_conversational_query,
    parse_need_docs_marker,
)

if TYPE_CHECKING:
    from dsl.validator import CodeValidator
    from generation.generator import TextGenerator
    from retrieval.query_analyzer import QueryAnalyzer
    from retrieval.retriever import HybridRetriever
    from storage.rag_cache import RAGCache

logger = logging.getLogger(__name__)

OnEvent = Callable[[StreamEvent], Awaitable[None]]


@dataclass
class TurnState:
    """Everything one generation turn accumulates."""

    request: GenerateRequest
    generator: TextGenerator
    analysis: QueryAnalysis | None = None
    conversational: bool = False
    docs: list[DocChunk] = field(default_factory=list)
    examples: list[ExampleProgram] = field(default_factory=list)
    used_cache: bool = False
    system_prompt: str = ""
    usage: Usage = field(default_factory=Usage)

    @property
    def can_use_cache(self) -> bool:
        return bool(self.request.session_id) and not self.conversational


def build_program_references(examples: list[ExampleProgram]) -> list[ProgramReference]:
    return [
        ProgramReference(
            id=ex.id,
            title=ex.title,
            author_name=ex.author_name,
            url=f"/strudel/{ex.id}",
        )
        for ex in examples
    ]


def build_doc_references(docs: list[DocChunk]) -> list[DocReference]:
    """One reference per page URL, in first-appearance order."""
    refs = []
    seen: set[str] = set()
    for doc in docs:
        if doc.page_url in seen:
            continue
        seen.add(doc.page_url)
        refs.append(
            DocReference(page_name=doc.page_name, section_title=doc.section_title, url=doc.page_url)
        )
    return refs


class CodeAgent:
    """Runs one turn of Strudel code generation end-to-end.

    Holds no per-turn state, so one agent can serve concurrent turns.
    """

    def __init__(
        self,
        retriever: HybridRetriever,
        generator: TextGenerator,
        analyzer: QueryAnalyzer,
        validator: CodeValidator | None = None,
        rag_cache: RAGCache | None = None,
        skip_analysis_for_custom_generator: bool = True,
    ):
        """Initialize agent.

        Args:
            retriever: Hybrid doc/example retriever
            generator: Default text generator
            analyzer: Structured query analyzer
            validator: Optional evaluator for generated code
            rag_cache: Optional per-session retrieval cache
            skip_analysis_for_custom_generator: Skip the analyzer call for
                requests carrying their own generator, trading the query
                context section for latency
        """
        self.retriever = retriever
        self.generator = generator
        self.analyzer = analyzer
        self.validator = validator
        self.rag_cache = rag_cache
        self.skip_analysis_for_custom_generator = skip_analysis_for_custom_generator

    # -- retrieval ---------------------------------------------------------

    async def _cache_get(self, session_id: str) -> CachedRAGResult | None:
        try:
            return await self.rag_cache.get(session_id)
        except Exception as e:
            logger.warning("RAG cache get failed session_id=%s (will fetch fresh): %s", session_id, e)
            return None

    async def _cache_set(self, session_id: str, query: str, state: TurnState) -> None:
        try:
            await self.rag_cache.set(
                session_id, CachedRAGResult.from_results(query, state.docs, state.examples)
            )
        except Exception as e:
            logger.warning("RAG cache set failed session_id=%s: %s", session_id, e)

    async def _cache_clear(self, session_id: str) -> None:
        try:
            await self.rag_cache.clear(session_id)
        except Exception as e:
            logger.warning("RAG cache clear failed session_id=%s: %s", session_id, e)

    async def _retrieve(
        self, query: str, editor_state: str
    ) -> tuple[list[DocChunk], list[ExampleProgram]]:
        docs_task = asyncio.ensure_future(
            self.retriever.hybrid_search_docs(query, editor_state, settings.docs_top_k)
        )
        examples_task = asyncio.ensure_future(
            self.retriever.hybrid_search_examples(query, editor_state, settings.examples_top_k)
        )
        tasks = (docs_task, examples_task)
        try:
            docs, examples = await asyncio.gather(*tasks)
        except BaseException:
            # no search outlives the turn
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        return docs, examples

    async def load_context(self, state: TurnState) -> None:
        """Fill docs/examples from the session cache, or retrieve and cache them."""
        if state.conversational:
            logger.info("Conversational query, skipping retrieval")
            return

        request = state.request
        session_id = request.session_id
        if self.rag_cache is not None and state.can_use_cache:
            cached = await self._cache_get(session_id)
            if cached is not None:
                state.docs = cached.docs
                state.examples = cached.examples
                state.used_cache = True
                logger.info(
                    "RAG cache hit session_id=%s (%d docs, %d examples)",
                    session_id,
                    len(state.docs),
                    len(state.examples),
                )
                return

        state.docs, state.examples = await self._retrieve(request.user_query, request.editor_state)

        if self.rag_cache is not None and state.can_use_cache:
            await self._cache_set(session_id, request.user_query, state)

    async def refresh_context(self, state: TurnState, topic: str) -> None:
        """Replace cached material with a fresh search for `topic`.

        Failed searches keep the previous docs or examples.
        """
        session_id = state.request.session_id
        editor_state = state.request.editor_state
        if self.rag_cache is not None:
            await self._cache_clear(session_id)

        docs, examples = await asyncio.gather(
            self.retriever.hybrid_search_docs(topic, editor_state, settings.docs_top_k),
            self.retriever.hybrid_search_examples(topic, editor_state, settings.examples_top_k),
            return_exceptions=True,
        )
        for result in (docs, examples):
            if isinstance(result, BaseException) and not isinstance(result, Exception):
                raise result

        if isinstance(docs, Exception):
            logger.warning("Failed to fetch docs for topic=%s: %s", topic, docs)
        else:
            state.docs = docs
        if isinstance(examples, Exception):
            logger.warning("Failed to fetch examples for topic=%s: %s", topic, examples)
        else:
            state.examples = examples

        if self.rag_cache is not None and state.can_use_cache:
            await self._cache_set(session_id, topic, state)

    # -- generation --------------------------------------------------------

    def build_prompt(self, state: TurnState, used_rag_cache: bool) -> str:
        return build_system_prompt(
            cheatsheet=get_cheatsheet(),
            editor_state=state.request.editor_state,
            docs=state.docs,
            examples=state.examples,
            analysis=state.analysis,
            used_rag_cache=used_rag_cache,
        )

    async def call_generator(
        self,
        state: TurnState,
        user_message: str,
        history: list[Message] | None = None,
    ) -> TextGenerationResponse:
        if history is None:
            history = state.request.conversation_history

        request = TextGenerationRequest(
            system_prompt=state.system_prompt,
            messages=[*history, Message(role="user", content=user_message)],
            max_tokens=settings.generator_max_tokens,
        )
        response = await state.generator.generate_text(request)
        state.usage = state.usage + response.usage
        return response

    async def validate_and_retry(
        self, state: TurnState, content: str
    ) -> tuple[str, bool, bool, str]:
        """Validate code once; on failure regenerate once with the diagnostic.

        Returns:
            (content, is_code, did_retry, validation_error)
        """
        try:
            result = await self.validator.validate(content)
        except CodeValidationError as e:
            logger.warning("Validator unavailable, skipping retry: %s", e)
            return content, True, False, ""

        if result.valid:
            return content, True, False, ""

        logger.info("Generated code failed validation: %s", result.located_error)
        retry_history = [
            *state.request.conversation_history,
            Message(role="user", content=state.request.user_query),
            Message(role="assistant", content=content),
        ]
        try:
            retry = await self.call_generator(
                state, format_retry_prompt(content, result), history=retry_history
            )
        except GeneratorError as e:
            logger.warning("Retry generation failed, keeping first response: %s", e)
            return content, True, False, result.error

        retried_content, is_code = analyze_response(retry.text)
        return retried_content, is_code, True, result.error

    def _clarification_response(self, state: TurnState) -> GenerateResponse:
        return GenerateResponse(
            content="",
            is_code_response=False,
            is_actionable=False,
            clarifying_questions=list(state.analysis.clarifying_questions),
            model=state.generator.model,
            usage=state.usage,
        )

    def new_turn(self, request: GenerateRequest) -> TurnState:
        return TurnState(
            request=request,
            generator=request.custom_generator or self.generator,
            conversational=is_conversational_query(request.user_query),
        )

    async def prepare(self, state: TurnState, handles_need_docs: bool = True) -> None:
        """Retrieval and prompt assembly shared by the plain and streaming paths.

        The cache note asking for `[NEED_DOCS: topic]` is only added when the
        caller can act on the marker.
        """
        await self.load_context(state)
        state.system_prompt = self.build_prompt(
            state, used_rag_cache=state.used_cache and handles_need_docs
        )

    async def generate(self, request: GenerateRequest) -> GenerateResponse:
        """Run one turn and return the complete response.

        Raises:
            AnalyzerError: if the structured analysis fails
            PrimarySearchError: if a primary search fails
            GeneratorError: if a generator call fails
        """
        state = self.new_turn(request)
        byok = request.custom_generator is not None

        if not state.conversational and not (byok and self.skip_analysis_for_custom_generator):
            state.analysis = await self.analyzer.analyze(request.user_query)
            if not state.analysis.is_actionable:
                logger.info("Query needs clarification: %s", request.user_query)
                return self._clarification_response(state)

        await self.prepare(state)

        response = await self.call_generator(state, request.user_query)
        text = response.text

        if state.used_cache:
            topic = parse_need_docs_marker(text)
            if topic:
                logger.info(
                    "Generator requested fresh docs session_id=%s topic=%s",
                    request.session_id,
                    topic,
                )
                await self.refresh_context(state, topic)
                state.system_prompt = self.build_prompt(state, used_rag_cache=False)
                response = await self.call_generator(state, request.user_query)
                text = response.text

        content, is_code = analyze_response(text)

        did_retry = False
        validation_error = ""
        if self.validator is not None and is_code and content:
            content, is_code, did_retry, validation_error = await self.validate_and_retry(
                state, content
            )

        logger.info(
            "Turn complete: code=%s docs=%d examples=%d retry=%s",
            is_code,
            len(state.docs),
            len(state.examples),
            did_retry,
        )
        return GenerateResponse(
            content=content,
            is_code_response=is_code,
            is_actionable=True,
            clarifying_questions=[],
            docs_retrieved=len(state.docs),
            examples_retrieved=len(state.examples),
            doc_references=build_doc_references(state.docs),
            program_references=build_program_references(state.examples),
            model=state.generator.model,
            usage=state.usage,
            did_retry=did_retry,
            validation_error=validation_error,
            docs=state.docs,
            examples=state.examples,
        )

    async def generate_stream(self, request: GenerateRequest, on_event: OnEvent) -> None:
        """Run one turn, delivering refs, text chunks and a final done event.

        Skips analysis and validation. Failures emit an error event and are
        then re-raised.
        """
        try:
            state = self.new_turn(request)
            # streamed chunks are final; no NEED_DOCS round trip here
            await self.prepare(state, handles_need_docs=False)

            doc_refs = build_doc_references(state.docs)
            program_refs = build_program_references(state.examples)
            await on_event(
                StreamEvent(type="refs", doc_references=doc_refs, program_references=program_refs)
            )

            async def on_chunk(text: str) -> None:
                await on_event(StreamEvent(type="chunk", content=text))

            generation_request = TextGenerationRequest(
                system_prompt=state.system_prompt,
                messages=[
                    *request.conversation_history,
                    Message(role="user", content=request.user_query),
                ],
                max_tokens=settings.generator_max_tokens,
            )
            if hasattr(state.generator, "generate_text_stream"):
                response = await state.generator.generate_text_stream(generation_request, on_chunk)
            else:
                response = await state.generator.generate_text(generation_request)
                if response.text:
                    await on_chunk(response.text)
        except Exception as e:
            logger.error("Streaming generation failed: %s", e)
            await on_event(StreamEvent(type="error", error=str(e)))
            raise

        content, is_code = analyze_response(response.text)
        await on_event(
            StreamEvent(
                type="done",
                content=content,
                model=state.generator.model,
                is_code_response=is_code,
                usage=response.usage,
                doc_references=doc_refs,
                program_references=program_refs,
            )
        )
