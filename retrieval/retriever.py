"""Hybrid retrieval: primary + editor-context search, merge, page grouping."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Awaitable, Callable, TypeVar

from core.config import settings
from core.errors import AnalyzerError, PrimarySearchError
from core.models import PAGE_EXAMPLES, PAGE_SUMMARY, DocChunk, ExampleProgram
from dsl.parser import extract_keywords
from retrieval.ranking import fuse_weighted, merge_and_rank, organize_by_page

if TYPE_CHECKING:
    from retrieval.embedder import Embedder
    from retrieval.query_analyzer import QueryAnalyzer
    from storage.corpus_store import CorpusStore

logger = logging.getLogger(__name__)

T = TypeVar("T", DocChunk, ExampleProgram)


class HybridRetriever:
    """Retrieves docs and examples relevant to a query and the editor contents."""

    def __init__(
        self,
        store: CorpusStore,
        embedder: Embedder,
        analyzer: QueryAnalyzer,
        use_lexical: bool | None = None,
    ):
        """Initialize retriever.

        Args:
            store: Corpus store to search
            embedder: Embeds search queries
            analyzer: Expands user queries with technical keywords
            use_lexical: Fuse full-text results into every search when the
                store supports it (default: settings.use_lexical_search)
        """
        self.store = store
        self.embedder = embedder
        self.analyzer = analyzer
        if use_lexical is None:
            use_lexical = settings.use_lexical_search
        self.use_lexical = use_lexical and hasattr(store, "search_docs_text")

    async def search_query(self, user_query: str) -> str:
        """Keyword-expanded query, or the raw query if expansion fails."""
        try:
            return await self.analyzer.transform_query(user_query)
        except AnalyzerError as e:
            logger.warning("Query transformation failed, using original query: %s", e)
            return user_query

    async def search_docs(self, query: str, k: int) -> list[DocChunk]:
        """Single search over doc chunks (dense, optionally fused with full-text)."""
        embedding = await self.embedder.embed(query)
        if not self.use_lexical:
            return await self.store.search_docs(embedding, k)

        return await self._fused(
            self.store.search_docs(embedding, k), self.store.search_docs_text(query, k), k
        )

    async def search_examples(self, query: str, k: int) -> list[ExampleProgram]:
        embedding = await self.embedder.embed(query)
        if not self.use_lexical:
            return await self.store.search_examples(embedding, k)

        return await self._fused(
            self.store.search_examples(embedding, k), self.store.search_examples_text(query, k), k
        )

    @staticmethod
    async def _fused(
        dense_search: Awaitable[list[T]], lexical_search: Awaitable[list[T]], k: int
    ) -> list[T]:
        dense, lexical = await asyncio.gather(dense_search, lexical_search, return_exceptions=True)
        if isinstance(dense, BaseException):
            raise dense
        if isinstance(lexical, BaseException):
            if not isinstance(lexical, Exception):
                raise lexical
            logger.warning("Full-text search failed, using dense results only: %s", lexical)
            return dense[:k]
        return fuse_weighted(dense, lexical)[:k]

    async def _primary_and_contextual(
        self,
        search: Callable[[str, int], Awaitable[list[T]]],
        search_query: str,
        editor_state: str,
        k: int,
    ) -> list[T]:
        editor_context = extract_keywords(editor_state)

        searches = [search(search_query, k + settings.primary_k_slack)]
        if editor_context:
            searches.append(search(f"{search_query} {editor_context}", k))

        results = await asyncio.gather(*searches, return_exceptions=True)

        primary = results[0]
        if isinstance(primary, Exception):
            raise PrimarySearchError(f"primary search failed: {primary}") from primary
        if isinstance(primary, BaseException):
            raise primary

        contextual: list[T] = []
        if len(results) > 1:
            if isinstance(results[1], Exception):
                logger.warning("Contextual search failed, using primary only: %s", results[1])
            elif isinstance(results[1], BaseException):
                raise results[1]
            else:
                contextual = results[1]

        return merge_and_rank(primary, contextual, k)

    async def _fetch_page_specials(self, page_name: str) -> dict[str, DocChunk]:
        summary, examples = await asyncio.gather(
            self.store.fetch_chunk(page_name, PAGE_SUMMARY),
            self.store.fetch_chunk(page_name, PAGE_EXAMPLES),
            return_exceptions=True,
        )

        specials: dict[str, DocChunk] = {}
        for section, chunk in ((PAGE_SUMMARY, summary), (PAGE_EXAMPLES, examples)):
            if isinstance(chunk, Exception):
                logger.warning(
                    "Special chunk fetch failed page_name=%s section=%s: %s",
                    page_name,
                    section,
                    chunk,
                )
            elif isinstance(chunk, BaseException):
                raise chunk
            elif chunk is not None:
                specials[section] = chunk

        # long example blocks crowd out the searched sections
        page_examples = specials.get(PAGE_EXAMPLES)
        if page_examples and len(page_examples.content) >= settings.page_examples_max_chars:
            del specials[PAGE_EXAMPLES]

        return specials

    async def hybrid_search_docs(
        self, user_query: str, editor_state: str, k: int | None = None
    ) -> list[DocChunk]:
        """Top-k doc chunks, grouped by page with special sections first.

        Args:
            user_query: Natural-language query
            editor_state: Current editor buffer (may be empty)
            k: Number of searched chunks to keep (default: settings.top_k).
                Each page adds at most its PAGE_SUMMARY and PAGE_EXAMPLES on top.

        Raises:
            PrimarySearchError: if the primary search fails
        """
        if k is None:
            k = settings.top_k
        if k <= 0:
            return []

        search_query = await self.search_query(user_query)
        merged = await self._primary_and_contextual(
            self.search_docs, search_query, editor_state, k
        )

        pages = list(dict.fromkeys(chunk.page_name for chunk in merged))
        fetched = await asyncio.gather(*(self._fetch_page_specials(p) for p in pages))
        special = dict(zip(pages, fetched))

        organized = organize_by_page(merged, special)
        logger.info(
            "Retrieved %d doc chunks across %d pages (%d with specials)",
            len(merged),
            len(pages),
            len(organized),
        )
        return organized

    async def hybrid_search_examples(
        self, user_query: str, editor_state: str, k: int | None = None
    ) -> list[ExampleProgram]:
        """Top-k example programs for the query and editor contents."""
        if k is None:
            k = settings.top_k
        if k <= 0:
            return []

        search_query = await self.search_query(user_query)
        merged = await self._primary_and_contextual(
            self.search_examples, search_query, editor_state, k
        )
        logger.info("Retrieved %d examples", len(merged))
        return merged
