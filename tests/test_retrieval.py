"""Unit tests for retrieval pipeline components."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock, Mock

import pytest

from core.errors import AnalyzerError, PrimarySearchError
from core.models import PAGE_EXAMPLES, PAGE_SUMMARY, DocChunk, ExampleProgram
from retrieval.embedder import Embedder
from retrieval.query_analyzer import DEFAULT_CLARIFYING_QUESTION, QueryAnalyzer
from retrieval.ranking import fuse_weighted, merge_and_rank, organize_by_page
from retrieval.retriever import HybridRetriever


def _chat_response(content):
    response = Mock()
    response.choices = [Mock(message=Mock(content=content))]
    return response


def _analyzer_client(payload) -> MagicMock:
    client = MagicMock()
    content = payload if isinstance(payload, str) else json.dumps(payload)
    client.chat.completions.create = AsyncMock(return_value=_chat_response(content))
    return client


def _doc(id, page="p", section="s", similarity=0.0, content="c", url=None) -> DocChunk:
    return DocChunk(
        id=id,
        page_name=page,
        page_url=url or f"/docs/{page}",
        section_title=section,
        content=content,
        similarity=similarity,
    )


def _example(id, similarity=0.0) -> ExampleProgram:
    return ExampleProgram(id=id, title=f"ex {id}", code='s("bd")', similarity=similarity)


class TestQueryAnalyzer:
    """Tests for the structured query analyzer."""

    @pytest.mark.asyncio
    async def test_analyze_parses_json(self):
        client = _analyzer_client(
            {
                "transformed_query": "tempo, bpm, setcpm",
                "is_actionable": True,
                "is_code_request": True,
                "concrete_requests": ["set tempo to 120 BPM"],
                "clarifying_questions": [],
            }
        )
        analyzer = QueryAnalyzer(openai_client=client, rate_limiter=AsyncMock(), model="m")

        analysis = await analyzer.analyze("set the bpm to 120")

        assert analysis.transformed_query == "tempo, bpm, setcpm"
        assert analysis.is_actionable
        assert analysis.concrete_requests == ["set tempo to 120 BPM"]
        call = client.chat.completions.create.call_args
        assert call.kwargs["model"] == "m"
        assert call.kwargs["messages"][0]["content"].endswith("User query: set the bpm to 120")

    @pytest.mark.asyncio
    async def test_vague_query_gets_default_question(self):
        client = _analyzer_client(
            {"transformed_query": "music", "is_actionable": False, "is_code_request": True}
        )
        analyzer = QueryAnalyzer(openai_client=client, rate_limiter=AsyncMock())

        analysis = await analyzer.analyze("make it sound good")

        assert not analysis.is_actionable
        assert analysis.clarifying_questions == [DEFAULT_CLARIFYING_QUESTION]
        assert analysis.concrete_requests == []

    @pytest.mark.asyncio
    async def test_actionable_question_has_no_requests_or_questions(self):
        client = _analyzer_client(
            {
                "transformed_query": "lpf, filter",
                "is_actionable": True,
                "is_code_request": False,
                "concrete_requests": ["explain lpf"],
                "clarifying_questions": ["which filter?"],
            }
        )
        analyzer = QueryAnalyzer(openai_client=client, rate_limiter=AsyncMock())

        analysis = await analyzer.analyze("how do I use lpf?")

        assert analysis.clarifying_questions == []
        assert analysis.concrete_requests == []

    @pytest.mark.asyncio
    async def test_malformed_json_raises(self):
        client = _analyzer_client("not json at all")
        analyzer = QueryAnalyzer(openai_client=client, rate_limiter=AsyncMock())

        with pytest.raises(AnalyzerError):
            await analyzer.analyze("query")

    @pytest.mark.asyncio
    async def test_sdk_failure_raises(self):
        client = MagicMock()
        client.chat.completions.create = AsyncMock(side_effect=RuntimeError("boom"))
        analyzer = QueryAnalyzer(openai_client=client, rate_limiter=AsyncMock())

        with pytest.raises(AnalyzerError, match="boom"):
            await analyzer.analyze("query")

    @pytest.mark.asyncio
    async def test_transform_query_appends_keywords(self):
        client = _analyzer_client({"transformed_query": "kick, bd, rhythm"})
        analyzer = QueryAnalyzer(openai_client=client, rate_limiter=AsyncMock())

        result = await analyzer.transform_query("add a kick")

        assert result == "add a kick kick, bd, rhythm"

    @pytest.mark.asyncio
    async def test_rate_limiter_acquired(self):
        client = _analyzer_client({"transformed_query": "x"})
        limiter = AsyncMock()
        analyzer = QueryAnalyzer(openai_client=client, rate_limiter=limiter)

        await analyzer.analyze("q")

        limiter.acquire.assert_awaited_once()


class TestEmbedder:
    @pytest.mark.asyncio
    async def test_embed_batch_orders_by_index(self):
        client = MagicMock()
        client.embeddings.create = AsyncMock(
            return_value=Mock(
                data=[Mock(index=1, embedding=[0.0, 1.0]), Mock(index=0, embedding=[1.0, 0.0])]
            )
        )
        embedder = Embedder(openai_client=client, rate_limiter=AsyncMock(), model="emb")

        result = await embedder.embed_batch(["a", "b"])

        assert result == [[1.0, 0.0], [0.0, 1.0]]
        assert client.embeddings.create.call_args.kwargs["input"] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_embed_single(self):
        client = MagicMock()
        client.embeddings.create = AsyncMock(
            return_value=Mock(data=[Mock(index=0, embedding=[0.5])])
        )
        embedder = Embedder(openai_client=client, rate_limiter=AsyncMock())

        assert await embedder.embed("text") == [0.5]

    @pytest.mark.asyncio
    async def test_embed_batch_empty_raises(self):
        embedder = Embedder(openai_client=MagicMock(), rate_limiter=AsyncMock())

        with pytest.raises(ValueError):
            await embedder.embed_batch([])


class TestRanking:
    def test_merge_keeps_first_occurrence_and_sorts(self):
        primary = [_doc("a", similarity=0.5), _doc("b", similarity=0.9)]
        contextual = [_doc("a", similarity=0.99), _doc("c", similarity=0.7)]

        merged = merge_and_rank(primary, contextual, k=5)

        assert [d.id for d in merged] == ["b", "c", "a"]
        assert merged[2].similarity == 0.5

    def test_merge_truncates_to_k(self):
        primary = [_doc(str(i), similarity=i / 10) for i in range(6)]

        merged = merge_and_rank(primary, [], k=3)

        assert [d.id for d in merged] == ["5", "4", "3"]

    def test_merge_k_zero(self):
        assert merge_and_rank([_doc("a")], [_doc("b")], k=0) == []

    def test_merge_works_for_examples(self):
        merged = merge_and_rank([_example("x", 0.2)], [_example("y", 0.8)], k=2)
        assert [e.id for e in merged] == ["y", "x"]

    def test_fuse_weighted_sums_per_id(self):
        dense = [_doc("a", similarity=1.0), _doc("b", similarity=0.5)]
        lexical = [_doc("b", similarity=1.0), _doc("c", similarity=1.0)]

        fused = fuse_weighted(dense, lexical, dense_weight=0.7, lexical_weight=0.3)

        scores = {d.id: d.similarity for d in fused}
        assert scores["a"] == pytest.approx(0.7)
        assert scores["b"] == pytest.approx(0.65)
        assert scores["c"] == pytest.approx(0.3)
        assert [d.id for d in fused] == ["a", "b", "c"]

    def test_organize_by_page_puts_special_first(self):
        merged = [
            _doc("a1", page="A", section="x"),
            _doc("b1", page="B", section="y"),
            _doc("a2", page="A", section="z"),
        ]
        special = {
            "A": {
                PAGE_SUMMARY: _doc("a-sum", page="A", section=PAGE_SUMMARY),
                PAGE_EXAMPLES: _doc("a-ex", page="A", section=PAGE_EXAMPLES),
            },
            "B": {PAGE_SUMMARY: _doc("b-sum", page="B", section=PAGE_SUMMARY)},
        }

        organized = organize_by_page(merged, special)

        assert [d.id for d in organized] == ["a-sum", "a-ex", "a1", "a2", "b-sum", "b1"]

    def test_organize_does_not_duplicate_special_already_merged(self):
        summary = _doc("a-sum", page="A", section=PAGE_SUMMARY)
        merged = [_doc("a1", page="A"), summary]

        organized = organize_by_page(merged, {"A": {PAGE_SUMMARY: summary}})

        assert [d.id for d in organized] == ["a-sum", "a1"]


def _retriever(store, transformed="q kw", use_lexical=False) -> HybridRetriever:
    embedder = MagicMock()
    embedder.embed = AsyncMock(return_value=[0.1, 0.2])
    analyzer = MagicMock()
    analyzer.transform_query = AsyncMock(return_value=transformed)
    return HybridRetriever(store, embedder, analyzer, use_lexical=use_lexical)


def _store() -> MagicMock:
    store = MagicMock()
    store.search_docs = AsyncMock(return_value=[])
    store.search_examples = AsyncMock(return_value=[])
    store.fetch_chunk = AsyncMock(return_value=None)
    return store


class TestHybridRetriever:
    @pytest.mark.asyncio
    async def test_empty_editor_runs_primary_only(self):
        store = _store()
        store.search_docs.return_value = [_doc("a", similarity=0.9)]
        retriever = _retriever(store)

        docs = await retriever.hybrid_search_docs("add reverb", "", k=3)

        assert [d.id for d in docs] == ["a"]
        store.search_docs.assert_awaited_once()
        assert store.search_docs.call_args.args[1] == 5  # k + slack
        retriever.embedder.embed.assert_awaited_once_with("q kw")

    @pytest.mark.asyncio
    async def test_editor_context_adds_contextual_search(self):
        store = _store()
        store.search_examples.side_effect = [
            [_example("p1", 0.8), _example("p2", 0.4)],
            [_example("p2", 0.95), _example("c1", 0.6)],
        ]
        retriever = _retriever(store)

        examples = await retriever.hybrid_search_examples("add a kick", 's("hh").fast(2)', k=2)

        assert store.search_examples.await_count == 2
        embedded = [c.args[0] for c in retriever.embedder.embed.call_args_list]
        assert embedded == ["q kw", "q kw hh fast"]
        # primary occurrence of p2 wins the merge
        assert [e.id for e in examples] == ["p1", "c1"]

    @pytest.mark.asyncio
    async def test_primary_failure_raises(self):
        store = _store()
        store.search_docs.side_effect = RuntimeError("db down")
        retriever = _retriever(store)

        with pytest.raises(PrimarySearchError):
            await retriever.hybrid_search_docs("q", "", k=3)

    @pytest.mark.asyncio
    async def test_contextual_failure_is_tolerated(self):
        store = _store()
        store.search_docs.side_effect = [[_doc("a", similarity=0.5)], RuntimeError("timeout")]
        retriever = _retriever(store)

        docs = await retriever.hybrid_search_docs("q", 's("bd")', k=3)

        assert [d.id for d in docs] == ["a"]

    @pytest.mark.asyncio
    async def test_transform_failure_falls_back_to_raw_query(self):
        store = _store()
        retriever = _retriever(store)
        retriever.analyzer.transform_query.side_effect = AnalyzerError("bad json")

        await retriever.hybrid_search_docs("raw query", "", k=3)

        retriever.embedder.embed.assert_awaited_once_with("raw query")

    @pytest.mark.asyncio
    async def test_k_zero_returns_empty_without_searching(self):
        store = _store()
        retriever = _retriever(store)

        assert await retriever.hybrid_search_docs("q", "s('bd')", k=0) == []
        assert await retriever.hybrid_search_examples("q", "s('bd')", k=0) == []
        store.search_docs.assert_not_awaited()
        store.search_examples.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_special_chunks_fetched_and_ordered(self):
        store = _store()
        store.search_docs.return_value = [
            _doc("a1", page="A", similarity=0.9),
            _doc("b1", page="B", similarity=0.8),
            _doc("a2", page="A", similarity=0.7),
        ]
        specials = {
            ("A", PAGE_SUMMARY): _doc("a-sum", page="A", section=PAGE_SUMMARY),
            ("A", PAGE_EXAMPLES): _doc("a-ex", page="A", section=PAGE_EXAMPLES, content="short"),
            ("B", PAGE_EXAMPLES): _doc("b-ex", page="B", section=PAGE_EXAMPLES, content="x" * 500),
        }
        store.fetch_chunk.side_effect = lambda page, section: specials.get((page, section))
        retriever = _retriever(store)

        docs = await retriever.hybrid_search_docs("q", "", k=3)

        # long PAGE_EXAMPLES for B is dropped
        assert [d.id for d in docs] == ["a-sum", "a-ex", "a1", "a2", "b1"]
        assert store.fetch_chunk.await_count == 4

    @pytest.mark.asyncio
    async def test_special_fetch_failure_is_tolerated(self):
        store = _store()
        store.search_docs.return_value = [_doc("a1", page="A", similarity=0.9)]
        store.fetch_chunk.side_effect = RuntimeError("lookup failed")
        retriever = _retriever(store)

        docs = await retriever.hybrid_search_docs("q", "", k=3)

        assert [d.id for d in docs] == ["a1"]

    @pytest.mark.asyncio
    async def test_merged_results_distinct_and_bounded(self):
        store = _store()
        store.search_docs.side_effect = [
            [_doc(str(i), page=f"P{i}", similarity=1 - i / 10) for i in range(5)],
            [_doc(str(i), page=f"P{i}", similarity=0.99) for i in range(3)],
        ]
        retriever = _retriever(store)

        docs = await retriever.hybrid_search_docs("q", "s('bd')", k=3)

        ids = [d.id for d in docs]
        assert len(ids) == 3
        assert len(set(ids)) == 3
        sims = [d.similarity for d in docs]
        assert sims == sorted(sims, reverse=True)

    @pytest.mark.asyncio
    async def test_lexical_fusion(self):
        store = _store()
        store.search_docs.return_value = [_doc("a", similarity=1.0)]
        store.search_docs_text = AsyncMock(return_value=[_doc("b", similarity=1.0)])
        retriever = _retriever(store, use_lexical=True)

        docs = await retriever.hybrid_search_docs("q", "", k=3)

        assert [d.id for d in docs] == ["a", "b"]
        store.search_docs_text.assert_awaited_once_with("q kw", 5)

    @pytest.mark.asyncio
    async def test_lexical_failure_falls_back_to_dense(self):
        store = _store()
        store.search_docs.return_value = [_doc("a", similarity=0.9), _doc("b", similarity=0.8)]
        store.search_docs_text = AsyncMock(side_effect=RuntimeError("Failed to parse query"))
        retriever = _retriever(store, use_lexical=True)

        docs = await retriever.hybrid_search_docs("sound()?", "", k=3)

        assert [d.id for d in docs] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_dense_failure_still_raises_with_lexical(self):
        store = _store()
        store.search_examples.side_effect = RuntimeError("vector index offline")
        store.search_examples_text = AsyncMock(return_value=[_example("x", similarity=1.0)])
        retriever = _retriever(store, use_lexical=True)

        with pytest.raises(PrimarySearchError):
            await retriever.hybrid_search_examples("q", "", k=2)

    @pytest.mark.asyncio
    async def test_k_bounds_regular_chunks_not_page_specials(self):
        store = _store()
        store.search_docs.return_value = [
            _doc(f"{page}{i}", page=page, similarity=1 - i / 10) for page in "ABC" for i in range(3)
        ]
        store.fetch_chunk.side_effect = lambda page, section: _doc(
            f"{page}-{section}", page=page, section=section, content="short"
        )
        retriever = _retriever(store)

        docs = await retriever.hybrid_search_docs("q", "", k=4)

        regular = [d for d in docs if not d.is_special]
        assert len(regular) <= 4
        for page in {d.page_name for d in docs}:
            assert sum(1 for d in docs if d.is_special and d.page_name == page) <= 2
