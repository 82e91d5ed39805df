"""Unit tests for the corpus stores (mock async Neo4j driver, in-memory store)."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from core.models import DocChunk, ExampleProgram
from storage.corpus_store import (
    DOC_FULLTEXT_INDEX,
    DOC_VECTOR_INDEX,
    EXAMPLE_FULLTEXT_INDEX,
    EXAMPLE_VECTOR_INDEX,
    Neo4jCorpusStore,
)
from storage.memory_store import InMemoryCorpusStore


class _Result:
    """Stand-in for neo4j.AsyncResult."""

    def __init__(self, records):
        self._records = list(records)

    async def _iter(self):
        for record in self._records:
            yield record

    def __aiter__(self):
        return self._iter()

    async def single(self):
        return self._records[0] if self._records else None


@pytest.fixture
def mock_driver():
    driver = MagicMock()
    driver.close = AsyncMock()
    session = MagicMock()
    session.run = AsyncMock(return_value=_Result([]))
    driver.session.return_value.__aenter__ = AsyncMock(return_value=session)
    driver.session.return_value.__aexit__ = AsyncMock(return_value=False)
    return driver, session


@pytest.fixture
def store(mock_driver):
    driver, _ = mock_driver
    return Neo4jCorpusStore(driver=driver)


def _doc_record(i, score):
    return {
        "id": f"d{i}",
        "page_name": "Effects",
        "page_url": "/learn/effects",
        "section_title": f"Section {i}",
        "content": f"Content {i}",
        "score": score,
    }


class TestNeo4jInit:
    def test_custom_driver(self):
        driver = MagicMock()
        assert Neo4jCorpusStore(driver=driver)._driver is driver

    def test_default_driver(self):
        neo4j = MagicMock()
        with patch.dict("sys.modules", {"neo4j": neo4j}):
            store = Neo4jCorpusStore()
        assert store._driver is neo4j.AsyncGraphDatabase.driver.return_value

    @pytest.mark.asyncio
    async def test_init_indexes(self, store, mock_driver):
        _, session = mock_driver

        await store.init_indexes()

        queries = [c.args[0] for c in session.run.call_args_list]
        assert len(queries) == 4
        assert "CREATE VECTOR INDEX" in queries[0] and DOC_VECTOR_INDEX in queries[0]
        assert EXAMPLE_VECTOR_INDEX in queries[1]
        assert "CREATE FULLTEXT INDEX" in queries[2] and DOC_FULLTEXT_INDEX in queries[2]
        assert EXAMPLE_FULLTEXT_INDEX in queries[3]
        assert session.run.call_args_list[0].kwargs["dimensions"] == 1536

    @pytest.mark.asyncio
    async def test_close(self, store, mock_driver):
        driver, _ = mock_driver
        await store.close()
        driver.close.assert_awaited_once()


class TestNeo4jSearch:
    @pytest.mark.asyncio
    async def test_search_docs(self, store, mock_driver):
        _, session = mock_driver
        session.run.return_value = _Result([_doc_record(1, 0.9), _doc_record(2, 0.8)])

        results = await store.search_docs([0.1, 0.2], k=2)

        assert [r.id for r in results] == ["d1", "d2"]
        assert results[0].similarity == 0.9
        assert results[0].page_url == "/learn/effects"
        query = session.run.call_args.args[0]
        assert "db.index.vector.queryNodes" in query
        assert DOC_VECTOR_INDEX in query
        assert session.run.call_args.kwargs == {"k": 2, "embedding": [0.1, 0.2]}

    @pytest.mark.asyncio
    async def test_search_docs_null_fields(self, store, mock_driver):
        _, session = mock_driver
        record = _doc_record(1, 0.5)
        record["page_url"] = None
        session.run.return_value = _Result([record])

        results = await store.search_docs([0.1], k=1)

        assert results[0].page_url == ""

    @pytest.mark.asyncio
    async def test_search_examples(self, store, mock_driver):
        _, session = mock_driver
        session.run.return_value = _Result(
            [
                {
                    "id": "p1",
                    "title": "Acid",
                    "description": None,
                    "code": 'note("c2").s("sawtooth")',
                    "tags": ["acid", "bass"],
                    "url": "",
                    "score": 0.77,
                }
            ]
        )

        results = await store.search_examples([0.1], k=3)

        assert results == [
            ExampleProgram(
                id="p1",
                title="Acid",
                code='note("c2").s("sawtooth")',
                tags=["acid", "bass"],
                similarity=0.77,
            )
        ]
        assert EXAMPLE_VECTOR_INDEX in session.run.call_args.args[0]

    @pytest.mark.asyncio
    async def test_zero_k_skips_query(self, store, mock_driver):
        _, session = mock_driver

        assert await store.search_docs([0.1], k=0) == []
        assert await store.search_examples([0.1], k=0) == []
        session.run.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_search_docs_text(self, store, mock_driver):
        _, session = mock_driver
        session.run.return_value = _Result([_doc_record(3, 2.4)])

        results = await store.search_docs_text("reverb room", k=5)

        assert results[0].similarity == 2.4
        query = session.run.call_args.args[0]
        assert "db.index.fulltext.queryNodes" in query
        assert DOC_FULLTEXT_INDEX in query
        assert session.run.call_args.kwargs == {"query": "reverb room", "k": 5}

    @pytest.mark.asyncio
    async def test_search_text_escapes_query_syntax(self, store, mock_driver):
        _, session = mock_driver
        session.run.return_value = _Result([])

        await store.search_examples_text("how does sound() work? bd:3 AND hh", k=2)

        query = session.run.call_args.args[0]
        assert EXAMPLE_FULLTEXT_INDEX in query
        assert session.run.call_args.kwargs["query"] == r"how does sound\(\) work\? bd\:3 and hh"

    @pytest.mark.asyncio
    async def test_search_text_blank_query(self, store, mock_driver):
        _, session = mock_driver

        assert await store.search_examples_text("   ", k=5) == []
        session.run.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_fetch_chunk(self, store, mock_driver):
        _, session = mock_driver
        record = _doc_record(1, 0)
        del record["score"]
        session.run.return_value = _Result([record])

        chunk = await store.fetch_chunk("Effects", "PAGE_SUMMARY")

        assert chunk.id == "d1"
        assert chunk.similarity == 0.0
        assert session.run.call_args.kwargs == {
            "page_name": "Effects",
            "section_title": "PAGE_SUMMARY",
        }

    @pytest.mark.asyncio
    async def test_fetch_chunk_missing(self, store, mock_driver):
        _, session = mock_driver
        session.run.return_value = _Result([])

        assert await store.fetch_chunk("Nope", "PAGE_SUMMARY") is None

    @pytest.mark.asyncio
    async def test_count(self, store, mock_driver):
        _, session = mock_driver
        session.run.side_effect = [_Result([{"total": 42}]), _Result([])]

        assert await store.count() == {"DocChunk": 42, "ExampleProgram": 0}


@pytest.fixture
def memory_store():
    store = InMemoryCorpusStore()
    store.add_docs(
        [
            DocChunk(id="a", page_name="Filters", section_title="lpf", content="low pass filter"),
            DocChunk(id="b", page_name="Effects", section_title="room", content="reverb room size"),
            DocChunk(id="c", page_name="Effects", section_title="PAGE_SUMMARY", content="all effects"),
        ],
        [[1.0, 0.0], [0.0, 1.0], [0.0, 0.0]],
    )
    store.add_examples(
        [
            ExampleProgram(id="p1", title="Dub", code='s("bd").room(0.9)', tags=["dub"]),
            ExampleProgram(id="p2", title="Acid", code='note("c2").lpf(300)', tags=["acid"]),
        ],
        [[0.0, 1.0], [1.0, 0.0]],
    )
    return store


class TestInMemoryCorpusStore:
    def test_mismatched_embeddings(self):
        store = InMemoryCorpusStore()
        with pytest.raises(ValueError, match="does not match"):
            store.add_docs([DocChunk(id="a")], [])
        with pytest.raises(ValueError, match="does not match"):
            store.add_examples([], [[0.1]])

    @pytest.mark.asyncio
    async def test_search_docs_cosine(self, memory_store):
        results = await memory_store.search_docs([0.0, 2.0], k=2)

        assert [r.id for r in results] == ["b", "a"]
        assert results[0].similarity == pytest.approx(1.0)
        assert results[1].similarity == pytest.approx(0.0)

    @pytest.mark.asyncio
    async def test_zero_norm_rows_score_zero(self, memory_store):
        results = await memory_store.search_docs([1.0, 0.0], k=3)

        assert results[0].id == "a"
        # ties break on id
        assert [r.id for r in results[1:]] == ["b", "c"]
        assert all(r.similarity == 0.0 for r in results[1:])

    @pytest.mark.asyncio
    async def test_search_examples(self, memory_store):
        results = await memory_store.search_examples([1.0, 0.1], k=1)
        assert [r.id for r in results] == ["p2"]

    @pytest.mark.asyncio
    async def test_empty_store(self):
        store = InMemoryCorpusStore()
        assert await store.search_docs([1.0], k=3) == []
        assert await store.count() == {"DocChunk": 0, "ExampleProgram": 0}

    @pytest.mark.asyncio
    async def test_lexical_search(self, memory_store):
        results = await memory_store.search_docs_text("Reverb room", k=5)

        assert [r.id for r in results] == ["b"]
        assert results[0].similarity == pytest.approx(1.0)

        examples = await memory_store.search_examples_text("acid lpf", k=5)
        assert [e.id for e in examples] == ["p2"]

    @pytest.mark.asyncio
    async def test_fetch_chunk(self, memory_store):
        chunk = await memory_store.fetch_chunk("Effects", "PAGE_SUMMARY")
        assert chunk.id == "c"
        assert await memory_store.fetch_chunk("Effects", "PAGE_EXAMPLES") is None

    @pytest.mark.asyncio
    async def test_results_are_copies(self, memory_store):
        results = await memory_store.search_docs([0.0, 1.0], k=1)
        results[0].content = "changed"

        chunk = await memory_store.fetch_chunk("Effects", "room")
        assert chunk.content == "reverb room size"
