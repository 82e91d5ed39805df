"""Neo4j corpus store for documentation chunks and example programs."""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING, Protocol

from core.config import settings
from core.models import DocChunk, ExampleProgram

if TYPE_CHECKING:
    from neo4j import AsyncDriver

logger = logging.getLogger(__name__)

DOC_LABEL = "DocChunk"
EXAMPLE_LABEL = "ExampleProgram"
EMBEDDING_PROPERTY = "embedding"

DOC_VECTOR_INDEX = "doc_chunks_index"
EXAMPLE_VECTOR_INDEX = "example_programs_index"
DOC_FULLTEXT_INDEX = "doc_chunks_fulltext"
EXAMPLE_FULLTEXT_INDEX = "example_programs_fulltext"

# characters with meaning in Lucene query syntax
_LUCENE_SPECIAL_RE = re.compile(r'([+\-!(){}\[\]^"~*?:\\/&|])')
_LUCENE_OPERATOR_RE = re.compile(r"\b(AND|OR|NOT)\b")

_DOC_FIELDS = """
    node.id AS id,
    node.page_name AS page_name,
    node.page_url AS page_url,
    node.section_title AS section_title,
    node.content AS content,
    score
"""

_EXAMPLE_FIELDS = """
    node.id AS id,
    node.title AS title,
    node.description AS description,
    node.code AS code,
    node.tags AS tags,
    node.url AS url,
    score
"""


class CorpusStore(Protocol):
    """Search operations the retriever needs from the corpus."""

    async def search_docs(self, query_embedding: list[float], k: int) -> list[DocChunk]: ...

    async def search_examples(
        self, query_embedding: list[float], k: int
    ) -> list[ExampleProgram]: ...

    async def fetch_chunk(self, page_name: str, section_title: str) -> DocChunk | None: ...


class LexicalCorpusStore(CorpusStore, Protocol):
    """Corpus store that also supports full-text search."""

    async def search_docs_text(self, query_text: str, k: int) -> list[DocChunk]: ...

    async def search_examples_text(self, query_text: str, k: int) -> list[ExampleProgram]: ...


def escape_lucene(text: str) -> str:
    """Make free text safe to pass as a full-text index query.

    Special characters are backslash-escaped and the boolean operators are
    lowercased so they match as plain words.
    """
    escaped = _LUCENE_SPECIAL_RE.sub(r"\\\1", text)
    return _LUCENE_OPERATOR_RE.sub(lambda m: m.group(1).lower(), escaped)


def _doc_from_record(record) -> DocChunk:
    return DocChunk(
        id=record["id"] or "",
        page_name=record["page_name"] or "",
        page_url=record["page_url"] or "",
        section_title=record["section_title"] or "",
        content=record["content"] or "",
        similarity=record["score"] if "score" in record.keys() else 0.0,
    )


def _example_from_record(record) -> ExampleProgram:
    return ExampleProgram(
        id=record["id"] or "",
        title=record["title"] or "",
        description=record["description"] or "",
        code=record["code"] or "",
        tags=list(record["tags"] or []),
        url=record["url"] or "",
        similarity=record["score"],
    )


class Neo4jCorpusStore:
    """Neo4j-backed corpus with vector and full-text indexes."""

    def __init__(self, driver: AsyncDriver | None = None):
        if driver is None:
            from neo4j import AsyncGraphDatabase

            self._driver = AsyncGraphDatabase.driver(
                settings.neo4j_uri,
                auth=(settings.neo4j_user, settings.neo4j_password),
            )
        else:
            self._driver = driver

    async def close(self) -> None:
        await self._driver.close()

    async def init_indexes(self) -> None:
        """Create vector and full-text indexes if they don't exist."""
        async with self._driver.session() as session:
            for index, label in (
                (DOC_VECTOR_INDEX, DOC_LABEL),
                (EXAMPLE_VECTOR_INDEX, EXAMPLE_LABEL),
            ):
                await session.run(
                    f"""
                    CREATE VECTOR INDEX {index} IF NOT EXISTS
                    FOR (n:{label})
                    ON (n.{EMBEDDING_PROPERTY})
                    OPTIONS {{
                        indexConfig: {{
                            `vector.dimensions`: $dimensions,
                            `vector.similarity_function`: 'cosine'
                        }}
                    }}
                    """,
                    dimensions=settings.embedding_dimensions,
                )

            await session.run(
                f"""
                CREATE FULLTEXT INDEX {DOC_FULLTEXT_INDEX} IF NOT EXISTS
                FOR (n:{DOC_LABEL}) ON EACH [n.content, n.section_title, n.page_name]
                """
            )
            await session.run(
                f"""
                CREATE FULLTEXT INDEX {EXAMPLE_FULLTEXT_INDEX} IF NOT EXISTS
                FOR (n:{EXAMPLE_LABEL}) ON EACH [n.title, n.description, n.code]
                """
            )
        logger.info(
            "Indexes initialized: %s",
            ", ".join(
                [DOC_VECTOR_INDEX, EXAMPLE_VECTOR_INDEX, DOC_FULLTEXT_INDEX, EXAMPLE_FULLTEXT_INDEX]
            ),
        )

    async def search_docs(self, query_embedding: list[float], k: int) -> list[DocChunk]:
        """Cosine similarity search over doc chunks."""
        if k <= 0:
            return []

        async with self._driver.session() as session:
            result = await session.run(
                f"""
                CALL db.index.vector.queryNodes('{DOC_VECTOR_INDEX}', $k, $embedding)
                YIELD node, score
                RETURN {_DOC_FIELDS}
                ORDER BY score DESC, id ASC
                """,
                k=k,
                embedding=query_embedding,
            )
            return [_doc_from_record(record) async for record in result]

    async def search_examples(
        self, query_embedding: list[float], k: int
    ) -> list[ExampleProgram]:
        """Cosine similarity search over example programs."""
        if k <= 0:
            return []

        async with self._driver.session() as session:
            result = await session.run(
                f"""
                CALL db.index.vector.queryNodes('{EXAMPLE_VECTOR_INDEX}', $k, $embedding)
                YIELD node, score
                RETURN {_EXAMPLE_FIELDS}
                ORDER BY score DESC, id ASC
                """,
                k=k,
                embedding=query_embedding,
            )
            return [_example_from_record(record) async for record in result]

    async def search_docs_text(self, query_text: str, k: int) -> list[DocChunk]:
        """Full-text search over doc chunks; the rank score stands in for similarity."""
        if k <= 0 or not query_text.strip():
            return []

        async with self._driver.session() as session:
            result = await session.run(
                f"""
                CALL db.index.fulltext.queryNodes('{DOC_FULLTEXT_INDEX}', $query, {{limit: $k}})
                YIELD node, score
                RETURN {_DOC_FIELDS}
                ORDER BY score DESC, id ASC
                """,
                query=escape_lucene(query_text),
                k=k,
            )
            return [_doc_from_record(record) async for record in result]

    async def search_examples_text(self, query_text: str, k: int) -> list[ExampleProgram]:
        if k <= 0 or not query_text.strip():
            return []

        async with self._driver.session() as session:
            result = await session.run(
                f"""
                CALL db.index.fulltext.queryNodes('{EXAMPLE_FULLTEXT_INDEX}', $query, {{limit: $k}})
                YIELD node, score
                RETURN {_EXAMPLE_FIELDS}
                ORDER BY score DESC, id ASC
                """,
                query=escape_lucene(query_text),
                k=k,
            )
            return [_example_from_record(record) async for record in result]

    async def fetch_chunk(self, page_name: str, section_title: str) -> DocChunk | None:
        """Point lookup of one chunk of a page, used for special sections."""
        async with self._driver.session() as session:
            result = await session.run(
                f"""
                MATCH (node:{DOC_LABEL} {{page_name: $page_name, section_title: $section_title}})
                RETURN node.id AS id,
                       node.page_name AS page_name,
                       node.page_url AS page_url,
                       node.section_title AS section_title,
                       node.content AS content
                LIMIT 1
                """,
                page_name=page_name,
                section_title=section_title,
            )
            record = await result.single()
            return _doc_from_record(record) if record else None

    async def count(self) -> dict[str, int]:
        """Return node counts per corpus."""
        counts = {}
        async with self._driver.session() as session:
            for label in (DOC_LABEL, EXAMPLE_LABEL):
                result = await session.run(f"MATCH (n:{label}) RETURN count(n) AS total")
                record = await result.single()
                counts[label] = record["total"] if record else 0
        return counts
