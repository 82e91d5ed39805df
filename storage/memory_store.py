"""In-process corpus store with numpy cosine similarity."""

from __future__ import annotations

import logging
import re
from typing import TypeVar

import numpy as np

from core.models import DocChunk, ExampleProgram

logger = logging.getLogger(__name__)

T = TypeVar("T", DocChunk, ExampleProgram)

_TOKEN_RE = re.compile(r"\w+")


def _tokens(text: str) -> set[str]:
    return {t.lower() for t in _TOKEN_RE.findall(text)}


def _cosine_scores(query_embedding: list[float], matrix: np.ndarray) -> np.ndarray:
    query_vec = np.asarray(query_embedding, dtype=np.float64)
    query_norm = np.linalg.norm(query_vec)
    if query_norm == 0 or matrix.size == 0:
        return np.zeros(len(matrix))

    norms = np.linalg.norm(matrix, axis=1)
    # zero-norm rows score 0
    norms[norms == 0] = np.inf
    return matrix @ query_vec / (norms * query_norm)


def _top_k(items: list[T], scores, k: int) -> list[T]:
    scored = [
        item.model_copy(update={"similarity": float(score)})
        for item, score in zip(items, scores)
    ]
    scored.sort(key=lambda r: (-r.similarity, r.id))
    return scored[:k]


class InMemoryCorpusStore:
    """Corpus held in memory, for offline runs and tests.

    Lexical search scores each item by the fraction of query tokens it contains.
    """

    def __init__(self):
        self._docs: list[DocChunk] = []
        self._doc_vectors: list[list[float]] = []
        self._examples: list[ExampleProgram] = []
        self._example_vectors: list[list[float]] = []

    def add_docs(self, chunks: list[DocChunk], embeddings: list[list[float]]) -> int:
        """Store doc chunks with their embeddings. Returns count added."""
        if len(chunks) != len(embeddings):
            raise ValueError(
                f"Chunk count ({len(chunks)}) does not match embedding count ({len(embeddings)})"
            )
        self._docs.extend(chunks)
        self._doc_vectors.extend(embeddings)
        logger.debug("Added %d doc chunks", len(chunks))
        return len(chunks)

    def add_examples(
        self, examples: list[ExampleProgram], embeddings: list[list[float]]
    ) -> int:
        if len(examples) != len(embeddings):
            raise ValueError(
                f"Example count ({len(examples)}) does not match embedding count ({len(embeddings)})"
            )
        self._examples.extend(examples)
        self._example_vectors.extend(embeddings)
        logger.debug("Added %d examples", len(examples))
        return len(examples)

    async def search_docs(self, query_embedding: list[float], k: int) -> list[DocChunk]:
        if k <= 0 or not self._docs:
            return []
        scores = _cosine_scores(query_embedding, np.asarray(self._doc_vectors, dtype=np.float64))
        return _top_k(self._docs, scores, k)

    async def search_examples(
        self, query_embedding: list[float], k: int
    ) -> list[ExampleProgram]:
        if k <= 0 or not self._examples:
            return []
        scores = _cosine_scores(
            query_embedding, np.asarray(self._example_vectors, dtype=np.float64)
        )
        return _top_k(self._examples, scores, k)

    async def search_docs_text(self, query_text: str, k: int) -> list[DocChunk]:
        query = _tokens(query_text)
        if k <= 0 or not query:
            return []
        scored = [
            (doc, len(query & _tokens(f"{doc.page_name} {doc.section_title} {doc.content}")))
            for doc in self._docs
        ]
        hits = [doc for doc, overlap in scored if overlap]
        scores = [overlap / len(query) for _, overlap in scored if overlap]
        return _top_k(hits, scores, k)

    async def search_examples_text(self, query_text: str, k: int) -> list[ExampleProgram]:
        query = _tokens(query_text)
        if k <= 0 or not query:
            return []
        scored = [
            (ex, len(query & _tokens(f"{ex.title} {ex.description} {ex.code} {' '.join(ex.tags)}")))
            for ex in self._examples
        ]
        hits = [ex for ex, overlap in scored if overlap]
        scores = [overlap / len(query) for _, overlap in scored if overlap]
        return _top_k(hits, scores, k)

    async def fetch_chunk(self, page_name: str, section_title: str) -> DocChunk | None:
        for doc in self._docs:
            if doc.page_name == page_name and doc.section_title == section_title:
                return doc.model_copy(update={"similarity": 0.0})
        return None

    async def count(self) -> dict[str, int]:
        return {"DocChunk": len(self._docs), "ExampleProgram": len(self._examples)}
