"""Merging, score fusion and page grouping of search results."""

from __future__ import annotations

import logging
from typing import TypeVar

from core.config import settings
from core.models import PAGE_EXAMPLES, PAGE_SUMMARY, DocChunk, ExampleProgram

logger = logging.getLogger(__name__)

T = TypeVar("T", DocChunk, ExampleProgram)


def sort_by_similarity(results: list[T]) -> list[T]:
    """Similarity descending, ties broken by id."""
    return sorted(results, key=lambda r: (-r.similarity, r.id))


def merge_and_rank(primary: list[T], contextual: list[T], k: int) -> list[T]:
    """Merge primary and contextual results into the top-k distinct items.

    Primary results come first, so on duplicate ids the primary occurrence
    (and its similarity) is kept.

    Args:
        primary: Results of the primary search
        contextual: Results of the editor-context search (may be empty)
        k: Number of results to keep

    Returns:
        At most k results with distinct ids, sorted by similarity descending
    """
    if k <= 0:
        return []

    seen: dict[str, T] = {}
    for result in primary + contextual:
        if result.id not in seen:
            seen[result.id] = result

    # stable sort keeps merge order among equal scores
    ranked = sorted(seen.values(), key=lambda r: r.similarity, reverse=True)
    logger.debug(
        "Merged %d primary + %d contextual into %d unique, keeping %d",
        len(primary),
        len(contextual),
        len(ranked),
        min(k, len(ranked)),
    )
    return ranked[:k]


def fuse_weighted(
    dense: list[T],
    lexical: list[T],
    dense_weight: float | None = None,
    lexical_weight: float | None = None,
) -> list[T]:
    """Fuse dense and lexical results by summing weighted similarity per id.

    The returned items carry the fused score as their similarity.
    """
    if dense_weight is None:
        dense_weight = settings.dense_weight
    if lexical_weight is None:
        lexical_weight = settings.lexical_weight

    items: dict[str, T] = {}
    scores: dict[str, float] = {}
    for results, weight in ((dense, dense_weight), (lexical, lexical_weight)):
        for result in results:
            items.setdefault(result.id, result)
            scores[result.id] = scores.get(result.id, 0.0) + weight * result.similarity

    fused = [items[i].model_copy(update={"similarity": scores[i]}) for i in items]
    return sort_by_similarity(fused)


def organize_by_page(
    chunks: list[DocChunk], special: dict[str, dict[str, DocChunk]]
) -> list[DocChunk]:
    """Group chunks by page, special chunks first.

    Pages keep the order of their first appearance in `chunks`. Each page
    emits its PAGE_SUMMARY (if any), its PAGE_EXAMPLES (if any), then its
    regular chunks in their incoming order.

    Args:
        chunks: Merged search results
        special: page_name -> {section_title: chunk} for fetched special chunks
    """
    pages: dict[str, list[DocChunk]] = {}
    for chunk in chunks:
        pages.setdefault(chunk.page_name, []).append(chunk)

    organized: list[DocChunk] = []
    emitted: set[str] = set()
    for page_name, page_chunks in pages.items():
        page_special = special.get(page_name, {})
        for section in (PAGE_SUMMARY, PAGE_EXAMPLES):
            chunk = page_special.get(section)
            if chunk is None:
                # the merged set may already contain the special chunk itself
                chunk = next((c for c in page_chunks if c.section_title == section), None)
            if chunk is not None and chunk.id not in emitted:
                organized.append(chunk)
                emitted.add(chunk.id)

        for chunk in page_chunks:
            if chunk.is_special or chunk.id in emitted:
                continue
            organized.append(chunk)
            emitted.add(chunk.id)

    return organized
