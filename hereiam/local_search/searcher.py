from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

import numpy as np
import structlog

from ..errors import StoreError, ValidationError, VectorIndexError
from .constants import GRANULARITIES
from .db import MetadataStore
from .embedder import EmbeddingProvider
from .indexer import rebuild_vector_index
from .session import IndexSession
from .utils import GranularitySelection, normalize_granularities
from .vector_index import VectorIndex

log = structlog.get_logger()


@dataclass
class SearchResult:
    text: str
    file_path: str
    start_offset: int
    granularity: str
    score: float
    title: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "text": self.text,
            "filePath": self.file_path,
            "startOffset": self.start_offset,
            "granularity": self.granularity,
            "score": self.score,
            "title": self.title,
        }


class LocalSearcher:
    """
    Query pipeline over the vector index and the metadata store:
    - embed the query with the same provider used for indexing
    - nearest neighbours from the FAISS index (built lazily if missing)
    - keep only chunks of the enabled granularities
    - resolve handles to chunk text through SQLite, with the in-memory
      session as a fallback when it describes the same index generation
    """

    def __init__(
        self,
        store: MetadataStore,
        vector_index: VectorIndex,
        provider: EmbeddingProvider,
        session: IndexSession,
    ) -> None:
        self.store = store
        self.vector_index = vector_index
        self.provider = provider
        self.session = session

    def search(
        self,
        query: str,
        granularity: GranularitySelection = None,
        limit: int = 5,
        min_score: Optional[float] = None,
    ) -> list[SearchResult]:
        """
        Top ``limit`` chunks for ``query``, best first.

        Args:
            query: Natural language query.
            granularity: Levels to search; defaults to paragraphs.
            limit: Maximum number of results.
            min_score: Drop results scoring below this cosine similarity.

        Returns:
            SearchResults in descending score; equal scores keep index order.
        """
        if not query or not query.strip():
            raise ValidationError("Search query must not be empty")
        levels = normalize_granularities(granularity)
        if not levels:
            raise ValidationError("Select at least one granularity level to search")
        if int(limit) <= 0:
            raise ValidationError("limit must be positive", {"limit": limit})
        limit = int(limit)

        if self._nothing_indexed():
            return []

        q = self.provider.embed_query(query.strip())

        filtered = levels != set(GRANULARITIES)
        # filtering happens after the search, so a filtered query scans every row
        hits = self._search_index(q, None if filtered else limit)
        store_usable = self._store_consistent()
        if filtered:
            allowed = self._handles_for(levels, store_usable)
            hits = [h for h in hits if h[0] in allowed][:limit]

        results = self._resolve(hits, store_usable)
        if min_score is not None:
            results = [r for r in results if r.score >= float(min_score)]
        log.debug("search_done", query=query, levels=sorted(levels), hits=len(hits), results=len(results))
        return results

    def _nothing_indexed(self) -> bool:
        if self.vector_index.loaded or self.vector_index.exists() or self.session.chunks:
            return False
        try:
            return self.store.count_chunks() == 0
        except StoreError:
            return False

    def _search_index(self, q: np.ndarray, k: Optional[int]) -> list[tuple[int, float]]:
        """Search, rebuilding the index once if it is missing or unreadable.

        Errors from the rebuild itself, or from searching the rebuilt index,
        propagate.
        """
        try:
            if self.vector_index.loaded or self.vector_index.load():
                return self._top(q, k)
            log.info("vector_index_missing_building")
        except VectorIndexError as e:
            log.warning("vector_index_unusable_rebuilding", error=str(e))

        rebuild_vector_index(self.store, self.vector_index, self.provider, self.session)
        return self._top(q, k)

    def _top(self, q: np.ndarray, k: Optional[int]) -> list[tuple[int, float]]:
        return self.vector_index.search(q, k if k is not None else self.vector_index.size)

    def _store_consistent(self) -> bool:
        """True when the store's chunk handles belong to the loaded index."""
        try:
            state = self.store.get_index_state()
        except StoreError as e:
            log.warning("index_state_unavailable", error=str(e))
            return False
        consistent = state.ready and state.generation == self.vector_index.generation
        if not consistent:
            log.warning(
                "metadata_out_of_step",
                store_state=state.state,
                store_generation=state.generation,
                index_generation=self.vector_index.generation,
            )
        return consistent

    def _session_usable(self) -> bool:
        return self.session.generation is not None and self.session.generation == self.vector_index.generation

    def _handles_for(self, levels: frozenset[str], store_usable: bool) -> set[int]:
        if store_usable:
            try:
                return {
                    int(c.embedding_id)
                    for c in self.store.get_chunks_by_granularity(levels)
                    if c.embedding_id is not None
                }
            except StoreError as e:
                log.warning("granularity_lookup_fallback", error=str(e))
        if not self._session_usable():
            return set()
        return {c.embedding_id for c in self.session.chunks_for(levels)}

    def _resolve(self, hits: list[tuple[int, float]], store_usable: bool) -> list[SearchResult]:
        stored: dict[Optional[int], Any] = {}
        if store_usable:
            try:
                stored = {c.embedding_id: c for c in self.store.get_chunks_by_handles([h for h, _ in hits])}
            except StoreError as e:
                log.warning("chunk_lookup_failed", error=str(e))

        session_usable = self._session_usable()

        results: list[SearchResult] = []
        for handle, score in hits:
            chunk: Any = stored.get(handle)
            if chunk is None and session_usable:
                chunk = self.session.chunk_at(handle)
            if chunk is None:
                log.warning(
                    "search_hit_unresolved",
                    handle=handle,
                    index_generation=self.vector_index.generation,
                    session_generation=self.session.generation,
                )
                continue
            results.append(
                SearchResult(
                    text=chunk.text,
                    file_path=chunk.file_path,
                    start_offset=chunk.start_offset,
                    granularity=chunk.granularity,
                    score=float(score),
                    title=chunk.title,
                )
            )
        return results
