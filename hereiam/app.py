"""Application facade: one object owning the store, index, provider and session.

The CLI (or any other front end) talks to ``HereIAmApp`` only. It serializes
indexing and searching: while a scan runs, both ``scan`` and ``search`` raise
BusyError instead of waiting.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

import structlog

from .config import Settings, load_settings
from .errors import BusyError, StoreError, VectorIndexError
from .local_search.db import MetadataStore
from .local_search.embedder import EmbeddingProvider, create_provider
from .local_search.indexer import LocalIndexer, ProgressCb, ScanResult
from .local_search.searcher import LocalSearcher, SearchResult
from .local_search.session import IndexSession, SessionFile
from .local_search.text_extractors import TextExtractor
from .local_search.utils import GranularitySelection
from .local_search.vector_index import VectorIndex

log = structlog.get_logger()


@dataclass
class SearchResponse:
    results: list[SearchResult] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"results": [r.to_dict() for r in self.results]}


class HereIAmApp:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        provider: Optional[EmbeddingProvider] = None,
    ) -> None:
        self.settings = settings or load_settings()
        self.settings.ensure_dirs()

        self.store = MetadataStore(self.settings.db_path)
        self.vector_index = VectorIndex(self.settings.index_path)
        self.provider = provider or create_provider(self.settings)
        self.session = IndexSession()
        self.session_file = SessionFile(self.settings.session_path)
        self.extractor = TextExtractor()

        self.indexer = LocalIndexer(
            self.store,
            self.vector_index,
            self.provider,
            self.session,
            self.settings,
            session_file=self.session_file,
            extractor=self.extractor,
        )
        self.searcher = LocalSearcher(self.store, self.vector_index, self.provider, self.session)

        self._lock = threading.Lock()
        self._scan_thread: Optional[threading.Thread] = None
        self._restore()

    def _restore(self) -> None:
        saved = self.session_file.load()
        if saved:
            self.session.folder = saved.get("folder_path")
        try:
            if self.vector_index.load():
                log.info(
                    "index_restored",
                    vectors=self.vector_index.size,
                    generation=self.vector_index.generation,
                    folder=self.session.folder,
                )
        except VectorIndexError as e:
            # the next search rebuilds it from the stored chunks
            log.warning("index_restore_failed", error=str(e))

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def _acquire(self, what: str) -> None:
        if not self._lock.acquire(blocking=False):
            raise BusyError(f"Cannot {what} while a folder is being indexed")

    def scan(
        self,
        root_path: str | Path,
        extensions: Optional[Iterable[str]] = None,
        granularity: GranularitySelection = None,
        progress: Optional[ProgressCb] = None,
        cancel: Optional[threading.Event] = None,
    ) -> ScanResult:
        self._acquire("start another scan")
        try:
            return self.indexer.index_folder(
                root_path,
                extensions=extensions,
                granularity=granularity,
                progress=progress,
                cancel=cancel,
            )
        finally:
            self._lock.release()

    def scan_in_background(
        self,
        root_path: str | Path,
        extensions: Optional[Iterable[str]] = None,
        granularity: GranularitySelection = None,
        progress: Optional[ProgressCb] = None,
        cancel: Optional[threading.Event] = None,
        on_done: Optional[Callable[[ScanResult], None]] = None,
        on_error: Optional[Callable[[BaseException], None]] = None,
    ) -> threading.Thread:
        """Run ``scan`` on a daemon thread; the app stays busy until it ends."""
        self._acquire("start another scan")

        def _run() -> None:
            try:
                result = self.indexer.index_folder(
                    root_path,
                    extensions=extensions,
                    granularity=granularity,
                    progress=progress,
                    cancel=cancel,
                )
            except Exception as e:
                log.error("background_scan_failed", error=str(e), exc_info=True)
                if on_error is not None:
                    on_error(e)
                return
            finally:
                self._lock.release()
            if on_done is not None:
                on_done(result)

        thread = threading.Thread(target=_run, name="hereiam-scan", daemon=True)
        self._scan_thread = thread
        try:
            thread.start()
        except RuntimeError:
            self._lock.release()
            raise
        return thread

    def search(
        self,
        query_text: str,
        granularity: GranularitySelection = None,
        limit: Optional[int] = None,
        min_score: Optional[float] = None,
    ) -> SearchResponse:
        self._acquire("search")
        try:
            results = self.searcher.search(
                query_text,
                granularity=granularity,
                limit=limit if limit is not None else self.settings.top_k,
                min_score=min_score,
            )
        finally:
            self._lock.release()
        return SearchResponse(results=results)

    def check_indexed_data(self) -> dict[str, Any]:
        """Whether a usable index exists, so a session can resume without re-scanning."""
        try:
            chunk_count = self.store.count_chunks()
        except StoreError as e:
            log.warning("chunk_count_unavailable", error=str(e))
            chunk_count = len(self.session.chunks)
        has_index = self.vector_index.loaded or self.vector_index.exists() or self.session.has_embeddings
        return {
            "hasData": bool(chunk_count > 0 and has_index),
            "chunkCount": chunk_count,
            "folderPath": self.session.folder,
        }

    def read_file(self, path: str | Path) -> str:
        return self.extractor.extract(path)

    def close(self) -> None:
        if self._scan_thread is not None and self._scan_thread.is_alive():
            self._scan_thread.join()
        self.store.close()

    def __enter__(self) -> "HereIAmApp":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()
