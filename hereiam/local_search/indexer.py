from __future__ import annotations

import os
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Iterable, Optional

import numpy as np
import structlog

from ..errors import ExtractionError, ProviderError, ScanError, StoreError, ValidationError, VectorIndexError
from .chunker import TextChunk, chunk_document
from .db import MetadataStore
from .embedder import EmbeddingProvider
from .session import IndexedChunk, IndexSession, SessionFile
from .text_extractors import TextExtractor
from .utils import GranularitySelection, normalize_extensions, normalize_granularities
from .vector_index import VectorIndex

if TYPE_CHECKING:
    from ..config import Settings

log = structlog.get_logger()

# Lazy rebuilds re-embed stored chunks in batches of this many texts
REBUILD_EMBED_BATCH = 64


class PipelineState(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    EXTRACTING = "extracting"
    EMBEDDING = "embedding"
    PERSISTING = "persisting"
    BUILDING_INDEX = "building_index"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class IndexProgress:
    state: PipelineState
    progress_percent: int
    current_file: Optional[str]
    processed_files: int
    total_files: int
    total_files_found: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "progressPercent": self.progress_percent,
            "currentFile": self.current_file,
            "processedFiles": self.processed_files,
            "totalFiles": self.total_files,
            "totalFilesFound": self.total_files_found,
        }


@dataclass
class ScanResult:
    folder: str
    files: list[str] = field(default_factory=list)
    chunk_count: int = 0
    total_files_found: int = 0
    failed_files: list[str] = field(default_factory=list)
    state: PipelineState = PipelineState.IDLE
    error: Optional[str] = None
    generation: Optional[int] = None
    metadata_saved: bool = True

    @property
    def ok(self) -> bool:
        return self.state == PipelineState.DONE

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.ok,
            "folder": self.folder,
            "files": list(self.files),
            "chunkCount": self.chunk_count,
            "totalFilesFound": self.total_files_found,
            "failedFiles": list(self.failed_files),
            "state": self.state.value,
            "error": self.error,
            "generation": self.generation,
            "metadataSaved": self.metadata_saved,
        }


ProgressCb = Callable[[IndexProgress], None]


@dataclass
class _PendingFile:
    """A file whose chunks have been embedded and wait for persistence."""

    path: Path
    chunks: list[TextChunk]


class LocalIndexer:
    """Scan a folder, chunk and embed its files, persist chunks, rebuild the index.

    Embedding handles are positions in the single ordered list of chunks fed
    to the embedder over the whole run; the same order is used for the chunk
    rows and for the vector index rows.
    """

    def __init__(
        self,
        store: MetadataStore,
        vector_index: VectorIndex,
        provider: EmbeddingProvider,
        session: IndexSession,
        settings: "Settings",
        session_file: Optional[SessionFile] = None,
        extractor: Optional[TextExtractor] = None,
    ) -> None:
        self.store = store
        self.vector_index = vector_index
        self.provider = provider
        self.session = session
        self.settings = settings
        self.session_file = session_file
        self.extractor = extractor or TextExtractor()
        self.state = PipelineState.IDLE

    def iter_files(self, folder: str | Path, extensions: Optional[Iterable[str]] = None) -> list[Path]:
        """All files under ``folder`` (recursive, sorted) matching ``extensions``.

        An empty or missing extension list matches every file.
        """
        root = Path(folder)
        if not root.exists():
            raise ScanError(f"Folder not found: {root}", str(root))
        if not root.is_dir():
            raise ScanError(f"Not a folder: {root}", str(root))
        exts = normalize_extensions(extensions)

        def _onerror(err: OSError) -> None:
            where = str(err.filename or root)
            raise ScanError(f"Cannot read folder {where}: {err.strerror or err}", where) from err

        out: list[Path] = []
        for dirpath, dirnames, filenames in os.walk(root, onerror=_onerror):
            dirnames.sort()
            for name in sorted(filenames):
                p = Path(dirpath) / name
                if not p.is_file():
                    continue
                if exts and p.suffix.lower() not in exts:
                    continue
                out.append(p)
        return out

    def index_folder(
        self,
        folder: str | Path,
        extensions: Optional[Iterable[str]] = None,
        granularity: GranularitySelection = None,
        progress: Optional[ProgressCb] = None,
        cancel: Optional[threading.Event] = None,
    ) -> ScanResult:
        levels = normalize_granularities(granularity)
        if not levels:
            raise ValidationError("Select at least one granularity level to index")
        exts = normalize_extensions(self.settings.default_extensions if extensions is None else extensions)

        root = Path(folder).expanduser().resolve()
        result = ScanResult(folder=str(root))
        bound = log.bind(folder=str(root))

        self._set_state(PipelineState.SCANNING)
        try:
            found = self.iter_files(root, exts)
        except ScanError:
            self._set_state(PipelineState.FAILED)
            raise

        files = found[: self.settings.max_files] if self.settings.max_files else found
        result.total_files_found = len(found)
        total = len(files)
        bound.info("scan_started", total_files=total, total_files_found=len(found), levels=sorted(levels))

        # the session keeps describing the live index until this run commits
        sizes = self.settings.chunk_sizes()
        batch_size = self.settings.batch_size
        embedded: list[_PendingFile] = []
        vectors: list[np.ndarray] = []
        processed = 0

        def _emit(current_file: Optional[str], percent: Optional[int] = None) -> None:
            if progress is None:
                return
            if percent is None:
                percent = min(99, int(processed * 100 / total)) if total else 0
            progress(
                IndexProgress(
                    state=self.state,
                    progress_percent=percent,
                    current_file=current_file,
                    processed_files=processed,
                    total_files=total,
                    total_files_found=len(found),
                )
            )

        for batch_start in range(0, total, batch_size):
            if cancel is not None and cancel.is_set():
                bound.warning("scan_cancelled", processed_files=processed)
                result.error = "Indexing cancelled"
                result.state = self._set_state(PipelineState.FAILED)
                _emit(None)
                return result

            self._set_state(PipelineState.EXTRACTING)
            pending: list[_PendingFile] = []
            for path in files[batch_start : batch_start + batch_size]:
                try:
                    text = self.extractor.extract(path)
                except ExtractionError as e:
                    bound.warning("extraction_failed", path=str(path), error=str(e))
                    result.failed_files.append(str(path))
                    processed += 1
                    _emit(path.name)
                    continue
                chunks = chunk_document(text, levels, sizes, self.settings.max_chunks_per_file)
                pending.append(_PendingFile(path=path, chunks=chunks))
                processed += 1
                _emit(path.name)

            texts = [c.text for pf in pending for c in pf.chunks]
            if texts:
                self._set_state(PipelineState.EMBEDDING)
                _emit(None)
                try:
                    mat = self.provider.embed(texts)
                    if vectors and mat.shape[1] != vectors[0].shape[1]:
                        raise ProviderError(
                            "Embedding dimension changed between batches",
                            {"expected": int(vectors[0].shape[1]), "received": int(mat.shape[1])},
                        )
                except ProviderError as e:
                    # earlier batches are kept and indexed, the run still fails
                    bound.error("embedding_failed", error=str(e), batch_start=batch_start)
                    result.error = str(e)
                    break
                vectors.append(mat)
            embedded.extend(pending)

        if result.error is not None and not embedded:
            result.state = self._set_state(PipelineState.FAILED)
            _emit(None)
            return result

        all_vectors = np.vstack(vectors) if vectors else None
        generation = self._next_generation()

        self._set_state(PipelineState.PERSISTING)
        _emit(None)
        session_chunks, result.metadata_saved = self._persist(embedded, bound)

        self._set_state(PipelineState.BUILDING_INDEX)
        _emit(None)
        model = self.provider.model_name
        try:
            if all_vectors is None:
                self.vector_index.clear()
            else:
                self.vector_index.build(all_vectors, generation=generation, model=model)
        except VectorIndexError as e:
            bound.error("vector_index_build_failed", error=str(e))
            self._set_state(PipelineState.FAILED)
            raise

        if result.metadata_saved:
            try:
                self.store.mark_ready(generation)
            except StoreError as e:
                result.metadata_saved = False
                bound.error("mark_ready_failed", error=str(e))

        self.session.commit(str(root), session_chunks, all_vectors, generation, model)
        if self.session_file is not None:
            self.session_file.save(str(root), generation, model, len(session_chunks))

        result.files = [str(pf.path) for pf in embedded]
        result.chunk_count = len(session_chunks)
        result.generation = generation
        result.state = self._set_state(PipelineState.DONE if result.error is None else PipelineState.FAILED)
        _emit(None, percent=100)
        bound.info(
            "scan_finished",
            state=result.state.value,
            files=len(result.files),
            chunks=result.chunk_count,
            failed=len(result.failed_files),
            generation=generation,
        )
        return result

    def _set_state(self, state: PipelineState) -> PipelineState:
        self.state = state
        return state

    def _next_generation(self) -> int:
        try:
            current = self.store.get_index_state().generation
        except StoreError as e:
            log.warning("index_state_unavailable", error=str(e))
            current = 0
        if self.vector_index.exists() and not self.vector_index.loaded:
            try:
                self.vector_index.load()
            except VectorIndexError:
                pass  # about to be overwritten
        return max(current, self.vector_index.generation or 0) + 1

    def _persist(self, embedded: list[_PendingFile], bound: Any) -> tuple[list[IndexedChunk], bool]:
        """Write documents + chunks in one transaction; returns the session view and success.

        A store failure is logged and does not stop the index build. The
        ``building`` marker then stays set, so the mismatch is detectable.
        """
        plan: list[tuple[_PendingFile, int]] = []
        session_chunks: list[IndexedChunk] = []
        handle = 0
        for pf in embedded:
            plan.append((pf, handle))
            for chunk in pf.chunks:
                session_chunks.append(
                    IndexedChunk(
                        file_path=str(pf.path),
                        title=pf.path.name,
                        text=chunk.text,
                        start_offset=chunk.start_offset,
                        granularity=chunk.granularity,
                        embedding_id=handle,
                    )
                )
                handle += 1

        try:
            self.store.mark_building()
            with self.store.transaction():
                doc_ids: list[int] = []
                for pf, start in plan:
                    doc_id = self.store.upsert_document(pf.path)
                    doc_ids.append(doc_id)
                    self.store.replace_chunks(doc_id, pf.chunks, start_handle=start)
                self.store.delete_chunks_except(doc_ids)
        except StoreError as e:
            bound.error("metadata_persist_failed", error=str(e))
            return session_chunks, False
        return session_chunks, True


def rebuild_vector_index(
    store: MetadataStore,
    vector_index: VectorIndex,
    provider: EmbeddingProvider,
    session: IndexSession,
) -> int:
    """Rebuild the index from the embeddings at hand.

    The session's embeddings are used when it has any; otherwise the stored
    chunks are re-embedded in handle order.
    """
    if session.has_embeddings:
        assert session.embeddings is not None
        return vector_index.build(session.embeddings, generation=session.generation, model=session.model)

    chunks = store.iter_chunks_in_handle_order()
    if not chunks:
        raise VectorIndexError("Nothing has been indexed yet; index a folder first")
    handles = [c.embedding_id for c in chunks]
    if handles != list(range(len(chunks))):
        raise VectorIndexError("Stored embedding handles are not contiguous; re-index the folder")

    parts = [
        provider.embed([c.text for c in chunks[start : start + REBUILD_EMBED_BATCH]])
        for start in range(0, len(chunks), REBUILD_EMBED_BATCH)
    ]
    mat = np.vstack(parts)

    state = store.get_index_state()
    generation = state.generation if state.ready else state.generation + 1
    count = vector_index.build(mat, generation=generation, model=provider.model_name)
    if not state.ready:
        store.mark_ready(generation)

    session.commit(
        session.folder or "",
        [
            IndexedChunk(
                file_path=c.file_path,
                title=c.title,
                text=c.text,
                start_offset=c.start_offset,
                granularity=c.granularity,
                embedding_id=int(c.embedding_id),  # type: ignore[arg-type]
            )
            for c in chunks
        ],
        mat,
        generation,
        provider.model_name,
    )
    return count
