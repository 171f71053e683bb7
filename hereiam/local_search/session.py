from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import numpy as np
import structlog

from .db import now_ts
from .utils import GranularitySelection, normalize_granularities

log = structlog.get_logger()


@dataclass(frozen=True)
class IndexedChunk:
    file_path: str
    title: str
    text: str
    start_offset: int
    granularity: str
    embedding_id: int


@dataclass
class IndexSession:
    """What the last successful indexing run produced, kept in memory.

    The query pipeline uses it when the metadata store cannot answer, and the
    lazy index build reuses its embeddings. ``generation`` says which vector
    index the handles belong to; a fallback lookup is only trusted when it
    matches the index being searched.
    """

    folder: Optional[str] = None
    chunks: list[IndexedChunk] = field(default_factory=list)
    embeddings: Optional[np.ndarray] = None
    generation: Optional[int] = None
    model: Optional[str] = None

    def commit(
        self,
        folder: str,
        chunks: list[IndexedChunk],
        embeddings: Optional[np.ndarray],
        generation: Optional[int],
        model: Optional[str],
    ) -> None:
        if embeddings is not None and len(chunks) != int(embeddings.shape[0]):
            raise ValueError("session chunks and embeddings are out of step")
        self.folder = folder
        self.chunks = list(chunks)
        self.embeddings = embeddings
        self.generation = generation
        self.model = model

    @property
    def has_embeddings(self) -> bool:
        return self.embeddings is not None and int(self.embeddings.shape[0]) > 0

    def chunk_at(self, handle: int) -> Optional[IndexedChunk]:
        if 0 <= handle < len(self.chunks):
            chunk = self.chunks[handle]
            if chunk.embedding_id == handle:
                return chunk
        return None

    def chunks_for(self, levels: GranularitySelection) -> list[IndexedChunk]:
        enabled = normalize_granularities(levels, default=False)
        return [c for c in self.chunks if c.granularity in enabled]


class SessionFile:
    """Small JSON file remembering the last indexed folder across restarts."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def load(self) -> Optional[dict[str, Any]]:
        if not self.path.exists():
            return None
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            log.warning("session_file_unreadable", path=str(self.path), error=str(e))
            return None
        return data if isinstance(data, dict) else None

    def save(self, folder_path: str, generation: Optional[int], model: Optional[str], chunk_count: int) -> None:
        payload = {
            "folder_path": folder_path,
            "generation": generation,
            "model": model,
            "chunk_count": chunk_count,
            "indexed_at": now_ts(),
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        os.replace(tmp, self.path)
