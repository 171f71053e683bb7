"""Persistent exact nearest-neighbour index over chunk embeddings.

A FAISS ``IndexFlatIP``: brute-force inner product, which is cosine
similarity for the unit vectors the embedder produces. Row ``i`` is the
chunk whose embedding handle is ``i``. The index is rebuilt from scratch,
never updated in place.

Storage, next to the metadata DB:
  - vectors.faiss  (faiss.write_index)
  - vectors.json   (generation, count, dim, model, built_at)
"""

from __future__ import annotations

import json
import os
import time
from pathlib import Path
from typing import Any, Optional

import faiss
import numpy as np
import structlog

from ..errors import VectorIndexError

log = structlog.get_logger()


class VectorIndex:
    def __init__(self, index_path: str | Path) -> None:
        self.index_path = Path(index_path)
        self.meta_path = self.index_path.with_suffix(".json")
        self._index: Optional[faiss.Index] = None
        self._meta: dict[str, Any] = {}

    def exists(self) -> bool:
        return self.index_path.is_file()

    @property
    def loaded(self) -> bool:
        return self._index is not None

    @property
    def size(self) -> int:
        return int(self._index.ntotal) if self._index is not None else 0

    @property
    def dimension(self) -> int:
        return int(self._index.d) if self._index is not None else 0

    @property
    def generation(self) -> Optional[int]:
        gen = self._meta.get("generation")
        return int(gen) if gen is not None else None

    @property
    def model(self) -> Optional[str]:
        return self._meta.get("model")

    def load(self) -> bool:
        """Load the persisted index. False if there is none."""
        if not self.exists():
            self._index = None
            self._meta = {}
            return False
        try:
            self._index = faiss.read_index(str(self.index_path))
        except RuntimeError as e:
            self._index = None
            raise VectorIndexError(f"Cannot read vector index {self.index_path}: {e}") from e
        try:
            self._meta = json.loads(self.meta_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            self._meta = {}
        except (OSError, ValueError) as e:
            log.warning("vector_index_meta_unreadable", path=str(self.meta_path), error=str(e))
            self._meta = {}
        return True

    def build(
        self,
        vectors: np.ndarray,
        generation: Optional[int] = None,
        model: Optional[str] = None,
    ) -> int:
        """Build a flat inner-product index over ``vectors`` and persist it.

        Overwrites whatever index was stored before. Returns the vector count.
        """
        mat = np.ascontiguousarray(vectors, dtype=np.float32)
        if mat.ndim != 2 or mat.shape[0] == 0 or mat.shape[1] == 0:
            raise VectorIndexError(f"Cannot build a vector index from an array of shape {mat.shape}")

        index = faiss.IndexFlatIP(int(mat.shape[1]))
        index.add(mat)

        meta = {
            "generation": generation,
            "count": int(index.ntotal),
            "dim": int(index.d),
            "model": model,
            "built_at": int(time.time()),
        }
        self.index_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_index = self.index_path.with_name(self.index_path.name + ".tmp")
        tmp_meta = self.meta_path.with_name(self.meta_path.name + ".tmp")
        try:
            faiss.write_index(index, str(tmp_index))
            os.replace(tmp_index, self.index_path)
            tmp_meta.write_text(json.dumps(meta), encoding="utf-8")
            os.replace(tmp_meta, self.meta_path)
        except (RuntimeError, OSError) as e:
            raise VectorIndexError(f"Cannot write vector index {self.index_path}: {e}") from e

        self._index = index
        self._meta = meta
        log.info("vector_index_built", count=meta["count"], dim=meta["dim"], generation=generation)
        return int(index.ntotal)

    def search(self, query: np.ndarray, k: int) -> list[tuple[int, float]]:
        """Top ``min(k, size)`` rows as ``(position, score)``, best first."""
        if self._index is None and not self.load():
            raise VectorIndexError(f"No vector index at {self.index_path}")
        assert self._index is not None

        q = np.ascontiguousarray(query, dtype=np.float32).reshape(1, -1)
        if q.shape[1] != self._index.d:
            raise VectorIndexError(
                f"Query has dimension {q.shape[1]} but the index has {self._index.d}; "
                "was the embedding model changed? Re-index the folder.",
                {"query_dim": int(q.shape[1]), "index_dim": int(self._index.d)},
            )
        k = min(int(k), int(self._index.ntotal))
        if k <= 0:
            return []

        scores, ids = self._index.search(q, k)
        hits = [(int(i), float(s)) for i, s in zip(ids[0], scores[0]) if i >= 0]
        # stable: equal scores keep the order faiss returned them in
        hits.sort(key=lambda h: -h[1])
        return hits

    def clear(self) -> None:
        self._index = None
        self._meta = {}
        for p in (self.index_path, self.meta_path):
            try:
                p.unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                raise VectorIndexError(f"Cannot remove {p}: {e}") from e
