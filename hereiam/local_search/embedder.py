from __future__ import annotations

import json
import os
import subprocess
import sys
from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional, Sequence

import numpy as np
import structlog

from ..errors import ProviderError

if TYPE_CHECKING:
    from ..config import Settings

log = structlog.get_logger()

WORKER_MODULE = "hereiam.local_search.embed_worker"


def normalize_rows(mat: np.ndarray) -> np.ndarray:
    """L2-normalize each row so inner product equals cosine similarity."""
    mat = np.asarray(mat, dtype=np.float32)
    norms = np.linalg.norm(mat, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return (mat / norms).astype(np.float32)


def _to_matrix(raw: Any, expected: int) -> np.ndarray:
    try:
        rows = [np.asarray(v, dtype=np.float32).reshape(-1) for v in raw]
    except (TypeError, ValueError) as e:
        raise ProviderError(f"Embedding output is not a list of vectors: {e}") from e

    if len(rows) != expected:
        raise ProviderError(
            f"Embedding count mismatch: expected {expected}, got {len(rows)}",
            {"expected": expected, "received": len(rows)},
        )
    dims = {int(r.shape[0]) for r in rows}
    if len(dims) != 1 or 0 in dims:
        raise ProviderError("Embedding vectors have inconsistent dimensions", {"dims": sorted(dims)})

    mat = np.vstack(rows)
    if not np.all(np.isfinite(mat)):
        raise ProviderError("Embedding output contains NaN or infinite values")
    zero_rows = np.flatnonzero(~np.any(mat, axis=1))
    if zero_rows.size:
        raise ProviderError("Embedding output contains zero vectors", {"rows": zero_rows.tolist()})
    return normalize_rows(mat)


class EmbeddingProvider(ABC):
    """Text -> fixed-length unit vector, one per input, in input order.

    Subclasses only produce raw vectors; validation and normalization happen
    here so every provider honours the same contract.
    """

    def __init__(self, model_name: str) -> None:
        self.model_name = model_name

    def embed(self, texts: Sequence[str], model: Optional[str] = None) -> np.ndarray:
        texts = [str(t) for t in texts]
        if not texts:
            return np.zeros((0, 0), dtype=np.float32)
        model = model or self.model_name
        raw = self._compute(texts, model)
        return _to_matrix(raw, len(texts))

    def embed_query(self, text: str, model: Optional[str] = None) -> np.ndarray:
        return self.embed([text], model=model)[0]

    @abstractmethod
    def _compute(self, texts: list[str], model: str) -> Any:
        """Return one vector-like per text."""


class FastEmbedProvider(EmbeddingProvider):
    """In-process embedding with `fastembed` (ONNX, no torch)."""

    def __init__(self, cache_dir: str | Path, model_name: str) -> None:
        super().__init__(model_name)
        self.cache_dir = Path(cache_dir)
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        os.environ.setdefault("FASTEMBED_CACHE_PATH", str(self.cache_dir))
        self._models: dict[str, Any] = {}

    def _model(self, model: str) -> Any:
        if model not in self._models:
            try:
                from fastembed import TextEmbedding

                self._models[model] = TextEmbedding(model_name=model, cache_dir=str(self.cache_dir))
            except Exception as e:
                raise ProviderError(f"Cannot load embedding model {model}: {e}", {"model": model}) from e
        return self._models[model]

    def _compute(self, texts: list[str], model: str) -> Any:
        embedding = self._model(model)
        try:
            return list(embedding.embed(texts))
        except Exception as e:
            raise ProviderError(f"Embedding failed: {e}", {"model": model}) from e


class SubprocessEmbeddingProvider(EmbeddingProvider):
    """Runs the embedding worker in a child interpreter per batch.

    Request and response are JSON over stdin/stdout. A run that times out is
    retried ``retries`` times; a run that exits non-zero fails immediately.
    """

    def __init__(
        self,
        model_name: str,
        cache_dir: Optional[str | Path] = None,
        timeout: float = 300.0,
        retries: int = 1,
        command: Optional[Sequence[str]] = None,
    ) -> None:
        super().__init__(model_name)
        self.cache_dir = Path(cache_dir) if cache_dir is not None else None
        self.timeout = timeout
        self.retries = retries
        self.command = list(command) if command else [sys.executable, "-m", WORKER_MODULE]

    def _compute(self, texts: list[str], model: str) -> Any:
        request = {"model": model, "texts": texts}
        if self.cache_dir is not None:
            request["cache_dir"] = str(self.cache_dir)
        payload = json.dumps(request)

        attempts = self.retries + 1
        for attempt in range(1, attempts + 1):
            try:
                proc = subprocess.run(
                    self.command,
                    input=payload,
                    capture_output=True,
                    text=True,
                    encoding="utf-8",
                    timeout=self.timeout,
                )
            except subprocess.TimeoutExpired:
                log.warning("embed_worker_timeout", attempt=attempt, attempts=attempts, timeout=self.timeout)
                continue
            except OSError as e:
                raise ProviderError(f"Cannot start embedding worker: {e}", {"command": self.command}) from e

            if proc.returncode != 0:
                stderr = (proc.stderr or "").strip().splitlines()
                raise ProviderError(
                    f"Embedding worker exited with status {proc.returncode}",
                    {"returncode": proc.returncode, "stderr": "\n".join(stderr[-10:])},
                )
            try:
                response = json.loads(proc.stdout)
                return response["embeddings"]
            except (json.JSONDecodeError, KeyError, TypeError) as e:
                raise ProviderError(f"Malformed embedding worker output: {e}") from e

        raise ProviderError(
            f"Embedding worker timed out after {attempts} attempt(s) of {self.timeout:g}s",
            {"timeout": self.timeout, "attempts": attempts},
        )


def create_provider(settings: "Settings") -> EmbeddingProvider:
    if settings.embedding_backend == "inprocess":
        return FastEmbedProvider(cache_dir=settings.cache_dir, model_name=settings.model_name)
    return SubprocessEmbeddingProvider(
        model_name=settings.model_name,
        cache_dir=settings.cache_dir,
        timeout=settings.embed_timeout,
        retries=settings.embed_retries,
    )
