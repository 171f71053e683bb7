"""Shared fixtures: temp settings, a deterministic fake embedder, sample folders."""

from __future__ import annotations

import hashlib
import re
from pathlib import Path
from typing import Any, Optional

import numpy as np
import pytest

from hereiam.app import HereIAmApp
from hereiam.config import Settings
from hereiam.errors import ProviderError
from hereiam.local_search.embedder import EmbeddingProvider

_STOP = {"a", "an", "the", "and", "or", "of", "to", "in", "on", "is", "was", "it"}
_IRREGULAR = {"slept": "sleep", "ran": "run", "ate": "eat"}


def _tokens(text: str) -> list[str]:
    out = []
    for word in re.findall(r"[a-z0-9]+", text.lower()):
        if word in _STOP:
            continue
        word = _IRREGULAR.get(word, word)
        for suffix in ("ing", "ed", "s"):
            if word.endswith(suffix) and len(word) - len(suffix) >= 3:
                word = word[: -len(suffix)]
                break
        out.append(word)
    return out


class FakeEmbeddingProvider(EmbeddingProvider):
    """Hashed bag-of-words vectors: texts sharing (stemmed) words are similar.

    ``fail_on_call`` makes the n-th call (1-based) raise ProviderError.
    """

    def __init__(self, dim: int = 512, model_name: str = "fake-bow", fail_on_call: Optional[int] = None) -> None:
        super().__init__(model_name)
        self.dim = dim
        self.fail_on_call = fail_on_call
        self.calls: list[list[str]] = []

    def _vector(self, text: str) -> np.ndarray:
        vec = np.zeros(self.dim, dtype=np.float32)
        for tok in _tokens(text):
            h = int(hashlib.md5(tok.encode("utf-8")).hexdigest(), 16)
            vec[h % self.dim] += 1.0
        return vec

    def _compute(self, texts: list[str], model: str) -> Any:
        self.calls.append(list(texts))
        if self.fail_on_call is not None and len(self.calls) == self.fail_on_call:
            raise ProviderError("fake provider failure")
        return [self._vector(t) for t in texts]


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep HEREIAM_* variables from the outer environment out of the tests."""
    import os

    for name in list(os.environ):
        if name.startswith("HEREIAM_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(data_dir=tmp_path / "data", paragraph_chunk_size=20, batch_size=2).validate()


@pytest.fixture
def provider() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider()


@pytest.fixture
def app(settings: Settings, provider: FakeEmbeddingProvider):
    with HereIAmApp(settings, provider=provider) as instance:
        yield instance


@pytest.fixture
def pets_dir(tmp_path: Path) -> Path:
    """One file, two short paragraphs."""
    d = tmp_path / "pets"
    d.mkdir()
    (d / "a.txt").write_text("The dog ran.\n\nThe cat slept.", encoding="utf-8")
    return d


@pytest.fixture
def notes_dir(tmp_path: Path) -> Path:
    """A small tree with a few text files and one file of another type."""
    d = tmp_path / "notes"
    (d / "sub").mkdir(parents=True)
    (d / "garden.md").write_text(
        "Tomatoes need full sun.\n\nWater the basil daily.\n\nPrune roses in spring.",
        encoding="utf-8",
    )
    (d / "kitchen.txt").write_text(
        "Bake bread at high heat.\n\nSimmer soup slowly.",
        encoding="utf-8",
    )
    (d / "sub" / "travel.txt").write_text(
        "Pack light jackets.\n\nBook trains early.",
        encoding="utf-8",
    )
    (d / "image.png").write_bytes(b"\x89PNG\r\n\x1a\n")
    return d
