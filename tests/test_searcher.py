from __future__ import annotations

import os
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from hereiam.app import HereIAmApp
from hereiam.config import Settings
from hereiam.errors import StoreError, ValidationError, VectorIndexError
from hereiam.local_search.searcher import LocalSearcher
from hereiam.local_search.session import IndexSession

from .conftest import FakeEmbeddingProvider


def _scores(results) -> list[float]:
    return [r.score for r in results]


class TestValidation:
    @pytest.mark.parametrize("query", ["", "   ", "\n\t"])
    def test_empty_query_touches_nothing(self, query: str) -> None:
        store, index, provider = MagicMock(), MagicMock(), MagicMock()
        searcher = LocalSearcher(store, index, provider, IndexSession())
        with pytest.raises(ValidationError):
            searcher.search(query, {"paragraph": True})
        assert index.mock_calls == []
        assert store.mock_calls == []
        assert provider.mock_calls == []

    def test_no_granularity(self) -> None:
        index = MagicMock()
        searcher = LocalSearcher(MagicMock(), index, MagicMock(), IndexSession())
        with pytest.raises(ValidationError):
            searcher.search("dogs", {"paragraph": False, "document": False})
        assert index.mock_calls == []

    def test_unknown_granularity(self, app: HereIAmApp) -> None:
        with pytest.raises(ValidationError):
            app.search("dogs", granularity=["chapter"])

    def test_bad_limit(self, app: HereIAmApp) -> None:
        with pytest.raises(ValidationError):
            app.search("dogs", limit=0)


class TestSearch:
    def test_sleeping_animal_finds_the_cat(self, app: HereIAmApp, pets_dir: Path) -> None:
        app.scan(pets_dir)
        results = app.search("a sleeping animal", granularity={"paragraph": True}).results

        by_text = {r.text.strip(): r for r in results}
        assert set(by_text) == {"The dog ran.", "The cat slept."}
        assert by_text["The cat slept."].score > by_text["The dog ran."].score
        assert results[0].text.strip() == "The cat slept."
        assert results[0].file_path == str((pets_dir / "a.txt").resolve())
        assert results[0].start_offset == len("The dog ran.\n\n")
        assert results[0].granularity == "paragraph"

    def test_scores_never_increase(self, app: HereIAmApp, notes_dir: Path) -> None:
        app.scan(notes_dir)
        results = app.search("water the roses in spring sun", limit=10).results
        assert len(results) > 1
        scores = _scores(results)
        assert scores == sorted(scores, reverse=True)

    def test_limit(self, app: HereIAmApp, notes_dir: Path) -> None:
        app.scan(notes_dir)
        assert len(app.search("bread", limit=2).results) == 2
        assert len(app.search("bread").results) == app.settings.top_k

    def test_min_score(self, app: HereIAmApp, notes_dir: Path) -> None:
        app.scan(notes_dir)
        results = app.search("simmer soup", limit=10, min_score=0.5).results
        assert [r.text for r in results] == ["Simmer soup slowly."]

    def test_granularity_filter(self, app: HereIAmApp, pets_dir: Path) -> None:
        app.scan(pets_dir, granularity=["paragraph", "document"])

        paragraphs = app.search("cat", granularity={"paragraph": True, "document": False}, limit=10).results
        assert paragraphs
        assert {r.granularity for r in paragraphs} == {"paragraph"}

        documents = app.search("cat", granularity=["document"], limit=10).results
        assert [r.granularity for r in documents] == ["document"]
        assert documents[0].text == "The dog ran.\n\nThe cat slept."

    def test_reindex_gives_same_results(self, app: HereIAmApp, notes_dir: Path) -> None:
        app.scan(notes_dir)
        first = app.search("pack jackets for the train", limit=4).results
        app.scan(notes_dir)
        second = app.search("pack jackets for the train", limit=4).results
        assert [r.text for r in first] == [r.text for r in second]
        assert _scores(first) == pytest.approx(_scores(second))

    def test_nothing_indexed(self, app: HereIAmApp) -> None:
        assert app.search("anything").results == []

    def test_to_dict(self, app: HereIAmApp, pets_dir: Path) -> None:
        app.scan(pets_dir)
        payload = app.search("cat").to_dict()
        assert set(payload["results"][0]) >= {"text", "filePath", "startOffset", "granularity", "score"}


class TestRecovery:
    def test_missing_index_is_rebuilt(
        self, settings: Settings, provider: FakeEmbeddingProvider, pets_dir: Path
    ) -> None:
        with HereIAmApp(settings, provider=provider) as first:
            first.scan(pets_dir)
        settings.index_path.unlink()

        with HereIAmApp(settings, provider=provider) as restarted:
            results = restarted.search("sleeping").results
            assert results[0].text.strip() == "The cat slept."
            assert restarted.vector_index.exists()

    def test_corrupt_index_is_rebuilt(
        self, settings: Settings, provider: FakeEmbeddingProvider, pets_dir: Path
    ) -> None:
        with HereIAmApp(settings, provider=provider) as first:
            first.scan(pets_dir)
        settings.index_path.write_bytes(b"garbage")

        with HereIAmApp(settings, provider=provider) as restarted:
            results = restarted.search("sleeping").results
            assert results[0].text.strip() == "The cat slept."

    def test_failed_rebuild_is_not_retried(
        self, settings: Settings, provider: FakeEmbeddingProvider, pets_dir: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        with HereIAmApp(settings, provider=provider) as first:
            first.scan(pets_dir)
        settings.index_path.unlink()

        with HereIAmApp(settings, provider=provider) as restarted:
            builds: list[int] = []

            def failing_build(vectors: object, **kwargs: object) -> int:
                builds.append(1)
                raise VectorIndexError("disk full")

            monkeypatch.setattr(restarted.vector_index, "build", failing_build)
            calls_before = len(provider.calls)
            with pytest.raises(VectorIndexError, match="disk full"):
                restarted.search("sleeping")

        assert len(builds) == 1
        reembeds = [texts for texts in provider.calls[calls_before:] if texts != ["sleeping"]]
        assert len(reembeds) == 1


class TestSessionFallback:
    @pytest.fixture
    def broken_store_app(self, app: HereIAmApp, pets_dir: Path, monkeypatch: pytest.MonkeyPatch) -> HereIAmApp:
        def broken(*args: object, **kwargs: object) -> None:
            raise StoreError("disk full")

        monkeypatch.setattr(app.store, "replace_chunks", broken)
        app.scan(pets_dir)
        return app

    def test_session_answers_when_store_is_behind(self, broken_store_app: HereIAmApp) -> None:
        results = broken_store_app.search("sleeping").results
        assert results[0].text.strip() == "The cat slept."

    def test_session_answers_when_lookup_fails(
        self, app: HereIAmApp, pets_dir: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        app.scan(pets_dir)

        def broken(*args: object, **kwargs: object) -> None:
            raise StoreError("locked")

        monkeypatch.setattr(app.store, "get_chunks_by_handles", broken)
        results = app.search("sleeping").results
        assert results[0].text.strip() == "The cat slept."

    def test_stale_session_is_not_trusted(self, broken_store_app: HereIAmApp) -> None:
        broken_store_app.session.generation = 999
        assert broken_store_app.search("sleeping").results == []


@pytest.mark.model
@pytest.mark.skipif(os.environ.get("HEREIAM_MODEL_TESTS") != "1", reason="set HEREIAM_MODEL_TESTS=1 to run")
def test_real_model_ranks_sleeping_animal(tmp_path: Path, pets_dir: Path) -> None:
    from hereiam.config import load_settings

    settings = load_settings(data_dir=tmp_path / "data", embedding_backend="inprocess", paragraph_chunk_size=20)
    with HereIAmApp(settings) as app:
        app.scan(pets_dir)
        results = app.search("a sleeping animal").results
    assert results[0].text.strip() == "The cat slept."
