from __future__ import annotations

import json
from pathlib import Path

import pytest

from hereiam import cli
from hereiam.app import HereIAmApp

from .conftest import FakeEmbeddingProvider


@pytest.fixture(autouse=True)
def fake_provider(monkeypatch: pytest.MonkeyPatch) -> None:
    """Every app the CLI builds embeds with the fake provider."""
    monkeypatch.setattr(cli, "HereIAmApp", lambda settings: HereIAmApp(settings, provider=FakeEmbeddingProvider()))


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    return tmp_path / "data"


def _run(data_dir: Path, *args: str) -> int:
    return cli.main(["--data-dir", str(data_dir), "--log-level", "warning", *args])


class TestCli:
    def test_index_then_search(self, data_dir: Path, pets_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
        assert _run(data_dir, "index", str(pets_dir), "-q") == 0
        assert "Indexed 1 files, 1 chunks" in capsys.readouterr().out

        assert _run(data_dir, "search", "sleeping cat", "--json") == 0
        payload = json.loads(capsys.readouterr().out)
        assert payload["results"][0]["filePath"] == str((pets_dir / "a.txt").resolve())

    def test_text_search_output(self, data_dir: Path, pets_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
        _run(data_dir, "index", str(pets_dir), "-q")
        capsys.readouterr()
        assert _run(data_dir, "search", "cat", "-l", "1") == 0
        out = capsys.readouterr().out
        assert "Result 1" in out
        assert "Result 2" not in out

    def test_granularity_option(self, data_dir: Path, pets_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
        assert _run(data_dir, "index", str(pets_dir), "-q", "-g", "paragraph", "document") == 0
        capsys.readouterr()
        _run(data_dir, "search", "cat", "-g", "document", "--json")
        results = json.loads(capsys.readouterr().out)["results"]
        assert [r["granularity"] for r in results] == ["document"]

    def test_status(self, data_dir: Path, pets_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
        _run(data_dir, "index", str(pets_dir), "-q")
        capsys.readouterr()
        assert _run(data_dir, "status", "--json") == 0
        info = json.loads(capsys.readouterr().out)
        assert info["hasData"] is True
        assert info["folderPath"] == str(pets_dir.resolve())

    def test_status_flags_model_mismatch(
        self, data_dir: Path, pets_dir: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        _run(data_dir, "index", str(pets_dir), "-q")
        capsys.readouterr()
        assert _run(data_dir, "status") == 0
        out = capsys.readouterr().out
        assert "Documents: 1" in out
        assert "Index was built with fake-bow" in out

    def test_show(self, data_dir: Path, pets_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
        assert _run(data_dir, "show", str(pets_dir / "a.txt"), "--offset", "14", "--context", "5") == 0
        assert capsys.readouterr().out.rstrip("\n") == "an.\n\nThe c"

    def test_empty_query_fails(self, data_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
        assert _run(data_dir, "search", "   ") == 1
        assert "must not be empty" in capsys.readouterr().err

    def test_missing_folder_fails(self, data_dir: Path, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        assert _run(data_dir, "index", str(tmp_path / "nope"), "-q") == 1
        assert "Folder not found" in capsys.readouterr().err

    def test_bad_environment_value(
        self, data_dir: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
    ) -> None:
        monkeypatch.setenv("HEREIAM_BATCH_SIZE", "lots")
        assert _run(data_dir, "status") == 1
        assert "HEREIAM_BATCH_SIZE" in capsys.readouterr().err
