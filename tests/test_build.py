"""Tests for index building."""

from pathlib import Path

import pytest

from fedsearch.config import Settings
from fedsearch.index.build import build_index, iter_documents
from fedsearch.index.layout import detect_layout
from fedsearch.index.master import IndexMaster
from fedsearch.index.models import SearchQuery


class TestBuildIndex:
    """Tests for build_index."""

    def test_indexes_every_file(self, settings: Settings, repository: Path, content_files: list[Path]):
        layout = detect_layout(settings)
        master = IndexMaster(settings.get_index_dir())

        count = build_index(layout, master, repository.parent)

        assert count == 3
        assert master.stats().documents == 3

    def test_stored_keys_map_back_to_files(
        self, settings: Settings, repository: Path, content_files: list[Path]
    ):
        layout = detect_layout(settings)
        master = IndexMaster(settings.get_index_dir())
        build_index(layout, master, repository.parent)

        files = master.list_files(layout.to_file)

        assert sorted(files) == sorted(content_files)

    def test_rebuild_replaces_documents(
        self, settings: Settings, repository: Path, content_files: list[Path]
    ):
        layout = detect_layout(settings)
        master = IndexMaster(settings.get_index_dir())
        build_index(layout, master, repository.parent)

        build_index(layout, master, repository / "docs", rebuild=True)

        assert master.stats().documents == 2

    def test_incremental_build_appends(
        self, settings: Settings, repository: Path, content_files: list[Path]
    ):
        layout = detect_layout(settings)
        master = IndexMaster(settings.get_index_dir())
        build_index(layout, master, repository / "docs")

        build_index(layout, master, repository.parent / "pub")

        assert master.stats().documents == 3

    def test_built_index_is_searchable(
        self, settings: Settings, repository: Path, content_files: list[Path]
    ):
        from fedsearch.bootstrap import bootstrap_application

        container = bootstrap_application(settings)
        master = container.registry.get_or_create(settings.get_index_dir())
        build_index(container.layout, master, repository.parent)

        results = container.engine.search("", SearchQuery(predicate="apples"))

        assert results.total_hits == 2
        assert {hit.fields["visibility"][0] for hit in results.hits} == {"private", "public"}

    def test_missing_source(self, settings: Settings, temp_dir: Path):
        layout = detect_layout(settings)

        with pytest.raises(FileNotFoundError):
            build_index(layout, IndexMaster(settings.get_index_dir()), temp_dir / "nope")

    def test_source_must_be_directory(self, settings: Settings, content_files: list[Path]):
        layout = detect_layout(settings)

        with pytest.raises(ValueError):
            build_index(layout, IndexMaster(settings.get_index_dir()), content_files[0])


def test_files_outside_roots_are_skipped(settings: Settings, temp_dir: Path):
    outside = temp_dir / "outside"
    outside.mkdir()
    (outside / "stray.txt").write_text("stray")

    assert list(iter_documents(detect_layout(settings), outside)) == []
