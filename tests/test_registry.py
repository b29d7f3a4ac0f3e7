"""Tests for the index registry."""

from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

from factories import make_doc, write_index
from fedsearch.index.registry import IndexRegistry


def test_same_directory_same_master(temp_dir: Path):
    registry = IndexRegistry()

    first = registry.get_or_create(temp_dir / "books", name="books")
    second = registry.get_or_create(temp_dir / "shelf" / ".." / "books")

    assert first is second
    assert first.name == "books"
    assert len(registry) == 1
    assert temp_dir / "books" in registry


def test_get_returns_none_for_unknown(temp_dir: Path):
    assert IndexRegistry().get(temp_dir / "nothing") is None


def test_concurrent_get_or_create_is_atomic(temp_dir: Path):
    registry = IndexRegistry()
    directory = temp_dir / "shared"

    with ThreadPoolExecutor(max_workers=16) as executor:
        masters = list(executor.map(lambda _: registry.get_or_create(directory), range(200)))

    assert len({id(master) for master in masters}) == 1
    assert len(registry) == 1


def test_masters_are_ordered_by_directory(temp_dir: Path):
    registry = IndexRegistry()
    registry.get_or_create(temp_dir / "b")
    registry.get_or_create(temp_dir / "a")

    assert [m.directory.name for m in registry.masters()] == ["a", "b"]


def test_outstanding_and_close(temp_dir: Path):
    write_index(temp_dir / "books", [make_doc("one", "one")])
    registry = IndexRegistry()
    master = registry.get_or_create(temp_dir / "books")

    handle = master.grab_reader()
    assert registry.outstanding() == 1
    master.release(handle)
    assert registry.outstanding() == 0

    registry.close()

    assert len(registry) == 0
    assert master.closed
