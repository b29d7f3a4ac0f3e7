"""Pytest configuration and fixtures."""

import gc
import shutil
import tempfile
import time
from collections.abc import Callable, Generator
from pathlib import Path

import pytest
import tantivy

from fedsearch import config as config_module
from fedsearch.bootstrap import ApplicationContainer, bootstrap_application
from fedsearch.config import Settings
from factories import make_doc, write_index


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    tmpdir = tempfile.mkdtemp()
    try:
        yield Path(tmpdir)
    finally:
        # Force garbage collection to release any index file handles
        gc.collect()
        time.sleep(0.05)
        shutil.rmtree(tmpdir, ignore_errors=True)


@pytest.fixture
def repository(temp_dir: Path) -> Path:
    """Private repository root; its parent is the public root."""
    repo = temp_dir / "site" / "WEB-INF"
    repo.mkdir(parents=True)
    return repo


@pytest.fixture
def settings(repository: Path) -> Settings:
    return Settings(repository=repository, max_workers=4, log_level="DEBUG")


@pytest.fixture
def override_settings(settings: Settings) -> Generator[Settings, None, None]:
    """Install ``settings`` as the process-wide settings for the test."""
    original = config_module._settings
    config_module._settings = settings
    try:
        yield settings
    finally:
        config_module._settings = original


@pytest.fixture
def make_federation(
    settings: Settings,
) -> Generator[Callable[[dict[str, list[tantivy.Document]]], ApplicationContainer], None, None]:
    """Build one index per entry under the index root, then bootstrap."""
    containers: list[ApplicationContainer] = []

    def factory(indexes: dict[str, list[tantivy.Document]]) -> ApplicationContainer:
        root = settings.get_index_dir()
        for name, docs in indexes.items():
            write_index(root / name, docs)
        container = bootstrap_application(settings)
        containers.append(container)
        return container

    yield factory
    for container in containers:
        container.close()


@pytest.fixture
def federation(make_federation) -> ApplicationContainer:
    """Two indexes: A holds three documents, B holds two."""
    return make_federation(
        {
            "A": [
                make_doc("a/1", "alpha", "apple banana"),
                make_doc("a/2", "delta", "apple"),
                make_doc("a/3", "echo", "cherry"),
            ],
            "B": [
                make_doc("b/1", "bravo", "apple cherry"),
                make_doc("b/2", "charlie", "banana"),
            ],
        }
    )


@pytest.fixture
def content_files(repository: Path) -> list[Path]:
    """Private and public content files under the repository."""
    private = repository / "docs"
    private.mkdir()
    public = repository.parent / "pub"
    public.mkdir()
    files = [
        private / "contract.xml",
        private / "notes.txt",
        public / "readme.txt",
    ]
    files[0].write_text("<doc>Master services agreement for apples</doc>")
    files[1].write_text("Meeting notes about bananas")
    files[2].write_text("Public readme about apples and cherries")
    return files
