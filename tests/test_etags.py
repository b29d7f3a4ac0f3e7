"""Tests for ETag computation."""

import time

from factories import make_doc, write_index
from fedsearch.bootstrap import ApplicationContainer, bootstrap_application
from fedsearch.config import Settings
from fedsearch.index.etags import compute_tag


def test_single_index_tag(settings: Settings):
    root = settings.get_index_dir()
    write_index(root, [make_doc("one", "one")])
    container = bootstrap_application(settings)

    tag = compute_tag(container.layout, container.registry)

    master = container.registry.get(root)
    assert master is not None
    assert tag == f"index-{master.last_modified()}"


def test_missing_root_has_no_tag(settings: Settings):
    container = bootstrap_application(settings)

    assert compute_tag(container.layout, container.registry) is None


def test_named_index_tag(federation: ApplicationContainer):
    tag = compute_tag(federation.layout, federation.registry, "B")

    master = federation.registry.get(federation.layout.index_directory("B"))
    assert tag == f"B-{master.last_modified()}"


def test_all_indexes_tag(federation: ApplicationContainer):
    tag = compute_tag(federation.layout, federation.registry)

    a = federation.registry.get(federation.layout.index_directory("A"))
    b = federation.registry.get(federation.layout.index_directory("B"))
    assert tag == f"A-{a.last_modified()};B-{b.last_modified()}"


def test_invalid_name_tags_every_index(federation: ApplicationContainer):
    assert compute_tag(federation.layout, federation.registry, "bad/name") == compute_tag(
        federation.layout, federation.registry
    )


def test_new_index_directory_changes_tag(federation: ApplicationContainer):
    before = compute_tag(federation.layout, federation.registry)

    write_index(federation.layout.directory / "C", [make_doc("c", "c")])

    after = compute_tag(federation.layout, federation.registry)
    assert after != before
    assert after.startswith(before + ";C-")


def test_write_changes_tag(federation: ApplicationContainer):
    before = compute_tag(federation.layout, federation.registry, "A")

    time.sleep(0.01)
    master = federation.registry.get_or_create(federation.layout.index_directory("A"), name="A")
    master.add_documents([make_doc("a/new", "new")])

    assert compute_tag(federation.layout, federation.registry, "A") != before
