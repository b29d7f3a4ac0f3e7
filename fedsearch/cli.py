"""fedsearch CLI application with Typer."""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Annotated

import typer

from fedsearch import __version__
from fedsearch.bootstrap import bootstrap_application
from fedsearch.config import get_settings, set_settings
from fedsearch.index.build import build_index
from fedsearch.index.errors import (
    ConfigurationError,
    IndexIOError,
    IndexValidationError,
    InvalidIndexNameError,
    NotInitializedError,
)
from fedsearch.index.etags import compute_tag
from fedsearch.index.models import SCORE_FIELD, SearchQuery, SearchResults, SortField
from fedsearch.index.names import require_valid
from fedsearch.utils.cli_output import json_response

app = typer.Typer(
    name="fedsearch",
    help="Federated full-text search over independently maintained indexes",
    add_completion=False,
    no_args_is_help=True,
)
index_app = typer.Typer(help="Search index management", no_args_is_help=True)
app.add_typer(index_app, name="index")

IndexOption = Annotated[
    str,
    typer.Option("--index", "-i", help="Index name or comma-separated names (default: all)"),
]
JsonOption = Annotated[bool, typer.Option("--json", help="Output results as JSON")]

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:
        typer.echo(f"fedsearch version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option("--version", "-v", callback=version_callback, is_eager=True),
    ] = None,
    repository: Annotated[
        Path | None,
        typer.Option("--repository", help="Override the repository root"),
    ] = None,
    index_dir: Annotated[
        Path | None,
        typer.Option("--index-dir", help="Override the index root directory"),
    ] = None,
    log_level: Annotated[
        str | None,
        typer.Option("--log-level", help="DEBUG, INFO, WARNING or ERROR"),
    ] = None,
) -> None:
    """fedsearch - federated search over many tantivy indexes."""
    # Update settings with CLI flags
    settings = get_settings()
    if repository:
        settings.repository = repository
    if index_dir:
        settings.index_dir = index_dir
    if log_level:
        if log_level.upper() not in LOG_LEVELS:
            typer.secho(f"Error: Unknown log level: {log_level}", fg=typer.colors.RED, err=True)
            raise typer.Exit(code=1)
        settings.log_level = log_level.upper()  # type: ignore[assignment]
    set_settings(settings)
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@contextmanager
def report_errors() -> Iterator[None]:
    """Translate subsystem errors into messages and exit codes."""
    try:
        yield
    except NotInitializedError as exc:
        typer.secho(
            f"Error: {exc}. Run 'fedsearch index build' first.",
            fg=typer.colors.RED,
            err=True,
        )
        raise typer.Exit(code=1) from exc
    except IndexValidationError as exc:
        typer.secho(f"Error: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from exc
    except (IndexIOError, ConfigurationError) as exc:
        typer.secho(f"Error: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=2) from exc


def parse_sort(values: list[str] | None) -> list[SortField] | None:
    """Parse ``field`` / ``-field`` tokens; ``_score`` alone means best first."""
    if not values:
        return None
    fields = []
    for value in values:
        if value == SCORE_FIELD:
            fields.append(SortField.score())
        elif value.startswith("-"):
            fields.append(SortField(field=value[1:], descending=True))
        else:
            fields.append(SortField(field=value))
    return fields


def echo_results(results: SearchResults, label: str) -> None:
    """Print a result page in the human-readable format."""
    if results.is_empty():
        typer.secho("No results found", fg=typer.colors.YELLOW)
        return

    paging = results.paging
    typer.secho(
        f"Found {results.total_hits} results for {label} "
        f"(hits {paging.first_hit}-{paging.last_hit}, page {paging.page} of {paging.last_page}):",
        fg=typer.colors.BLUE,
    )
    for rank, hit in enumerate(results.hits, paging.first_hit):
        path = (hit.fields.get("path") or [""])[0]
        origin = f"[{hit.ref.index}] " if hit.ref.index else ""
        typer.echo(f"\n{rank}. {origin}{path} (score: {hit.score:.2f})")
        if hit.snippet:
            typer.echo(f"   {hit.snippet}")
    for result_facet in results.facets:
        typer.echo(f"\n{result_facet.field}:")
        for value in result_facet.values:
            typer.echo(f"  {value.term}: {value.count}")


@index_app.command("list")
def index_list(json_output: JsonOption = False) -> None:
    """List the indexes under the index root."""
    with report_errors():
        container = bootstrap_application()
        layout = container.layout
        names = layout.index_names()

    if json_output:
        typer.echo(
            json_response(
                "index_list",
                1,
                directory=str(layout.directory),
                multiple=layout.has_multiple(),
                layout=layout.mode,
                indexes=names,
            )
        )
        return

    if not layout.has_multiple():
        typer.echo(f"Single index at {layout.directory} ({layout.mode} layout)")
        return
    if not names:
        typer.secho("No indexes found", fg=typer.colors.YELLOW)
        return
    for name in names:
        typer.echo(name)


@index_app.command("stats")
def index_stats(index: IndexOption = "", json_output: JsonOption = False) -> None:
    """Show document counts and freshness per index."""
    with report_errors():
        container = bootstrap_application()
        stats = container.engine.stats(index)
        container.close()

    if json_output:
        typer.echo(json_response("index_stats", 1, indexes=[s.model_dump(mode="json") for s in stats]))
        return

    for entry in stats:
        label = entry.name or entry.directory.name
        if not entry.exists:
            suffix = f": {entry.error}" if entry.error else ""
            typer.secho(f"{label}: not initialized{suffix}", fg=typer.colors.YELLOW)
            continue
        typer.echo(
            f"{label}: {entry.documents} documents, {entry.segments} segments, "
            f"last modified {entry.last_modified}"
        )


@index_app.command("search")
def index_search(
    query: Annotated[str, typer.Argument(help="Search query (empty matches everything)")] = "",
    index: IndexOption = "",
    page: Annotated[int, typer.Option("--page", "-p", help="1-based page number", min=1)] = 1,
    per_page: Annotated[
        int, typer.Option("--per-page", "-n", help="Hits per page", min=1)
    ] = 10,
    sort: Annotated[
        list[str] | None,
        typer.Option("--sort", "-s", help="Sort field, '-field' for descending, '_score' for relevance"),
    ] = None,
    field: Annotated[
        list[str] | None,
        typer.Option("--field", "-f", help="Default field for unqualified terms"),
    ] = None,
    facet: Annotated[
        list[str] | None,
        typer.Option("--facet", help="Field to compute facet counts for"),
    ] = None,
    facet_limit: Annotated[
        int | None, typer.Option("--facet-limit", help="Values per facet", min=1)
    ] = None,
    max_length: Annotated[
        int, typer.Option("--max-length", help="Truncate stored values (0 = unlimited)", min=0)
    ] = 0,
    snippet: Annotated[
        list[str] | None,
        typer.Option("--snippet", help="Stored field to extract a snippet from"),
    ] = None,
    json_output: JsonOption = False,
) -> None:
    """Search one, several or all indexes."""
    with report_errors():
        container = bootstrap_application()
        search_query = SearchQuery(
            predicate=query,
            default_fields=field or None,
            sort=parse_sort(sort),
            page=page,
            hits_per_page=per_page,
            max_field_value_length=max_length,
            snippet_fields=snippet or [],
        )
        results = container.engine.search(index, search_query, facets=facet, facet_limit=facet_limit)
        container.close()

    if json_output:
        typer.echo(json_response("search_results", 1, query=query, **results.model_dump(mode="json")))
        return

    echo_results(results, f"'{query}'")


@index_app.command("facets")
def index_facets(
    fields: Annotated[list[str], typer.Argument(help="Fields to compute facets for")],
    query: Annotated[
        str, typer.Option("--query", "-q", help="Only count documents matching this query")
    ] = "",
    index: IndexOption = "",
    limit: Annotated[int | None, typer.Option("--limit", "-n", help="Values per facet", min=1)] = None,
    json_output: JsonOption = False,
) -> None:
    """Count documents per field value across indexes."""
    with report_errors():
        container = bootstrap_application()
        facets = container.engine.facets(index, fields, query or None, up_to=limit)
        container.close()

    if json_output:
        typer.echo(json_response("index_facets", 1, facets=[f.model_dump(mode="json") for f in facets]))
        return

    for facet in facets:
        typer.echo(f"{facet.field}:")
        for value in facet.values:
            typer.echo(f"  {value.term}: {value.count}")


@index_app.command("term")
def index_term(
    field: Annotated[str, typer.Argument(help="Field holding the term")],
    term: Annotated[str, typer.Argument(help="Term exactly as indexed")],
    index: IndexOption = "",
    page: Annotated[int, typer.Option("--page", "-p", help="1-based page number", min=1)] = 1,
    per_page: Annotated[
        int, typer.Option("--per-page", "-n", help="Hits per page", min=1)
    ] = 100,
    json_output: JsonOption = False,
) -> None:
    """Find the documents holding one exact term."""
    with report_errors():
        container = bootstrap_application()
        results = container.engine.term_search(index, field, term, page=page, hits_per_page=per_page)
        container.close()

    if json_output:
        typer.echo(
            json_response("term_search", 1, field=field, term=term, **results.model_dump(mode="json"))
        )
        return

    echo_results(results, f"{field}:{term}")


@index_app.command("terms")
def index_terms(
    field: Annotated[str, typer.Argument(help="Stored field to look terms up in")],
    text: Annotated[str, typer.Argument(help="Text to find close terms for")],
    index: IndexOption = "",
    mode: Annotated[
        str,
        typer.Option("--mode", "-m", help="Lookup mode: fuzzy, prefix, or similar", case_sensitive=False),
    ] = "similar",
    distance: Annotated[
        int, typer.Option("--distance", "-d", help="Maximum edit distance", min=0, max=2)
    ] = 1,
    limit: Annotated[int, typer.Option("--limit", "-n", help="Maximum terms to return", min=1)] = 20,
    json_output: JsonOption = False,
) -> None:
    """List indexed terms close to a text, with document counts."""
    with report_errors():
        container = bootstrap_application()
        lookup = container.engine.lookup_terms(
            index, field, text, mode=mode.lower(), distance=distance, up_to=limit
        )
        container.close()

    if json_output:
        typer.echo(json_response("term_lookup", 1, **lookup.model_dump(mode="json")))
        return

    if not lookup.terms:
        typer.secho(f"No {lookup.mode} terms for '{text}' in {field}", fg=typer.colors.YELLOW)
        return
    for value in lookup.terms:
        typer.echo(f"{value.term}: {value.count}")


@index_app.command("suggest")
def index_suggest(
    text: Annotated[str, typer.Argument(help="Partially typed text")],
    field: Annotated[
        list[str] | None,
        typer.Option("--field", "-f", help="Field to suggest from (default: title)"),
    ] = None,
    condition: Annotated[
        str, typer.Option("--condition", "-c", help="Query the suggestions must also match")
    ] = "",
    index: IndexOption = "",
    limit: Annotated[int, typer.Option("--limit", "-n", help="Maximum suggestions", min=1)] = 10,
    json_output: JsonOption = False,
) -> None:
    """Suggest documents for partially typed text."""
    with report_errors():
        container = bootstrap_application()
        results = container.engine.suggest(
            index, field or ["title"], text, condition=condition or None, up_to=limit
        )
        container.close()

    if json_output:
        typer.echo(json_response("suggestions", 1, text=text, **results.model_dump(mode="json")))
        return

    echo_results(results, f"'{text}'")


@index_app.command("etag")
def index_etag(
    name: Annotated[str, typer.Argument(help="Index name (default: all indexes)")] = "",
    json_output: JsonOption = False,
) -> None:
    """Print the freshness validator of one or all indexes."""
    with report_errors():
        container = bootstrap_application()
        etag = compute_tag(container.layout, container.registry, name or None)

    if json_output:
        typer.echo(json_response("index_etag", 1, etag=etag))
        return
    if etag is None:
        typer.secho("Freshness unknown: no index directory", fg=typer.colors.YELLOW)
        return
    typer.echo(etag)


@index_app.command("build")
def index_build(
    path: Annotated[Path, typer.Argument(help="Path to the content directory")],
    name: Annotated[
        str, typer.Option("--index", "-i", help="Index to build (created under the index root)")
    ] = "",
    rebuild: Annotated[
        bool,
        typer.Option("--rebuild", help="Delete existing documents first"),
    ] = False,
) -> None:
    """Build an index from a content directory."""
    if not path.exists():
        typer.secho(f"Error: Path not found: {path}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    with report_errors():
        container = bootstrap_application()
        settings = container.settings
        directory = container.layout.directory
        if name:
            require_valid(name)
            if name in {".", ".."}:
                raise InvalidIndexNameError(f"Invalid index name: {name!r}")
            directory = directory / name
        master = container.registry.get_or_create(directory, name=name)

        typer.secho(f"Building index from {path}...", fg=typer.colors.BLUE)
        try:
            count = build_index(
                container.layout,
                master,
                path,
                rebuild=rebuild,
                tokenizer=settings.tokenizer,
                heap_size=settings.writer_heap_size,
            )
        except ValueError as exc:
            typer.secho(f"Error: {exc}", fg=typer.colors.RED, err=True)
            raise typer.Exit(code=1) from exc
        finally:
            container.close()

    typer.secho(f"Indexed {count} documents to {directory}", fg=typer.colors.GREEN)


@index_app.command("clear")
def index_clear(
    index: IndexOption = "",
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Do not ask for confirmation")] = False,
) -> None:
    """Delete every document of one or all indexes."""
    with report_errors():
        container = bootstrap_application()
        try:
            masters = [m for m in container.engine.masters_for(index) if m.exists()]
            if not masters:
                typer.secho("No index to clear", fg=typer.colors.YELLOW)
                return
            if not yes:
                typer.confirm(f"Clear {len(masters)} index(es)?", abort=True)
            for master in masters:
                master.clear()
                typer.echo(f"Cleared {master.directory}")
        finally:
            container.close()


if __name__ == "__main__":
    app()
