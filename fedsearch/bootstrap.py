"""Application bootstrap wiring settings, layout, registry and engine."""

from __future__ import annotations

from dataclasses import dataclass

from fedsearch.config import Settings, get_settings
from fedsearch.index.engine import MultiIndexQueryEngine
from fedsearch.index.layout import IndexLayout, detect_layout
from fedsearch.index.registry import IndexRegistry


@dataclass(slots=True)
class ApplicationContainer:
    """Aggregates the objects built once at startup for the CLI layer."""

    settings: Settings
    layout: IndexLayout
    registry: IndexRegistry
    engine: MultiIndexQueryEngine

    def close(self) -> None:
        """Close every index master opened during the process."""
        self.registry.close()


def bootstrap_application(settings: Settings | None = None) -> ApplicationContainer:
    """Probe the index layout and wire the query engine.

    Raises:
        ConfigurationError: If the index root is unusable
    """

    active_settings = settings or get_settings()

    layout = detect_layout(active_settings)
    registry = IndexRegistry()
    engine = MultiIndexQueryEngine(layout, registry, active_settings)

    return ApplicationContainer(
        settings=active_settings,
        layout=layout,
        registry=registry,
        engine=engine,
    )
