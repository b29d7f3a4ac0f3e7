"""Index location resolution and content-key mapping.

The layout answers two questions for the rest of the subsystem:

* where the index (or indexes) live on disk, and whether the root holds a
  single index or one subdirectory per index;
* how a content file maps to the canonical key stored with its document, and
  back again.

Two variants exist. The *legacy* layout is used by repositories that still
ship a single ``ixml/default.xsl`` template: private XML and PSML files live
under ``xml/`` and ``psml/`` and their keys drop the extension. The *generic*
layout keeps paths as they are and only distinguishes private files (under the
repository) from public ones (under its parent).

:func:`detect_layout` probes the filesystem exactly once, at startup; the
resulting object is immutable for the process lifetime.
"""

from __future__ import annotations

import logging
import mimetypes
from abc import ABC, abstractmethod
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict

from fedsearch.config import Settings
from fedsearch.index.errors import ConfigurationError, InvalidIndexNameError
from fedsearch.index.names import require_valid
from fedsearch.utils.paths import list_subdirectories, relative_posix

logger = logging.getLogger(__name__)

PSML_MEDIATYPE = "application/vnd.pageseeder.psml+xml"
XML_MEDIATYPE = "application/xml"
DEFAULT_MEDIATYPE = "application/octet-stream"

LEGACY_TEMPLATES_LOCATION = Path("ixml") / "default.xsl"

Visibility = Literal["public", "private"]


class ContentKey(BaseModel):
    """Canonical key of a content item as stored in the index."""

    model_config = ConfigDict(frozen=True)

    path: str
    mediatype: str
    visibility: Visibility


def guess_mediatype(file: Path) -> str:
    """Guess the media type of ``file`` from its suffix."""
    if file.suffix == ".psml":
        return PSML_MEDIATYPE
    if file.suffix == ".xml":
        return XML_MEDIATYPE
    mediatype, _ = mimetypes.guess_type(file.name)
    return mediatype or DEFAULT_MEDIATYPE


def _first(value: Any) -> str | None:
    """Return the first value of a stored tantivy field (values are lists)."""
    if isinstance(value, (list, tuple)):
        value = value[0] if value else None
    return None if value is None else str(value)


def _parent_of(path: Path) -> Path:
    """Return the parent of ``path`` without resolving it unless it ends in ``.`` or ``..``."""
    if path.name in {"", ".."}:
        return path.resolve().parent
    return path.parent


class IndexLayout(ABC):
    """Base layout: index root, single/multiple mode and key mapping.

    Roots keep the form they were configured in. Keys are computed against
    the resolved roots, and ``to_file`` joins them back onto the configured
    ones, so a file named under a relative or symlinked root maps back to
    the same path.
    """

    mode: Literal["legacy", "generic"]

    def __init__(self, directory: Path, repository: Path, multiple: bool):
        self._directory = directory
        self._private = repository
        self._public = _parent_of(repository)
        self._multiple = multiple

    @property
    def directory(self) -> Path:
        """Root containing the index(es)."""
        return self._directory

    @property
    def private_root(self) -> Path:
        return self._private

    @property
    def public_root(self) -> Path:
        return self._public

    def has_multiple(self) -> bool:
        """Return True if the root holds one subdirectory per index."""
        return self._multiple

    def index_names(self) -> list[str]:
        """List index names, enumerated fresh on every call.

        Returns the sorted subdirectory names in multiple-index mode, or a
        single empty name standing for the root index otherwise.
        """
        if not self._multiple:
            return [""]
        return [d.name for d in list_subdirectories(self._directory)]

    def index_directory(self, name: str | None = None) -> Path:
        """Return the on-disk directory for index ``name``.

        In single-index mode the name is ignored (with a warning when one is
        given) and the root itself is returned.

        Raises:
            InvalidIndexNameError: If ``name`` fails validation or does not
                designate a direct child of the root.
        """
        if not self._multiple:
            if name:
                logger.warning("Requesting named index %r in single index configuration", name)
            return self._directory
        if not name:
            logger.warning("Requesting the root index in multiple index configuration")
            return self._directory
        require_valid(name)
        if name in {".", ".."}:
            raise InvalidIndexNameError(f"Invalid index name: {name!r}")
        return self._directory / name

    def to_path(self, file: Path) -> str:
        """Return the canonical key path of ``file`` or "" when it is outside every root."""
        key = self.to_key(file)
        return key.path if key is not None else ""

    @abstractmethod
    def to_key(self, file: Path) -> ContentKey | None:
        """Map ``file`` to its content key, or None when it is outside every root."""

    @abstractmethod
    def to_file(self, key: ContentKey | Mapping[str, Any]) -> Path:
        """Map a content key (or the stored fields of a document) back to a file."""

    @staticmethod
    def _coerce_key(key: ContentKey | Mapping[str, Any]) -> ContentKey:
        if isinstance(key, ContentKey):
            return key
        visibility = _first(key.get("visibility")) or "private"
        return ContentKey(
            path=_first(key.get("path")) or "",
            mediatype=_first(key.get("mediatype")) or DEFAULT_MEDIATYPE,
            visibility="public" if visibility == "public" else "private",
        )

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(directory={str(self._directory)!r}, "
            f"multiple={self._multiple})"
        )


class LegacyLayout(IndexLayout):
    """Layout of repositories that index through a single legacy template."""

    mode = "legacy"

    @property
    def private_xml(self) -> Path:
        return self._private / "xml"

    @property
    def private_psml(self) -> Path:
        return self._private / "psml"

    def to_key(self, file: Path) -> ContentKey | None:
        if file.name.endswith(".xml"):
            relative = relative_posix(file, self.private_xml)
            if relative is not None:
                return ContentKey(path=relative[:-4], mediatype=XML_MEDIATYPE, visibility="private")
        elif file.name.endswith(".psml"):
            relative = relative_posix(file, self.private_psml)
            if relative is not None:
                return ContentKey(path=relative[:-5], mediatype=PSML_MEDIATYPE, visibility="private")
        relative = relative_posix(file, self._public)
        if relative is None:
            logger.debug("File %s is outside the configured roots", file)
            return None
        return ContentKey(path=relative, mediatype=guess_mediatype(file), visibility="public")

    def to_file(self, key: ContentKey | Mapping[str, Any]) -> Path:
        key = self._coerce_key(key)
        if key.visibility == "public":
            return self._public / key.path
        if key.mediatype == PSML_MEDIATYPE:
            return self.private_psml / f"{key.path}.psml"
        return self.private_xml / f"{key.path}.xml"


class GenericLayout(IndexLayout):
    """Layout keeping paths as-is relative to the private or public root."""

    mode = "generic"

    def to_key(self, file: Path) -> ContentKey | None:
        relative = relative_posix(file, self._private)
        if relative is not None:
            return ContentKey(path=relative, mediatype=guess_mediatype(file), visibility="private")
        relative = relative_posix(file, self._public)
        if relative is None:
            logger.debug("File %s is outside the configured roots", file)
            return None
        return ContentKey(path=relative, mediatype=guess_mediatype(file), visibility="public")

    def to_file(self, key: ContentKey | Mapping[str, Any]) -> Path:
        key = self._coerce_key(key)
        root = self._public if key.visibility == "public" else self._private
        return root / key.path


def probe_multiple(directory: Path) -> bool:
    """Return True if ``directory`` contains at least one subdirectory.

    A missing root is treated as a single index and never raises.
    """
    if list_subdirectories(directory):
        logger.info("Detected multiple index configuration in %s", directory)
        return True
    logger.info("Detected single index configuration in %s", directory)
    return False


def detect_layout(settings: Settings) -> IndexLayout:
    """Probe the repository once and build the matching layout.

    Raises:
        ConfigurationError: If the index root exists but is not a directory.
    """
    directory = settings.get_index_dir()
    if directory.exists() and not directory.is_dir():
        raise ConfigurationError(f"Index root is not a directory: {directory}")

    multiple = probe_multiple(directory)
    if (settings.repository / LEGACY_TEMPLATES_LOCATION).exists():
        logger.info("Using legacy layout for %s", settings.repository)
        return LegacyLayout(directory, settings.repository, multiple)
    logger.info("Using generic layout for %s", settings.repository)
    return GenericLayout(directory, settings.repository, multiple)
