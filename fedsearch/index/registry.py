"""Directory to IndexMaster registry."""

from __future__ import annotations

import logging
import threading
from pathlib import Path

from fedsearch.index.master import IndexMaster

logger = logging.getLogger(__name__)


class IndexRegistry:
    """Thread-safe get-or-create cache of one IndexMaster per directory.

    Built once at startup and passed to callers; two masters never coexist for
    the same directory, which keeps snapshot reuse and handle accounting
    consistent.
    """

    def __init__(self) -> None:
        self._masters: dict[Path, IndexMaster] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _key(directory: Path) -> Path:
        return Path(directory).resolve()

    def get(self, directory: Path) -> IndexMaster | None:
        """Return the master registered for ``directory``, if any."""
        return self._masters.get(self._key(directory))

    def get_or_create(self, directory: Path, name: str = "") -> IndexMaster:
        """Return the master for ``directory``, creating it on first access.

        Args:
            directory: Index directory
            name: Index name recorded on a newly created master
        """
        key = self._key(directory)
        master = self._masters.get(key)
        if master is not None:
            return master
        with self._lock:
            master = self._masters.get(key)
            if master is None:
                master = IndexMaster(key, name=name)
                self._masters[key] = master
                logger.info("Created index master for %s", key)
        return master

    def masters(self) -> list[IndexMaster]:
        """Return every registered master, ordered by directory."""
        with self._lock:
            return [self._masters[key] for key in sorted(self._masters)]

    def outstanding(self) -> int:
        """Total number of unreleased handles across all masters."""
        return sum(master.outstanding for master in self.masters())

    def close(self) -> None:
        """Close every master and forget them."""
        with self._lock:
            masters = list(self._masters.values())
            self._masters.clear()
        for master in masters:
            master.close()

    def __len__(self) -> int:
        return len(self._masters)

    def __contains__(self, directory: object) -> bool:
        return isinstance(directory, Path) and self._key(directory) in self._masters
