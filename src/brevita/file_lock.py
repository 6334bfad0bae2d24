"""Process-local locks that serialize writers of the same history file."""

from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from threading import RLock
from typing import Dict, Iterator

_LOCKS: Dict[str, RLock] = {}
_REGISTRY_GUARD = RLock()


def lock_for(path: Path) -> RLock:
    """Return the shared lock for `path`, creating it on first use."""
    key = str(Path(path).expanduser().resolve())
    with _REGISTRY_GUARD:
        return _LOCKS.setdefault(key, RLock())


@contextmanager
def locked_path(path: Path) -> Iterator[None]:
    """Hold the lock for `path`; re-entrant within one thread."""
    with lock_for(path):
        yield
