"""Debounced background checkpointing.

A ``CheckpointWriter`` wraps a save callable. ``request()`` marks state as
dirty and returns immediately; a daemon thread waits out the debounce
delay and then calls the save function once, however many requests
arrived in the meantime. Save failures are logged and dropped: the
in-memory state stays authoritative.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Callable, Optional

from .errors import PersistenceError

logger = logging.getLogger(__name__)


def write_json_atomic(path: Path, data: Any) -> None:
    """Overwrite ``path`` with ``data`` as JSON, via a temp file and rename."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
    except (OSError, TypeError, ValueError) as e:
        raise PersistenceError(f"Failed to write {path}: {e}") from e


def read_json(path: Path) -> Optional[Any]:
    """Read a JSON file. A missing file gives None."""
    if not path.exists():
        return None
    try:
        with open(path) as f:
            return json.load(f)
    except (OSError, ValueError) as e:
        raise PersistenceError(f"Failed to read {path}: {e}") from e


class CheckpointWriter:
    """Coalesces save requests onto one background thread."""

    def __init__(
        self,
        save: Callable[[], None],
        delay_seconds: float = 1.0,
        name: str = "keydocs-checkpoint",
    ):
        self._save = save
        self._delay = max(0.0, delay_seconds)
        self._name = name
        self._cond = threading.Condition()
        self._save_lock = threading.Lock()
        self._dirty = False
        self._closed = False
        self._thread: Optional[threading.Thread] = None

    @property
    def pending(self) -> bool:
        with self._cond:
            return self._dirty

    def request(self) -> None:
        """Schedule a save. Never blocks on disk."""
        with self._cond:
            if self._closed:
                return
            self._dirty = True
            if self._thread is None:
                self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
                self._thread.start()
            self._cond.notify_all()

    def flush(self) -> bool:
        """Save now if a request is pending.

        Returns:
            True if a save ran and succeeded.
        """
        with self._save_lock:
            with self._cond:
                if not self._dirty:
                    return False
                self._dirty = False
            try:
                self._save()
            except PersistenceError as e:
                logger.warning("Checkpoint failed: %s", e)
                return False
            return True

    def close(self) -> None:
        """Stop the background thread and write any pending state."""
        with self._cond:
            self._closed = True
            self._cond.notify_all()
            thread = self._thread
        if thread is not None:
            thread.join()
        self.flush()

    def _run(self) -> None:
        while True:
            with self._cond:
                self._cond.wait_for(lambda: self._dirty or self._closed)
                if self._closed:
                    return
                # Debounce: let further requests pile up
                if self._delay:
                    self._cond.wait_for(lambda: self._closed, timeout=self._delay)
                    if self._closed:
                        return
            self.flush()
