"""Offset registry: persists delivered read positions to survive restarts."""

import json
import logging
import os
import threading

logger = logging.getLogger(__name__)


class OffsetRegistry:
    """Committed byte offset per path, tagged with the file identity it belongs to.

    Written by the Dispatcher thread (commit) and read by the watcher loop
    (lookup), so every access goes through a lock.
    """

    def __init__(self, registry_file: str | None):
        self._path = registry_file
        self._data: dict[str, dict] = {}
        self._lock = threading.Lock()
        self._dirty = False
        self._load()

    def _load(self):
        if not self._path or not os.path.exists(self._path):
            return
        try:
            with open(self._path, "r", encoding="utf-8") as f:
                data = json.load(f)
            if isinstance(data, dict):
                self._data = data
            logger.info("Loaded offset registry from %s (%d entries)", self._path, len(self._data))
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Failed to load registry %s: %s", self._path, e)
            self._data = {}

    def save(self):
        """Atomic write: write to tmp file then replace."""
        if not self._path:
            return
        with self._lock:
            if not self._dirty:
                return
            snapshot = json.dumps(self._data, indent=2)
            self._dirty = False
        try:
            os.makedirs(os.path.dirname(self._path) or ".", exist_ok=True)
            tmp_path = self._path + ".tmp"
            with open(tmp_path, "w", encoding="utf-8") as f:
                f.write(snapshot)
            os.replace(tmp_path, self._path)
        except OSError as e:
            logger.warning("Failed to save registry %s: %s", self._path, e)
            with self._lock:
                self._dirty = True

    def lookup(self, path: str, identity: tuple[int, int]) -> tuple[int, int] | None:
        """(offset, segment) committed for `path` if recorded for the same identity."""
        with self._lock:
            entry = self._data.get(path)
        if not entry:
            return None
        if (entry.get("device"), entry.get("inode")) != tuple(identity):
            return None
        return entry.get("offset", 0), entry.get("segment", 0)

    def commit(self, path: str, identity: tuple[int, int], segment: int, offset: int):
        """Advance the committed offset.

        Within one identity, a higher segment (truncation) replaces the entry
        and an older segment is ignored. A new identity replaces the entry.
        """
        device, inode = identity
        with self._lock:
            entry = self._data.get(path)
            if entry is not None and (entry.get("device"), entry.get("inode")) == (device, inode):
                current = entry.get("segment", 0)
                if segment < current:
                    return
                if segment == current and offset <= entry.get("offset", 0):
                    return
            self._data[path] = {"offset": offset, "segment": segment, "device": device, "inode": inode}
            self._dirty = True

    def forget(self, path: str):
        with self._lock:
            if self._data.pop(path, None) is not None:
                self._dirty = True
