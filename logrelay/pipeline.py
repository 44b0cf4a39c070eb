"""EventPipeline: parse raw lines, drop duplicates, resolve display names."""

import dataclasses
import logging
from collections import deque

from logrelay.mappings import UserMapping
from logrelay.models import Event, EventKind, RawLine

logger = logging.getLogger(__name__)


class _RecentKeys:
    """Bounded FIFO set of the last `size` dedup keys seen for one file."""

    def __init__(self, size: int):
        self._order: deque = deque()
        self._keys: set = set()
        self._size = size

    def add(self, key) -> bool:
        """Record `key`. Returns False if it was already present."""
        if key in self._keys:
            return False
        self._order.append(key)
        self._keys.add(key)
        if len(self._order) > self._size:
            self._keys.discard(self._order.popleft())
        return True


class EventPipeline:
    """Runs on the watcher loop thread, so per-file input order is output order."""

    def __init__(self, mapping: UserMapping, parser, dedup_window: int = 1024):
        self._mapping = mapping
        self._parser = parser
        self._dedup_window = dedup_window
        self._recent: dict[str, _RecentKeys] = {}
        self.parsed = 0
        self.unparsed = 0
        self.duplicates = 0

    def process(self, record: RawLine | Event) -> Event | None:
        """Turn one tail record into an enriched Event, or None if it is skipped."""
        if isinstance(record, RawLine):
            if not self._first_sighting(record):
                self.duplicates += 1
                logger.debug("Duplicate line %s %s skipped", record.source_file, record.offset_range)
                return None
            event = self._parser(record)
            if event is None:
                return None
            if event.kind is EventKind.UNPARSED:
                self.unparsed += 1
            else:
                self.parsed += 1
        else:
            event = record
        return self.enrich(event)

    def process_all(self, records: list) -> list[Event]:
        events = []
        for record in records:
            event = self.process(record)
            if event is not None:
                events.append(event)
        return events

    def enrich(self, event: Event) -> Event:
        if event.player is None:
            return event
        name = self._mapping.resolve(event.player)
        if name == event.display_name:
            return event
        return dataclasses.replace(event, display_name=name)

    def forget(self, path: str):
        """Drop dedup history for a file that is no longer tracked."""
        self._recent.pop(path, None)

    def _first_sighting(self, line: RawLine) -> bool:
        recent = self._recent.get(line.source_file)
        if recent is None:
            recent = self._recent[line.source_file] = _RecentKeys(self._dedup_window)
        return recent.add(line.dedup_key)
