"""DirectoryWatcher: keeps one TailTracker per log file in the watched directory.

The watchdog observer thread only enqueues paths. Everything else happens on
the thread that calls `run()`: it is the single owner of every tracker, the
debounce timers and the periodic rescan.
"""

import logging
import os
import queue
import time
from collections import OrderedDict, deque

from watchdog.events import FileSystemEventHandler

from logrelay.models import Event
from logrelay.tailer import TailTracker, file_identity

logger = logging.getLogger(__name__)

# How many finished file identities to remember, so a log renamed to another
# matching name is picked up where it was left instead of re-read
RETIRED_IDENTITIES = 256


class NotificationHandler(FileSystemEventHandler):
    """watchdog handler that forwards every touched path to the watcher queue."""

    def __init__(self, notify):
        super().__init__()
        self._notify = notify

    def on_created(self, event):
        if not event.is_directory:
            self._notify(event.src_path)

    def on_modified(self, event):
        if not event.is_directory:
            self._notify(event.src_path)

    def on_deleted(self, event):
        if not event.is_directory:
            self._notify(event.src_path)

    def on_moved(self, event):
        if not event.is_directory:
            self._notify(event.src_path)
            self._notify(event.dest_path)


class DirectoryWatcher:
    def __init__(
        self,
        directory: str,
        pipeline,
        dispatcher,
        registry=None,
        allowed_extensions: tuple[str, ...] = ("log",),
        ignore_patterns: tuple[str, ...] = (),
        debounce: float = 0.5,
        rescan_interval: float = 5.0,
        skip_existing: bool = False,
        replay_from_start: bool = False,
        drain_timeout: float = 10.0,
    ):
        self._directory = os.path.abspath(directory)
        self._pipeline = pipeline
        self._dispatcher = dispatcher
        self._registry = registry
        self._allowed_extensions = tuple(e.lstrip(".").lower() for e in allowed_extensions)
        self._ignore_patterns = tuple(p.lower() for p in ignore_patterns)
        self._debounce = debounce
        self._rescan_interval = rescan_interval
        self._skip_existing = skip_existing
        self._replay_from_start = replay_from_start
        self._drain_timeout = drain_timeout

        self._notifications: queue.Queue = queue.Queue()
        self._accepting = True
        self._trackers: dict[str, TailTracker] = {}
        self._segments: dict[str, int] = {}
        self._pending: dict[str, float] = {}    # path -> monotonic time the read cycle is due
        self._backlog: dict[str, deque] = {}    # path -> records read but not yet forwarded
        self._retired: OrderedDict = OrderedDict()  # identity -> final offset
        self.handler = NotificationHandler(self.notify)

    @property
    def directory(self) -> str:
        return self._directory

    def matches(self, filename: str) -> bool:
        """Allowed extension and no ignore pattern in the (lower-cased) name."""
        lower = filename.lower()
        if lower.startswith("."):
            return False
        if self._allowed_extensions and not any(
            lower.endswith("." + ext) for ext in self._allowed_extensions
        ):
            return False
        return not any(p in lower for p in self._ignore_patterns)

    def notify(self, path: str):
        """Called from the observer thread for every filesystem notification."""
        if not self._accepting:
            return
        abs_path = os.path.abspath(path)
        if os.path.dirname(abs_path) != self._directory:
            return
        if self.matches(os.path.basename(abs_path)) or abs_path in self._trackers:
            self._notifications.put(abs_path)

    def stop(self):
        """Stop accepting new notifications."""
        self._accepting = False

    # Loop

    def run(self, shutdown_event):
        """Block until shutdown_event is set, then drain in-flight reads and return."""
        self.start_existing()
        next_rescan = time.monotonic() + self._rescan_interval

        while not shutdown_event.is_set():
            now = time.monotonic()
            wake_at = min([next_rescan, *self._pending.values()])
            timeout = min(max(wake_at - now, 0.0), 0.5)
            try:
                path = self._notifications.get(timeout=timeout)
                self._schedule(path)
                self._collect_notifications()
            except queue.Empty:
                pass

            if time.monotonic() >= next_rescan:
                self.rescan()
                next_rescan = time.monotonic() + self._rescan_interval

            self.run_due()

        self.stop()
        self._collect_notifications()
        self.drain()
        self.close()

    def start_existing(self):
        """Track files already present at startup and read them once."""
        try:
            names = sorted(os.listdir(self._directory))
        except OSError as e:
            logger.warning("Cannot list %s: %s", self._directory, e)
            return
        for name in names:
            path = os.path.join(self._directory, name)
            if not self.matches(name) or not os.path.isfile(path) or path in self._trackers:
                continue
            if self._track(path, startup=True) is not None:
                self._schedule(path, delay=0.0)
        logger.info("Initialized with %d existing file(s) in %s", len(self._trackers), self._directory)

    def rescan(self):
        """Backstop for missed notifications: notice removed files, pick up new ones."""
        try:
            names = os.listdir(self._directory)
        except OSError as e:
            logger.warning("Rescan of %s failed: %s", self._directory, e)
            return

        present = set()
        for name in names:
            path = os.path.join(self._directory, name)
            if self.matches(name) and os.path.isfile(path):
                present.add(path)

        # vanished paths first, so a renamed file is retired before its new name is tracked
        for path in list(self._trackers):
            if path not in present:
                self._schedule(path, delay=0.0)
        for path in sorted(present):
            if path not in self._trackers and path not in self._pending:
                logger.info("New log file found by rescan: %s", os.path.basename(path))
            self._schedule(path, delay=0.0)

        if self._registry is not None:
            self._registry.save()

    def run_due(self):
        """Run every read cycle whose debounce window has elapsed, capacity permitting."""
        now = time.monotonic()
        due = [p for p, t in self._pending.items() if t <= now]
        for path in due:
            if not self._dispatcher.wait_for_capacity(timeout=0.1):
                logger.debug("Dispatcher at capacity, holding %d read cycle(s)", len(self._pending))
                return
            del self._pending[path]
            self.cycle(path)

    def drain(self):
        """Run every pending read cycle now, ignoring debounce, until all of it is forwarded.

        Gives up after `drain_timeout` seconds if the dispatcher stays full. What is
        left over was never committed, so it is read again on the next start.
        """
        deadline = time.monotonic() + self._drain_timeout
        while self._pending:
            remaining = deadline - time.monotonic()
            if remaining <= 0 or not self._dispatcher.wait_for_capacity(timeout=remaining):
                logger.warning("Drain stopped with %d file(s) pending and %d line(s) not forwarded",
                               len(self._pending), sum(len(b) for b in self._backlog.values()))
                return
            path = next(iter(self._pending))
            del self._pending[path]
            self.cycle(path)

    def close(self):
        for tracker in self._trackers.values():
            tracker.close()
        self._trackers.clear()
        self._backlog.clear()

    # Per-file work

    def cycle(self, path: str):
        """One read cycle for `path`: forward its backlog, then track, read or retire it.

        Nothing new is read while the file still has lines waiting for dispatcher room.
        """
        if not self._flush(path):
            self._schedule(path, delay=0.0)
            return

        tracker = self._trackers.get(path)
        if tracker is None:
            if not os.path.isfile(path) or not self.matches(os.path.basename(path)):
                return
            self._settle_moved(path)
            logger.info("New log file detected: %s", os.path.basename(path))
            tracker = self._track(path, startup=False)
        if tracker is not None:
            self._backlog.setdefault(path, deque()).extend(self._read(path, tracker))

        tracker = self._trackers.get(path)
        if not self._flush(path) or (tracker is not None and tracker.has_more):
            self._schedule(path, delay=0.0)

    def _read(self, path: str, tracker: TailTracker) -> list:
        before = tracker.state
        records = tracker.on_file_event()
        if tracker.state is not before and before is not None:
            self._retire(before)
        if tracker.stale:
            records.extend(self._remove(path))
        return records

    def _settle_moved(self, path: str):
        """Finish any tracker still following this file under its old name."""
        try:
            identity = file_identity(os.stat(path))
        except OSError:
            return
        for old, tracker in list(self._trackers.items()):
            if old == path or tracker.state is None or tracker.state.identity != identity:
                continue
            self._pending.pop(old, None)
            self._backlog.setdefault(old, deque()).extend(self._read(old, tracker))
            if not self._flush(old) or old in self._trackers:
                self._schedule(old, delay=0.0)

    def _track(self, path: str, startup: bool) -> TailTracker | None:
        try:
            identity = file_identity(os.stat(path))
        except OSError:
            return None

        segment = self._segments.get(path, 0)
        start_offset, at_end = 0, False
        if identity in self._retired:
            start_offset = self._retired.pop(identity)
        elif startup:
            saved = None
            if self._registry is not None and not self._replay_from_start:
                saved = self._registry.lookup(path, identity)
            if saved is not None:
                start_offset, saved_segment = saved
                segment = max(segment, saved_segment)
            elif self._skip_existing:
                at_end = True

        tracker = TailTracker(path, segment=segment)
        if not tracker.open(start_offset=start_offset, at_end=at_end):
            return None
        self._trackers[path] = tracker
        logger.info("Tracking %s from offset %d", os.path.basename(path), tracker.state.last_offset)
        return tracker

    def _remove(self, path: str) -> list:
        tracker = self._trackers.pop(path)
        records = tracker.finish()
        if tracker.state is not None:
            self._retire(tracker.state)
        self._segments[path] = tracker.segment + 1
        logger.info("Removed tracking for deleted file: %s", os.path.basename(path))
        records.append(Event.system(path, f"Log file removed: {os.path.basename(path)}"))
        return records

    def _retire(self, state):
        """Remember where a file was left, if it still lives on under another matching name."""
        renamed = self._locate(state.identity)
        if renamed is None:
            return
        logger.debug("%s continues as %s", os.path.basename(state.path), os.path.basename(renamed))
        self._retired[state.identity] = state.read_position
        while len(self._retired) > RETIRED_IDENTITIES:
            self._retired.popitem(last=False)

    def _locate(self, identity) -> str | None:
        try:
            with os.scandir(self._directory) as entries:
                for entry in entries:
                    if not self.matches(entry.name) or not entry.is_file():
                        continue
                    try:
                        if file_identity(entry.stat()) == identity:
                            return entry.path
                    except OSError:
                        continue
        except OSError as e:
            logger.debug("Cannot scan %s: %s", self._directory, e)
        return None

    def _flush(self, path: str) -> bool:
        """Forward `path`'s backlog while the dispatcher has room. True once it is empty."""
        backlog = self._backlog.get(path)
        while backlog:
            if not self._dispatcher.accepting:
                return False
            event = self._pipeline.process(backlog.popleft())
            if event is not None:
                self._dispatcher.submit(event)
        self._backlog.pop(path, None)
        if path not in self._trackers:
            self._pipeline.forget(path)
        return True

    def _schedule(self, path: str, delay: float | None = None):
        """Coalesce: a path already pending keeps its first due time."""
        if path in self._pending:
            return
        self._pending[path] = time.monotonic() + (self._debounce if delay is None else delay)

    def _collect_notifications(self):
        while True:
            try:
                path = self._notifications.get_nowait()
            except queue.Empty:
                return
            self._schedule(path)
