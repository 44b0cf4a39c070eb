"""TailTracker: incremental reader for a single log file.

Handles:
- Partial trailing lines (buffered until their newline arrives)
- Truncation (file shrinks under the same identity -> restart at offset 0)
- Rotation (new identity at the same path -> drain the old handle, then follow the new file)
- File vanishing mid-read (tracker goes stale, not an error)
"""

import logging
import os

from logrelay.models import Event, RawLine, WatchedFile, utc_now_iso

logger = logging.getLogger(__name__)

# Longest unterminated fragment kept in memory before it is forced out as a line
MAX_PARTIAL_BYTES = 1024 * 1024
# Most bytes consumed by one read cycle; the watcher schedules another cycle for the rest
READ_CHUNK_BYTES = 4 * 1024 * 1024


def file_identity(st: os.stat_result) -> tuple[int, int]:
    return (st.st_dev, st.st_ino)


class TailTracker:
    """Tracks one path. Only the watcher loop thread calls into a tracker."""

    def __init__(self, path: str, segment: int = 0):
        self._path = path
        self._segment = segment
        self._fh = None
        self.state: WatchedFile | None = None
        self.stale = False

    @property
    def path(self) -> str:
        return self._path

    @property
    def segment(self) -> int:
        return self.state.segment if self.state else self._segment

    @property
    def has_more(self) -> bool:
        """True when the last read stopped short of the observed file size."""
        return self._fh is not None and self.state.read_position < self.state.last_size

    def open(self, start_offset: int = 0, at_end: bool = False) -> bool:
        """Open the file and position the tracker. Returns False if it is gone."""
        try:
            fh = open(self._path, "rb")
        except FileNotFoundError:
            logger.debug("File not found: %s", self._path)
            self.stale = True
            return False
        except OSError as e:
            logger.warning("Cannot open %s: %s", self._path, e)
            return False

        st = os.fstat(fh.fileno())
        offset = st.st_size if at_end else start_offset
        if offset > st.st_size:
            logger.info("Saved offset %d is past the end of %s (%d bytes), starting over",
                        offset, self._path, st.st_size)
            offset = 0

        self._fh = fh
        self.stale = False
        self.state = WatchedFile(
            path=self._path,
            identity=file_identity(st),
            last_offset=offset,
            last_size=st.st_size,
            segment=self._segment,
        )
        logger.debug("Opened %s at offset %d (inode=%d)", self._path, offset, st.st_ino)
        return True

    def close(self):
        if self._fh is not None:
            try:
                self._fh.close()
            except OSError:
                pass
            self._fh = None

    def on_file_event(self) -> list:
        """Re-stat the path and read whatever changed.

        Returns RawLines and system Events in the order they happened.
        """
        if self.stale:
            return []
        if self._fh is None and not self.open():
            return []

        try:
            st = os.stat(self._path)
        except FileNotFoundError:
            logger.info("File vanished: %s", self._path)
            self.stale = True
            return []
        except OSError as e:
            logger.warning("Cannot stat %s: %s", self._path, e)
            return []

        if file_identity(st) != self.state.identity:
            return self._rotate()

        if st.st_size < self.state.last_size or st.st_size < self.state.read_position:
            return self._truncate(st.st_size)

        return self.read_new_bytes(st.st_size)

    def read_new_bytes(self, size: int | None = None) -> list[RawLine]:
        """Read from the current position up to `size` and split complete lines."""
        state = self.state
        if state is None or self._fh is None:
            return []

        try:
            if size is None:
                size = os.fstat(self._fh.fileno()).st_size
            position = state.read_position
            if size <= position:
                state.last_size = size
                return []
            self._fh.seek(position)
            data = self._fh.read(min(size - position, READ_CHUNK_BYTES))
        except OSError as e:
            logger.warning("Read failed for %s, will retry: %s", self._path, e)
            return []

        state.last_size = size if data else position
        return self._split(state.pending_partial + data)

    def finish(self) -> list[RawLine]:
        """Drain the open handle to EOF, including an unterminated last line, and close it."""
        if self.state is None or self._fh is None:
            return []
        records = self.read_new_bytes()
        while self.has_more:
            before = self.state.read_position
            records.extend(self.read_new_bytes())
            if self.state.read_position == before:
                break
        if self.state.pending_partial:
            records.append(self._flush_partial())
        self.close()
        return records

    def _split(self, buf: bytes) -> list[RawLine]:
        state = self.state
        read_at = utc_now_iso()
        start = state.last_offset
        records = []

        chunks = buf.split(b"\n")
        tail = chunks.pop()
        for chunk in chunks:
            end = start + len(chunk) + 1
            records.append(self._make_line(chunk, start, end, read_at))
            start = end

        state.last_offset = start
        state.pending_partial = tail

        if len(tail) > MAX_PARTIAL_BYTES:
            logger.warning("Unterminated line in %s exceeds %d bytes, emitting it as is",
                           self._path, MAX_PARTIAL_BYTES)
            records.append(self._flush_partial())
        return records

    def _flush_partial(self) -> RawLine:
        state = self.state
        start = state.last_offset
        end = start + len(state.pending_partial)
        line = self._make_line(state.pending_partial, start, end, utc_now_iso())
        state.last_offset = end
        state.pending_partial = b""
        return line

    def _make_line(self, chunk: bytes, start: int, end: int, read_at: str) -> RawLine:
        return RawLine(
            source_file=self._path,
            text=chunk.rstrip(b"\r").decode("utf-8", errors="replace"),
            offset_range=(start, end),
            identity=self.state.identity,
            segment=self.state.segment,
            read_at=read_at,
        )

    def _truncate(self, size: int) -> list:
        state = self.state
        logger.info("File truncated: %s (%d -> %d bytes)", self._path, state.last_size, size)
        state.last_offset = 0
        state.pending_partial = b""
        state.last_size = 0
        state.segment += 1
        name = os.path.basename(self._path)
        records: list = [Event.system(self._path, f"Log file truncated, reading {name} from the start")]
        records.extend(self.read_new_bytes(size))
        return records

    def _rotate(self) -> list:
        logger.info("File rotated (identity changed): %s", self._path)
        records: list = self.finish()
        self._segment = self.state.segment + 1
        name = os.path.basename(self._path)
        records.append(Event.system(self._path, f"Log file rotated, following new {name}"))
        if self.open(start_offset=0):
            records.extend(self.read_new_bytes())
        return records
