"""Data model shared by the tail, parse, pipeline and delivery stages."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


class EventKind(Enum):
    CHAT = "chat"
    JOIN = "join"
    LEAVE = "leave"
    DEATH = "death"
    SYSTEM = "system"
    UNPARSED = "unparsed"


class DeliveryStatus(Enum):
    PENDING = "pending"
    DELIVERING = "delivering"
    DELIVERED = "delivered"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"
    ABANDONED = "abandoned"       # cut off by shutdown, offset left uncommitted


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class WatchedFile:
    """Tail state of one file identity. Owned by a single TailTracker."""

    path: str
    identity: tuple[int, int]     # (st_dev, st_ino)
    last_offset: int = 0          # bytes consumed up to the last complete line
    last_size: int = 0
    pending_partial: bytes = b""  # unterminated trailing fragment
    segment: int = 0              # bumped on truncation / rotation

    @property
    def read_position(self) -> int:
        return self.last_offset + len(self.pending_partial)


@dataclass(frozen=True)
class RawLine:
    source_file: str
    text: str
    offset_range: tuple[int, int]   # [start, end) byte offsets, end includes the newline
    identity: tuple[int, int] = (0, 0)
    segment: int = 0
    read_at: str = ""               # ISO 8601, when the read cycle happened

    @property
    def dedup_key(self) -> tuple:
        """Identifies this line across re-reads: (source_file, segment, offset_range)."""
        return (self.source_file, self.segment, self.offset_range)


@dataclass(frozen=True)
class Event:
    kind: EventKind
    timestamp: str                  # ISO 8601 when known, else the raw log timestamp
    message: str
    source_file: str = ""
    raw_line: RawLine | None = None
    player: str | None = None       # raw identifier as it appears in the log
    display_name: str | None = None

    @classmethod
    def system(cls, source_file: str, message: str) -> "Event":
        return cls(
            kind=EventKind.SYSTEM,
            timestamp=utc_now_iso(),
            message=message,
            source_file=source_file,
        )

    def to_dict(self) -> dict:
        data = {
            "kind": self.kind.value,
            "timestamp": self.timestamp,
            "message": self.message,
            "source_file": self.source_file,
            "player": self.player,
            "display_name": self.display_name,
        }
        if self.raw_line is not None:
            data["raw"] = self.raw_line.text
            data["offset_range"] = list(self.raw_line.offset_range)
        return data


@dataclass
class DeliveryState:
    """Per-event delivery bookkeeping kept by the Dispatcher."""

    event: Event
    enqueued_at: float                     # time.monotonic()
    attempts: int = 0
    next_retry_at: float = 0.0
    status: DeliveryStatus = DeliveryStatus.PENDING
    delays: list[float] = field(default_factory=list)
