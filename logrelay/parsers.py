"""Game log parsers and the registry that selects one by game identifier.

Every parser has the same contract:

    parse(line: RawLine) -> Event | None

- pure: no I/O, the same RawLine always yields the same Event
- total: malformed input becomes an `unparsed` Event carrying the raw text
- whitespace-only lines are not records and yield None

Adding a game means writing one function and registering it in PARSERS.
"""

import functools
import re
from datetime import datetime, timezone

from logrelay.errors import ConfigError
from logrelay.models import Event, EventKind, RawLine

DEFAULT_GAME = "generic"

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_TIMESTAMP_FORMATS = (
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%dT%H:%M:%S",
    "%Y.%m.%d-%H.%M.%S",
    "%Y-%m-%d-%H.%M.%S",
    "%Y.%m.%d %H:%M:%S",
    "%d/%m/%Y %H:%M:%S",
)


def parse_timestamp(raw: str) -> datetime | None:
    """Parse a log timestamp; naive values are taken as UTC. None if unrecognised."""
    value = raw.strip()
    try:
        dt = datetime.fromisoformat(value)
    except ValueError:
        dt = None
    if dt is None:
        for fmt in _TIMESTAMP_FORMATS:
            try:
                dt = datetime.strptime(value, fmt)
                break
            except ValueError:
                continue
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def normalize_timestamp(raw: str) -> str:
    """ISO 8601 form of a log timestamp; unrecognised values (e.g. '12:34:56') pass through."""
    dt = parse_timestamp(raw)
    return dt.isoformat() if dt else raw.strip()


def _event(kind: EventKind, line: RawLine, message: str,
           player: str | None = None, timestamp: str | None = None) -> Event:
    return Event(
        kind=kind,
        timestamp=timestamp or line.read_at,
        message=message,
        source_file=line.source_file,
        raw_line=line,
        player=player,
        display_name=player,
    )


def unparsed(line: RawLine) -> Event:
    return _event(EventKind.UNPARSED, line, line.text)


def total(parse_fn):
    """Wrap a parser so malformed input degrades to an unparsed Event."""

    @functools.wraps(parse_fn)
    def wrapper(line: RawLine) -> Event | None:
        if not line.text.strip():
            return None
        try:
            event = parse_fn(line)
        except (ValueError, IndexError, TypeError, AttributeError):
            return unparsed(line)
        return event if event is not None else unparsed(line)

    return wrapper


# ---------------------------------------------------------------------------
# generic: "[timestamp] <id>: message" style logs
# ---------------------------------------------------------------------------

_GENERIC_PREFIX_RE = re.compile(r"^\[(?P<ts>[^\]]*\d[^\]]*)\]\s*(?P<rest>.*)$")
_GENERIC_SYSTEM_RE = re.compile(r"^(?:\*\*\*|\[SYSTEM\])\s*(?P<msg>.+)$", re.IGNORECASE)
_GENERIC_JOIN_RE = re.compile(
    r"^(?P<player>[^\s:]+) (?:has )?(?:joined|connected)(?: (?:the )?(?:game|server))?\.?$",
    re.IGNORECASE,
)
_GENERIC_LEAVE_RE = re.compile(
    r"^(?P<player>[^\s:]+) (?:has )?(?:left|disconnected)(?: (?:the )?(?:game|server))?\.?$",
    re.IGNORECASE,
)
_GENERIC_DEATH_RE = re.compile(
    r"^(?P<player>[^\s:]+) (?P<msg>(?:died|was killed|was slain|was shot|drowned|fell)\b.*)$",
    re.IGNORECASE,
)
_GENERIC_CHAT_RE = re.compile(r"^(?P<player>[^\s:\[\]]+):\s?(?P<msg>.*)$")


@total
def parse_generic(line: RawLine) -> Event | None:
    text = line.text.strip()
    timestamp = None
    m = _GENERIC_PREFIX_RE.match(text)
    if m:
        timestamp = normalize_timestamp(m.group("ts"))
        text = m.group("rest")

    m = _GENERIC_SYSTEM_RE.match(text)
    if m:
        return _event(EventKind.SYSTEM, line, m.group("msg").strip(), timestamp=timestamp)

    m = _GENERIC_JOIN_RE.match(text)
    if m:
        return _event(EventKind.JOIN, line, "joined", m.group("player"), timestamp)

    m = _GENERIC_LEAVE_RE.match(text)
    if m:
        return _event(EventKind.LEAVE, line, "left", m.group("player"), timestamp)

    m = _GENERIC_DEATH_RE.match(text)
    if m:
        return _event(EventKind.DEATH, line, m.group("msg"), m.group("player"), timestamp)

    m = _GENERIC_CHAT_RE.match(text)
    if m:
        return _event(EventKind.CHAT, line, m.group("msg"), m.group("player"), timestamp)

    return None


# ---------------------------------------------------------------------------
# minecraft: vanilla server latest.log
#   [12:34:56] [Server thread/INFO]: <Steve> hello
# ---------------------------------------------------------------------------

_MC_LINE_RE = re.compile(r"^\[(?P<time>[^\]]+)\] \[(?P<thread>[^\]]+)\]: (?P<body>.*)$")
_MC_CHAT_RE = re.compile(r"^(?:\[Not Secure\] )?<(?P<player>[^>]+)> (?P<msg>.*)$")
_MC_BROADCAST_RE = re.compile(r"^\[(?:Server|Rcon|RCON)\] (?P<msg>.*)$")
_MC_JOIN_RE = re.compile(r"^(?P<player>\w{1,16}) joined the game$")
_MC_LEAVE_RE = re.compile(r"^(?P<player>\w{1,16}) left the game$")
_MC_DEATH_RE = re.compile(
    r"^(?P<player>\w{1,16}) (?P<msg>(?:was |died|drowned|fell |blew up|burned to death|"
    r"hit the ground|starved|suffocated|froze to death|experienced kinetic energy|"
    r"tried to swim in lava|went up in flames|walked into|withered away|discovered the floor).*)$"
)


@total
def parse_minecraft(line: RawLine) -> Event | None:
    m = _MC_LINE_RE.match(line.text.strip())
    if not m:
        return None
    timestamp = m.group("time")
    body = m.group("body")

    m = _MC_CHAT_RE.match(body)
    if m:
        return _event(EventKind.CHAT, line, m.group("msg"), m.group("player"), timestamp)

    m = _MC_BROADCAST_RE.match(body)
    if m:
        return _event(EventKind.SYSTEM, line, m.group("msg"), timestamp=timestamp)

    m = _MC_JOIN_RE.match(body)
    if m:
        return _event(EventKind.JOIN, line, "joined the game", m.group("player"), timestamp)

    m = _MC_LEAVE_RE.match(body)
    if m:
        return _event(EventKind.LEAVE, line, "left the game", m.group("player"), timestamp)

    m = _MC_DEATH_RE.match(body)
    if m:
        return _event(EventKind.DEATH, line, m.group("msg"), m.group("player"), timestamp)

    return None


# ---------------------------------------------------------------------------
# deadside: killfeed CSV rows
#   2026.10.19-12.34.56;Killer;killer_id;Victim;victim_id;AK-74;150[;platform;platform]
# ---------------------------------------------------------------------------


def _normalize_weapon(killer: str, victim: str, weapon: str) -> tuple[str, bool]:
    is_suicide = killer == victim or weapon.lower() == "suicide_by_relocation"
    if weapon.lower() == "suicide_by_relocation":
        return "Menu Suicide", True
    if weapon.lower() == "falling":
        return "Falling", True
    if is_suicide:
        return "Suicide", True
    return weapon, False


@total
def parse_deadside(line: RawLine) -> Event | None:
    parts = [p.strip() for p in line.text.strip().split(";")]
    if len(parts) < 7:
        return None

    when = parse_timestamp(parts[0])
    if when is None:
        # Header rows and garbage have no parseable timestamp
        return None

    killer, victim, victim_id = parts[1], parts[3], parts[4]
    weapon, is_suicide = _normalize_weapon(killer, victim, parts[5])
    distance = float(parts[6]) if parts[6] else 0.0

    if is_suicide:
        message = f"died ({weapon})"
    else:
        message = f"was killed by {killer} with {weapon} ({distance:.0f}m)"
    return _event(EventKind.DEATH, line, message, victim_id or victim, when.isoformat())


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

PARSERS = {
    "generic": parse_generic,
    "minecraft": parse_minecraft,
    "deadside": parse_deadside,
}


def get_parser(game: str | None):
    """Return the parser for `game` (case-insensitive), DEFAULT_GAME when empty."""
    name = (game or DEFAULT_GAME).strip().lower() or DEFAULT_GAME
    try:
        return PARSERS[name]
    except KeyError:
        known = ", ".join(sorted(PARSERS))
        raise ConfigError(f"Unknown game format {game!r} (known: {known})") from None
