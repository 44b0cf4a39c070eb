"""User mapping table: raw player identifier -> display name.

Accepted formats for the USER_MAPPINGS string:
    {"u123": "Alice", "u456": "Bob"}      JSON / YAML flow mapping
    u123=Alice,u456=Bob                   pairs separated by ',' or newlines
    u123:Alice                            ':' works as the pair separator too
"""

import logging
import re
from types import MappingProxyType

import yaml

from logrelay.errors import MappingError

logger = logging.getLogger(__name__)

_PAIR_SPLIT_RE = re.compile(r"[,\n;]")


def mask_identifier(identifier: str) -> str:
    """Mask all but the last four characters of an identifier for logging."""
    if len(identifier) <= 4:
        return "****"
    return "****" + identifier[-4:]


class UserMapping:
    """Immutable identifier -> display name table. Lookups never fail."""

    def __init__(self, entries: dict[str, str] | None = None):
        self._entries = MappingProxyType(dict(entries or {}))

    @property
    def entries(self):
        return self._entries

    def resolve(self, identifier: str) -> str:
        """Return the mapped display name, or the identifier itself."""
        return self._entries.get(identifier, identifier)

    def __contains__(self, identifier) -> bool:
        return identifier in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        return f"UserMapping({len(self._entries)} entries)"


def _parse_flow_mapping(text: str) -> dict[str, str]:
    try:
        # BaseLoader keeps every scalar a string, so ids like 0123 survive intact
        data = yaml.load(text, Loader=yaml.BaseLoader)
    except yaml.YAMLError as e:
        raise MappingError(f"USER_MAPPINGS is not a valid JSON/YAML mapping: {e}") from e
    if not isinstance(data, dict):
        raise MappingError("USER_MAPPINGS must be a mapping of identifier to name")

    entries = {}
    for key, value in data.items():
        if not isinstance(value, str):
            raise MappingError(f"Display name for {key!r} must be a string")
        entries[key.strip()] = value.strip()
    return entries


def _parse_pairs(text: str) -> dict[str, str]:
    entries: dict[str, str] = {}
    for chunk in _PAIR_SPLIT_RE.split(text):
        chunk = chunk.strip()
        if not chunk:
            continue
        if "=" in chunk:
            key, value = chunk.split("=", 1)
        elif ":" in chunk:
            key, value = chunk.split(":", 1)
        else:
            raise MappingError(f"Invalid mapping entry {chunk!r}, expected 'id=name'")
        key, value = key.strip(), value.strip()
        if key in entries and entries[key] != value:
            logger.warning("Duplicate mapping for %s, keeping the last one", mask_identifier(key))
        entries[key] = value
    return entries


def parse_user_mappings(raw: str | None) -> UserMapping:
    """Parse the configured mapping string. Raises MappingError on bad input."""
    if raw is None or not raw.strip():
        raise MappingError("USER_MAPPINGS is empty")

    text = raw.strip()
    if text.startswith("{"):
        entries = _parse_flow_mapping(text)
    else:
        entries = _parse_pairs(text)

    for key, value in entries.items():
        if not key:
            raise MappingError("Mapping entry with an empty identifier")
        if not value:
            raise MappingError(f"Mapping entry {mask_identifier(key)} has an empty display name")
    if not entries:
        raise MappingError("USER_MAPPINGS contains no entries")

    return UserMapping(entries)
