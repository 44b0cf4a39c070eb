"""Sinks: the downstream end of the relay.

A sink has one method, `send(event)`, which returns on success and raises
TransientDeliveryError (worth retrying) or PermanentDeliveryError (drop it).
"""

import json
import logging
import os
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import requests

from logrelay.errors import ConfigError, PermanentDeliveryError, TransientDeliveryError
from logrelay.models import Event, EventKind

logger = logging.getLogger(__name__)

DISCORD_CONTENT_LIMIT = 2000
DEFAULT_RETRY_AFTER = 3.0

_KIND_ICONS = {
    EventKind.CHAT: "💬",
    EventKind.JOIN: "➡️",
    EventKind.LEAVE: "⬅️",
    EventKind.DEATH: "💀",
    EventKind.SYSTEM: "ℹ️",
    EventKind.UNPARSED: "📄",
}


def format_event(event: Event) -> str:
    """One-line human readable rendering used by chat-style sinks."""
    icon = _KIND_ICONS[event.kind]
    name = event.display_name or event.player or "?"
    if event.kind is EventKind.CHAT:
        text = f"{icon} **{name}**: {event.message}"
    elif event.kind in (EventKind.JOIN, EventKind.LEAVE, EventKind.DEATH):
        text = f"{icon} **{name}** {event.message}"
    elif event.kind is EventKind.SYSTEM:
        text = f"{icon} {event.message}"
    else:
        text = f"{icon} `{event.message}`"
    if len(text) > DISCORD_CONTENT_LIMIT:
        text = text[:DISCORD_CONTENT_LIMIT - 1] + "…"
    return text


def prepare_webhook_url(webhook_url: str) -> str:
    """Validate the webhook URL and add wait=true so Discord confirms delivery."""
    if not webhook_url:
        raise ConfigError("DISCORD_WEBHOOK_URL is not configured")
    parts = urlsplit(webhook_url)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise ConfigError(f"Invalid webhook URL: {webhook_url!r}")
    query = dict(parse_qsl(parts.query))
    query["wait"] = "true"
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


def parse_retry_after(headers) -> float:
    """Seconds to wait from Retry-After or X-RateLimit-Reset-After, default 3s."""
    for name in ("Retry-After", "X-RateLimit-Reset-After"):
        value = headers.get(name)
        if value:
            try:
                return max(0.0, float(value))
            except ValueError:
                continue
    return DEFAULT_RETRY_AFTER


class DiscordWebhookSink:
    """Posts each event as a Discord webhook message."""

    def __init__(self, webhook_url: str, username: str = "Game Log Relay",
                 timeout: float = 10.0, session: requests.Session | None = None):
        self._url = prepare_webhook_url(webhook_url)
        self._username = username
        self._timeout = timeout
        self._session = session or requests.Session()

    def build_payload(self, event: Event) -> dict:
        return {
            "username": self._username,
            "content": format_event(event),
            # Relayed player text must never ping anyone
            "allowed_mentions": {"parse": []},
        }

    def send(self, event: Event):
        try:
            resp = self._session.post(self._url, json=self.build_payload(event), timeout=self._timeout)
        except requests.RequestException as e:
            raise TransientDeliveryError(f"Webhook request failed: {e}") from e

        status = resp.status_code
        if status in (200, 204):
            logger.debug("Webhook accepted %s event (status %d)", event.kind.value, status)
            return
        if status == 429:
            raise TransientDeliveryError("Discord rate limit hit (429)",
                                         retry_after=parse_retry_after(resp.headers))
        if status == 408 or status >= 500:
            raise TransientDeliveryError(f"Webhook returned {status}: {resp.text[:200]}")
        raise PermanentDeliveryError(f"Webhook returned {status}: {resp.text[:200]}")

    def close(self):
        self._session.close()


class NdjsonFileSink:
    """Appends one JSON object per event to a file."""

    def __init__(self, path: str):
        self._path = path
        os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)

    def send(self, event: Event):
        line = json.dumps(event.to_dict(), ensure_ascii=False)
        try:
            with open(self._path, "a", encoding="utf-8") as f:
                f.write(line + "\n")
        except OSError as e:
            raise TransientDeliveryError(f"Cannot write {self._path}: {e}") from e

    def close(self):
        pass


class LoggingSink:
    """Writes events to the relay's own log. Useful for dry runs."""

    def send(self, event: Event):
        logger.info("[%s] %s", event.kind.value, format_event(event))

    def close(self):
        pass


SINKS = ("webhook", "ndjson", "log")


def build_sink(config):
    """Create the sink selected by config.sink."""
    if config.sink == "webhook":
        return DiscordWebhookSink(config.webhook_url, timeout=config.sink_timeout)
    if config.sink == "ndjson":
        return NdjsonFileSink(config.output_file)
    if config.sink == "log":
        return LoggingSink()
    raise ConfigError(f"Unknown sink {config.sink!r} (known: {', '.join(SINKS)})")
