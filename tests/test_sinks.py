"""Tests for the bundled sinks."""

import json

import pytest
import requests

from conftest import make_line
from logrelay.config import Config
from logrelay.errors import ConfigError, PermanentDeliveryError, TransientDeliveryError
from logrelay.models import Event, EventKind
from logrelay.sinks import (
    DiscordWebhookSink,
    LoggingSink,
    NdjsonFileSink,
    build_sink,
    format_event,
    parse_retry_after,
    prepare_webhook_url,
)

WEBHOOK = "https://discord.com/api/webhooks/1/token"


class FakeResponse:
    def __init__(self, status_code, headers=None, text=""):
        self.status_code = status_code
        self.headers = headers or {}
        self.text = text


class FakeSession:
    """Stands in for requests.Session; returns queued responses in order."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []
        self.closed = False

    def post(self, url, json=None, timeout=None):
        self.calls.append((url, json, timeout))
        result = self.responses.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    def close(self):
        self.closed = True


def _chat(text="hello", name="Alice"):
    return Event(kind=EventKind.CHAT, timestamp="2024-01-15T10:30:00+00:00", message=text,
                 source_file="/logs/game.log", raw_line=make_line(f"u123: {text}"),
                 player="u123", display_name=name)


class TestFormatEvent:
    def test_chat_uses_display_name(self):
        assert format_event(_chat()) == "💬 **Alice**: hello"

    def test_system(self):
        assert format_event(Event.system("", "Log file truncated")).endswith(" Log file truncated")

    def test_long_message_truncated(self):
        text = format_event(_chat("x" * 5000))
        assert len(text) == 2000
        assert text.endswith("…")


class TestWebhookUrl:
    def test_adds_wait(self):
        assert prepare_webhook_url(WEBHOOK) == WEBHOOK + "?wait=true"

    def test_keeps_existing_query(self):
        url = prepare_webhook_url(WEBHOOK + "?thread_id=9")
        assert "thread_id=9" in url and "wait=true" in url

    @pytest.mark.parametrize("url", ["", "not a url", "ftp://example.com/hook"])
    def test_invalid_rejected(self, url):
        with pytest.raises(ConfigError):
            prepare_webhook_url(url)


class TestRetryAfter:
    def test_retry_after_header(self):
        assert parse_retry_after({"Retry-After": "1.5"}) == 1.5

    def test_rate_limit_reset_header(self):
        assert parse_retry_after({"X-RateLimit-Reset-After": "7"}) == 7.0

    def test_default(self):
        assert parse_retry_after({"Retry-After": "soon"}) == 3.0


class TestDiscordWebhookSink:
    def test_success_posts_payload(self):
        session = FakeSession(FakeResponse(204))
        sink = DiscordWebhookSink(WEBHOOK, session=session, timeout=2.0)
        sink.send(_chat())

        url, payload, timeout = session.calls[0]
        assert url.endswith("wait=true")
        assert payload["content"] == "💬 **Alice**: hello"
        assert payload["allowed_mentions"] == {"parse": []}
        assert timeout == 2.0

    def test_rate_limit_is_transient_with_hint(self):
        session = FakeSession(FakeResponse(429, headers={"Retry-After": "4"}))
        sink = DiscordWebhookSink(WEBHOOK, session=session)
        with pytest.raises(TransientDeliveryError) as exc_info:
            sink.send(_chat())
        assert exc_info.value.retry_after == 4.0

    @pytest.mark.parametrize("status", [500, 502, 503, 408])
    def test_server_errors_are_transient(self, status):
        sink = DiscordWebhookSink(WEBHOOK, session=FakeSession(FakeResponse(status)))
        with pytest.raises(TransientDeliveryError):
            sink.send(_chat())

    @pytest.mark.parametrize("status", [400, 401, 404])
    def test_client_errors_are_permanent(self, status):
        sink = DiscordWebhookSink(WEBHOOK, session=FakeSession(FakeResponse(status)))
        with pytest.raises(PermanentDeliveryError):
            sink.send(_chat())

    def test_connection_error_is_transient(self):
        session = FakeSession(requests.ConnectionError("refused"))
        sink = DiscordWebhookSink(WEBHOOK, session=session)
        with pytest.raises(TransientDeliveryError):
            sink.send(_chat())

    def test_close_closes_session(self):
        session = FakeSession()
        DiscordWebhookSink(WEBHOOK, session=session).close()
        assert session.closed


class TestNdjsonFileSink:
    def test_appends_one_object_per_line(self, tmp_path):
        path = tmp_path / "out" / "events.ndjson"
        sink = NdjsonFileSink(str(path))
        sink.send(_chat("one"))
        sink.send(Event.system("/logs/game.log", "Log file removed"))

        rows = [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]
        assert rows[0]["kind"] == "chat"
        assert rows[0]["display_name"] == "Alice"
        assert rows[0]["raw"] == "u123: one"
        assert rows[1]["kind"] == "system"
        assert "raw" not in rows[1]


class TestBuildSink:
    def test_log(self):
        assert isinstance(build_sink(Config(sink="log")), LoggingSink)

    def test_ndjson(self, tmp_path):
        sink = build_sink(Config(sink="ndjson", output_file=str(tmp_path / "e.ndjson")))
        assert isinstance(sink, NdjsonFileSink)

    def test_webhook_requires_url(self):
        with pytest.raises(ConfigError):
            build_sink(Config(sink="webhook"))

    def test_unknown(self):
        with pytest.raises(ConfigError):
            build_sink(Config(sink="carrier-pigeon"))
