"""Unit tests for SlackChannel (Socket Mode)."""

from __future__ import annotations

import json
from pathlib import Path

import httpx
import pytest
from websockets.exceptions import ConnectionClosedError
from websockets.frames import Close

from src.chatbridge.channels.slack_channel import SlackChannel
from src.chatbridge.core.channel.errors import AuthError, ProtocolError, SendError
from src.chatbridge.core.channel.models import ChannelConfig, ChannelType, ConnectionState, OutboundMessage
from src.chatbridge.core.runtime.backoff import Backoff
from src.chatbridge.infra.media import MediaStore
from tests.unit.conftest import FakeConnector, FakeWebSocket, wait_until


CONFIG = ChannelConfig(
    enabled=True,
    credentials={"app_token": "xapp-1-abc", "bot_token": "xoxb-123"},
    allowed_user_ids=frozenset({"U123"}),
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class FakeSlackApi:
    def __init__(self, open_error=None, post_ok=True):
        self.open_error = open_error
        self.post_ok = post_ok
        self.calls = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        method = request.url.path.rsplit("/", 1)[-1]
        self.calls.append((method, request.headers.get("Authorization"), json.loads(request.content or b"{}")))
        if request.url.host == "files.slack.com":
            if request.headers.get("Authorization") != "Bearer xoxb-123":
                return httpx.Response(403)
            return httpx.Response(200, content=b"slack-img", headers={"content-type": "image/png"})
        if method == "apps.connections.open":
            if self.open_error:
                return httpx.Response(200, json={"ok": False, "error": self.open_error})
            n = len([c for c in self.calls if c[0] == method])
            return httpx.Response(200, json={"ok": True, "url": f"wss://slack.example/link/?ticket={n}"})
        if method == "chat.postMessage":
            if self.post_ok:
                return httpx.Response(200, json={"ok": True, "ts": "1.0"})
            return httpx.Response(200, json={"ok": False, "error": "channel_not_found"})
        return httpx.Response(404)


def _event(envelope_id, text="hello", user="U123", channel="C1", **extra):
    event = {"type": "message", "text": text, "user": user, "channel": channel}
    event.update(extra)
    return {"envelope_id": envelope_id, "type": "events_api", "payload": {"event": event}}


def _make_channel(sockets, api, media_store=None):
    connector = FakeConnector(sockets)
    channel = SlackChannel(
        backoff=Backoff(base=0.01, cap=0.01, jitter=0),
        transport=httpx.MockTransport(api.handler),
        ws_connect=connector,
        media_store=media_store,
    )
    return channel, connector


# ===========================================================================
# 1. Session lifecycle
# ===========================================================================

class TestSocketMode:
    @pytest.mark.asyncio
    async def test_hello_marks_connected(self):
        api = FakeSlackApi()
        channel, connector = _make_channel([FakeWebSocket([{"type": "hello"}])], api)

        await channel.start(CONFIG, lambda m: True)
        await wait_until(lambda: channel.state is ConnectionState.CONNECTED)

        assert connector.urls == ["wss://slack.example/link/?ticket=1"]
        assert api.calls[0][1] == "Bearer xapp-1-abc"
        await channel.stop()

    @pytest.mark.asyncio
    async def test_envelope_acked_before_processing(self):
        ws = FakeWebSocket([{"type": "hello"}, _event("env-1", text="hi")])
        channel, _ = _make_channel([ws], FakeSlackApi())
        acked_at_emit = []

        def on_inbound(message):
            acked_at_emit.append(list(ws.sent))
            return True

        await channel.start(CONFIG, on_inbound)
        await wait_until(lambda: len(acked_at_emit) == 1)

        assert acked_at_emit[0] == [{"envelope_id": "env-1"}]
        await channel.stop()

    @pytest.mark.asyncio
    async def test_socket_loss_reconnects(self):
        first = FakeWebSocket([{"type": "hello"}, ConnectionClosedError(Close(1006, ""), None)])
        second = FakeWebSocket([{"type": "hello"}])
        channel, connector = _make_channel([first, second], FakeSlackApi())
        states = []
        channel.add_state_listener(lambda ct, state, error: states.append(state))

        await channel.start(CONFIG, lambda m: True)
        await wait_until(lambda: len(connector.urls) == 2 and channel.state is ConnectionState.CONNECTED)

        assert states == [
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
            ConnectionState.RECONNECTING,
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
        ]
        assert connector.urls[1].endswith("ticket=2")
        await channel.stop()

    @pytest.mark.asyncio
    async def test_disconnect_request_opens_new_socket(self):
        first = FakeWebSocket([{"type": "hello"}, {"type": "disconnect", "reason": "refresh_requested"}])
        second = FakeWebSocket([{"type": "hello"}])
        channel, connector = _make_channel([first, second], FakeSlackApi())

        await channel.start(CONFIG, lambda m: True)
        await wait_until(lambda: len(connector.urls) == 2 and channel.state is ConnectionState.CONNECTED)
        await channel.stop()

    @pytest.mark.asyncio
    async def test_invalid_auth_parks_in_error(self):
        api = FakeSlackApi(open_error="invalid_auth")
        channel, connector = _make_channel([], api)

        await channel.start(CONFIG, lambda m: True)
        await wait_until(lambda: channel.task.done())

        assert channel.state is ConnectionState.ERROR
        assert isinstance(channel.task.exception(), AuthError)
        assert connector.urls == []

    @pytest.mark.asyncio
    async def test_bot_token_as_app_token_rejected(self):
        channel, _ = _make_channel([], FakeSlackApi())
        config = ChannelConfig(enabled=True, credentials={"app_token": "xoxb-1", "bot_token": "xoxb-1"})
        with pytest.raises(AuthError, match="xapp"):
            await channel.start(config, lambda m: True)


# ===========================================================================
# 2. Event parsing
# ===========================================================================

class TestParseEvent:
    def test_plain_message(self):
        channel, _ = _make_channel([], FakeSlackApi())
        msg = channel._parse_event(_event("e", text="hi")["payload"])
        assert (msg.external_chat_id, msg.external_user_id, msg.text) == ("C1", "U123", "hi")

    @pytest.mark.parametrize("extra", [{"subtype": "message_changed"}, {"bot_id": "B1"}])
    def test_edits_and_bot_messages_ignored(self, extra):
        channel, _ = _make_channel([], FakeSlackApi())
        assert channel._parse_event(_event("e", **extra)["payload"]) is None

    def test_files_become_attachments(self):
        channel, _ = _make_channel([], FakeSlackApi())
        payload = _event("e", text="", files=[
            {"url_private": "https://files.slack.com/a.png", "mimetype": "image/png", "name": "a.png"},
        ])["payload"]
        msg = channel._parse_event(payload)
        assert msg.attachments[0].kind == "image"
        assert msg.attachments[0].name == "a.png"

    @pytest.mark.parametrize("payload", [
        "not an object",
        {"event": ["message"]},
        _event("e", files="a.png")["payload"],
        _event("e", files=["https://files.slack.com/a.png"])["payload"],
    ])
    def test_wrong_shapes_raise_protocol_error(self, payload):
        channel, _ = _make_channel([], FakeSlackApi())
        with pytest.raises(ProtocolError):
            channel._parse_event(payload)

    @pytest.mark.asyncio
    async def test_malformed_envelope_does_not_end_session(self):
        ws = FakeWebSocket([
            {"type": "hello"},
            _event("env-1", files=[None]),
            {"envelope_id": "env-2", "type": "events_api", "payload": ["x"]},
            _event("env-3", text="after"),
        ])
        channel, connector = _make_channel([ws], FakeSlackApi())
        received = []

        await channel.start(CONFIG, lambda m: received.append(m) or True)
        await wait_until(lambda: len(received) == 1)

        assert received[0].text == "after"
        assert [frame["envelope_id"] for frame in ws.sent] == ["env-1", "env-2", "env-3"]
        assert len(connector.urls) == 1
        assert channel.state is ConnectionState.CONNECTED
        await channel.stop()


# ===========================================================================
# 2b. Inbound files
# ===========================================================================

class TestFileDownload:
    @pytest.mark.asyncio
    async def test_image_fetched_with_bot_token(self, tmp_path):
        api = FakeSlackApi()
        ws = FakeWebSocket([
            {"type": "hello"},
            _event("env-1", text="see", files=[
                {"url_private": "https://files.slack.com/files-pri/T1-F1/cat.png", "mimetype": "image/png"},
                {"url_private": "https://files.slack.com/files-pri/T1-F2/notes.txt", "mimetype": "text/plain"},
            ]),
        ])
        channel, _ = _make_channel([ws], api, media_store=MediaStore(tmp_path))
        received = []

        await channel.start(CONFIG, lambda m: received.append(m) or True)
        await wait_until(lambda: len(received) == 1)

        image, text_file = received[0].attachments
        local = Path(image.ref)
        assert local.parent == tmp_path / "slack"
        assert local.read_bytes() == b"slack-img"
        assert text_file.ref == "https://files.slack.com/files-pri/T1-F2/notes.txt"
        assert [(c[0], c[1]) for c in api.calls if c[0] == "cat.png"] == [("cat.png", "Bearer xoxb-123")]
        await channel.stop()


# ===========================================================================
# 3. Outbound
# ===========================================================================

class TestSend:
    @pytest.mark.asyncio
    async def test_post_message_uses_bot_token(self):
        api = FakeSlackApi()
        channel, _ = _make_channel([], api)
        channel._config = CONFIG

        await channel.send(OutboundMessage(ChannelType.SLACK, "C1", "reply"))

        method, auth, body = api.calls[0]
        assert method == "chat.postMessage"
        assert auth == "Bearer xoxb-123"
        assert body == {"channel": "C1", "text": "reply"}
        await channel.stop()

    @pytest.mark.asyncio
    async def test_rejected_post_raises_send_error(self):
        channel, _ = _make_channel([], FakeSlackApi(post_ok=False))
        channel._config = CONFIG
        with pytest.raises(SendError, match="channel_not_found"):
            await channel.send(OutboundMessage(ChannelType.SLACK, "C1", "reply"))
        await channel.stop()
