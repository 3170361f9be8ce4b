"""Unit tests for TelegramChannel."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from unittest.mock import AsyncMock

import httpx
import pytest

from src.chatbridge.channels.telegram_channel import OFFSET_KEY, TELEGRAM_MSG_LIMIT, TelegramChannel
from src.chatbridge.core.channel.conversation_mapper import ConversationMapper
from src.chatbridge.core.channel.errors import AuthError, ProtocolError, SendError
from src.chatbridge.core.channel.models import ChannelConfig, ChannelType, ConnectionState, OutboundMessage
from src.chatbridge.core.channel.router import MessageRouter
from src.chatbridge.core.runtime.backoff import Backoff
from src.chatbridge.infra.media import MediaStore
from src.chatbridge.infra.persistence import JsonStateStore
from tests.unit.conftest import wait_until


TOKEN = "123:FAKE"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class FakeBotApi:
    """Scripted Bot API served through httpx.MockTransport."""

    def __init__(self, batches=None, token_ok=True, files=None):
        self.batches = list(batches or [])
        self.token_ok = token_ok
        self.files = dict(files or {})
        self.calls = []
        self.downloads = []

    def methods(self, name):
        return [body for method, body in self.calls if method == name]

    async def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.path.startswith("/file/"):
            self.downloads.append(request.url.path)
            return httpx.Response(200, content=b"tg-photo", headers={"content-type": "image/jpeg"})
        method = request.url.path.rsplit("/", 1)[-1]
        body = json.loads(request.content or b"{}")
        self.calls.append((method, body))
        if not self.token_ok:
            return httpx.Response(401, json={"ok": False, "description": "Unauthorized"})
        if method == "getMe":
            return httpx.Response(200, json={"ok": True, "result": {"id": 1, "username": "bridge_bot"}})
        if method == "getFile":
            if body.get("file_id") not in self.files:
                return httpx.Response(400, json={"ok": False, "description": "Bad Request: invalid file_id"})
            return httpx.Response(200, json={"ok": True, "result": {"file_path": self.files[body["file_id"]]}})
        if method == "getUpdates":
            if self.batches:
                return httpx.Response(200, json={"ok": True, "result": self.batches.pop(0)})
            await asyncio.sleep(0.05)
            return httpx.Response(200, json={"ok": True, "result": []})
        return httpx.Response(200, json={"ok": True, "result": {}})


def _update(update_id, text="hello", user_id=12345, chat_id=100, **extra):
    message = {
        "message_id": update_id,
        "chat": {"id": chat_id, "type": "private"},
        "from": {"id": user_id, "first_name": "Ada", "last_name": "L"},
        "text": text,
    }
    message.update(extra)
    return {"update_id": update_id, "message": message}


def _config(allowed=("12345",), token=TOKEN):
    return ChannelConfig(
        enabled=True,
        credentials={"bot_token": token},
        allowed_user_ids=frozenset(allowed),
    )


def _make_channel(api, store=None, media_store=None):
    return TelegramChannel(
        state_store=store or JsonStateStore(),
        backoff=Backoff(base=0.01, cap=0.01, jitter=0),
        transport=httpx.MockTransport(api.handler),
        media_store=media_store,
    )


# ===========================================================================
# 1. Allow-list through the router
# ===========================================================================

class TestUnauthorizedSender:
    @pytest.mark.asyncio
    async def test_unlisted_user_gets_no_reply(self):
        api = FakeBotApi(batches=[[_update(1, user_id=99999)]])
        channel = _make_channel(api)
        engine = AsyncMock()
        config = _config()
        router = MessageRouter(
            ConversationMapper(),
            engine,
            get_adapter=lambda ct: channel,
            get_config=lambda ct: config,
        )

        await channel.start(config, router.on_inbound)
        await wait_until(lambda: len(api.methods("getUpdates")) >= 2)
        await asyncio.sleep(0.02)

        engine.submit.assert_not_called()
        assert api.methods("sendMessage") == []
        assert api.methods("sendChatAction") == []
        await router.close()
        await channel.stop()

    @pytest.mark.asyncio
    async def test_listed_user_reaches_engine(self):
        api = FakeBotApi(batches=[[_update(1, text="ping")]])
        channel = _make_channel(api)
        engine = AsyncMock()
        config = _config()
        router = MessageRouter(
            ConversationMapper(),
            engine,
            get_adapter=lambda ct: channel,
            get_config=lambda ct: config,
        )

        await channel.start(config, router.on_inbound)
        await wait_until(lambda: engine.submit.await_count == 1)

        assert engine.submit.await_args.args[1] == "ping"
        assert api.methods("sendChatAction") == [{"chat_id": "100", "action": "typing"}]
        await router.close()
        await channel.stop()


# ===========================================================================
# 2. Polling
# ===========================================================================

class TestPolling:
    @pytest.mark.asyncio
    async def test_connects_and_emits_messages(self):
        api = FakeBotApi(batches=[[_update(5, text="a"), _update(6, text="b")]])
        channel = _make_channel(api)
        received = []

        await channel.start(_config(), lambda m: received.append(m) or True)
        await wait_until(lambda: len(received) == 2)

        assert channel.state is ConnectionState.CONNECTED
        assert [m.text for m in received] == ["a", "b"]
        assert received[0].external_chat_id == "100"
        assert received[0].external_user_id == "12345"
        assert received[0].external_user_display_name == "Ada L"
        await channel.stop()

    @pytest.mark.asyncio
    async def test_offset_advances_and_persists(self, tmp_path):
        store = JsonStateStore(tmp_path / "channels.json")
        api = FakeBotApi(batches=[[_update(41), _update(42)]])
        channel = _make_channel(api, store)

        await channel.start(_config(), lambda m: True)
        await wait_until(lambda: len(api.methods("getUpdates")) >= 2)

        assert api.methods("getUpdates")[0]["offset"] == 0
        assert api.methods("getUpdates")[1]["offset"] == 43
        assert JsonStateStore(tmp_path / "channels.json").get(OFFSET_KEY) == 43
        await channel.stop()

    @pytest.mark.asyncio
    async def test_resumes_from_stored_offset(self):
        store = JsonStateStore()
        store.set(OFFSET_KEY, 77)
        api = FakeBotApi()
        channel = _make_channel(api, store)

        await channel.start(_config(), lambda m: True)
        await wait_until(lambda: len(api.methods("getUpdates")) >= 1)

        assert api.methods("getUpdates")[0]["offset"] == 77
        await channel.stop()

    @pytest.mark.asyncio
    async def test_rejected_token_parks_in_error(self):
        api = FakeBotApi(token_ok=False)
        channel = _make_channel(api)

        await channel.start(_config(), lambda m: True)
        await wait_until(lambda: channel.task.done())

        assert channel.state is ConnectionState.ERROR
        assert isinstance(channel.task.exception(), AuthError)
        assert len(api.methods("getMe")) == 1

    @pytest.mark.asyncio
    async def test_malformed_token_rejected_before_connecting(self):
        channel = _make_channel(FakeBotApi())
        with pytest.raises(AuthError):
            await channel.start(_config(token="no-colon"), lambda m: True)
        assert channel.state is ConnectionState.ERROR


# ===========================================================================
# 3. Update parsing
# ===========================================================================

class TestParseUpdate:
    def test_caption_and_largest_photo(self):
        channel = _make_channel(FakeBotApi())
        update = _update(1, text=None, caption="look", photo=[{"file_id": "small"}, {"file_id": "large"}])
        msg = channel._parse_update(update)
        assert msg.text == "look"
        assert [(a.kind, a.ref) for a in msg.attachments] == [("image", "large")]

    def test_document_attachment(self):
        channel = _make_channel(FakeBotApi())
        update = _update(1, text=None, document={
            "file_id": "doc1", "file_name": "r.pdf", "mime_type": "application/pdf",
        })
        msg = channel._parse_update(update)
        assert msg.text == ""
        assert msg.attachments[0].name == "r.pdf"
        assert msg.attachments[0].mime_type == "application/pdf"

    def test_missing_sender_is_protocol_error(self):
        channel = _make_channel(FakeBotApi())
        with pytest.raises(ProtocolError):
            channel._parse_update({"update_id": 1, "message": {"chat": {"id": 1}, "text": "x"}})

    def test_non_message_update_ignored(self):
        channel = _make_channel(FakeBotApi())
        assert channel._parse_update({"update_id": 1, "edited_message": {}}) is None

    def test_malformed_update_dropped_but_offset_advanced(self):
        channel = _make_channel(FakeBotApi())
        received = []
        channel._on_inbound = lambda m: received.append(m) or True
        channel._handle_updates([
            {"update_id": 9, "message": {"text": "no ids"}},
            _update(10, text="ok"),
        ])
        assert [m.text for m in received] == ["ok"]
        assert channel._offset == 11

    def test_wrong_shapes_dropped(self):
        channel = _make_channel(FakeBotApi())
        received = []
        channel._on_inbound = lambda m: received.append(m) or True
        channel._handle_updates([
            "not an update",
            _update(3, text=None, photo=["small", "large"]),
            {"update_id": 4, "message": {"chat": "x", "from": {"id": 1}, "text": "bad chat"}},
            _update(5, text="ok"),
        ])
        assert [m.text for m in received] == ["ok"]
        assert channel._offset == 6

    def test_photo_size_not_object_is_protocol_error(self):
        channel = _make_channel(FakeBotApi())
        with pytest.raises(ProtocolError):
            channel._parse_update(_update(1, text=None, photo=["large"]))


# ===========================================================================
# 3b. Inbound photos
# ===========================================================================

class TestPhotoDownload:
    @pytest.mark.asyncio
    async def test_photo_saved_to_media_dir(self, tmp_path):
        api = FakeBotApi(
            batches=[[_update(1, text=None, caption="cat", photo=[{"file_id": "small"}, {"file_id": "big"}])]],
            files={"big": "photos/file_7.jpg"},
        )
        channel = _make_channel(api, media_store=MediaStore(tmp_path))
        received = []

        await channel.start(_config(), lambda m: received.append(m) or True)
        await wait_until(lambda: len(received) == 1)

        assert api.methods("getFile") == [{"file_id": "big"}]
        assert api.downloads == [f"/file/bot{TOKEN}/photos/file_7.jpg"]
        attachment = received[0].attachments[0]
        local = Path(attachment.ref)
        assert local.parent == tmp_path / "telegram"
        assert local.read_bytes() == b"tg-photo"
        assert attachment.mime_type == "image/jpeg"
        assert received[0].text == "cat"
        await channel.stop()

    @pytest.mark.asyncio
    async def test_unresolvable_photo_is_dropped_and_order_kept(self, tmp_path):
        api = FakeBotApi(batches=[[
            _update(1, text=None, caption="first", photo=[{"file_id": "expired"}]),
            _update(2, text="second"),
        ]])
        channel = _make_channel(api, media_store=MediaStore(tmp_path))
        received = []

        await channel.start(_config(), lambda m: received.append(m) or True)
        await wait_until(lambda: len(received) == 2)

        assert [(m.text, m.attachments) for m in received] == [("first", ()), ("second", ())]
        assert api.downloads == []
        await channel.stop()


# ===========================================================================
# 4. Outbound
# ===========================================================================

class TestSend:
    @pytest.mark.asyncio
    async def test_long_reply_is_split(self):
        api = FakeBotApi()
        channel = _make_channel(api)
        channel._config = _config()

        await channel.send(OutboundMessage(ChannelType.TELEGRAM, "100", "a" * (TELEGRAM_MSG_LIMIT + 10)))

        sent = api.methods("sendMessage")
        assert [len(s["text"]) for s in sent] == [TELEGRAM_MSG_LIMIT, 10]
        assert all(s["chat_id"] == "100" for s in sent)
        await channel.stop()

    @pytest.mark.asyncio
    async def test_send_failure_is_send_error(self):
        async def handler(request):
            return httpx.Response(200, json={"ok": False, "description": "Too Many Requests"})

        channel = TelegramChannel(transport=httpx.MockTransport(handler))
        channel._config = _config()
        with pytest.raises(SendError, match="Too Many Requests"):
            await channel.send(OutboundMessage(ChannelType.TELEGRAM, "100", "hi"))
        await channel.stop()
