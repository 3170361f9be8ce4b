"""
Discord channel adapter.

Receives over the gateway WebSocket (heartbeat, identify/resume) and sends
through the REST API.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
from typing import Any, Callable, Dict, Optional

import httpx
import websockets
from websockets.exceptions import ConnectionClosed

from ..core.channel.errors import AuthError, ConnectError, ProtocolError, SendError
from ..core.channel.models import AttachmentRef, ChannelConfig, ChannelType, InboundMessage
from ..core.runtime.backoff import Backoff
from ..infra.media import MediaStore
from ..infra.persistence import JsonStateStore
from .base import BaseChannelAdapter

logger = logging.getLogger(__name__)

GATEWAY_URL = "wss://gateway.discord.gg/?v=10&encoding=json"
DISCORD_API_BASE = "https://discord.com/api/v10"
DISCORD_MSG_LIMIT = 2000

OP_DISPATCH = 0
OP_HEARTBEAT = 1
OP_IDENTIFY = 2
OP_RESUME = 6
OP_RECONNECT = 7
OP_INVALID_SESSION = 9
OP_HELLO = 10
OP_HEARTBEAT_ACK = 11

# GUILD_MESSAGES | DIRECT_MESSAGES | MESSAGE_CONTENT
INTENTS = (1 << 9) | (1 << 12) | (1 << 15)

# Resume attempts before falling back to a fresh identify.
MAX_RESUME_ATTEMPTS = 2
HELLO_TIMEOUT = 30.0

# Close codes after which reconnecting cannot succeed.
FATAL_CLOSE_CODES = {4004, 4010, 4011, 4012, 4013, 4014}
# Close codes that invalidate the session but allow a fresh identify.
SESSION_RESET_CLOSE_CODES = {4007, 4009}


def _close_code(exc: ConnectionClosed) -> Optional[int]:
    rcvd = getattr(exc, "rcvd", None)
    return rcvd.code if rcvd is not None else None


class DiscordChannel(BaseChannelAdapter):
    """Discord bot adapter over the gateway WebSocket."""

    channel_type = ChannelType.DISCORD
    text_limit = DISCORD_MSG_LIMIT

    def __init__(
        self,
        state_store: Optional[JsonStateStore] = None,
        backoff: Optional[Backoff] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        ws_connect: Callable[..., Any] = websockets.connect,
        api_base: str = DISCORD_API_BASE,
        media_store: Optional[MediaStore] = None,
    ):
        super().__init__(state_store=state_store, backoff=backoff, media_store=media_store)
        self._transport = transport
        self._ws_connect = ws_connect
        self._api_base = api_base.rstrip("/")
        self._client: Optional[httpx.AsyncClient] = None
        self._ws: Any = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._heartbeat_acked = True
        self._seq: Optional[int] = None
        self._session_id: Optional[str] = None
        self._resume_url: Optional[str] = None
        self._resume_attempts = 0
        self._bot_user_id: Optional[str] = None

    def _validate_config(self, config: ChannelConfig) -> None:
        self._require(config, "bot_token")

    @property
    def _token(self) -> str:
        return self._config.credential("bot_token")

    # ------------------------------------------------------------------
    # Gateway session
    # ------------------------------------------------------------------

    def _can_resume(self) -> bool:
        if self._session_id is None or self._seq is None:
            return False
        if self._resume_attempts >= MAX_RESUME_ATTEMPTS:
            logger.info("Discord resume failed %d times; identifying afresh", self._resume_attempts)
            self._reset_session()
            return False
        return True

    def _reset_session(self) -> None:
        self._session_id = None
        self._resume_url = None
        self._seq = None
        self._resume_attempts = 0

    async def _run_session(self) -> None:
        resuming = self._can_resume()
        url = GATEWAY_URL
        if resuming and self._resume_url:
            url = f"{self._resume_url.rstrip('/')}/?v=10&encoding=json"

        async with self._ws_connect(url) as ws:
            self._ws = ws
            hello = await asyncio.wait_for(self._recv(ws), timeout=HELLO_TIMEOUT)
            if hello.get("op") != OP_HELLO:
                raise ConnectError(f"expected HELLO, got op {hello.get('op')}", self.channel_type)
            hello_data = hello.get("d") if isinstance(hello.get("d"), dict) else {}
            interval = float(hello_data.get("heartbeat_interval", 41250)) / 1000.0
            self._heartbeat_acked = True
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(ws, interval))

            if resuming:
                self._resume_attempts += 1
                await self._send_op(ws, OP_RESUME, {
                    "token": self._token,
                    "session_id": self._session_id,
                    "seq": self._seq,
                })
            else:
                await self._send_op(ws, OP_IDENTIFY, {
                    "token": self._token,
                    "intents": INTENTS,
                    "properties": {"os": "linux", "browser": "chatbridge", "device": "chatbridge"},
                })

            try:
                while True:
                    payload = await self._recv(ws)
                    await self._handle_payload(ws, payload)
            finally:
                await self._close_session()

    async def _recv(self, ws: Any) -> Dict[str, Any]:
        while True:
            try:
                raw = await ws.recv()
            except ConnectionClosed as exc:
                self._raise_for_close(exc)
            try:
                payload = json.loads(raw)
            except (TypeError, ValueError) as exc:
                self._drop_malformed(ProtocolError(f"undecodable gateway frame: {exc}", self.channel_type))
                continue
            if isinstance(payload, dict):
                return payload
            self._drop_malformed(ProtocolError("gateway frame is not an object", self.channel_type))

    def _raise_for_close(self, exc: ConnectionClosed) -> None:
        code = _close_code(exc)
        if code in FATAL_CLOSE_CODES:
            raise AuthError(f"gateway closed with code {code}", self.channel_type) from exc
        if code in SESSION_RESET_CLOSE_CODES:
            self._reset_session()
        raise ConnectError(f"gateway closed (code {code})", self.channel_type) from exc

    async def _send_op(self, ws: Any, op: int, data: Any) -> None:
        await ws.send(json.dumps({"op": op, "d": data}))

    async def _heartbeat_loop(self, ws: Any, interval: float) -> None:
        await asyncio.sleep(interval * random.random())
        while True:
            if not self._heartbeat_acked:
                logger.warning("Discord heartbeat not acknowledged; reconnecting")
                await ws.close(code=4000)
                return
            self._heartbeat_acked = False
            await self._send_op(ws, OP_HEARTBEAT, self._seq)
            await asyncio.sleep(interval)

    async def _handle_payload(self, ws: Any, payload: Dict[str, Any]) -> None:
        op = payload.get("op")
        if payload.get("s") is not None:
            self._seq = payload["s"]

        if op == OP_DISPATCH:
            data = payload.get("d") or {}
            if not isinstance(data, dict):
                self._drop_malformed(ProtocolError(f"{payload.get('t')} data is not an object", self.channel_type))
                return
            self._handle_dispatch(payload.get("t"), data)
        elif op == OP_HEARTBEAT:
            await self._send_op(ws, OP_HEARTBEAT, self._seq)
        elif op == OP_HEARTBEAT_ACK:
            self._heartbeat_acked = True
        elif op == OP_RECONNECT:
            raise ConnectError("gateway requested reconnect", self.channel_type)
        elif op == OP_INVALID_SESSION:
            if not payload.get("d"):
                self._reset_session()
            raise ConnectError("gateway invalidated the session", self.channel_type)

    def _handle_dispatch(self, event: Optional[str], data: Dict[str, Any]) -> None:
        if event == "READY":
            self._session_id = data.get("session_id")
            self._resume_url = data.get("resume_gateway_url")
            user = data.get("user") if isinstance(data.get("user"), dict) else {}
            self._bot_user_id = str(user.get("id", "")) or None
            self._resume_attempts = 0
            self._mark_connected()
        elif event == "RESUMED":
            self._resume_attempts = 0
            self._mark_connected()
        elif event == "MESSAGE_CREATE":
            message = self._parse_or_drop(self._parse_message, data)
            if message is not None:
                self._dispatch(message)

    def _parse_message(self, data: Dict[str, Any]) -> Optional[InboundMessage]:
        author = data.get("author") or {}
        if not isinstance(author, dict):
            raise ProtocolError("MESSAGE_CREATE author is not an object", self.channel_type)
        if author.get("bot") or (self._bot_user_id and str(author.get("id")) == self._bot_user_id):
            return None
        if "channel_id" not in data or "id" not in author:
            raise ProtocolError("MESSAGE_CREATE lacks channel or author id", self.channel_type)

        raw_attachments = data.get("attachments") or []
        if not isinstance(raw_attachments, list) or not all(isinstance(a, dict) for a in raw_attachments):
            raise ProtocolError("attachments is not a list of objects", self.channel_type)
        attachments = tuple(
            AttachmentRef(
                kind=_attachment_kind(att.get("content_type")),
                ref=str(att.get("url", "")),
                mime_type=att.get("content_type"),
                name=att.get("filename"),
            )
            for att in raw_attachments
            if att.get("url")
        )
        text = str(data.get("content") or "")
        if not text and not attachments:
            return None
        return InboundMessage(
            channel_type=self.channel_type,
            external_chat_id=str(data["channel_id"]),
            external_user_id=str(author["id"]),
            external_user_display_name=str(author.get("global_name") or author.get("username") or ""),
            text=text,
            attachments=attachments,
        )

    async def _fetch_image(self, attachment: AttachmentRef) -> Optional[httpx.Response]:
        return await self._ensure_client().get(attachment.ref, follow_redirects=True)

    async def _close_session(self) -> None:
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
            except Exception as exc:
                logger.debug("Discord heartbeat ended with %s", exc)
            self._heartbeat_task = None
        self._ws = None

    async def _close(self) -> None:
        await self._close_session()
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # ------------------------------------------------------------------
    # REST
    # ------------------------------------------------------------------

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._api_base,
                timeout=httpx.Timeout(30.0, connect=10.0),
                transport=self._transport,
            )
        return self._client

    async def _post(self, path: str, payload: Optional[Dict[str, Any]] = None) -> httpx.Response:
        return await self._ensure_client().post(
            path,
            json=payload,
            headers={"Authorization": f"Bot {self._token}"},
        )

    async def _send_text(self, chat_id: str, text: str) -> None:
        try:
            resp = await self._post(f"/channels/{chat_id}/messages", {"content": text})
        except httpx.HTTPError as exc:
            raise SendError(f"send to {chat_id} failed: {exc}", self.channel_type) from exc
        if resp.status_code >= 400:
            raise SendError(
                f"send to {chat_id} rejected ({resp.status_code}): {resp.text[:200]}",
                self.channel_type,
            )

    async def send_typing(self, external_chat_id: str) -> None:
        try:
            await self._post(f"/channels/{external_chat_id}/typing")
        except httpx.HTTPError as exc:
            logger.debug("Discord typing failed for %s: %s", external_chat_id, exc)


def _attachment_kind(content_type: Optional[str]) -> str:
    prefix = (content_type or "").split("/", 1)[0]
    return {"image": "image", "audio": "audio", "video": "video"}.get(prefix, "file")
