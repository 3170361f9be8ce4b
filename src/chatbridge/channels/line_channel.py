"""
LINE channel adapter.

Inbound events arrive on a webhook served by an embedded HTTP server; every
request must carry a valid ``X-Line-Signature``. Outbound uses the push API.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
from typing import Any, Dict, List, Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse

from ..core.channel.errors import AuthError, ConnectError, ProtocolError, SendError
from ..core.channel.models import (
    AttachmentRef,
    ChannelConfig,
    ChannelType,
    InboundMessage,
    OutboundMessage,
)
from ..core.runtime.backoff import Backoff
from ..infra.media import MediaStore
from ..infra.persistence import JsonStateStore
from .base import BaseChannelAdapter
from .http_server import EmbeddedServer
from .text import render_attachments, split_message

logger = logging.getLogger(__name__)

LINE_API_BASE = "https://api.line.me"
LINE_DATA_API_BASE = "https://api-data.line.me"
LINE_MSG_LIMIT = 5000
# The push API accepts at most five message objects per request.
LINE_MAX_MESSAGES_PER_PUSH = 5
DEFAULT_WEBHOOK_PORT = 8081

_MEDIA_KINDS = {"image": "image", "video": "video", "audio": "audio", "file": "file"}


def verify_signature(channel_secret: str, body: bytes, signature: Optional[str]) -> bool:
    """Check ``X-Line-Signature``: base64(HMAC-SHA256(channel_secret, body))."""
    if not channel_secret or not signature:
        return False
    digest = hmac.new(channel_secret.encode("utf-8"), body, hashlib.sha256).digest()
    expected = base64.b64encode(digest).decode("ascii")
    return hmac.compare_digest(expected, signature)


class LineChannel(BaseChannelAdapter):
    """LINE Messaging API adapter."""

    channel_type = ChannelType.LINE
    text_limit = LINE_MSG_LIMIT

    def __init__(
        self,
        state_store: Optional[JsonStateStore] = None,
        backoff: Optional[Backoff] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        api_base: str = LINE_API_BASE,
        data_api_base: str = LINE_DATA_API_BASE,
        media_store: Optional[MediaStore] = None,
    ):
        super().__init__(state_store=state_store, backoff=backoff, media_store=media_store)
        self._transport = transport
        self._api_base = api_base.rstrip("/")
        self._data_api_base = data_api_base.rstrip("/")
        self._client: Optional[httpx.AsyncClient] = None

    def _validate_config(self, config: ChannelConfig) -> None:
        self._require(config, "channel_access_token", "channel_secret")

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._api_base,
                timeout=httpx.Timeout(30.0, connect=10.0),
                headers={"Authorization": f"Bearer {self._config.credential('channel_access_token')}"},
                transport=self._transport,
            )
        return self._client

    async def _close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # ------------------------------------------------------------------
    # Webhook
    # ------------------------------------------------------------------

    def build_app(self) -> FastAPI:
        app = FastAPI(title="chatbridge LINE webhook", docs_url=None, redoc_url=None, openapi_url=None)

        @app.post("/webhook")
        async def webhook(request: Request) -> PlainTextResponse:
            body = await request.body()
            self.handle_webhook(body, request.headers.get("x-line-signature"))
            # Same answer whether or not the request was accepted.
            return PlainTextResponse("OK")

        return app

    def handle_webhook(self, body: bytes, signature: Optional[str]) -> int:
        """Verify and dispatch one webhook body. Returns messages accepted."""
        if not verify_signature(self._config.credential("channel_secret"), body, signature):
            logger.debug("Dropped LINE webhook with invalid signature")
            return 0
        try:
            payload = json.loads(body)
        except ValueError as exc:
            self._drop_malformed(ProtocolError(f"undecodable webhook body: {exc}", self.channel_type))
            return 0
        events = payload.get("events") if isinstance(payload, dict) else None
        if not isinstance(events, list):
            self._drop_malformed(ProtocolError("webhook body has no events list", self.channel_type))
            return 0

        accepted = 0
        for event in events:
            message = self._parse_or_drop(self._parse_event, event)
            if message is not None and self._dispatch(message):
                accepted += 1
        return accepted

    def _parse_event(self, event: Dict[str, Any]) -> Optional[InboundMessage]:
        if not isinstance(event, dict) or event.get("type") != "message":
            return None
        source = event.get("source") or {}
        if not isinstance(source, dict):
            raise ProtocolError("message event source is not an object", self.channel_type)
        user_id = source.get("userId")
        if not user_id:
            raise ProtocolError("message event without source.userId", self.channel_type)
        chat_id = source.get("groupId") or source.get("roomId") or user_id

        body = event.get("message") or {}
        if not isinstance(body, dict):
            raise ProtocolError("message event body is not an object", self.channel_type)
        kind = body.get("type")
        if kind == "text":
            text, attachments = str(body.get("text") or ""), ()
        elif kind in _MEDIA_KINDS and body.get("id"):
            text = ""
            attachments = (AttachmentRef(
                kind=_MEDIA_KINDS[kind], ref=str(body["id"]), name=body.get("fileName"),
            ),)
        else:
            return None
        return InboundMessage(
            channel_type=self.channel_type,
            external_chat_id=str(chat_id),
            external_user_id=str(user_id),
            text=text,
            attachments=attachments,
        )

    async def _fetch_image(self, attachment: AttachmentRef) -> Optional[httpx.Response]:
        # Message content is served from the data host, not the API host.
        return await self._ensure_client().get(
            f"{self._data_api_base}/v2/bot/message/{attachment.ref}/content"
        )

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    async def _run_session(self) -> None:
        resp = await self._ensure_client().get("/v2/bot/info")
        if resp.status_code in (401, 403):
            raise AuthError(f"channel access token rejected ({resp.status_code})", self.channel_type)
        if resp.status_code >= 400:
            raise ConnectError(f"bot info: HTTP {resp.status_code}", self.channel_type)

        server = EmbeddedServer(
            self.build_app(),
            host=str(self._config.option("webhook_host", "0.0.0.0")),
            port=int(self._config.option("webhook_port", DEFAULT_WEBHOOK_PORT)),
        )
        await server.serve(on_started=self._mark_connected)

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def send(self, message: OutboundMessage) -> None:
        text = render_attachments(message.text, message.attachments)
        chunks = split_message(text, self.text_limit)
        for start in range(0, len(chunks), LINE_MAX_MESSAGES_PER_PUSH):
            batch = chunks[start:start + LINE_MAX_MESSAGES_PER_PUSH]
            await self._push(str(message.external_chat_id), batch)

    async def _send_text(self, chat_id: str, text: str) -> None:
        await self._push(chat_id, [text])

    async def _push(self, chat_id: str, texts: List[str]) -> None:
        payload = {"to": chat_id, "messages": [{"type": "text", "text": t} for t in texts]}
        try:
            resp = await self._ensure_client().post("/v2/bot/message/push", json=payload)
        except httpx.HTTPError as exc:
            raise SendError(f"push to {chat_id} failed: {exc}", self.channel_type) from exc
        if resp.status_code >= 400:
            raise SendError(f"push to {chat_id} rejected (HTTP {resp.status_code})", self.channel_type)
