"""
Slack channel adapter (Socket Mode).

Every envelope is acknowledged before it is processed; processing itself
only enqueues onto the router, so the ack deadline never waits on the agent.
"""

from __future__ import annotations

import json
import logging
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

SLACK_API_BASE = "https://slack.com/api"
SLACK_MSG_LIMIT = 4000

AUTH_ERROR_CODES = {
    "invalid_auth",
    "not_authed",
    "account_inactive",
    "token_revoked",
    "token_expired",
    "not_allowed_token_type",
}


class SlackChannel(BaseChannelAdapter):
    """Slack app adapter over a Socket Mode WebSocket."""

    channel_type = ChannelType.SLACK
    text_limit = SLACK_MSG_LIMIT

    def __init__(
        self,
        state_store: Optional[JsonStateStore] = None,
        backoff: Optional[Backoff] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        ws_connect: Callable[..., Any] = websockets.connect,
        api_base: str = SLACK_API_BASE,
        media_store: Optional[MediaStore] = None,
    ):
        super().__init__(state_store=state_store, backoff=backoff, media_store=media_store)
        self._transport = transport
        self._ws_connect = ws_connect
        self._api_base = api_base.rstrip("/")
        self._client: Optional[httpx.AsyncClient] = None

    def _validate_config(self, config: ChannelConfig) -> None:
        self._require(config, "app_token", "bot_token")
        if not config.credential("app_token").startswith("xapp-"):
            raise AuthError("app_token must be an app-level token (xapp-...)", self.channel_type)

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._api_base,
                timeout=httpx.Timeout(30.0, connect=10.0),
                transport=self._transport,
            )
        return self._client

    async def _close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _api(self, method: str, token: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        resp = await self._ensure_client().post(
            f"/{method}",
            json=payload or {},
            headers={"Authorization": f"Bearer {token}"},
        )
        try:
            data = resp.json()
        except ValueError:
            raise ConnectError(f"{method}: non-JSON response ({resp.status_code})", self.channel_type)
        if not isinstance(data, dict):
            raise ConnectError(f"{method}: unexpected response", self.channel_type)
        return data

    # ------------------------------------------------------------------
    # Socket Mode session
    # ------------------------------------------------------------------

    async def _open_socket_url(self) -> str:
        data = await self._api("apps.connections.open", self._config.credential("app_token"))
        if not data.get("ok"):
            error = str(data.get("error", "unknown_error"))
            if error in AUTH_ERROR_CODES:
                raise AuthError(f"apps.connections.open: {error}", self.channel_type)
            raise ConnectError(f"apps.connections.open: {error}", self.channel_type)
        url = data.get("url")
        if not url:
            raise ConnectError("apps.connections.open returned no url", self.channel_type)
        return str(url)

    async def _run_session(self) -> None:
        url = await self._open_socket_url()
        async with self._ws_connect(url) as ws:
            while True:
                try:
                    raw = await ws.recv()
                except ConnectionClosed as exc:
                    raise ConnectError(f"socket closed: {exc}", self.channel_type) from exc
                try:
                    envelope = json.loads(raw)
                    if not isinstance(envelope, dict):
                        raise ValueError("envelope is not an object")
                except (TypeError, ValueError) as exc:
                    self._drop_malformed(ProtocolError(f"undecodable envelope: {exc}", self.channel_type))
                    continue

                envelope_id = envelope.get("envelope_id")
                if envelope_id:
                    await ws.send(json.dumps({"envelope_id": envelope_id}))

                envelope_type = envelope.get("type")
                if envelope_type == "hello":
                    self._mark_connected()
                elif envelope_type == "disconnect":
                    logger.info("Slack requested disconnect: %s", envelope.get("reason", ""))
                    return
                elif envelope_type == "events_api":
                    message = self._parse_or_drop(self._parse_event, envelope.get("payload") or {})
                    if message is not None:
                        self._dispatch(message)

    def _parse_event(self, payload: Dict[str, Any]) -> Optional[InboundMessage]:
        if not isinstance(payload, dict):
            raise ProtocolError("events_api payload is not an object", self.channel_type)
        event = payload.get("event") or {}
        if not isinstance(event, dict):
            raise ProtocolError("event is not an object", self.channel_type)
        if event.get("type") != "message":
            return None
        if event.get("subtype") or event.get("bot_id"):
            return None
        if not event.get("channel") or not event.get("user"):
            raise ProtocolError("message event lacks channel or user", self.channel_type)

        files = event.get("files") or []
        if not isinstance(files, list) or not all(isinstance(f, dict) for f in files):
            raise ProtocolError("files is not a list of objects", self.channel_type)
        attachments = tuple(
            AttachmentRef(
                kind="image" if str(f.get("mimetype", "")).startswith("image/") else "file",
                ref=str(f.get("url_private", "")),
                mime_type=f.get("mimetype"),
                name=f.get("name"),
            )
            for f in files
            if f.get("url_private")
        )
        text = str(event.get("text") or "")
        if not text and not attachments:
            return None
        return InboundMessage(
            channel_type=self.channel_type,
            external_chat_id=str(event["channel"]),
            external_user_id=str(event["user"]),
            text=text,
            attachments=attachments,
        )

    async def _fetch_image(self, attachment: AttachmentRef) -> Optional[httpx.Response]:
        # url_private only serves the file with the bot token attached.
        return await self._ensure_client().get(
            attachment.ref,
            headers={"Authorization": f"Bearer {self._config.credential('bot_token')}"},
            follow_redirects=True,
        )

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def _send_text(self, chat_id: str, text: str) -> None:
        try:
            data = await self._api(
                "chat.postMessage",
                self._config.credential("bot_token"),
                {"channel": chat_id, "text": text},
            )
        except (ConnectError, httpx.HTTPError) as exc:
            raise SendError(f"chat.postMessage to {chat_id} failed: {exc}", self.channel_type) from exc
        if not data.get("ok"):
            raise SendError(
                f"chat.postMessage to {chat_id} rejected: {data.get('error', 'unknown_error')}",
                self.channel_type,
            )
