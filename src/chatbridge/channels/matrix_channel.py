"""
Matrix channel adapter.

Long-polls the client-server ``/sync`` endpoint. The ``next_batch`` token is
persisted after each batch so restarts continue where they left off instead
of replaying room history.
"""

from __future__ import annotations

import itertools
import json
import logging
import time
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx

from ..core.channel.errors import AuthError, ConnectError, ProtocolError, SendError
from ..core.channel.models import AttachmentRef, ChannelConfig, ChannelType, InboundMessage
from ..core.runtime.backoff import Backoff
from ..infra.media import MediaStore
from ..infra.persistence import JsonStateStore
from .base import BaseChannelAdapter

logger = logging.getLogger(__name__)

MATRIX_MSG_LIMIT = 32000
SYNC_TIMEOUT_MS = 30000
SINCE_KEY = "matrix.since"
SYNC_FILTER = json.dumps({"room": {"timeline": {"types": ["m.room.message"]}}})
CLIENT_PREFIX = "/_matrix/client/v3"
MEDIA_PREFIX = "/_matrix/client/v1/media"

_MEDIA_KINDS = {"m.image": "image", "m.file": "file", "m.audio": "audio", "m.video": "video"}


class MatrixChannel(BaseChannelAdapter):
    """Matrix client adapter (sync long-poll)."""

    channel_type = ChannelType.MATRIX
    text_limit = MATRIX_MSG_LIMIT

    def __init__(
        self,
        state_store: Optional[JsonStateStore] = None,
        backoff: Optional[Backoff] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        media_store: Optional[MediaStore] = None,
    ):
        super().__init__(state_store=state_store, backoff=backoff, media_store=media_store)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._user_id: Optional[str] = None
        self._txn_counter = itertools.count(1)

    def _validate_config(self, config: ChannelConfig) -> None:
        self._require(config, "access_token")
        homeserver = str(config.option("homeserver_url", "") or config.credential("homeserver_url"))
        if not homeserver.startswith(("http://", "https://")):
            raise AuthError("homeserver_url must be an http(s) URL", self.channel_type)

    @property
    def _homeserver(self) -> str:
        url = self._config.option("homeserver_url", "") or self._config.credential("homeserver_url")
        return str(url).rstrip("/")

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._homeserver + CLIENT_PREFIX,
                timeout=httpx.Timeout(SYNC_TIMEOUT_MS / 1000.0 + 30.0, connect=10.0),
                headers={"Authorization": f"Bearer {self._config.credential('access_token')}"},
                transport=self._transport,
            )
        return self._client

    async def _close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        resp = await self._ensure_client().get(path, params=params)
        try:
            data = resp.json()
        except ValueError:
            data = {}
        if resp.status_code in (401, 403):
            if isinstance(data, dict) and data.get("soft_logout"):
                raise ConnectError(f"{path}: session soft-logged out", self.channel_type)
            errcode = data.get("errcode", resp.status_code) if isinstance(data, dict) else resp.status_code
            raise AuthError(f"{path}: access token rejected ({errcode})", self.channel_type)
        if resp.status_code >= 400 or not isinstance(data, dict):
            raise ConnectError(f"{path}: HTTP {resp.status_code}", self.channel_type)
        return data

    # ------------------------------------------------------------------
    # Sync loop
    # ------------------------------------------------------------------

    async def _sync(self, since: Optional[str], timeout_ms: int) -> Dict[str, Any]:
        params: Dict[str, Any] = {"timeout": timeout_ms, "filter": SYNC_FILTER}
        if since:
            params["since"] = since
        return await self._get("/sync", params=params)

    async def _run_session(self) -> None:
        whoami = await self._get("/account/whoami")
        self._user_id = whoami.get("user_id")

        since = self._state_store.get(SINCE_KEY)
        if not since:
            # First run: skip existing history.
            initial = await self._sync(None, timeout_ms=0)
            since = initial.get("next_batch")
            self._state_store.set(SINCE_KEY, since)
        self._mark_connected()

        while True:
            data = await self._sync(since, SYNC_TIMEOUT_MS)
            self._handle_sync(data)
            since = data.get("next_batch") or since
            self._state_store.set(SINCE_KEY, since)

    def _handle_sync(self, data: Dict[str, Any]) -> None:
        rooms = data.get("rooms") or {}
        joined = rooms.get("join") if isinstance(rooms, dict) else None
        if not isinstance(joined, dict):
            return
        for room_id, room in joined.items():
            timeline = room.get("timeline") if isinstance(room, dict) else None
            events = timeline.get("events") if isinstance(timeline, dict) else None
            if not isinstance(events, list):
                continue
            for event in events:
                message = self._parse_or_drop(self._parse_event, room_id, event)
                if message is not None:
                    self._dispatch(message)

    def _parse_event(self, room_id: str, event: Dict[str, Any]) -> Optional[InboundMessage]:
        if not isinstance(event, dict):
            raise ProtocolError(f"timeline event in {room_id} is not an object", self.channel_type)
        if event.get("type") != "m.room.message":
            return None
        sender = event.get("sender")
        if not sender or not isinstance(sender, str):
            raise ProtocolError(f"event {event.get('event_id')} in {room_id} has no sender", self.channel_type)
        if sender == self._user_id:
            return None

        content = event.get("content") or {}
        if not isinstance(content, dict):
            raise ProtocolError(f"event {event.get('event_id')} content is not an object", self.channel_type)
        msgtype = content.get("msgtype")
        body = str(content.get("body") or "")
        if msgtype == "m.text":
            return InboundMessage(
                channel_type=self.channel_type,
                external_chat_id=room_id,
                external_user_id=sender,
                external_user_display_name=sender,
                text=body,
            )
        if msgtype in _MEDIA_KINDS and content.get("url"):
            info = content.get("info") or {}
            if not isinstance(info, dict):
                raise ProtocolError(f"event {event.get('event_id')} info is not an object", self.channel_type)
            attachment = AttachmentRef(
                kind=_MEDIA_KINDS[msgtype],
                ref=str(content["url"]),
                mime_type=info.get("mimetype"),
                name=body or None,
            )
            return InboundMessage(
                channel_type=self.channel_type,
                external_chat_id=room_id,
                external_user_id=sender,
                external_user_display_name=sender,
                text="",
                attachments=(attachment,),
            )
        return None

    async def _fetch_image(self, attachment: AttachmentRef) -> Optional[httpx.Response]:
        """Resolve an ``mxc://server/media_id`` URI through authenticated media."""
        if not attachment.ref.startswith("mxc://"):
            return None
        server, _, media_id = attachment.ref[len("mxc://"):].partition("/")
        if not server or not media_id:
            raise ProtocolError(f"malformed content URI {attachment.ref}", self.channel_type)
        url = (
            f"{self._homeserver}{MEDIA_PREFIX}/download/"
            f"{quote(server, safe='')}/{quote(media_id, safe='')}"
        )
        return await self._ensure_client().get(url, follow_redirects=True)

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def _next_txn_id(self) -> str:
        return f"cb{int(time.time() * 1000)}_{next(self._txn_counter)}"

    async def _send_text(self, chat_id: str, text: str) -> None:
        path = f"/rooms/{quote(chat_id, safe='')}/send/m.room.message/{self._next_txn_id()}"
        try:
            resp = await self._ensure_client().put(path, json={"msgtype": "m.text", "body": text})
        except httpx.HTTPError as exc:
            raise SendError(f"send to {chat_id} failed: {exc}", self.channel_type) from exc
        if resp.status_code >= 400:
            raise SendError(f"send to {chat_id} rejected (HTTP {resp.status_code})", self.channel_type)

    async def send_typing(self, external_chat_id: str) -> None:
        if not self._user_id:
            return
        path = (
            f"/rooms/{quote(external_chat_id, safe='')}/typing/{quote(self._user_id, safe='')}"
        )
        try:
            await self._ensure_client().put(path, json={"typing": True, "timeout": 30000})
        except httpx.HTTPError as exc:
            logger.debug("Matrix typing failed for %s: %s", external_chat_id, exc)
