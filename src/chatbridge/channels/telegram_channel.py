"""
Telegram channel adapter: bridges a Telegram bot to the message router.

Uses long polling (``getUpdates``) via httpx. The update offset is persisted
so a restart does not replay already-handled updates.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from ..core.channel.errors import AuthError, ConnectError, ProtocolError, SendError
from ..core.channel.models import AttachmentRef, ChannelConfig, ChannelType, InboundMessage
from ..core.runtime.backoff import Backoff
from ..infra.media import MediaStore
from ..infra.persistence import JsonStateStore
from .base import BaseChannelAdapter

logger = logging.getLogger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org"
TELEGRAM_MSG_LIMIT = 4096
POLL_TIMEOUT = 30
OFFSET_KEY = "telegram.offset"


class TelegramChannel(BaseChannelAdapter):
    """Telegram Bot API adapter (long polling)."""

    channel_type = ChannelType.TELEGRAM
    text_limit = TELEGRAM_MSG_LIMIT

    def __init__(
        self,
        state_store: Optional[JsonStateStore] = None,
        backoff: Optional[Backoff] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        api_base: str = TELEGRAM_API_BASE,
        media_store: Optional[MediaStore] = None,
    ):
        super().__init__(state_store=state_store, backoff=backoff, media_store=media_store)
        self._transport = transport
        self._api_base = api_base.rstrip("/")
        self._client: Optional[httpx.AsyncClient] = None
        self._offset = 0
        self._bot_username = ""

    def _validate_config(self, config: ChannelConfig) -> None:
        self._require(config, "bot_token")
        token = config.credential("bot_token")
        if ":" not in token:
            raise AuthError("malformed bot token", self.channel_type)

    @property
    def _base_url(self) -> str:
        return f"{self._api_base}/bot{self._config.credential('bot_token')}"

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(60.0, connect=10.0),
                transport=self._transport,
            )
        return self._client

    async def _close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # ------------------------------------------------------------------
    # Bot API
    # ------------------------------------------------------------------

    async def _call(
        self,
        method: str,
        payload: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        client = self._ensure_client()
        kwargs: Dict[str, Any] = {"json": payload or {}}
        if timeout is not None:
            kwargs["timeout"] = timeout
        resp = await client.post(f"{self._base_url}/{method}", **kwargs)
        if resp.status_code in (401, 404):
            raise AuthError(f"{method}: bot token rejected ({resp.status_code})", self.channel_type)
        try:
            data = resp.json()
        except ValueError:
            raise ConnectError(f"{method}: non-JSON response ({resp.status_code})", self.channel_type)
        if not isinstance(data, dict):
            raise ConnectError(f"{method}: unexpected response", self.channel_type)
        if not data.get("ok"):
            raise ConnectError(
                f"{method}: {data.get('description', 'unknown error')}", self.channel_type
            )
        return data.get("result")

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    async def _run_session(self) -> None:
        self._offset = int(self._state_store.get(OFFSET_KEY, 0) or 0)
        me = await self._call("getMe") or {}
        self._bot_username = str(me.get("username", ""))
        logger.info("Telegram bot @%s connected", self._bot_username or "?")
        self._mark_connected()

        while True:
            updates = await self._call(
                "getUpdates",
                {"offset": self._offset, "timeout": POLL_TIMEOUT, "allowed_updates": ["message"]},
                timeout=POLL_TIMEOUT + 10,
            )
            self._handle_updates(updates or [])

    def _handle_updates(self, updates: List[Dict[str, Any]]) -> None:
        for update in updates:
            if not isinstance(update, dict):
                self._drop_malformed(ProtocolError("update is not an object", self.channel_type))
                continue
            update_id = update.get("update_id")
            if isinstance(update_id, int) and update_id >= self._offset:
                self._offset = update_id + 1
            message = self._parse_or_drop(self._parse_update, update)
            if message is not None:
                self._dispatch(message)
        if updates:
            self._state_store.set(OFFSET_KEY, self._offset)

    def _parse_update(self, update: Dict[str, Any]) -> Optional[InboundMessage]:
        msg = update.get("message")
        if not isinstance(msg, dict):
            return None
        chat = msg.get("chat")
        sender = msg.get("from")
        if not isinstance(chat, dict) or not isinstance(sender, dict) or "id" not in chat or "id" not in sender:
            raise ProtocolError(f"update {update.get('update_id')} lacks chat or sender id", self.channel_type)

        text = str(msg.get("text") or msg.get("caption") or "")
        attachments = self._extract_attachments(msg)
        if not text and not attachments:
            return None

        name = " ".join(
            part for part in (sender.get("first_name"), sender.get("last_name")) if part
        ) or str(sender.get("username") or "")
        return InboundMessage(
            channel_type=self.channel_type,
            external_chat_id=str(chat["id"]),
            external_user_id=str(sender["id"]),
            external_user_display_name=name,
            text=text,
            attachments=attachments,
        )

    @staticmethod
    def _extract_attachments(msg: Dict[str, Any]) -> tuple:
        refs: List[AttachmentRef] = []
        photos = msg.get("photo")
        if isinstance(photos, list) and photos:
            # Telegram lists photo sizes ascending; keep the largest.
            largest = photos[-1]
            if not isinstance(largest, dict):
                raise ProtocolError("photo size is not an object", ChannelType.TELEGRAM)
            refs.append(AttachmentRef(kind="image", ref=str(largest.get("file_id", ""))))
        doc = msg.get("document")
        if isinstance(doc, dict):
            refs.append(AttachmentRef(
                kind="file",
                ref=str(doc.get("file_id", "")),
                mime_type=doc.get("mime_type"),
                name=doc.get("file_name"),
            ))
        for key, kind in (("voice", "audio"), ("audio", "audio"), ("video", "video")):
            media = msg.get(key)
            if isinstance(media, dict):
                refs.append(AttachmentRef(
                    kind=kind, ref=str(media.get("file_id", "")), mime_type=media.get("mime_type"),
                ))
        return tuple(ref for ref in refs if ref.ref)

    async def _fetch_image(self, attachment: AttachmentRef) -> Optional[httpx.Response]:
        """getFile, then download from the file endpoint (needs the bot token)."""
        info = await self._call("getFile", {"file_id": attachment.ref})
        remote_path = info.get("file_path") if isinstance(info, dict) else None
        if not remote_path:
            raise ProtocolError(f"getFile returned no file_path for {attachment.ref}", self.channel_type)
        url = f"{self._api_base}/file/bot{self._config.credential('bot_token')}/{remote_path}"
        return await self._ensure_client().get(url)

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def _send_text(self, chat_id: str, text: str) -> None:
        try:
            await self._call("sendMessage", {"chat_id": chat_id, "text": text})
        except (AuthError, ConnectError, httpx.HTTPError) as exc:
            raise SendError(f"sendMessage to {chat_id} failed: {exc}", self.channel_type) from exc

    async def send_typing(self, external_chat_id: str) -> None:
        try:
            await self._call("sendChatAction", {"chat_id": external_chat_id, "action": "typing"})
        except (AuthError, ConnectError, httpx.HTTPError) as exc:
            logger.debug("sendChatAction failed for %s: %s", external_chat_id, exc)
