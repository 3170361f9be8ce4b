"""Shared lifecycle for channel adapters."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Any, Callable, List, Optional, Set

import httpx
from websockets.exceptions import WebSocketException

from ..core.channel.errors import AuthError, BridgeError, ConnectError, ProtocolError
from ..core.channel.models import (
    AttachmentRef,
    ChannelConfig,
    ChannelType,
    ConnectionState,
    InboundMessage,
    OutboundMessage,
)
from ..core.channel.protocol import InboundHandler, StateListener
from ..core.runtime.backoff import Backoff
from ..infra.media import MediaStore
from ..infra.persistence import JsonStateStore
from .text import render_attachments, split_message

logger = logging.getLogger(__name__)

STOP_TIMEOUT_SECONDS = 5.0

# Transport failures that are handled by reconnecting.
RETRIABLE_ERRORS = (
    ConnectError,
    httpx.TransportError,
    WebSocketException,
    OSError,
    asyncio.TimeoutError,
)

# What a parser trips over when a payload has the wrong shape.
MALFORMED_PAYLOAD_ERRORS = (AttributeError, KeyError, IndexError, TypeError, ValueError)


class BaseChannelAdapter:
    """Connection state machine shared by every adapter.

    Subclasses implement one connected session in ``_run_session``; the base
    class restarts it with capped exponential backoff on connection errors,
    parks the channel in ``ERROR`` on ``AuthError``, and tears everything
    down on ``stop()``.
    """

    channel_type: ChannelType
    text_limit: int = 4000

    def __init__(
        self,
        state_store: Optional[JsonStateStore] = None,
        backoff: Optional[Backoff] = None,
        media_store: Optional[MediaStore] = None,
    ):
        self._state = ConnectionState.STOPPED
        self._listeners: List[StateListener] = []
        self._config = ChannelConfig()
        self._on_inbound: Optional[InboundHandler] = None
        self._task: Optional[asyncio.Task] = None
        self._state_store = state_store or JsonStateStore()
        self._backoff = backoff or Backoff()
        self._media_store = media_store
        self._last_dispatch: Optional[asyncio.Task] = None
        self._dispatch_tasks: Set[asyncio.Task] = set()

    # -- observers ----------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def task(self) -> Optional[asyncio.Task]:
        return self._task

    def add_state_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def _set_state(self, state: ConnectionState, error: Optional[str] = None) -> None:
        if state is self._state and error is None:
            return
        previous = self._state
        self._state = state
        logger.info(
            "[%s] %s -> %s%s",
            self.channel_type.value, previous.value, state.value,
            f" ({error})" if error else "",
        )
        for listener in list(self._listeners):
            try:
                listener(self.channel_type, state, error)
            except Exception as exc:
                logger.warning("[%s] state listener failed: %s", self.channel_type.value, exc)

    def _mark_connected(self) -> None:
        self._backoff.reset()
        self._set_state(ConnectionState.CONNECTED)

    # -- lifecycle ----------------------------------------------------------

    async def start(self, config: ChannelConfig, on_inbound: InboundHandler) -> None:
        if self._task is not None and not self._task.done():
            return
        try:
            self._validate_config(config)
        except AuthError as exc:
            self._set_state(ConnectionState.ERROR, str(exc))
            raise
        self._config = config
        self._on_inbound = on_inbound
        self._backoff.reset()
        self._set_state(ConnectionState.CONNECTING)
        self._task = asyncio.create_task(
            self._supervise(), name=f"channel-{self.channel_type.value}"
        )

    async def stop(self) -> None:
        task, self._task = self._task, None
        stuck = False
        for pending in list(self._dispatch_tasks):
            pending.cancel()
        if task is not None and not task.done():
            task.cancel()
            done, _ = await asyncio.wait({task}, timeout=STOP_TIMEOUT_SECONDS)
            stuck = not done
        try:
            await self._close()
        except Exception as exc:
            logger.warning("[%s] close error: %s", self.channel_type.value, exc)
        if stuck:
            logger.error(
                "[%s] transport task did not stop within %gs",
                self.channel_type.value, STOP_TIMEOUT_SECONDS,
            )
            self._set_state(
                ConnectionState.ERROR,
                f"transport did not stop within {STOP_TIMEOUT_SECONDS:g}s",
            )
            return
        self._set_state(ConnectionState.STOPPED)

    async def _supervise(self) -> None:
        """Run sessions until cancelled, reconnecting with backoff."""
        while True:
            try:
                await self._run_session()
                raise ConnectError("connection closed by remote", self.channel_type)
            except asyncio.CancelledError:
                raise
            except AuthError as exc:
                self._set_state(ConnectionState.ERROR, str(exc))
                raise
            except RETRIABLE_ERRORS as exc:
                delay = self._backoff.next_delay()
                logger.warning(
                    "[%s] connection lost: %s; retrying in %.1fs",
                    self.channel_type.value, exc or type(exc).__name__, delay,
                )
                self._set_state(ConnectionState.RECONNECTING, str(exc) or type(exc).__name__)
                await self._close_session()
                await asyncio.sleep(delay)
                self._set_state(ConnectionState.CONNECTING)
            except Exception as exc:
                self._set_state(ConnectionState.ERROR, f"crashed: {exc}")
                raise

    # -- inbound ------------------------------------------------------------

    def _emit(self, message: InboundMessage) -> bool:
        if self._on_inbound is None:
            return False
        return bool(self._on_inbound(message))

    def _drop_malformed(self, exc: ProtocolError) -> None:
        logger.warning("[%s] dropped malformed event: %s", self.channel_type.value, exc)

    def _parse_or_drop(self, parse: Callable[..., Optional[InboundMessage]], *args: Any) -> Optional[InboundMessage]:
        """Run a payload parser, dropping the event if it is malformed.

        Payloads are sender-controlled, so a wrong shape anywhere in them is
        treated like any other ``ProtocolError``.
        """
        try:
            return parse(*args)
        except ProtocolError as exc:
            self._drop_malformed(exc)
        except MALFORMED_PAYLOAD_ERRORS as exc:
            self._drop_malformed(ProtocolError(f"{type(exc).__name__}: {exc}", self.channel_type))
        return None

    def _dispatch(self, message: InboundMessage) -> bool:
        """Hand *message* to the router, fetching its images first if needed.

        Arrival order is kept: while a fetch is pending, later messages
        queue behind it instead of overtaking it.
        """
        previous = self._last_dispatch
        idle = previous is None or previous.done()
        if idle and not self._wants_download(message):
            return self._emit(message)
        task = asyncio.create_task(
            self._dispatch_after(previous, message),
            name=f"dispatch-{self.channel_type.value}",
        )
        self._last_dispatch = task
        self._dispatch_tasks.add(task)
        task.add_done_callback(self._dispatch_tasks.discard)
        return True

    def _wants_download(self, message: InboundMessage) -> bool:
        return self._media_store is not None and any(a.kind == "image" for a in message.attachments)

    async def _dispatch_after(self, previous: Optional[asyncio.Task], message: InboundMessage) -> None:
        if previous is not None:
            await asyncio.wait({previous})
        try:
            message = await self._localize_images(message)
            self._emit(message)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("[%s] failed to dispatch inbound message", self.channel_type.value)

    async def _localize_images(self, message: InboundMessage) -> InboundMessage:
        """Replace image refs with local file paths; drop images that fail."""
        if not self._wants_download(message):
            return message
        attachments: List[AttachmentRef] = []
        for attachment in message.attachments:
            if attachment.kind != "image":
                attachments.append(attachment)
                continue
            try:
                resp = await self._fetch_image(attachment)
            except (httpx.HTTPError, BridgeError) as exc:
                logger.warning("[%s] image download failed: %s", self.channel_type.value, exc)
                continue
            if resp is None:
                attachments.append(attachment)
                continue
            if resp.status_code >= 400:
                logger.warning(
                    "[%s] image download failed: HTTP %d", self.channel_type.value, resp.status_code,
                )
                continue
            content_type = resp.headers.get("content-type") or attachment.mime_type
            try:
                path = self._media_store.save_image(self.channel_type, resp.content, content_type)
            except OSError as exc:
                logger.warning("[%s] could not store image: %s", self.channel_type.value, exc)
                continue
            attachments.append(replace(
                attachment, ref=str(path), mime_type=attachment.mime_type or content_type,
            ))
        return replace(message, attachments=tuple(attachments))

    # -- outbound -----------------------------------------------------------

    async def send(self, message: OutboundMessage) -> None:
        text = render_attachments(message.text, message.attachments)
        for chunk in split_message(text, self.text_limit):
            await self._send_text(str(message.external_chat_id), chunk)

    async def send_typing(self, external_chat_id: str) -> None:
        return None

    # -- subclass hooks -----------------------------------------------------

    def _validate_config(self, config: ChannelConfig) -> None:
        """Raise AuthError when required credentials are missing."""

    async def _run_session(self) -> None:
        raise NotImplementedError

    async def _send_text(self, chat_id: str, text: str) -> None:
        raise NotImplementedError

    async def _fetch_image(self, attachment: AttachmentRef) -> Optional[httpx.Response]:
        """Download an inbound image. None keeps the platform ref as is."""
        return None

    async def _close_session(self) -> None:
        """Release per-session resources (sockets) before a reconnect."""

    async def _close(self) -> None:
        """Release every resource on stop."""
        await self._close_session()

    def _require(self, config: ChannelConfig, *keys: str) -> None:
        missing = [key for key in keys if not config.credential(key)]
        if missing:
            raise AuthError(
                f"missing credential(s): {', '.join(missing)}", self.channel_type
            )
