"""Shared fakes for bridge unit tests."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Callable, List, Optional

from src.chatbridge.core.channel.models import (
    ChannelConfig,
    ChannelType,
    ConnectionState,
    InboundMessage,
)


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Yield to the loop until *predicate* holds or fail after *timeout*."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)


def make_inbound(
    text: str = "hello",
    channel_type: ChannelType = ChannelType.TELEGRAM,
    chat_id: str = "100",
    user_id: str = "12345",
) -> InboundMessage:
    return InboundMessage(
        channel_type=channel_type,
        external_chat_id=chat_id,
        external_user_id=user_id,
        external_user_display_name="Tester",
        text=text,
    )


# ---------------------------------------------------------------------------
# WebSocket fakes
# ---------------------------------------------------------------------------

class FakeWebSocket:
    """Scripted stand-in for a websockets client connection.

    Frames queued with ``feed`` are returned by ``recv``; an exception
    instance is raised instead. When the script runs dry ``recv`` blocks.
    """

    def __init__(self, frames: Optional[List[Any]] = None):
        self._incoming: asyncio.Queue = asyncio.Queue()
        self.sent: List[Any] = []
        self.closed_with: Optional[int] = None
        for frame in frames or []:
            self.feed(frame)

    def feed(self, frame: Any) -> None:
        if isinstance(frame, dict):
            frame = json.dumps(frame)
        self._incoming.put_nowait(frame)

    async def recv(self) -> Any:
        item = await self._incoming.get()
        if isinstance(item, BaseException):
            raise item
        return item

    async def send(self, data: str) -> None:
        self.sent.append(json.loads(data))

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed_with = code

    async def __aenter__(self) -> "FakeWebSocket":
        return self

    async def __aexit__(self, *exc_info) -> None:
        return None


class FakeConnector:
    """Replacement for ``websockets.connect`` handing out scripted sockets."""

    def __init__(self, sockets: List[FakeWebSocket]):
        self._sockets = list(sockets)
        self.urls: List[str] = []

    def __call__(self, url: str, **kwargs) -> FakeWebSocket:
        self.urls.append(url)
        if not self._sockets:
            # Further reconnects park on an idle socket.
            return FakeWebSocket()
        return self._sockets.pop(0)


# ---------------------------------------------------------------------------
# Adapter fake
# ---------------------------------------------------------------------------

class FakeAdapter:
    """In-memory adapter implementing the ChannelAdapter protocol."""

    def __init__(self, channel_type: ChannelType, start_error: Optional[Exception] = None):
        self.channel_type = channel_type
        self.state = ConnectionState.STOPPED
        self.task: Optional[asyncio.Task] = None
        self.config: Optional[ChannelConfig] = None
        self.on_inbound = None
        self.sent: list = []
        self.typing: list = []
        self.stop_calls = 0
        self._listeners: list = []
        self._start_error = start_error
        self._crash: Optional[asyncio.Future] = None

    def add_state_listener(self, listener) -> None:
        self._listeners.append(listener)

    def _set(self, state: ConnectionState, error: Optional[str] = None) -> None:
        self.state = state
        for listener in list(self._listeners):
            listener(self.channel_type, state, error)

    async def start(self, config: ChannelConfig, on_inbound) -> None:
        if self._start_error is not None:
            self._set(ConnectionState.ERROR, str(self._start_error))
            raise self._start_error
        self.config = config
        self.on_inbound = on_inbound
        self._crash = asyncio.get_running_loop().create_future()
        self._set(ConnectionState.CONNECTING)
        self.task = asyncio.create_task(self._run())

    async def _run(self) -> None:
        self._set(ConnectionState.CONNECTED)
        exc = await self._crash
        raise exc

    def crash(self, exc: BaseException) -> None:
        assert self._crash is not None
        self._crash.set_result(exc)

    async def stop(self) -> None:
        self.stop_calls += 1
        task, self.task = self.task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        self._set(ConnectionState.STOPPED)

    async def send(self, message) -> None:
        self.sent.append(message)

    async def send_typing(self, external_chat_id: str) -> None:
        self.typing.append(external_chat_id)
