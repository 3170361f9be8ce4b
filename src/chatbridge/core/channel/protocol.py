"""Channel adapter protocol definition."""

from __future__ import annotations

import asyncio
from typing import Callable, Optional, Protocol

from .models import ChannelConfig, ChannelType, ConnectionState, InboundMessage, OutboundMessage

# Called for every parsed inbound message. Must only enqueue, never block.
InboundHandler = Callable[[InboundMessage], bool]

# Called with (channel_type, new_state, error_text) on every state change.
StateListener = Callable[[ChannelType, ConnectionState, Optional[str]], None]


class ChannelAdapter(Protocol):
    """Uniform interface over one external chat platform.

    Router and orchestrator only ever talk to this interface, never to a
    platform client directly.
    """

    @property
    def channel_type(self) -> ChannelType:
        ...

    @property
    def state(self) -> ConnectionState:
        ...

    @property
    def task(self) -> Optional[asyncio.Task]:
        """The running transport task, supervised by the orchestrator."""
        ...

    def add_state_listener(self, listener: StateListener) -> None:
        ...

    async def start(self, config: ChannelConfig, on_inbound: InboundHandler) -> None:
        """Validate credentials and launch the transport loop.

        Raises:
            AuthError: credentials are missing or malformed.
        """
        ...

    async def stop(self) -> None:
        """Cancel the transport loop and release sockets. Returns once cancelled."""
        ...

    async def send(self, message: OutboundMessage) -> None:
        """Deliver one outbound message.

        Raises:
            SendError: the platform rejected or failed to accept the message.
        """
        ...

    async def send_typing(self, external_chat_id: str) -> None:
        """Best-effort typing indicator."""
        ...
