"""Agent engine interface."""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Optional, Protocol, Sequence

from ..core.channel.models import AttachmentRef

logger = logging.getLogger(__name__)

# (conversation_id, text, attachments, error) -> delivered
ReplyCallback = Callable[..., Awaitable[bool]]


class AgentEngine(Protocol):
    """The local agent that produces replies.

    ``submit`` hands one user turn to the engine. Replies come back later,
    possibly from an unrelated trigger such as a scheduled task, through
    ``MessageRouter.on_agent_reply``.
    """

    async def submit(
        self,
        conversation_id: str,
        text: str,
        attachments: Sequence[AttachmentRef] = (),
    ) -> None:
        ...


class EchoAgentEngine:
    """Engine that echoes user text back. Used for smoke runs of the daemon."""

    def __init__(self, reply: Optional[ReplyCallback] = None, prefix: str = ""):
        self._reply = reply
        self._prefix = prefix

    def bind(self, reply: ReplyCallback) -> None:
        self._reply = reply

    async def submit(
        self,
        conversation_id: str,
        text: str,
        attachments: Sequence[AttachmentRef] = (),
    ) -> None:
        if self._reply is None:
            logger.warning("EchoAgentEngine has no reply callback; dropping %s", conversation_id)
            return
        body = f"{self._prefix}{text}"
        if attachments:
            body += f"\n({len(attachments)} attachment(s) received)"
        await self._reply(conversation_id, body)
