"""Routes messages between channel adapters and the agent engine."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, Optional, Sequence, Tuple

from ...agent.engine import AgentEngine
from ...infra.persistence import JsonStateStore
from .allowlist import is_authorized
from .conversation_mapper import ConversationMapper
from .errors import SendError
from .models import AttachmentRef, ChannelConfig, ChannelType, InboundMessage, OutboundMessage
from .protocol import ChannelAdapter

logger = logging.getLogger(__name__)

CLEAR_COMMAND = "/clear"
CLEAR_REPLY = "New conversation started."
CHAT_QUEUE_SIZE = 100
WORKER_IDLE_SECONDS = 30.0
TYPING_INTERVAL_SECONDS = 4.0
# Upper bound for one typing indicator when the agent never answers.
TYPING_MAX_SECONDS = 120.0
LAST_CHATS_KEY = "router.last_chats"

ChatKey = Tuple[ChannelType, str]


class MessageRouter:
    """Single convergence point for inbound traffic from every channel.

    ``on_inbound`` never awaits: it checks the allow-list, resolves the
    conversation and enqueues onto a per-chat queue. One worker task per
    ``(channel_type, external_chat_id)`` drains that queue in receipt order
    and hands each message to the agent engine.
    """

    def __init__(
        self,
        mapper: ConversationMapper,
        engine: AgentEngine,
        get_adapter: Optional[Callable[[ChannelType], Optional[ChannelAdapter]]] = None,
        get_config: Optional[Callable[[ChannelType], ChannelConfig]] = None,
        on_accepted: Optional[Callable[[InboundMessage], None]] = None,
        state_store: Optional[JsonStateStore] = None,
    ):
        self.mapper = mapper
        self.engine = engine
        self._get_adapter = get_adapter or (lambda _ct: None)
        self._get_config = get_config or (lambda _ct: ChannelConfig())
        self._on_accepted = on_accepted
        self._chat_queues: Dict[ChatKey, asyncio.Queue] = {}
        self._chat_workers: Dict[ChatKey, asyncio.Task] = {}
        self._send_locks: Dict[ChatKey, asyncio.Lock] = {}
        self._send_lock_users: Dict[ChatKey, int] = {}
        self._typing_tasks: Dict[ChatKey, asyncio.Task] = {}
        self._state_store = state_store or JsonStateStore()
        self._last_chat: Dict[ChannelType, str] = self._load_last_chats()

    def attach(
        self,
        get_adapter: Callable[[ChannelType], Optional[ChannelAdapter]],
        get_config: Callable[[ChannelType], ChannelConfig],
        on_accepted: Optional[Callable[[InboundMessage], None]] = None,
    ) -> None:
        """Wire the router to the orchestrator that owns the adapters."""
        self._get_adapter = get_adapter
        self._get_config = get_config
        self._on_accepted = on_accepted

    def _load_last_chats(self) -> Dict[ChannelType, str]:
        stored = self._state_store.get(LAST_CHATS_KEY) or {}
        last_chats: Dict[ChannelType, str] = {}
        if not isinstance(stored, dict):
            return last_chats
        for name, chat_id in stored.items():
            try:
                last_chats[ChannelType(name)] = str(chat_id)
            except ValueError:
                logger.debug("Ignoring stored last chat for unknown channel %r", name)
        return last_chats

    def _remember_last_chat(self, channel_type: ChannelType, chat_id: str) -> None:
        if self._last_chat.get(channel_type) == chat_id:
            return
        self._last_chat[channel_type] = chat_id
        self._state_store.set(
            LAST_CHATS_KEY, {ct.value: cid for ct, cid in self._last_chat.items()}
        )

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def on_inbound(self, message: InboundMessage) -> bool:
        """Accept one inbound message. Returns False when it was dropped."""
        config = self._get_config(message.channel_type)
        if not is_authorized(message.channel_type, message.external_user_id, config):
            # No reply: unauthorized senders must not learn the bridge exists.
            logger.debug(
                "Dropped message from unauthorized user %s on %s",
                message.external_user_id, message.channel_type.value,
            )
            return False

        key = (message.channel_type, str(message.external_chat_id))
        chat_q = self._chat_queues.get(key)
        if chat_q is None:
            chat_q = asyncio.Queue(maxsize=CHAT_QUEUE_SIZE)
            self._chat_queues[key] = chat_q
        try:
            chat_q.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning(
                "Chat queue full for %s:%s, dropping message",
                message.channel_type.value, message.external_chat_id,
            )
            return False

        worker = self._chat_workers.get(key)
        if worker is None or worker.done():
            self._chat_workers[key] = asyncio.create_task(
                self._chat_worker(key), name=f"chat-{key[0].value}-{key[1]}"
            )

        self._remember_last_chat(message.channel_type, key[1])
        if self._on_accepted is not None:
            self._on_accepted(message)
        return True

    async def _chat_worker(self, key: ChatKey) -> None:
        """Process messages for a single chat sequentially."""
        q = self._chat_queues[key]
        while True:
            try:
                message = await asyncio.wait_for(q.get(), timeout=WORKER_IDLE_SECONDS)
            except asyncio.TimeoutError:
                if q.empty():
                    self._chat_queues.pop(key, None)
                    self._chat_workers.pop(key, None)
                    return
                continue
            try:
                await self._handle_inbound(message)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(
                    "Error handling message for %s:%s: %s", key[0].value, key[1], exc
                )

    async def _handle_inbound(self, message: InboundMessage) -> None:
        channel_type = message.channel_type
        chat_id = str(message.external_chat_id)

        if message.text.strip().lower() == CLEAR_COMMAND:
            conversation_id = self.mapper.reset(channel_type, chat_id)
            await self.on_agent_reply(conversation_id, CLEAR_REPLY)
            return

        conversation_id = self.mapper.resolve(channel_type, chat_id)
        await self._send_typing(channel_type, chat_id)
        self._start_typing((channel_type, chat_id))
        try:
            await self.engine.submit(conversation_id, message.text, message.attachments)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Agent engine failed for %s: %s", conversation_id, exc)
            await self.on_agent_reply(conversation_id, "", error=str(exc) or type(exc).__name__)

    async def _send_typing(self, channel_type: ChannelType, chat_id: str) -> None:
        adapter = self._get_adapter(channel_type)
        if adapter is None:
            return
        try:
            await adapter.send_typing(chat_id)
        except Exception as exc:
            logger.debug("Typing indicator failed on %s: %s", channel_type.value, exc)

    def _start_typing(self, key: ChatKey) -> None:
        """Keep the typing indicator alive until the reply for *key* goes out."""
        self._stop_typing(key)
        task = asyncio.create_task(self._typing_loop(key), name=f"typing-{key[0].value}-{key[1]}")
        self._typing_tasks[key] = task
        task.add_done_callback(lambda t: self._forget_typing(key, t))

    def _stop_typing(self, key: ChatKey) -> None:
        task = self._typing_tasks.pop(key, None)
        if task is not None:
            task.cancel()

    def _forget_typing(self, key: ChatKey, task: asyncio.Task) -> None:
        if self._typing_tasks.get(key) is task:
            del self._typing_tasks[key]

    async def _typing_loop(self, key: ChatKey) -> None:
        # Platforms expire the indicator after a few seconds; re-send it.
        loop = asyncio.get_running_loop()
        deadline = loop.time() + TYPING_MAX_SECONDS
        while True:
            await asyncio.sleep(TYPING_INTERVAL_SECONDS)
            if loop.time() >= deadline:
                return
            await self._send_typing(*key)

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def on_agent_reply(
        self,
        conversation_id: str,
        text: str,
        attachments: Sequence[AttachmentRef] = (),
        error: Optional[str] = None,
    ) -> bool:
        """Deliver an agent reply to the chat that owns *conversation_id*.

        Returns False when the reply could not be delivered. Failed replies
        are logged and dropped, never redirected to another channel.
        """
        target = self.mapper.reverse_lookup(conversation_id)
        if target is None:
            logger.warning("Dropping reply for unknown conversation %s", conversation_id)
            return False
        channel_type, chat_id = target
        self._stop_typing((channel_type, chat_id))

        if error is not None:
            text = f"Error: {error}"
        if not text and not attachments:
            logger.debug("Ignoring empty reply for %s", conversation_id)
            return False

        outbound = OutboundMessage(
            channel_type=channel_type,
            external_chat_id=chat_id,
            text=text,
            attachments=tuple(attachments),
        )
        return await self._deliver(outbound, conversation_id)

    async def broadcast(self, text: str) -> int:
        """Send *text* to the most recent chat of every active channel.

        Used for notifications that have no originating conversation, such
        as scheduled task results. Returns the number of chats reached.
        """
        delivered = 0
        for channel_type, chat_id in list(self._last_chat.items()):
            outbound = OutboundMessage(channel_type=channel_type, external_chat_id=chat_id, text=text)
            if await self._deliver(outbound, f"broadcast:{channel_type.value}"):
                delivered += 1
        return delivered

    async def _deliver(self, outbound: OutboundMessage, label: str) -> bool:
        adapter = self._get_adapter(outbound.channel_type)
        if adapter is None:
            logger.warning(
                "Dropping reply for %s: channel %s is not active",
                label, outbound.channel_type.value,
            )
            return False

        key = (outbound.channel_type, str(outbound.external_chat_id))
        lock = self._send_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._send_locks[key] = lock
        self._send_lock_users[key] = self._send_lock_users.get(key, 0) + 1
        try:
            async with lock:
                try:
                    await adapter.send(outbound)
                except SendError as exc:
                    logger.warning(
                        "Delivery to %s:%s failed: %s",
                        outbound.channel_type.value, outbound.external_chat_id, exc,
                    )
                    return False
            return True
        finally:
            self._release_send_lock(key)

    def _release_send_lock(self, key: ChatKey) -> None:
        users = self._send_lock_users.get(key, 0) - 1
        if users > 0:
            self._send_lock_users[key] = users
            return
        self._send_lock_users.pop(key, None)
        self._send_locks.pop(key, None)

    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Cancel all chat workers and typing indicators."""
        for key in list(self._typing_tasks):
            self._stop_typing(key)
        workers = list(self._chat_workers.values())
        for task in workers:
            task.cancel()
        for task in workers:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._chat_workers.clear()
        self._chat_queues.clear()
