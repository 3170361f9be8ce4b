"""Bidirectional mapping between external chats and internal conversations."""

from __future__ import annotations

import logging
import threading
import uuid
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from ...infra.persistence import load_json, save_json
from .models import ChannelType

logger = logging.getLogger(__name__)

ChatKey = Tuple[ChannelType, str]


def _default_id_factory() -> str:
    return f"conv_{uuid.uuid4().hex}"


class ConversationMapper:
    """Maps ``(channel_type, external_chat_id)`` to internal conversation ids.

    Both directions are plain dict lookups. Mutations take a mapper-local
    lock that is never held across an ``await``, so concurrent adapters
    cannot stall one another here.

    Links are persisted to a JSON file when *store_path* is given; this is
    the only bridge state that survives a restart.
    """

    def __init__(
        self,
        store_path: Optional[Path] = None,
        id_factory: Callable[[], str] = _default_id_factory,
    ):
        self._store_path = store_path
        self._id_factory = id_factory
        self._lock = threading.Lock()
        self._forward: Dict[ChatKey, str] = {}
        self._reverse: Dict[str, ChatKey] = {}
        self._load()

    # -- public API ---------------------------------------------------------

    def resolve(self, channel_type: ChannelType, external_chat_id: str) -> str:
        """Return the conversation id for a chat, creating one on first sight."""
        key = (channel_type, str(external_chat_id))
        conversation_id = self._forward.get(key)
        if conversation_id is not None:
            return conversation_id
        with self._lock:
            conversation_id = self._forward.get(key)
            if conversation_id is None:
                conversation_id = self._link_locked(key)
                logger.info(
                    "New conversation %s for %s:%s",
                    conversation_id, channel_type.value, external_chat_id,
                )
        return conversation_id

    def reverse_lookup(self, conversation_id: str) -> Optional[ChatKey]:
        """Return ``(channel_type, external_chat_id)`` for a conversation id."""
        return self._reverse.get(conversation_id)

    def reset(self, channel_type: ChannelType, external_chat_id: str) -> str:
        """Start a fresh conversation for a chat (``/clear``).

        The previous id stays reverse-resolvable so late replies still land.
        """
        key = (channel_type, str(external_chat_id))
        with self._lock:
            conversation_id = self._link_locked(key)
        logger.info(
            "Reset conversation for %s:%s -> %s",
            channel_type.value, external_chat_id, conversation_id,
        )
        return conversation_id

    def links(self) -> List[Tuple[ChannelType, str, str]]:
        """Snapshot of current forward links."""
        return [(ct, chat_id, conv) for (ct, chat_id), conv in list(self._forward.items())]

    # -- internals ----------------------------------------------------------

    def _link_locked(self, key: ChatKey) -> str:
        conversation_id = self._id_factory()
        forward = dict(self._forward)
        forward[key] = conversation_id
        reverse = dict(self._reverse)
        reverse[conversation_id] = key
        self._forward = forward
        self._reverse = reverse
        self._persist_locked()
        return conversation_id

    def _load(self) -> None:
        if self._store_path is None:
            return
        payload = load_json(self._store_path)
        if not isinstance(payload, dict):
            return
        for entry in payload.get("links", []) or []:
            try:
                key = (ChannelType(entry["channel_type"]), str(entry["external_chat_id"]))
                conversation_id = str(entry["conversation_id"])
            except (KeyError, TypeError, ValueError):
                logger.warning("Skipping malformed conversation link: %r", entry)
                continue
            if entry.get("active", True):
                self._forward[key] = conversation_id
            self._reverse[conversation_id] = key
        logger.debug("Loaded %d conversation links", len(self._forward))

    def _persist_locked(self) -> None:
        if self._store_path is None:
            return
        links = []
        for conversation_id, (channel_type, chat_id) in self._reverse.items():
            links.append({
                "channel_type": channel_type.value,
                "external_chat_id": chat_id,
                "conversation_id": conversation_id,
                "active": self._forward.get((channel_type, chat_id)) == conversation_id,
            })
        try:
            save_json(self._store_path, {"links": links})
        except OSError as exc:
            logger.warning("Failed to persist conversation links: %s", exc)
