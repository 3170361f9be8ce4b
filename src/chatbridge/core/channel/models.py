"""Canonical message envelopes and per-channel configuration."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, FrozenSet, Mapping, Optional, Tuple


class ChannelType(str, Enum):
    """External platforms the bridge can operate."""

    TELEGRAM = "telegram"
    DISCORD = "discord"
    SLACK = "slack"
    MATRIX = "matrix"
    LINE = "line"
    WEBCHAT = "webchat"

    @property
    def is_bot_style(self) -> bool:
        """Bot-style channels authenticate users by platform identity."""
        return self is not ChannelType.WEBCHAT


class ConnectionState(str, Enum):
    """Per-channel connection lifecycle."""

    STOPPED = "stopped"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    ERROR = "error"

    @property
    def is_active(self) -> bool:
        return self in (
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
            ConnectionState.RECONNECTING,
        )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class AttachmentRef:
    """Reference to a platform-hosted attachment (not the bytes themselves)."""

    kind: str  # "image" | "file" | "audio" | "video"
    ref: str  # platform file id, URL, or local path once downloaded
    mime_type: Optional[str] = None
    name: Optional[str] = None


@dataclass(frozen=True)
class InboundMessage:
    """A message received from an external platform."""

    channel_type: ChannelType
    external_chat_id: str
    external_user_id: str
    text: str
    external_user_display_name: str = ""
    attachments: Tuple[AttachmentRef, ...] = ()
    received_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class OutboundMessage:
    """A message to deliver to an external platform."""

    channel_type: ChannelType
    external_chat_id: str
    text: str
    attachments: Tuple[AttachmentRef, ...] = ()


@dataclass(frozen=True)
class ChannelConfig:
    """Configuration of one channel as supplied by the config and credential stores.

    Instances are immutable; configuration updates replace the whole object.
    """

    enabled: bool = False
    credentials: Mapping[str, str] = field(default_factory=dict)
    allowed_user_ids: FrozenSet[str] = frozenset()
    options: Mapping[str, Any] = field(default_factory=dict)

    def credential(self, key: str) -> str:
        return str(self.credentials.get(key, "") or "").strip()

    def option(self, key: str, default: Any = None) -> Any:
        value = self.options.get(key)
        return default if value is None else value
