"""Channel adapters, one per external platform."""

from __future__ import annotations

from typing import Dict, Optional, Type

from ..core.channel.models import ChannelType
from ..infra.media import MediaStore
from ..infra.persistence import JsonStateStore
from .base import BaseChannelAdapter
from .discord_channel import DiscordChannel
from .line_channel import LineChannel
from .matrix_channel import MatrixChannel
from .slack_channel import SlackChannel
from .telegram_channel import TelegramChannel
from .webchat_channel import WebChatChannel

ADAPTER_CLASSES: Dict[ChannelType, Type[BaseChannelAdapter]] = {
    ChannelType.TELEGRAM: TelegramChannel,
    ChannelType.DISCORD: DiscordChannel,
    ChannelType.SLACK: SlackChannel,
    ChannelType.MATRIX: MatrixChannel,
    ChannelType.LINE: LineChannel,
    ChannelType.WEBCHAT: WebChatChannel,
}


def create_adapter(
    channel_type: ChannelType,
    state_store: Optional[JsonStateStore] = None,
    media_store: Optional[MediaStore] = None,
) -> BaseChannelAdapter:
    """Build a fresh adapter instance for *channel_type*."""
    return ADAPTER_CLASSES[channel_type](state_store=state_store, media_store=media_store)


__all__ = [
    "ADAPTER_CLASSES",
    "BaseChannelAdapter",
    "DiscordChannel",
    "LineChannel",
    "MatrixChannel",
    "SlackChannel",
    "TelegramChannel",
    "WebChatChannel",
    "create_adapter",
]
