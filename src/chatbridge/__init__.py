"""
chatbridge - multi-channel messaging bridge

Connects Telegram, Discord, Slack, Matrix, LINE and a self-hosted WebChat
endpoint to one local agent engine.
"""

__version__ = "0.1.0"

from .core.channel.models import (
    AttachmentRef,
    ChannelConfig,
    ChannelType,
    ConnectionState,
    InboundMessage,
    OutboundMessage,
)
from .core.channel.conversation_mapper import ConversationMapper
from .core.channel.router import MessageRouter
from .core.runtime.orchestrator import BridgeOrchestrator
from .core.runtime.state_tracker import BridgeStateTracker, ChannelStatus
from .infra.config import BridgeSettings, build_bridge_settings

__all__ = [
    "AttachmentRef",
    "BridgeOrchestrator",
    "BridgeSettings",
    "BridgeStateTracker",
    "ChannelConfig",
    "ChannelStatus",
    "ChannelType",
    "ConnectionState",
    "ConversationMapper",
    "InboundMessage",
    "MessageRouter",
    "OutboundMessage",
    "build_bridge_settings",
]
