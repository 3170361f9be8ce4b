"""Channel abstraction layer: canonical envelopes, allow-list and routing."""

from .models import (
    AttachmentRef,
    ChannelConfig,
    ChannelType,
    ConnectionState,
    InboundMessage,
    OutboundMessage,
)
from .errors import AuthError, BridgeError, ConnectError, ProtocolError, SendError
from .allowlist import is_authorized, parse_allow_list
from .protocol import ChannelAdapter
from .conversation_mapper import ConversationMapper
from .router import MessageRouter

__all__ = [
    "AttachmentRef",
    "AuthError",
    "BridgeError",
    "ChannelAdapter",
    "ChannelConfig",
    "ChannelType",
    "ConnectError",
    "ConnectionState",
    "ConversationMapper",
    "InboundMessage",
    "MessageRouter",
    "OutboundMessage",
    "ProtocolError",
    "SendError",
    "is_authorized",
    "parse_allow_list",
]
