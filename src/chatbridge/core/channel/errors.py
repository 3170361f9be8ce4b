"""Bridge error taxonomy."""

from __future__ import annotations

from typing import Optional

from .models import ChannelType


class BridgeError(Exception):
    """Base class for bridge errors."""

    def __init__(self, message: str, channel_type: Optional[ChannelType] = None):
        super().__init__(message)
        self.channel_type = channel_type


class ConnectError(BridgeError):
    """Network-level failure. Retried by the adapter with backoff."""


class AuthError(BridgeError):
    """Credential rejected or malformed. Never retried automatically."""


class ProtocolError(BridgeError):
    """Malformed platform payload. The single message is dropped."""


class SendError(BridgeError):
    """Delivery failure for one outbound message."""
