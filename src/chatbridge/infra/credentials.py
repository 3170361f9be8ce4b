"""
Credential lookup for channel adapters.

The bridge never writes secrets; it only reads them from the ``credentials``
section of the config (``${ENV_VAR}`` references allowed) or from
``CHATBRIDGE_<CHANNEL>_<KEY>`` environment variables.
"""

from __future__ import annotations

import os
from typing import Any, Dict, Mapping, Optional, Protocol

from ..core.channel.models import ChannelType

# Credential keys each channel reads.
CREDENTIAL_KEYS: Dict[ChannelType, tuple] = {
    ChannelType.TELEGRAM: ("bot_token",),
    ChannelType.DISCORD: ("bot_token",),
    ChannelType.SLACK: ("app_token", "bot_token"),
    ChannelType.MATRIX: ("access_token", "homeserver_url"),
    ChannelType.LINE: ("channel_access_token", "channel_secret"),
    ChannelType.WEBCHAT: ("access_token",),
}


def expand_env(value: Any) -> Any:
    """Resolve a ``${ENV_VAR}`` reference; other values pass through."""
    if isinstance(value, str) and value.startswith("${") and value.endswith("}"):
        return os.environ.get(value[2:-1], "")
    return value


class CredentialStore(Protocol):
    def get(self, channel_type: ChannelType) -> Mapping[str, str]:
        ...


class ConfigCredentialStore:
    """Reads secrets from config, falling back to environment variables."""

    def __init__(self, config: Optional[Mapping[str, Any]] = None, environ: Optional[Mapping[str, str]] = None):
        self._section = dict((config or {}).get("credentials") or {})
        self._environ = environ if environ is not None else os.environ

    def get(self, channel_type: ChannelType) -> Mapping[str, str]:
        configured = self._section.get(channel_type.value) or {}
        result: Dict[str, str] = {}
        for key in CREDENTIAL_KEYS[channel_type]:
            value = expand_env(configured.get(key))
            if not value:
                value = self._environ.get(f"CHATBRIDGE_{channel_type.value.upper()}_{key.upper()}", "")
            if value:
                result[key] = str(value)
        return result
