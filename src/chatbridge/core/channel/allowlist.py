"""Per-channel allow-list enforcement."""

from __future__ import annotations

from typing import FrozenSet, Iterable, Optional, Union

from .models import ChannelConfig, ChannelType


def parse_allow_list(raw: Union[str, Iterable[object], None]) -> FrozenSet[str]:
    """Parse a comma-separated allow-list (or a YAML list) into a set of ids."""
    if raw is None:
        return frozenset()
    if isinstance(raw, str):
        items: Iterable[object] = raw.split(",")
    else:
        items = raw
    return frozenset(str(item).strip() for item in items if str(item).strip())


def is_authorized(
    channel_type: ChannelType,
    external_user_id: Optional[str],
    config: ChannelConfig,
) -> bool:
    """Return True if *external_user_id* may talk to the bridge on *channel_type*.

    WebChat is gated by its connection-level access token, so every message
    that reached it is authorized. Bot-style channels fail closed: an empty
    allow-list denies everyone.
    """
    if not channel_type.is_bot_style:
        return True
    if not config.allowed_user_ids or not external_user_id:
        return False
    return str(external_user_id) in config.allowed_user_ids
