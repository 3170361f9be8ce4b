"""Infrastructure layer for filesystem, config and credentials."""

from .config import (
    BridgeSettings,
    build_bridge_settings,
    get_config,
    get_default_config,
    load_config,
    reload_config,
    reset_config_cache,
    save_config,
)
from .user_data import UserDataManager

__all__ = [
    "BridgeSettings",
    "build_bridge_settings",
    "get_config",
    "get_default_config",
    "load_config",
    "reload_config",
    "reset_config_cache",
    "save_config",
    "UserDataManager",
]
