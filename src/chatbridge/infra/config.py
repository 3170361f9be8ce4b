"""
配置管理
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from ..core.channel.allowlist import parse_allow_list
from ..core.channel.models import ChannelConfig, ChannelType
from .credentials import CredentialStore, expand_env

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "~/.chatbridge/config.yaml"
CONFIG_ENV_VAR = "CHATBRIDGE_CONFIG"

# Keys of a channel section that are not transport options.
_RESERVED_CHANNEL_KEYS = {"enabled", "allowed_users"}


def _resolve_path(config_path: Optional[str]) -> Path:
    raw = config_path or os.environ.get(CONFIG_ENV_VAR) or DEFAULT_CONFIG_PATH
    return Path(raw).expanduser()


def _merge(base: Dict[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    """Recursively overlay *override* on *base*; mappings merge, other values replace."""
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = _merge(dict(merged[key]), value)
        else:
            merged[key] = value
    return merged


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    加载配置文件，文件中的值覆盖默认配置

    Args:
        config_path: 配置文件路径，如果为 None 则使用 $CHATBRIDGE_CONFIG 或默认路径

    Returns:
        配置字典
    """
    path = _resolve_path(config_path)

    if not path.exists():
        logger.warning("配置文件不存在: %s，使用默认配置", path)
        return get_default_config()

    try:
        with open(path, "r", encoding="utf-8") as f:
            config = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.error("加载配置失败: %s", e)
        return get_default_config()
    if not isinstance(config, dict):
        logger.error("配置文件顶层必须是映射: %s", path)
        return get_default_config()
    logger.info("配置已加载: %s", path)
    return _merge(get_default_config(), config)


def get_default_config() -> Dict[str, Any]:
    """
    获取默认配置

    Returns:
        默认配置字典
    """
    return {
        "chatbridge": {
            "channels": {
                "webchat": {"enabled": False, "host": "127.0.0.1", "port": 8080},
            },
        },
        "credentials": {},
        "logging": {
            "level": "INFO",
        },
    }


def save_config(config: Dict[str, Any], config_path: Optional[str] = None) -> None:
    """
    保存配置文件

    Args:
        config: 配置字典
        config_path: 配置文件路径，如果为 None 则使用默认路径
    """
    path = _resolve_path(config_path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            yaml.safe_dump(config, f, default_flow_style=False, allow_unicode=True)
        logger.info("配置已保存: %s", path)
    except OSError as e:
        logger.error("保存配置失败: %s", e)
        raise


# ---------------------------------------------------------------------------
# Module-level cached config
# ---------------------------------------------------------------------------

_cached_config: Optional[Dict[str, Any]] = None
_cached_config_path: Optional[str] = None


def get_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """Return a cached config dict, loading from disk on first call.

    If *config_path* differs from the previously cached path the config is
    reloaded automatically.
    """
    global _cached_config, _cached_config_path
    if _cached_config is None or config_path != _cached_config_path:
        _cached_config = load_config(config_path)
        _cached_config_path = config_path
    return _cached_config


def reload_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """Force-reload config from disk and update the cache."""
    global _cached_config, _cached_config_path
    _cached_config = load_config(config_path)
    _cached_config_path = config_path
    return _cached_config


def reset_config_cache() -> None:
    """Clear the cached config (mainly for tests)."""
    global _cached_config, _cached_config_path
    _cached_config = None
    _cached_config_path = None


# ---------------------------------------------------------------------------
# Bridge settings
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BridgeSettings:
    """Per-channel configuration snapshot consumed by the orchestrator."""

    channels: Mapping[ChannelType, ChannelConfig] = field(default_factory=dict)

    def channel(self, channel_type: ChannelType) -> ChannelConfig:
        return self.channels.get(channel_type) or ChannelConfig()

    @property
    def any_enabled(self) -> bool:
        return any(cfg.enabled for cfg in self.channels.values())

    def enabled_channels(self) -> list:
        return [ct for ct in ChannelType if self.channel(ct).enabled]


def channel_sections(config: Mapping[str, Any]) -> Dict[str, Any]:
    return ((config.get("chatbridge") or {}).get("channels") or {})


def build_bridge_settings(
    config: Mapping[str, Any],
    credential_store: CredentialStore,
) -> BridgeSettings:
    """Build a :class:`BridgeSettings` from a config dict and a credential store."""
    sections = channel_sections(config)
    channels: Dict[ChannelType, ChannelConfig] = {}
    for key, section in sections.items():
        try:
            channel_type = ChannelType(str(key).lower())
        except ValueError:
            logger.warning("Ignoring unknown channel %r in config", key)
            continue
        section = section or {}
        options = {
            name: expand_env(value)
            for name, value in section.items()
            if name not in _RESERVED_CHANNEL_KEYS
        }
        channels[channel_type] = ChannelConfig(
            enabled=bool(section.get("enabled", False)),
            credentials=dict(credential_store.get(channel_type)),
            allowed_user_ids=parse_allow_list(section.get("allowed_users")),
            options=options,
        )
    return BridgeSettings(channels=channels)
