"""
用户数据统一管理
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from .process import is_pid_running, read_pid_file, remove_pid_file

logger = logging.getLogger(__name__)

HOME_ENV_VAR = "CHATBRIDGE_HOME"


class UserDataManager:
    """
    用户数据统一管理器

    统一管理 bridge 在本地的所有数据：
    - 配置
    - 会话映射（conversation links）
    - 渠道游标（Telegram offset、Matrix sync token）
    - 收到的图片
    - 守护进程 pid / lock / status
    - 日志
    """

    def __init__(self, home: Optional[Path] = None):
        default = os.environ.get(HOME_ENV_VAR) or "~/.chatbridge"
        self.home = Path(home or default).expanduser()

    # --- 路径属性 ---

    @property
    def config_path(self) -> Path:
        """主配置文件路径"""
        return self.home / "config.yaml"

    @property
    def state_dir(self) -> Path:
        """Persistent bridge state directory."""
        return self.home / "state"

    @property
    def conversation_links_file(self) -> Path:
        return self.state_dir / "conversations.json"

    @property
    def channel_state_file(self) -> Path:
        """Adapter cursors that must survive restarts."""
        return self.state_dir / "channels.json"

    @property
    def media_dir(self) -> Path:
        """收到的图片"""
        return self.home / "media"

    @property
    def logs_dir(self) -> Path:
        """日志目录"""
        return self.home / "logs"

    @property
    def pid_file(self) -> Path:
        """Daemon PID file path, locked while the daemon runs."""
        return self.home / "chatbridge.pid"

    @property
    def status_file(self) -> Path:
        """Daemon status snapshot file path."""
        return self.home / "chatbridge.status.json"

    def ensure_directories(self) -> None:
        """确保必要目录存在"""
        for dir_path in (self.home, self.state_dir, self.media_dir, self.logs_dir):
            dir_path.mkdir(parents=True, exist_ok=True)
            logger.debug("确保目录存在: %s", dir_path)


def get_local_status(user_data: Optional[UserDataManager] = None) -> Dict[str, Any]:
    """
    Get local daemon status from PID + snapshot file.

    This does not attempt network calls; it relies on local files written by the daemon.
    """
    user_data = user_data or UserDataManager()
    pid = read_pid_file(user_data.pid_file)

    running = False
    if pid is not None:
        running = is_pid_running(pid)
        if not running:
            remove_pid_file(user_data.pid_file)

    snapshot: Optional[Dict[str, Any]] = None
    try:
        if user_data.status_file.exists():
            snapshot = json.loads(user_data.status_file.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        snapshot = None

    return {
        "running": running,
        "pid": pid if running else None,
        "snapshot": snapshot,
    }
