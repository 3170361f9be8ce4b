"""
CLI 命令接口
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal

import yaml

from ..core.channel.models import ChannelType
from ..infra.config import (
    build_bridge_settings,
    channel_sections,
    get_default_config,
    load_config,
    save_config,
)
from ..infra.credentials import CREDENTIAL_KEYS, ConfigCredentialStore
from ..infra.process import signal_daemon
from ..infra.user_data import UserDataManager, get_local_status
from .daemon import BridgeDaemon, install_signal_handlers

logger = logging.getLogger(__name__)


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )


async def cmd_start_async(args):
    """启动守护进程（异步）"""
    daemon = BridgeDaemon(config_path=args.config)
    install_signal_handlers(daemon)
    await daemon.start()


def cmd_start(args):
    """启动守护进程（前台运行）"""
    config = load_config(args.config)
    _setup_logging(args.log_level or (config.get("logging") or {}).get("level", "INFO"))
    try:
        asyncio.run(cmd_start_async(args))
    except RuntimeError as e:
        print(f"启动失败: {e}")
        raise SystemExit(1)


def cmd_stop(args):
    """停止守护进程"""
    try:
        pid = signal_daemon(UserDataManager().pid_file, signal.SIGTERM)
    except OSError as e:
        print(f"停止守护进程失败: {e}")
        return
    if pid is None:
        print("chatbridge 未在运行")
        return
    print(f"chatbridge 守护进程已停止 (pid={pid})")


def cmd_reload(args):
    """通知守护进程重新加载配置"""
    pid = signal_daemon(UserDataManager().pid_file, signal.SIGHUP)
    if pid is None:
        print("chatbridge 未在运行")
        return
    print(f"已请求重新加载配置 (pid={pid})")


def cmd_status(args):
    """查看状态"""
    status = get_local_status(UserDataManager())
    running = bool(status.get("running"))
    pid = status.get("pid")
    snapshot = status.get("snapshot") or {}

    print(f"chatbridge: {'运行中' if running else '未运行'}" + (f" (pid={pid})" if pid else ""))

    channels = snapshot.get("channels", {}) if isinstance(snapshot, dict) else {}
    for name, info in (channels or {}).items():
        info = info or {}
        state = info.get("state", "unknown")
        if not running or state == "stopped":
            continue
        line = f"  - {name}: {state}, {info.get('message_count', 0)} messages"
        if info.get("error"):
            line += f" ({info['error']})"
        print(line)


def cmd_channels(args):
    """列出渠道配置"""
    config = load_config(args.config)
    settings = build_bridge_settings(config, ConfigCredentialStore(config))
    configured = channel_sections(config)
    for channel_type in ChannelType:
        channel = settings.channel(channel_type)
        missing = [k for k in CREDENTIAL_KEYS[channel_type] if not channel.credential(k)]
        if channel_type is ChannelType.MATRIX and channel.option("homeserver_url"):
            missing = [k for k in missing if k != "homeserver_url"]
        if channel_type is ChannelType.WEBCHAT:
            missing = []  # the access token is optional
        flag = "enabled" if channel.enabled else ("disabled" if channel_type.value in configured else "not configured")
        line = f"  {channel_type.value:<9} {flag}"
        if channel_type.is_bot_style and channel.enabled:
            line += f", {len(channel.allowed_user_ids)} allowed user(s)"
        if missing and channel.enabled:
            line += f", missing: {', '.join(missing)}"
        print(line)


def cmd_config(args):
    """配置管理"""
    if args.show:
        config = load_config(args.config)
        print(yaml.safe_dump(config, default_flow_style=False, allow_unicode=True))
    elif args.init:
        config = get_default_config()
        save_config(config, args.config)
        print(f"配置已初始化: {args.config or UserDataManager().config_path}")
    else:
        print("使用 --show 查看配置，--init 初始化配置")


def main():
    """CLI 主入口"""
    parser = argparse.ArgumentParser(
        description="chatbridge - multi-channel messaging bridge",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    # 全局参数
    parser.add_argument("--config", type=str, help="配置文件路径")
    parser.add_argument("--log-level", type=str,
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        help="日志级别")

    subparsers = parser.add_subparsers(dest="command", help="子命令")

    parser_start = subparsers.add_parser("start", help="前台启动守护进程")
    parser_start.set_defaults(func=cmd_start)

    parser_stop = subparsers.add_parser("stop", help="停止守护进程")
    parser_stop.set_defaults(func=cmd_stop)

    parser_reload = subparsers.add_parser("reload", help="重新加载配置（启停变更的渠道）")
    parser_reload.set_defaults(func=cmd_reload)

    parser_status = subparsers.add_parser("status", help="查看状态")
    parser_status.set_defaults(func=cmd_status)

    parser_channels = subparsers.add_parser("channels", help="列出渠道配置")
    parser_channels.set_defaults(func=cmd_channels)

    parser_config = subparsers.add_parser("config", help="配置管理")
    parser_config.add_argument("--show", action="store_true", help="显示当前配置")
    parser_config.add_argument("--init", action="store_true", help="初始化默认配置")
    parser_config.set_defaults(func=cmd_config)

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return

    if hasattr(args, "func"):
        args.func(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
