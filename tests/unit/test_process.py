"""
Process utilities tests.
"""

import os
import signal

import pytest

from src.chatbridge.infra.process import (
    DaemonLock,
    is_pid_running,
    read_pid_file,
    remove_pid_file,
    signal_daemon,
)


def test_lock_writes_and_removes_pid(tmp_path):
    path = tmp_path / "chatbridge.pid"
    lock = DaemonLock(path)
    assert lock.acquire() == os.getpid()
    assert lock.held is True
    assert read_pid_file(path) == os.getpid()
    lock.release()
    assert lock.held is False
    assert not path.exists()


def test_lock_is_exclusive(tmp_path):
    path = tmp_path / "chatbridge.pid"
    with DaemonLock(path):
        with pytest.raises(RuntimeError, match=f"pid={os.getpid()}"):
            DaemonLock(path).acquire()
    with DaemonLock(path):
        assert read_pid_file(path) == os.getpid()


def test_stale_pid_file_does_not_block(tmp_path):
    path = tmp_path / "chatbridge.pid"
    path.write_text("999999999\n", encoding="utf-8")
    with DaemonLock(path) as lock:
        assert lock.held
        assert read_pid_file(path) == os.getpid()


def test_read_invalid_pid_file(tmp_path):
    path = tmp_path / "chatbridge.pid"
    assert read_pid_file(path) is None
    path.write_text("not-a-pid", encoding="utf-8")
    assert read_pid_file(path) is None
    remove_pid_file(path)
    remove_pid_file(path)
    assert not path.exists()


def test_is_pid_running():
    assert is_pid_running(os.getpid()) is True
    assert is_pid_running(0) is False


def test_signal_daemon_without_daemon(tmp_path):
    assert signal_daemon(tmp_path / "absent.pid", signal.SIGHUP) is None


def test_signal_daemon_removes_dead_pid(tmp_path):
    path = tmp_path / "chatbridge.pid"
    path.write_text("999999999\n", encoding="utf-8")
    assert signal_daemon(path, signal.SIGHUP) is None
    assert not path.exists()


def test_signal_daemon_sends_signal(tmp_path, monkeypatch):
    path = tmp_path / "chatbridge.pid"
    path.write_text(f"{os.getpid()}\n", encoding="utf-8")
    sent = []
    real_kill = os.kill

    def fake_kill(pid, signum):
        if signum == 0:
            return real_kill(pid, signum)
        sent.append((pid, signum))

    monkeypatch.setattr(os, "kill", fake_kill)
    assert signal_daemon(path, signal.SIGHUP) == os.getpid()
    assert sent == [(os.getpid(), signal.SIGHUP)]
