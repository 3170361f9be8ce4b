"""Root test conftest: keep every test away from the real ~/.chatbridge."""

import pytest

from src.chatbridge.infra.config import reset_config_cache


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    """Point CHATBRIDGE_HOME / CHATBRIDGE_CONFIG at a per-test directory."""
    home = tmp_path / "chatbridge_home"
    monkeypatch.setenv("CHATBRIDGE_HOME", str(home))
    monkeypatch.setenv("CHATBRIDGE_CONFIG", str(home / "config.yaml"))
    reset_config_cache()
    yield home
    reset_config_cache()
