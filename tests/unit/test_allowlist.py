"""Unit tests for allow-list parsing and enforcement."""

from __future__ import annotations

import pytest

from src.chatbridge.core.channel.allowlist import is_authorized, parse_allow_list
from src.chatbridge.core.channel.models import ChannelConfig, ChannelType


BOT_STYLE = [ct for ct in ChannelType if ct is not ChannelType.WEBCHAT]


class TestParseAllowList:
    def test_comma_separated_string(self):
        assert parse_allow_list("12345, 67890 ,abc") == frozenset({"12345", "67890", "abc"})

    def test_empty_entries_dropped(self):
        assert parse_allow_list(" , ,12345,,") == frozenset({"12345"})

    def test_yaml_list_of_ints(self):
        assert parse_allow_list([12345, "678"]) == frozenset({"12345", "678"})

    def test_none_and_empty(self):
        assert parse_allow_list(None) == frozenset()
        assert parse_allow_list("") == frozenset()


class TestIsAuthorized:
    @pytest.mark.parametrize("channel_type", BOT_STYLE)
    def test_empty_list_denies_bot_style_channels(self, channel_type):
        config = ChannelConfig(enabled=True)
        assert is_authorized(channel_type, "12345", config) is False

    @pytest.mark.parametrize("channel_type", BOT_STYLE)
    def test_member_is_allowed(self, channel_type):
        config = ChannelConfig(enabled=True, allowed_user_ids=frozenset({"12345"}))
        assert is_authorized(channel_type, "12345", config) is True

    @pytest.mark.parametrize("channel_type", BOT_STYLE)
    def test_non_member_is_denied(self, channel_type):
        config = ChannelConfig(enabled=True, allowed_user_ids=frozenset({"12345"}))
        assert is_authorized(channel_type, "99999", config) is False

    def test_missing_user_id_is_denied(self):
        config = ChannelConfig(enabled=True, allowed_user_ids=frozenset({"12345"}))
        assert is_authorized(ChannelType.SLACK, "", config) is False
        assert is_authorized(ChannelType.SLACK, None, config) is False

    def test_webchat_passes_through(self):
        assert is_authorized(ChannelType.WEBCHAT, "anyone", ChannelConfig()) is True
        restricted = ChannelConfig(allowed_user_ids=frozenset({"someone-else"}))
        assert is_authorized(ChannelType.WEBCHAT, "anyone", restricted) is True

    def test_bot_style_flag(self):
        assert ChannelType.WEBCHAT.is_bot_style is False
        assert all(ct.is_bot_style for ct in BOT_STYLE)
