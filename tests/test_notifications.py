"""
Tests for operator notifications and their cooldowns.
"""

import copy
from unittest.mock import Mock, patch

import pytest
import requests

from launchpad_sync.constants import DEFAULT_CONFIG
from launchpad_sync.models import MigrationRecord, MigrationStatus
from launchpad_sync.notifications import NotificationManager

from conftest import ORIGIN, STRANGER, TARGETS


class FakeClock:

    def __init__(self, now=1_700_000_000):
        self.now = now

    def __call__(self):
        return self.now


def notification_config(kind="telegram", **channel):
    cfg = copy.deepcopy(DEFAULT_CONFIG)
    cfg["notifications"]["enabled"] = True
    cfg["notifications"]["type"] = kind
    cfg["notifications"][kind] = channel
    return cfg


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def telegram(clock):
    return NotificationManager(notification_config(bot_token="t0k3n", chat_id="42"), clock=clock)


@pytest.fixture
def post():
    with patch("launchpad_sync.notifications.requests.post") as mock:
        mock.return_value = Mock(status_code=200)
        yield mock


class TestSetup:

    def test_disabled_by_default(self, post):
        manager = NotificationManager(copy.deepcopy(DEFAULT_CONFIG))
        assert not manager.send_notification("hello")
        post.assert_not_called()

    def test_missing_credentials_disable_the_channel(self):
        assert not NotificationManager(notification_config(bot_token="t0k3n")).enabled

    def test_unknown_type_disables_notifications(self):
        assert not NotificationManager(notification_config(kind="carrier_pigeon")).enabled


class TestChannels:

    def test_telegram(self, telegram, post):
        assert telegram.send_notification("hello", title="Test")
        url = post.call_args[0][0]
        assert url == "https://api.telegram.org/bott0k3n/sendMessage"
        assert post.call_args[1]["data"]["chat_id"] == "42"

    def test_discord_expects_no_content(self, post):
        manager = NotificationManager(notification_config("discord", webhook_url="https://hook"))
        post.return_value = Mock(status_code=204)
        assert manager.send_notification("hello")
        assert post.call_args[1]["json"]["embeds"][0]["description"] == "hello"

    def test_pushover(self, post):
        manager = NotificationManager(notification_config("pushover", user_key="u", api_token="a"))
        assert manager.send_notification("hello")
        assert post.call_args[1]["data"]["user"] == "u"

    def test_transport_error_is_reported_as_failure(self, telegram, post):
        post.side_effect = requests.exceptions.ConnectionError("offline")
        assert not telegram.send_notification("hello")


class TestAlerts:

    def test_dead_letter_alert_names_the_redispatch_command(self, telegram, post, launch_id):
        assert telegram.notify_dead_letter("sync", launch_id, TARGETS[0], "rpc down", 3, 17)
        text = post.call_args[1]["data"]["text"]
        assert "launchpad-sync redispatch 17" in text
        assert "Attempts: 3" in text

    def test_repeat_alerts_wait_for_the_cooldown(self, telegram, post, clock, launch_id):
        assert telegram.notify_dead_letter("sync", launch_id, TARGETS[0], "rpc down")
        assert not telegram.notify_dead_letter("sync", launch_id, TARGETS[0], "rpc down")
        # A different key is not held back
        assert telegram.notify_dead_letter("sync", launch_id, TARGETS[1], "rpc down")

        clock.now += 5 * 60
        assert telegram.notify_dead_letter("sync", launch_id, TARGETS[0], "rpc down")
        assert post.call_count == 3

    def test_unauthorized_alert(self, telegram, post):
        assert telegram.notify_unauthorized(STRANGER, "TokenPurchase", ORIGIN)
        assert STRANGER in post.call_args[1]["data"]["text"]

    def test_migration_alerts_have_no_cooldown(self, telegram, post, launch_id):
        record = MigrationRecord(launch_id, MigrationStatus.MIGRATED, chain_id=ORIGIN, pair_address="0xpair")
        assert telegram.notify_migration(record)
        assert telegram.notify_migration(record)
        assert "0xpair" in post.call_args[1]["data"]["text"]
