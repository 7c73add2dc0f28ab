#!/usr/bin/env python3
"""
Notification Management Module for Multichain Launchpad Sync
Operator alerts over Telegram, Discord or Pushover

Alerts cover dead-lettered fan-out legs, rejected callers and completed
migrations. Repeats of the same alert key are held back by per-kind
cooldowns.

Version: 1.0.0
"""

import logging
import threading
import time
from datetime import datetime

import requests

from .utils import chain_name, short_id

logger = logging.getLogger(__name__)

DEFAULT_COOLDOWNS = {
    "dead_letter": 5 * 60,
    "unauthorized": 15 * 60,
    "migration": 0,
}


class NotificationManager:
    """Unified notification management with per-key cooldowns"""

    def __init__(self, config, clock=time.time):
        self.config = config
        notifications = config.get("notifications", {})
        self.enabled = notifications.get("enabled", False)
        self.notification_type = notifications.get("type", "telegram")
        self.cooldown_rules = {**DEFAULT_COOLDOWNS, **notifications.get("cooldowns", {})}
        self._last_sent = {}
        self._lock = threading.Lock()
        self._clock = clock

        if self.enabled:
            self.setup_notifications()

    def setup_notifications(self):
        """Check the configured channel has its credentials"""
        required = {
            "telegram": ("bot_token", "chat_id"),
            "discord": ("webhook_url",),
            "pushover": ("user_key", "api_token"),
        }
        fields = required.get(self.notification_type)
        if fields is None:
            logger.error("Unknown notification type: %s", self.notification_type)
            self.enabled = False
            return
        channel = self.config.get("notifications", {}).get(self.notification_type, {})
        missing = [f for f in fields if not channel.get(f)]
        if missing:
            logger.warning(
                "%s notifications disabled, missing %s",
                self.notification_type.title(), ", ".join(missing)
            )
            self.enabled = False

    def should_notify(self, kind, key):
        """True when the cooldown for (kind, key) has expired; records the send time"""
        if not self.enabled:
            return False
        cooldown = self.cooldown_rules.get(kind, 0)
        now = self._clock()
        with self._lock:
            last = self._last_sent.get((kind, key))
            if last is not None and now - last < cooldown:
                logger.debug("Notification %s/%s in cooldown (%.0fs remaining)", kind, key, cooldown - (now - last))
                return False
            self._last_sent[(kind, key)] = now
        return True

    def send_notification(self, message, title="Launchpad Alert"):
        """Send notification via configured method"""
        if not self.enabled:
            return False

        try:
            if self.notification_type == "telegram":
                return self.send_telegram(message, title)
            elif self.notification_type == "discord":
                return self.send_discord(message, title)
            elif self.notification_type == "pushover":
                return self.send_pushover(message, title)
            return False
        except requests.exceptions.RequestException as e:
            logger.error("Failed to send %s notification: %s", self.notification_type, e)
            return False

    def send_telegram(self, message, title):
        telegram_config = self.config["notifications"]["telegram"]
        url = f"https://api.telegram.org/bot{telegram_config['bot_token']}/sendMessage"
        data = {
            "chat_id": telegram_config["chat_id"],
            "text": f"<b>🚨 {title}</b>\n\n{message}",
            "parse_mode": "HTML"
        }
        response = requests.post(url, data=data, timeout=10)
        return response.status_code == 200

    def send_discord(self, message, title):
        webhook_url = self.config["notifications"]["discord"]["webhook_url"]
        embed = {
            "title": f"🚨 {title}",
            "description": message,
            "color": 0xff0000,  # Red color
            "timestamp": datetime.now().isoformat()
        }
        response = requests.post(webhook_url, json={"embeds": [embed]}, timeout=10)
        return response.status_code == 204

    def send_pushover(self, message, title):
        pushover_config = self.config["notifications"]["pushover"]
        data = {
            "token": pushover_config["api_token"],
            "user": pushover_config["user_key"],
            "title": title,
            "message": message,
            "priority": 1  # High priority
        }
        response = requests.post("https://api.pushover.net/1/messages.json", data=data, timeout=10)
        return response.status_code == 200

    # ═══════════════════════════════════════════════════════════════════
    # ALERTS
    # ═══════════════════════════════════════════════════════════════════

    def notify_dead_letter(self, kind, launch_id, chain_id, error, attempts=0, dead_letter_id=None):
        if not self.should_notify("dead_letter", (kind, launch_id, chain_id)):
            return False
        lines = [
            f"Leg: {kind}",
            f"Launch: {short_id(launch_id)}",
            f"Chain: {chain_name(chain_id)} ({chain_id})",
            f"Attempts: {attempts}",
            f"Error: {error}",
        ]
        if dead_letter_id is not None:
            lines.append(f"Redispatch with: launchpad-sync redispatch {dead_letter_id}")
        return self.send_notification("\n".join(lines), title="Fan-out leg dead-lettered")

    def notify_unauthorized(self, caller, event_name, chain_id):
        if not self.should_notify("unauthorized", caller):
            return False
        message = (
            f"Rejected {event_name} from {caller} on {chain_name(chain_id)}.\n"
            f"The caller is not on the allow-list."
        )
        return self.send_notification(message, title="Unauthorized caller")

    def notify_migration(self, record):
        if not self.should_notify("migration", record.launch_id):
            return False
        message = (
            f"Launch {short_id(record.launch_id)} migrated on {chain_name(record.chain_id)}\n"
            f"Pair: {record.pair_address or 'n/a'}\n"
            f"Final price: {record.final_price} wei"
        )
        return self.send_notification(message, title="Curve migrated to DEX")
