# src/healguard/infrastructure/notify/dispatcher.py
"""
Outbound notification fan-out.

State transitions never wait on delivery: callers use `fire_and_forget`, and every
channel's outcome is recorded on its own (log + prometheus counter).
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any, Set

import httpx

from healguard.config import settings
from healguard.infrastructure.monitoring.metrics import NOTIFICATIONS
from .telegram import TelegramChannel

log = logging.getLogger(__name__)

SLACK = "slack"
TELEGRAM = "telegram"
SYSTEM = "system"


@dataclass
class Notification:
    subject: str
    body: str
    severity: str = "low"
    # explicit channel overrides severity routing
    channel: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)


def route_channels(severity: str) -> List[str]:
    if severity == "critical":
        return [SLACK, TELEGRAM]
    if severity == "high":
        return [SLACK]
    return [SYSTEM]


class SlackChannel:
    name = SLACK

    def __init__(self, webhook_url: Optional[str] = None, timeout: Optional[float] = None,
                 client: Optional[httpx.AsyncClient] = None):
        self.webhook_url = webhook_url or settings.SLACK_WEBHOOK_URL
        self.client = client or httpx.AsyncClient(timeout=timeout or settings.NOTIFY_TIMEOUT_SECONDS)

    async def send(self, subject: str, body: str, severity: str) -> bool:
        if not self.webhook_url:
            log.warning("SLACK_WEBHOOK_URL is not set; slack notification dropped.")
            return False
        payload = {"text": f"[{severity.upper()}] {subject}\n{body}"}
        try:
            response = await self.client.post(self.webhook_url, json=payload)
        except httpx.HTTPError as e:
            log.error(f"Slack webhook request failed: {e}")
            return False
        if response.status_code >= 300:
            log.error(f"Slack webhook rejected notification: {response.status_code} {response.text[:200]}")
            return False
        return True


class SystemChannel:
    """Writes the notification to the application log."""

    name = SYSTEM

    async def send(self, subject: str, body: str, severity: str) -> bool:
        level = logging.WARNING if severity in ("high", "critical") else logging.INFO
        log.log(level, f"[notification:{severity}] {subject} | {body}")
        return True


class NotificationDispatcher:
    def __init__(self, channels: Optional[Dict[str, Any]] = None):
        self.channels: Dict[str, Any] = channels if channels is not None else {SYSTEM: SystemChannel()}
        self.channels.setdefault(SYSTEM, SystemChannel())
        self._tasks: Set[asyncio.Task] = set()

    async def dispatch(self, notification: Notification) -> Dict[str, bool]:
        targets = [notification.channel] if notification.channel else route_channels(notification.severity)
        outcomes: Dict[str, bool] = {}
        for name in targets:
            channel = self.channels.get(name)
            if channel is None:
                # Unconfigured channels fall back to the log so nothing is silently lost.
                channel = self.channels[SYSTEM]
                name = SYSTEM
                if name in outcomes:
                    continue
            try:
                ok = await channel.send(notification.subject, notification.body, notification.severity)
            except Exception as e:
                log.error(f"Notification channel '{name}' failed: {e}", exc_info=True)
                ok = False
            outcomes[name] = ok
            NOTIFICATIONS.labels(channel=name, outcome="success" if ok else "failure").inc()
        return outcomes

    def fire_and_forget(self, notification: Notification) -> Optional[asyncio.Task]:
        """Schedules `dispatch` on the running loop and returns immediately."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            log.warning(f"No running event loop; notification '{notification.subject}' logged only.")
            log.info(f"[notification:{notification.severity}] {notification.subject} | {notification.body}")
            return None
        task = loop.create_task(self.dispatch(notification))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Waits for in-flight deliveries (shutdown and tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


def build_dispatcher() -> NotificationDispatcher:
    channels: Dict[str, Any] = {SYSTEM: SystemChannel()}
    if settings.SLACK_WEBHOOK_URL:
        channels[SLACK] = SlackChannel()
    if settings.TELEGRAM_BOT_TOKEN:
        try:
            channels[TELEGRAM] = TelegramChannel()
        except ValueError as e:
            log.error(f"Telegram channel disabled: {e}")
    return NotificationDispatcher(channels)
