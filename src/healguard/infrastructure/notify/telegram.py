# src/healguard/infrastructure/notify/telegram.py
"""Telegram delivery channel for escalations and critical alerts."""

import asyncio
import html
import logging
from typing import Optional, Union

from telegram import Bot
from telegram.constants import ParseMode
from telegram.error import RetryAfter, TimedOut, NetworkError
from telegram.request import HTTPXRequest

from healguard.config import settings

log = logging.getLogger(__name__)

SEVERITY_ICONS = {
    "critical": "🚨",
    "high": "⚠️",
    "moderate": "🔶",
    "low": "ℹ️",
}


class TelegramChannel:
    """Sends alert text to one chat through a pooled Bot connection."""

    name = "telegram"

    def __init__(self, bot_token: Optional[str] = None, chat_id: Optional[Union[int, str]] = None,
                 timeout: Optional[float] = None):
        self.bot_token = bot_token or settings.TELEGRAM_BOT_TOKEN
        if not self.bot_token:
            raise ValueError("Telegram bot token is required")
        self.chat_id = chat_id or settings.TELEGRAM_ALERT_CHAT_ID
        timeout = timeout or settings.NOTIFY_TIMEOUT_SECONDS

        request = HTTPXRequest(
            connection_pool_size=8,
            read_timeout=timeout,
            write_timeout=timeout,
            connect_timeout=5.0,
        )
        self.bot = Bot(token=self.bot_token, request=request)

    @staticmethod
    def format(subject: str, body: str, severity: str) -> str:
        icon = SEVERITY_ICONS.get(severity, "ℹ️")
        return f"{icon} <b>{html.escape(subject)}</b>\n{html.escape(body)}"

    async def _send_text(self, chat_id: Union[int, str], text: str, retries: int = 3) -> bool:
        try:
            await self.bot.send_message(
                chat_id=chat_id,
                text=text,
                parse_mode=ParseMode.HTML,
                disable_web_page_preview=True,
            )
            return True
        except RetryAfter as e:
            if retries <= 0:
                log.error(f"Telegram flood limit persisted for {chat_id}")
                return False
            delay = e.retry_after.total_seconds() if hasattr(e.retry_after, "total_seconds") else e.retry_after
            log.warning(f"Telegram flood limit. Sleeping {delay}s")
            await asyncio.sleep(delay)
            return await self._send_text(chat_id, text, retries - 1)
        except (TimedOut, NetworkError) as e:
            if retries > 0:
                await asyncio.sleep(1)
                return await self._send_text(chat_id, text, retries - 1)
            log.error(f"Telegram network failure for {chat_id}: {e}")
            return False

    async def send(self, subject: str, body: str, severity: str) -> bool:
        if not self.chat_id:
            log.warning("TELEGRAM_ALERT_CHAT_ID is not set; telegram notification dropped.")
            return False
        return await self._send_text(self.chat_id, self.format(subject, body, severity))
