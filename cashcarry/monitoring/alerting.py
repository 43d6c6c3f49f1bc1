"""
Operator alerts for hedge risk events.

Sends notifications via webhook (Telegram, Discord or generic JSON).
Configure via environment variables:
  ALERT_WEBHOOK_URL  - Telegram bot URL, Discord webhook URL or any JSON endpoint
  ALERT_CHAT_ID      - Telegram chat ID (required for Telegram, ignored otherwise)

Without a webhook, alerts are logged only.
"""
import asyncio
import os
from datetime import datetime, timezone

import aiohttp

from cashcarry.monitoring.logger import get_logger

logger = get_logger(__name__)

# Max 1 alert per event type per cooldown window unless urgent
_last_alert_times: dict[str, datetime] = {}
_cooldown_seconds = int(os.environ.get("ALERT_COOLDOWN_SECONDS", "300"))


def configure_alerts(webhook_url: str | None = None, chat_id: str | None = None, cooldown_seconds: int | None = None) -> None:
    """Apply monitoring config. Variables already set in the environment win."""
    global _cooldown_seconds
    if webhook_url:
        os.environ.setdefault("ALERT_WEBHOOK_URL", webhook_url)
    if chat_id:
        os.environ.setdefault("ALERT_CHAT_ID", chat_id)
    if cooldown_seconds is not None and "ALERT_COOLDOWN_SECONDS" not in os.environ:
        _cooldown_seconds = cooldown_seconds


def _is_telegram(url: str) -> bool:
    return "api.telegram.org" in url


def _is_discord(url: str) -> bool:
    return "discord.com/api/webhooks" in url or "discordapp.com/api/webhooks" in url


def _build_payload(url: str, chat_id: str, event_type: str, message: str, urgent: bool, now: datetime) -> dict:
    formatted = f"{'🚨' if urgent else '📊'} [{event_type}] {now.strftime('%H:%M:%S UTC')}\n{message}"
    if _is_telegram(url):
        return {"chat_id": chat_id, "text": formatted}
    if _is_discord(url):
        return {"content": formatted}
    return {
        "event_type": event_type,
        "message": message,
        "timestamp": now.isoformat(),
        "urgent": urgent,
    }


async def send_alert(event_type: str, message: str, urgent: bool = False) -> None:
    """
    Send an alert notification.

    Args:
        event_type: e.g. "HEDGE_UNHEDGED", "HEDGE_EMERGENCY_UNWIND", "KILL_SWITCH"
        message: Human-readable message
        urgent: If True, bypass rate limiting
    """
    webhook_url = os.environ.get("ALERT_WEBHOOK_URL", "").strip()
    chat_id = os.environ.get("ALERT_CHAT_ID", "").strip()

    if not webhook_url:
        logger.info("Alert (no webhook configured)", event_type=event_type, message=message, urgent=urgent)
        return

    now = datetime.now(timezone.utc)
    if not urgent:
        last = _last_alert_times.get(event_type)
        if last and (now - last).total_seconds() < _cooldown_seconds:
            return
    _last_alert_times[event_type] = now

    payload = _build_payload(webhook_url, chat_id, event_type, message, urgent, now)
    try:
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=10)) as session:
            async with session.post(webhook_url, json=payload) as resp:
                if resp.status >= 400:
                    body = await resp.text()
                    logger.warning("Alert webhook failed", status=resp.status, body=body[:200])
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        # Alert failures must never interrupt hedge handling
        logger.warning("Alert send failed (non-fatal)", event_type=event_type, error=str(e))


def send_alert_sync(event_type: str, message: str, urgent: bool = False) -> None:
    """Synchronous wrapper for send_alert (for use outside async context)."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        asyncio.run(send_alert(event_type, message, urgent))
        return
    loop.create_task(send_alert(event_type, message, urgent))
