"""
Alerting Module — Sends notifications via webhook (Slack, Discord, Telegram).

Used for polled sends, which have no synchronous caller to report to:
- Critical: a campaign send failed mid-dispatch and was rolled back
- Warning: a due campaign was rejected (quota, entitlement, no recipients)
- Info: a campaign finished sending

Alerts are submitted through BackgroundTasks and never awaited by a send.

Configuration via env vars:
    ALERT_WEBHOOK_URL=https://hooks.slack.com/services/...
    ALERT_CHANNEL=slack  (or 'discord', 'telegram')
"""

import logging
from typing import Dict

import aiohttp

import config

logger = logging.getLogger("campaigns.alerts")


class AlertLevel:
    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"


LEVEL_COLORS = {
    AlertLevel.CRITICAL: 0xFF0000,
    AlertLevel.WARNING: 0xFFA500,
    AlertLevel.INFO: 0x36A64F,
}


def build_payload(channel: str, title: str, message: str, level: str) -> Dict:
    """Webhook body for the configured channel; Slack is the default."""
    color = LEVEL_COLORS.get(level, 0x808080)
    if channel == "telegram":
        return {
            "chat_id": config.TELEGRAM_CHAT_ID,
            "text": f"*{title}*\n\n{message}",
            "parse_mode": "Markdown",
        }
    if channel == "discord":
        return {"embeds": [{"title": title, "description": message, "color": color}]}
    return {
        "attachments": [
            {"color": f"#{color:06X}", "title": title, "text": message, "footer": "Campaign Dispatch"}
        ]
    }


def webhook_url(channel: str) -> str:
    if channel == "telegram":
        return f"https://api.telegram.org/bot{config.ALERT_WEBHOOK_URL}/sendMessage"
    return config.ALERT_WEBHOOK_URL


async def send_alert(
    message: str,
    level: str = AlertLevel.INFO,
    title: str = None,
) -> bool:
    """
    Send an alert via the configured webhook.

    Returns:
        True if sent successfully, False otherwise (including when disabled)
    """
    if not config.ALERT_WEBHOOK_URL:
        logger.debug(f"Alert skipped (no webhook): [{level}] {message[:80]}")
        return False

    heading = title or f"Campaign Dispatch — {level.upper()}"
    payload = build_payload(config.ALERT_CHANNEL, heading, message, level)

    try:
        async with aiohttp.ClientSession() as session:
            async with session.post(
                webhook_url(config.ALERT_CHANNEL), json=payload, timeout=aiohttp.ClientTimeout(total=10)
            ) as resp:
                if resp.status in (200, 204):
                    logger.info(f"Alert sent: [{level}] {heading[:60]}")
                    return True
                body = await resp.text()
                logger.error(f"Alert webhook returned {resp.status}: {body[:200]}")
                return False
    except Exception as e:
        logger.error(f"Failed to send alert: {e}")
        return False


# ── Pre-built alert functions ────────────────────────────────────────


async def alert_campaign_failed(campaign_id: str, title: str, error: str):
    await send_alert(
        message=(
            f"Campaign `{title}` ({campaign_id}) failed during dispatch:\n"
            f"```{error[:300]}```\n"
            f"Status was reverted; the next poll will retry it."
        ),
        level=AlertLevel.CRITICAL,
        title="Campaign Send Failed",
    )


async def alert_campaign_rejected(campaign_id: str, title: str, reason: str, details: Dict = None):
    lines = [f"Campaign `{title}` ({campaign_id}) is due but was not sent: {reason}"]
    for key, value in (details or {}).items():
        lines.append(f"• {key}: {value}")
    await send_alert(
        message="\n".join(lines),
        level=AlertLevel.WARNING,
        title="Campaign Not Sent",
    )


async def alert_campaign_sent(campaign_id: str, title: str, sent: int, failed: int):
    await send_alert(
        message=f"Campaign `{title}` ({campaign_id}): {sent} sent, {failed} failed",
        level=AlertLevel.INFO if failed == 0 else AlertLevel.WARNING,
        title="Campaign Sent",
    )
