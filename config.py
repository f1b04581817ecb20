import os
from dotenv import load_dotenv
from typing import Dict

load_dotenv()

# Database
DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017/campaigns")

# SMTP transport
SMTP_HOST = os.getenv("SMTP_HOST", "localhost")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USERNAME = os.getenv("SMTP_USERNAME", "")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD", "")
SMTP_USE_TLS = os.getenv("SMTP_USE_TLS", "true").lower() == "true"
SMTP_TIMEOUT_SECONDS = int(os.getenv("SMTP_TIMEOUT_SECONDS", "60"))

# Used when a campaign has no sender of its own
DEFAULT_FROM_EMAIL = os.getenv("DEFAULT_FROM_EMAIL", "newsletter@example.com")
DEFAULT_FROM_NAME = os.getenv("DEFAULT_FROM_NAME", "Newsletter")

# Unsubscribe links
APP_BASE_URL = os.getenv("APP_BASE_URL", "http://localhost:5000").rstrip("/")
UNSUBSCRIBE_SECRET = os.getenv("UNSUBSCRIBE_SECRET", "dev-unsubscribe-secret")
UNSUBSCRIBE_TOKEN_DAYS = int(os.getenv("UNSUBSCRIBE_TOKEN_DAYS", "14"))

# Scheduler
POLL_INTERVAL_SECONDS = int(os.getenv("POLL_INTERVAL_SECONDS", "60"))

# A claimed campaign whose lease is not renewed within this window is
# considered abandoned (crashed sender) and reverted by the next poll.
CLAIM_LEASE_MINUTES = int(os.getenv("CLAIM_LEASE_MINUTES", "15"))
# The lease is renewed once half of it has elapsed, and additionally every
# LEASE_RENEW_EVERY recipients (0 disables the count-based renewal).
LEASE_RENEW_EVERY = int(os.getenv("LEASE_RENEW_EVERY", "25"))

# Monthly email limits per plan tier
EMAIL_LIMIT_BASIC = int(os.getenv("EMAIL_LIMIT_BASIC", "0"))
EMAIL_LIMIT_ESSENTIAL = int(os.getenv("EMAIL_LIMIT_ESSENTIAL", "3000"))
EMAIL_LIMIT_PRO = int(os.getenv("EMAIL_LIMIT_PRO", "10000"))


def parse_addon_limits() -> Dict[str, int]:
    """Parse add-on caps from ADDON_EMAIL_LIMITS ("product:cap,product:cap")."""
    raw = os.getenv("ADDON_EMAIL_LIMITS", "newsletter:15000,newsletter_100:100000")
    limits = {}
    for item in raw.split(","):
        if ":" not in item:
            continue
        product_id, cap = item.split(":", 1)
        if product_id.strip():
            limits[product_id.strip()] = int(cap.strip())
    return limits

ADDON_EMAIL_LIMITS = parse_addon_limits()

# Fire-and-forget work (alerts)
BACKGROUND_QUEUE_SIZE = int(os.getenv("BACKGROUND_QUEUE_SIZE", "1000"))

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("LOG_FILE", "")

# Alerts (Slack / Discord / Telegram webhook)
ALERT_WEBHOOK_URL = os.getenv("ALERT_WEBHOOK_URL", "")
ALERT_CHANNEL = os.getenv("ALERT_CHANNEL", "slack").lower()
TELEGRAM_CHAT_ID = os.getenv("TELEGRAM_CHAT_ID", "")
