"""
Async SMTP transport — one outgoing email per call via aiosmtplib.

    send(OutgoingEmail) -> {"success": bool, "message_id"?: str, "error"?: str, "error_code"?: int}

Failures are reported in the result, never raised, so one bad recipient
cannot abort a campaign. Fresh connection per send (many relays drop idle
connections between sends).
"""

import asyncio
import html as html_lib
import logging
import re
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, make_msgid
from typing import Optional

import aiosmtplib

import config

logger = logging.getLogger("campaigns.transport")

_BLOCK_TAGS = re.compile(r"<\s*(br|/p|/div|/h[1-6]|/li|/tr)\s*/?\s*>", re.IGNORECASE)
_DROP_BLOCKS = re.compile(r"<(style|script|head)[^>]*>.*?</\1\s*>", re.IGNORECASE | re.DOTALL)
_TAGS = re.compile(r"<[^>]+>")


def html_to_text(html: str) -> str:
    """Rough plain-text rendering used when a campaign has no text message."""
    text = _DROP_BLOCKS.sub("", html or "")
    text = _BLOCK_TAGS.sub("\n", text)
    text = html_lib.unescape(_TAGS.sub("", text))
    lines = [line.strip() for line in text.splitlines()]
    return re.sub(r"\n{3,}", "\n\n", "\n".join(lines)).strip()


@dataclass
class OutgoingEmail:
    to: str
    subject: str
    html: str
    text: str = ""
    from_email: Optional[str] = None
    from_name: Optional[str] = None
    reply_to: Optional[str] = None


class SmtpTransport:
    def __init__(self, host: str = None, port: int = None, username: str = None,
                 password: str = None, use_tls: bool = None, timeout: int = None):
        self.host = host or config.SMTP_HOST
        self.port = port or config.SMTP_PORT
        self.username = username if username is not None else config.SMTP_USERNAME
        self.password = password if password is not None else config.SMTP_PASSWORD
        self.use_tls = config.SMTP_USE_TLS if use_tls is None else use_tls
        self.timeout = timeout or config.SMTP_TIMEOUT_SECONDS

    def build_message(self, email: OutgoingEmail) -> MIMEMultipart:
        from_email = email.from_email or config.DEFAULT_FROM_EMAIL
        from_name = email.from_name or config.DEFAULT_FROM_NAME

        msg = MIMEMultipart("alternative")
        msg.attach(MIMEText(email.text or html_to_text(email.html), "plain", "utf-8"))
        msg.attach(MIMEText(email.html, "html", "utf-8"))

        domain = from_email.split("@")[1] if "@" in from_email else None
        msg["Message-ID"] = make_msgid(domain=domain)
        msg["Subject"] = email.subject or ""
        msg["From"] = formataddr((from_name, from_email))
        msg["To"] = email.to
        msg["Reply-To"] = email.reply_to or from_email
        return msg

    async def send(self, email: OutgoingEmail) -> dict:
        from_email = email.from_email or config.DEFAULT_FROM_EMAIL
        try:
            msg = self.build_message(email)
            message_id = msg["Message-ID"]

            smtp = aiosmtplib.SMTP(
                hostname=self.host,
                port=self.port,
                timeout=self.timeout,
                start_tls=self.use_tls,
            )
            await smtp.connect()
            if self.username:
                await smtp.login(self.username, self.password)
            await smtp.sendmail(from_email, [email.to], msg.as_string())
            await smtp.quit()

            logger.debug(
                "smtp_transmitted",
                extra={"to": email.to, "from": from_email, "message_id": message_id[:40]},
            )
            return {"success": True, "message_id": message_id}

        except aiosmtplib.SMTPException as e:
            error_code = getattr(e, "code", None)
            logger.error(
                "smtp_error",
                extra={"to": email.to, "from": from_email, "error_code": error_code, "error": str(e)[:200]},
            )
            return {
                "success": False,
                "error": f"SMTP error sending to {email.to}: {e}",
                "error_code": error_code,
            }

        except (asyncio.TimeoutError, OSError) as e:
            return {
                "success": False,
                "error": f"Connection timeout to {email.to}: {e}",
            }

        except Exception as e:
            return {
                "success": False,
                "error": f"Unexpected error sending to {email.to}: {e}",
            }
