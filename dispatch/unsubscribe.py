"""
Unsubscribe Link Codec.

Token format:  <base64url(JSON payload)>.<base64url(HMAC-SHA256(payload part))>

The dispatcher only issues tokens; verification is used by the public
unsubscribe endpoint and the `verify-token` CLI command.
"""

import base64
import binascii
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional
from urllib.parse import quote

import config
from database import utcnow

logger = logging.getLogger("campaigns.unsubscribe")

ERROR_EXPIRED = "expired"
ERROR_INVALID_SIGNATURE = "invalid_signature"
ERROR_INVALID_FORMAT = "invalid_format"

FOOTER_TEXTS = {
    "en": {
        "text": "If you no longer wish to receive these emails, you can",
        "link": "unsubscribe here",
    },
    "gr": {
        "text": "Εάν δεν επιθυμείτε πλέον να λαμβάνετε αυτά τα emails, μπορείτε να",
        "link": "καταργήσετε την εγγραφή σας εδώ",
    },
}


@dataclass
class VerifyResult:
    valid: bool
    payload: Optional[Dict] = None
    error: Optional[str] = None


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


def _sign(payload_part: str, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), payload_part.encode("ascii"), hashlib.sha256).digest()
    return _b64encode(digest)


def _epoch_ms(moment: datetime) -> int:
    return int((moment - datetime(1970, 1, 1)).total_seconds() * 1000)


def issue(contact_id, website_id, email: str, now: Optional[datetime] = None,
          secret: Optional[str] = None, lifetime_days: Optional[int] = None) -> str:
    now = now or utcnow()
    lifetime = timedelta(days=lifetime_days if lifetime_days is not None else config.UNSUBSCRIBE_TOKEN_DAYS)
    payload = {
        "contactId": str(contact_id),
        "websiteId": str(website_id),
        "email": email,
        "issuedAt": _epoch_ms(now),
        "expiresAt": _epoch_ms(now + lifetime),
    }
    payload_part = _b64encode(json.dumps(payload, separators=(",", ":")).encode("utf-8"))
    return f"{payload_part}.{_sign(payload_part, secret or config.UNSUBSCRIBE_SECRET)}"


def verify(token: str, now: Optional[datetime] = None, secret: Optional[str] = None) -> VerifyResult:
    if not token or token.count(".") != 1:
        return VerifyResult(False, error=ERROR_INVALID_FORMAT)

    payload_part, signature = token.split(".")
    try:
        payload_part.encode("ascii")
        signature.encode("ascii")
    except UnicodeEncodeError:
        return VerifyResult(False, error=ERROR_INVALID_FORMAT)

    expected = _sign(payload_part, secret or config.UNSUBSCRIBE_SECRET)
    if not hmac.compare_digest(signature, expected):
        return VerifyResult(False, error=ERROR_INVALID_SIGNATURE)

    try:
        payload = json.loads(_b64decode(payload_part).decode("utf-8"))
        expires_at = int(payload["expiresAt"])
    except (binascii.Error, ValueError, KeyError, TypeError) as e:
        logger.warning(f"Malformed unsubscribe payload: {e}")
        return VerifyResult(False, error=ERROR_INVALID_FORMAT)

    if _epoch_ms(now or utcnow()) > expires_at:
        return VerifyResult(False, payload=payload, error=ERROR_EXPIRED)

    return VerifyResult(True, payload=payload)


def build_url(base_url: str, contact_id, website_id, email: str, now: Optional[datetime] = None) -> str:
    token = issue(contact_id, website_id, email, now=now)
    return f"{base_url.rstrip('/')}/unsubscribe?token={quote(token, safe='')}"


def footer_language(language: Optional[str]) -> str:
    return "gr" if (language or "").lower() in ("gr", "el") else "en"


def render_footer(unsubscribe_url: str, language: Optional[str] = "en") -> str:
    texts = FOOTER_TEXTS[footer_language(language)]
    return f"""
    <div style="margin-top: 40px; padding-top: 20px; border-top: 1px solid #e5e7eb; text-align: center; font-size: 12px; color: #6b7280;">
      <p style="margin: 0;">
        {texts["text"]} <a href="{unsubscribe_url}" style="color: #6b7280; text-decoration: underline;">{texts["link"]}</a>.
      </p>
    </div>
    """


def inject_footer(html: str, footer: str) -> str:
    """Place the footer right before </body>, or append it when there is none."""
    index = html.lower().rfind("</body>")
    if index == -1:
        return html + footer
    return html[:index] + footer + html[index:]
