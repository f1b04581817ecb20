"""
Error taxonomy for campaign sends.

Every error carries a machine-readable `reason` so the interactive send
surface can return it as-is; polled sends only log them.
"""

from typing import Dict, Optional


class CampaignError(Exception):
    reason = "campaign_error"

    def __init__(self, message: str = "", campaign_id=None, **details):
        super().__init__(message or self.reason)
        self.message = message or self.reason
        self.campaign_id = str(campaign_id) if campaign_id is not None else None
        self.details: Dict = details

    def to_dict(self) -> Dict:
        return {
            "success": False,
            "error": self.reason,
            "message": self.message,
            **self.details,
        }


class CampaignNotFound(CampaignError):
    reason = "not_found"


class AlreadySent(CampaignError):
    reason = "already_sent"


class AlreadySending(CampaignError):
    reason = "already_sending"


class NoContent(CampaignError):
    reason = "no_content"


class NoSubscription(CampaignError):
    reason = "no_subscription"


class TierNotEntitled(CampaignError):
    reason = "tier_not_entitled"


class NoRecipients(CampaignError):
    reason = "no_recipients"


class QuotaExceeded(CampaignError):
    reason = "quota_exceeded"

    def __init__(self, message: str = "", campaign_id=None, limit: int = 0,
                 used: int = 0, remaining: int = 0, requested: int = 0):
        super().__init__(
            message or f"Sending {requested} emails would exceed the monthly limit "
                       f"({remaining} of {limit} remaining)",
            campaign_id,
            limit=limit,
            used=used,
            remaining=remaining,
            requested=requested,
        )


class InvalidStatus(CampaignError):
    reason = "invalid_status"


class ClaimLost(CampaignError):
    """The campaign stopped being ours mid-dispatch (lease expired and swept)."""

    reason = "claim_lost"


# Errors that are rejected before any claim is attempted
VALIDATION_ERRORS = (
    CampaignNotFound,
    AlreadySent,
    AlreadySending,
    InvalidStatus,
    NoContent,
    NoSubscription,
    TierNotEntitled,
    NoRecipients,
    QuotaExceeded,
)


def error_response(error: Exception, reason: Optional[str] = None) -> Dict:
    """JSON-ready failure body for anything raised by a send."""
    if isinstance(error, CampaignError):
        return error.to_dict()
    return {
        "success": False,
        "error": reason or "dispatch_failed",
        "message": str(error)[:300],
    }
