"""
Campaign Claim State Machine.

    draft ──► scheduled ──► sending ──► sent
      ▲  ◄──    │  ▲           │
      │         │  └───────────┘  rollback (back to the pre-claim state)
      └─────────┴─────────────────┘

`status` is the only lock: moving a campaign into `sending` is a single
conditional findOneAndUpdate, so exactly one caller wins no matter how many
pollers or manual sends race for it. While held, the campaign carries a
claim token and a lease; a lease that is not renewed (sender crashed
mid-send) is reverted by the next poll's stale sweep.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, Optional, Tuple

from pymongo.errors import PyMongoError

import config
from database import CampaignStatus, to_object_id, utcnow
from dispatch.errors import AlreadySending, AlreadySent, ClaimLost, InvalidStatus
from dispatch.quota import Reservation
from utils.logging_utils import retry_with_backoff

logger = logging.getLogger("campaigns.claims")

TRANSITIONS = {
    CampaignStatus.DRAFT: {CampaignStatus.SCHEDULED, CampaignStatus.SENDING},
    CampaignStatus.SCHEDULED: {CampaignStatus.DRAFT, CampaignStatus.SENDING},
    CampaignStatus.SENDING: {CampaignStatus.SENT, CampaignStatus.SCHEDULED, CampaignStatus.DRAFT},
    CampaignStatus.SENT: set(),
}


class SendMode(Enum):
    POLLED = "polled"
    INTERACTIVE = "interactive"


ALLOWED_FROM = {
    SendMode.POLLED: (CampaignStatus.SCHEDULED,),
    SendMode.INTERACTIVE: (CampaignStatus.SCHEDULED, CampaignStatus.DRAFT),
}


def parse_status(value) -> Optional[CampaignStatus]:
    if isinstance(value, CampaignStatus):
        return value
    try:
        return CampaignStatus(str(value))
    except ValueError:
        return None


def can_transition(src: CampaignStatus, dst: CampaignStatus) -> bool:
    return dst in TRANSITIONS.get(src, set())


def ensure_claimable(campaign: Dict, mode: SendMode) -> CampaignStatus:
    """Reject campaigns that cannot enter `sending` for this mode."""
    status = parse_status(campaign.get("status"))
    campaign_id = campaign.get("_id")
    if status is CampaignStatus.SENT:
        raise AlreadySent("Campaign has already been sent", campaign_id)
    if status is CampaignStatus.SENDING:
        raise AlreadySending("Campaign is currently being sent", campaign_id)
    if status not in ALLOWED_FROM[mode]:
        raise InvalidStatus(
            f"Campaign in status '{campaign.get('status')}' cannot be sent ({mode.value})",
            campaign_id,
            status=campaign.get("status"),
        )
    return status


@dataclass
class Claim:
    campaign_id: object
    website_id: object
    token: str
    claimed_from: CampaignStatus
    lease_expires_at: datetime
    reservation: Optional[Reservation] = None


class ClaimStateMachine:
    def __init__(self, store, clock: Callable[[], datetime] = utcnow,
                 lease_minutes: int = None):
        self.store = store
        self.clock = clock
        self.lease = timedelta(minutes=lease_minutes or config.CLAIM_LEASE_MINUTES)

    def claim(self, campaign: Dict, mode: SendMode,
              reservation: Optional[Reservation] = None) -> Optional[Claim]:
        """
        Try to take the campaign. Returns None when someone else holds it or
        it is no longer in a claimable state; that is contention, not an error.

        The quota hold travels with the claim: whoever later ends the claim
        (mark sent, rollback or the stale sweep) is the one returning it.
        """
        now = self.clock()
        token = uuid.uuid4().hex
        lease_expires_at = now + self.lease
        fields = {
            "claim_token": token,
            "claimed_at": now,
            "lease_expires_at": lease_expires_at,
        }
        if reservation is not None and reservation.count > 0:
            fields["reservation"] = {
                "subscription_id": to_object_id(reservation.subscription_id),
                "count": reservation.count,
            }

        for status in ALLOWED_FROM[mode]:
            try:
                before = self.store.campaigns.claim(campaign["_id"], campaign["website_id"], status.value, fields)
            except BaseException:
                self._abandon(campaign["_id"], token, status, reservation)
                raise
            if before is not None:
                break
        else:
            logger.info(
                f"Campaign {campaign['_id']} already claimed by another process, skipping",
                extra={"campaign_id": str(campaign["_id"]), "mode": mode.value},
            )
            return None

        logger.info(
            f"Claimed campaign {campaign['_id']} ({status.value} → sending)",
            extra={"campaign_id": str(campaign["_id"]), "mode": mode.value, "lease_until": lease_expires_at.isoformat()},
        )
        return Claim(
            campaign_id=campaign["_id"],
            website_id=campaign["website_id"],
            token=token,
            claimed_from=status,
            lease_expires_at=lease_expires_at,
            reservation=reservation,
        )

    def _abandon(self, campaign_id, token: str, status: CampaignStatus,
                 reservation: Optional[Reservation]):
        """
        The claim write failed, possibly after it was applied. Undo it if it
        landed and return the hold; if storage cannot even tell us, leave
        both to the stale sweep and the monthly reconcile.
        """
        try:
            self.store.campaigns.release_claim(campaign_id, token, status.value, self.clock())
            if reservation is not None:
                self.store.subscriptions.release(reservation.subscription_id, reservation.count)
        except Exception as e:
            logger.error(f"Could not clean up failed claim on campaign {campaign_id}: {e}", exc_info=True)

    def lease_due(self, claim: Claim) -> bool:
        """True once half the lease has run out."""
        return self.clock() >= claim.lease_expires_at - self.lease / 2

    def renew(self, claim: Claim):
        lease_expires_at = self.clock() + self.lease
        if not self.store.campaigns.renew_lease(claim.campaign_id, claim.token, lease_expires_at):
            raise ClaimLost("Campaign claim expired or was taken over", claim.campaign_id)
        claim.lease_expires_at = lease_expires_at

    def mark_sent(self, claim: Claim, sent_count: int, recipient_count: int) -> bool:
        """Finish the claim; on return this caller owns the quota hold."""
        sent_at = self.clock()
        if self.store.campaigns.mark_sent(claim.campaign_id, claim.token, sent_count, recipient_count, sent_at) is None:
            raise ClaimLost("Campaign claim was lost before it could be marked sent", claim.campaign_id)
        logger.info(
            f"Campaign {claim.campaign_id} marked sent",
            extra={"campaign_id": str(claim.campaign_id), "sent_count": sent_count},
        )
        return True

    def rollback(self, claim: Claim) -> bool:
        """
        Return the campaign to its pre-claim state. Never raises: a failed
        rollback is logged and the campaign is left for the stale sweep.

        True means this claim was still the owner, and so still holds its
        quota hold; False means the hold is someone else's to return.
        """

        @retry_with_backoff(
            max_retries=2,
            initial_delay=0.5,
            exceptions=(PyMongoError,),
            on_retry=lambda attempt, e, delay: logger.warning(
                f"Rollback of campaign {claim.campaign_id} failed (attempt {attempt}), retrying in {delay}s: {e}"
            ),
        )
        def _release():
            return self.store.campaigns.release_claim(
                claim.campaign_id, claim.token, claim.claimed_from.value, self.clock()
            )

        try:
            reverted = _release() is not None
        except Exception as e:
            logger.error(f"Failed to revert campaign {claim.campaign_id} status: {e}", exc_info=True)
            return False

        if reverted:
            logger.info(f"Reverted campaign {claim.campaign_id} status back to '{claim.claimed_from.value}'")
        else:
            logger.warning(f"Campaign {claim.campaign_id} was no longer held by this claim, nothing to revert")
        return reverted

    def unsettled_deliveries(self, claim: Claim, success_count: int) -> int:
        """
        Deliveries of a claim that lost its hold which the stale sweep has
        not charged yet: recorded rows nobody flagged, plus successes whose
        row never got written.
        """
        recorded = self.store.messages.count_for_claim(claim.campaign_id, claim.token)
        flagged = self.store.messages.charge_claim(claim.campaign_id, claim.token)
        return flagged + max(0, success_count - recorded)

    def sweep_stale(self) -> int:
        """
        Revert claims whose lease ran out, give back their quota hold and
        charge the deliveries the abandoned claim had recorded.
        """
        now = self.clock()
        reverted = 0
        for doc in self.store.campaigns.get_expired_claims(now):
            restore, reservation = self._restore_target(doc)
            before = self.store.campaigns.revert_expired_claim(doc["_id"], doc.get("claim_token"), restore, now)
            if before is None:
                continue
            reverted += 1
            charged = 0
            if reservation:
                charged = self.store.messages.charge_claim(doc["_id"], doc.get("claim_token"))
                self.store.subscriptions.commit(reservation[0], charged, reservation[1])
            logger.warning(
                f"Released stale claim on campaign {doc['_id']} (lease expired "
                f"{doc.get('lease_expires_at')}), back to '{restore}', {charged} delivered email(s) charged",
                extra={"campaign_id": str(doc["_id"])},
            )
        return reverted

    @staticmethod
    def _restore_target(doc: Dict) -> Tuple[str, Optional[Tuple[object, int]]]:
        claimed_from = parse_status(doc.get("claimed_from"))
        if claimed_from not in (CampaignStatus.DRAFT, CampaignStatus.SCHEDULED):
            claimed_from = CampaignStatus.SCHEDULED if doc.get("scheduled_for") else CampaignStatus.DRAFT
        held = doc.get("reservation") or {}
        reservation = None
        if held.get("subscription_id") is not None and int(held.get("count") or 0) > 0:
            reservation = (held["subscription_id"], int(held["count"]))
        return claimed_from.value, reservation
