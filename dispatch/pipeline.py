"""
Campaign send pipeline, shared by polled and interactive sends.

    status → content → subscription → entitlement → resolve → quota hold
        → claim → dispatch → mark sent + commit
                          ↘ (batch-fatal) rollback + commit what was delivered

Everything before the claim only reads or holds quota, so a rejected
campaign is never left in `sending`.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Optional

from database import utcnow
from dispatch import alerts
from dispatch.background import BackgroundTasks
from dispatch.claims import Claim, ClaimStateMachine, SendMode, ensure_claimable
from dispatch.dispatcher import DispatchResult, Dispatcher
from dispatch.errors import (
    AlreadySending,
    CampaignError,
    CampaignNotFound,
    NoContent,
    NoRecipients,
    NoSubscription,
    QuotaExceeded,
    error_response,
)
from dispatch.quota import QuotaLedger, Reservation
from dispatch.recipients import load_contacts, resolve

logger = logging.getLogger("campaigns.pipeline")


@dataclass
class SendOutcome:
    campaign_id: str
    sent_count: int
    fail_count: int
    skipped_count: int
    recipient_count: int
    quota: Dict

    def to_dict(self) -> Dict:
        return {
            "success": True,
            "campaign_id": self.campaign_id,
            "sent_count": self.sent_count,
            "fail_count": self.fail_count,
            "skipped_count": self.skipped_count,
            "recipient_count": self.recipient_count,
            "quota": self.quota,
        }


class CampaignPipeline:
    def __init__(self, store, transport, clock: Callable[[], datetime] = utcnow,
                 background: Optional[BackgroundTasks] = None, base_url: str = None,
                 lease_minutes: int = None, renew_every: int = None):
        self.store = store
        self.clock = clock
        self.background = background or BackgroundTasks()
        self.quota = QuotaLedger(store, clock=clock)
        self.claims = ClaimStateMachine(store, clock=clock, lease_minutes=lease_minutes)
        self.dispatcher = Dispatcher(
            store, transport, self.claims,
            base_url=base_url, renew_every=renew_every, clock=clock,
        )

    def load_content(self, campaign: Dict) -> str:
        """Template HTML wins over inline HTML; neither present → NoContent."""
        html = None
        if campaign.get("template_id"):
            html = self.store.templates.get_html(campaign["template_id"])
        if not html or not html.strip():
            html = campaign.get("email_html")
        if not html or not html.strip():
            raise NoContent("Campaign has no email content", campaign.get("_id"))
        return html

    async def run(self, campaign: Dict, mode: SendMode) -> SendOutcome:
        """
        Send one campaign. Raises a CampaignError subclass when the campaign
        is rejected (nothing changed) and re-raises batch-fatal errors after
        the claim has been rolled back.
        """
        campaign_id = campaign["_id"]
        website_id = campaign["website_id"]

        ensure_claimable(campaign, mode)
        base_html = self.load_content(campaign)

        subscription = self.store.subscriptions.get_active_plan(website_id)
        if not subscription:
            raise NoSubscription("No active subscription for this website", campaign_id)
        limit = self.quota.require_entitled(subscription, campaign_id)

        contacts = await asyncio.to_thread(load_contacts, self.store, website_id)
        recipients = resolve(campaign, contacts)
        if not recipients:
            raise NoRecipients("Campaign has no matching recipients", campaign_id)

        to_send, already = self.dispatcher.split_delivered(campaign, recipients)

        reservation = self.quota.reserve(subscription, len(to_send), limit)
        if not reservation.ok:
            raise QuotaExceeded(campaign_id=campaign_id, **reservation.as_details())

        claim = self.claims.claim(campaign, mode, reservation)
        if claim is None:
            self.quota.release(reservation)
            raise AlreadySending("Campaign already claimed by another process", campaign_id, contended=True)

        result = DispatchResult(skipped_count=len(already))
        try:
            await self.dispatcher.dispatch(claim, campaign, to_send, base_html, result)
        except BaseException as e:
            logger.error(
                f"Campaign {campaign_id} failed mid-dispatch after {result.success_count} delivered, "
                f"reverting status: {e}",
                extra={"campaign_id": str(campaign_id), "mode": mode.value},
            )
            held = self.claims.rollback(claim)
            self._settle(claim, reservation, result, held)
            raise

        held = False
        try:
            held = self.claims.mark_sent(claim, result.success_count + result.skipped_count, len(recipients))
        finally:
            self._settle(claim, reservation, result, held)

        return SendOutcome(
            campaign_id=str(campaign_id),
            sent_count=result.success_count,
            fail_count=result.fail_count,
            skipped_count=result.skipped_count,
            recipient_count=len(recipients),
            quota=self.quota.usage(subscription, limit),
        )

    def _settle(self, claim: Claim, reservation: Reservation, result: DispatchResult, held: bool):
        """
        Charge every delivery of this claim, finished or aborted. A claim
        that still held its hold charges its own count and drops the hold;
        one taken over by the stale sweep charges only what the sweep did not.
        """
        try:
            if held:
                charged = result.success_count
            else:
                charged = self.claims.unsettled_deliveries(claim, result.success_count)
            self.quota.commit(reservation, charged, held=held)
        except Exception as e:
            logger.error(f"Failed to settle quota for campaign {claim.campaign_id}: {e}", exc_info=True)

    async def send_now(self, campaign_id, website_id) -> Dict:
        """Interactive send; always returns a JSON-ready dict."""
        campaign = self.store.campaigns.get_by_id(campaign_id, website_id)
        if not campaign:
            return CampaignNotFound("Campaign not found", campaign_id).to_dict()

        try:
            outcome = await self.run(campaign, SendMode.INTERACTIVE)
        except CampaignError as e:
            logger.warning(f"Campaign {campaign_id} not sent: {e.reason} ({e.message})")
            return e.to_dict()
        except Exception as e:
            logger.error(f"Campaign {campaign_id} send failed: {e}", exc_info=True)
            self.background.submit(
                alerts.alert_campaign_failed, str(campaign_id), campaign.get("title") or "", str(e),
                name="alert_campaign_failed",
            )
            return error_response(e)

        return outcome.to_dict()
