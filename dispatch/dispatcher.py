"""
Dispatch Executor — sends one claimed campaign to its recipients.

Each recipient is handled independently: a transport failure is counted
and logged, and the loop moves on. Only errors outside the per-recipient
step (losing the claim, storage failing while renewing the lease,
cancellation) abort the batch; the pipeline then rolls the claim back.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

import config
from database import utcnow
from dispatch import unsubscribe
from dispatch.claims import Claim, ClaimStateMachine
from dispatch.transport import OutgoingEmail

logger = logging.getLogger("campaigns.dispatcher")


@dataclass
class RecipientResult:
    contact_id: str
    email: str
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class DispatchResult:
    success_count: int = 0
    fail_count: int = 0
    skipped_count: int = 0
    results: List[RecipientResult] = field(default_factory=list)

    @property
    def attempted(self) -> int:
        return self.success_count + self.fail_count


class Dispatcher:
    def __init__(self, store, transport, claims: ClaimStateMachine,
                 base_url: str = None, renew_every: int = None,
                 clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.transport = transport
        self.claims = claims
        self.base_url = base_url or config.APP_BASE_URL
        self.renew_every = config.LEASE_RENEW_EVERY if renew_every is None else renew_every
        self.clock = clock

    def split_delivered(self, campaign: Dict, recipients: List[Dict]) -> Tuple[List[Dict], List[Dict]]:
        """
        Separate recipients already delivered by an earlier attempt of this
        campaign (one that was rolled back) from the ones still to send.
        """
        delivered = self.store.messages.delivered_emails(campaign["_id"])
        if not delivered:
            return list(recipients), []
        to_send = [r for r in recipients if r.get("email") not in delivered]
        already = [r for r in recipients if r.get("email") in delivered]
        logger.info(
            f"Campaign {campaign['_id']}: skipping {len(already)} recipient(s) delivered by a previous attempt"
        )
        return to_send, already

    def personalize(self, campaign: Dict, base_html: str, contact: Dict) -> str:
        url = unsubscribe.build_url(
            self.base_url,
            contact["_id"],
            campaign["website_id"],
            contact.get("email", ""),
            now=self.clock(),
        )
        footer = unsubscribe.render_footer(url, campaign.get("language"))
        return unsubscribe.inject_footer(base_html, footer)

    def build_email(self, campaign: Dict, base_html: str, contact: Dict) -> OutgoingEmail:
        return OutgoingEmail(
            to=contact["email"],
            subject=campaign.get("subject") or "",
            html=self.personalize(campaign, base_html, contact),
            text=campaign.get("message") or "",
            from_email=campaign.get("sender_email"),
            from_name=campaign.get("sender_name"),
        )

    def _renew_due(self, claim: Claim, index: int) -> bool:
        if self.renew_every and index % self.renew_every == 0:
            return True
        return self.claims.lease_due(claim)

    async def _record(self, claim: Claim, message_id: str, email: str):
        # Retries skip recipients with a row, so the row is written before moving on
        try:
            await asyncio.to_thread(
                self.store.messages.record, claim.campaign_id, message_id, email, claim.token
            )
        except Exception as e:
            logger.warning(f"Failed to record message {message_id} for campaign {claim.campaign_id}: {e}")

    async def dispatch(self, claim: Claim, campaign: Dict, recipients: List[Dict],
                       base_html: str, result: Optional[DispatchResult] = None) -> DispatchResult:
        """
        Send to every recipient in order. Counts accumulate on `result` as
        they happen, so a caller passing its own keeps the partial counts
        when the batch aborts.
        """
        result = result if result is not None else DispatchResult()
        total = len(recipients)
        campaign_id = campaign["_id"]

        logger.info(f"Dispatching campaign {campaign_id} to {total} recipient(s)")

        for index, contact in enumerate(recipients):
            if index and self._renew_due(claim, index):
                self.claims.renew(claim)

            email = contact.get("email", "")
            try:
                sent = await self.transport.send(self.build_email(campaign, base_html, contact))
            except Exception as e:
                sent = {"success": False, "error": f"Error sending to {email}: {e}"}

            if sent.get("success"):
                result.success_count += 1
                message_id = sent.get("message_id")
                if message_id:
                    await self._record(claim, message_id, email)
                result.results.append(RecipientResult(str(contact["_id"]), email, True, message_id))
            else:
                result.fail_count += 1
                error = sent.get("error") or "Unknown error"
                logger.error(
                    f"Failed to send campaign {campaign_id} to {email}: {error}",
                    extra={"campaign_id": str(campaign_id), "to": email, "error_code": sent.get("error_code")},
                )
                result.results.append(RecipientResult(str(contact["_id"]), email, False, error=error))

        logger.info(
            f"Campaign {campaign_id} dispatched: {result.success_count} succeeded, {result.fail_count} failed"
        )
        return result
