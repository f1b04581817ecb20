"""
Quota Ledger — monthly email allowance per subscription.

Limit = plan tier base + every active newsletter add-on + unexpired admin
bonus. Usage lives on the plan subscription document:

    emails_sent_this_month   delivered emails this calendar month
    emails_pending           emails held by in-flight sends (reserve → commit)

Reservation and commit are single atomic MongoDB updates, so two campaigns
of the same tenant sending at once can neither overshoot the limit nor lose
each other's increments.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

import config
from database import Tier, utcnow
from dispatch.errors import TierNotEntitled

logger = logging.getLogger("campaigns.quota")

TIER_LIMITS = {
    Tier.BASIC: config.EMAIL_LIMIT_BASIC,
    Tier.ESSENTIAL: config.EMAIL_LIMIT_ESSENTIAL,
    Tier.PRO: config.EMAIL_LIMIT_PRO,
}


def parse_tier(value) -> Optional[Tier]:
    if isinstance(value, Tier):
        return value
    if not value:
        return None
    try:
        return Tier(str(value).strip().lower())
    except ValueError:
        return None


def month_start(now: datetime) -> datetime:
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


@dataclass
class Reservation:
    ok: bool
    subscription_id: object
    count: int
    limit: int
    used: int
    remaining: int

    def as_details(self) -> Dict:
        return {
            "limit": self.limit,
            "used": self.used,
            "remaining": self.remaining,
            "requested": self.count,
        }


class QuotaLedger:
    def __init__(self, store, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.clock = clock

    # ── Limits ───────────────────────────────────────────────────────

    def base_limit(self, tier) -> int:
        parsed = parse_tier(tier)
        return TIER_LIMITS.get(parsed, 0) if parsed else 0

    def limit_for(self, tier, website_id) -> int:
        """
        Monthly cap for a tier, extended by add-ons and bonus emails.

        A tier without the newsletter capability stays at 0 even when the
        tenant bought add-ons: add-ons extend a plan, they do not grant one.
        """
        base = self.base_limit(tier)
        if base <= 0 or website_id is None:
            return base

        now = self.clock()
        tomorrow = (now + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)

        addon_total = 0
        addons = self.store.subscriptions.get_addons(website_id, config.ADDON_EMAIL_LIMITS.keys())
        for addon in addons:
            if addon.get("status") == "cancelled":
                access_until = addon.get("access_until")
                if not access_until or access_until < tomorrow:
                    continue
            addon_total += config.ADDON_EMAIL_LIMITS.get(addon.get("product_id"), 0)

        bonus = 0
        website = self.store.websites.get_by_id(website_id)
        if website and website.get("bonus_emails") and website.get("bonus_emails_expiry"):
            if website["bonus_emails_expiry"] > now:
                bonus = int(website["bonus_emails"])

        return base + addon_total + bonus

    def require_entitled(self, subscription: Dict, campaign_id=None) -> int:
        """Return the limit, or raise TierNotEntitled when it is 0."""
        limit = self.limit_for(subscription.get("tier"), subscription.get("website_id"))
        if limit <= 0:
            raise TierNotEntitled(
                f"Tier '{subscription.get('tier')}' does not include newsletter sending",
                campaign_id,
                tier=subscription.get("tier"),
            )
        return limit

    # ── Usage ────────────────────────────────────────────────────────

    def refresh(self, subscription: Dict) -> Dict:
        """
        Apply the monthly rollover if due and return the current document.

        The rollover also rebuilds `emails_pending` from the holds that
        campaigns in `sending` still carry, so a hold stranded by a crash
        between reserve and claim does not outlive its month.
        """
        now = self.clock()
        if self.store.subscriptions.roll_over(subscription["_id"], month_start(now), now):
            held = self.store.campaigns.held_reservations(subscription["_id"])
            self.store.subscriptions.reset_pending(subscription["_id"], held)
            logger.info(
                "quota_rolled_over",
                extra={"subscription_id": str(subscription["_id"]), "month": now.strftime("%Y-%m"), "held": held},
            )
        return self.store.subscriptions.get_by_id(subscription["_id"]) or subscription

    @staticmethod
    def _used(subscription: Dict) -> int:
        return int(subscription.get("emails_sent_this_month") or 0) + int(subscription.get("emails_pending") or 0)

    def remaining(self, subscription: Dict, limit: Optional[int] = None) -> int:
        subscription = self.refresh(subscription)
        if limit is None:
            limit = self.limit_for(subscription.get("tier"), subscription.get("website_id"))
        return max(0, limit - self._used(subscription))

    def usage(self, subscription: Dict, limit: int) -> Dict:
        current = self.store.subscriptions.get_by_id(subscription["_id"]) or subscription
        used = self._used(current)
        return {"limit": limit, "used": used, "remaining": max(0, limit - used)}

    # ── Reserve / commit ─────────────────────────────────────────────

    def reserve(self, subscription: Dict, count: int, limit: int) -> Reservation:
        """
        Atomically hold `count` emails against the limit.

        Must run before any recipient is contacted. ok=False leaves the
        counters untouched.
        """
        subscription = self.refresh(subscription)
        if count <= 0:
            used = self._used(subscription)
            return Reservation(True, subscription["_id"], 0, limit, used, max(0, limit - used))

        updated = self.store.subscriptions.reserve(subscription["_id"], count, limit)
        if updated is None:
            current = self.store.subscriptions.get_by_id(subscription["_id"]) or subscription
            used = self._used(current)
            logger.warning(
                "quota_reservation_rejected",
                extra={
                    "subscription_id": str(subscription["_id"]),
                    "requested": count,
                    "limit": limit,
                    "used": used,
                },
            )
            return Reservation(False, subscription["_id"], count, limit, used, max(0, limit - used))

        used = self._used(updated)
        return Reservation(True, subscription["_id"], count, limit, used, max(0, limit - used))

    def commit(self, reservation: Reservation, actual_sent: int, held: bool = True):
        """
        Charge what the transport actually delivered. The hold is dropped
        only when `held`: a claim taken over by the stale sweep has already
        had its hold returned.
        """
        reserved = reservation.count if held else 0
        self.store.subscriptions.commit(reservation.subscription_id, actual_sent, reserved)
        logger.info(
            "quota_committed",
            extra={
                "subscription_id": str(reservation.subscription_id),
                "reserved": reserved,
                "sent": actual_sent,
            },
        )

    def release(self, reservation: Reservation):
        self.store.subscriptions.release(reservation.subscription_id, reservation.count)
