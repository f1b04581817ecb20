"""
Unit tests for dispatch/claims.py

Tests cover:
- Transition table and claimability per send mode
- At-most-one claim under concurrent callers
- Lease renewal, mark_sent and rollback guarded by the claim token
- Stale-lease sweep, including the quota it returns and charges
- Failed claim writes give their quota hold back
"""

import unittest
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from unittest.mock import patch
from bson import ObjectId
from pymongo.errors import PyMongoError
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from database import CLAIM_FIELDS, CampaignStatus, Store
from dispatch.claims import (
    ClaimStateMachine,
    SendMode,
    can_transition,
    ensure_claimable,
)
from dispatch.errors import AlreadySending, AlreadySent, ClaimLost, InvalidStatus
from dispatch.quota import Reservation
from fakes import FakeDatabase, FixedClock, add_campaign, add_plan, add_website


class TestTransitions(unittest.TestCase):

    def test_forward_edges(self):
        self.assertTrue(can_transition(CampaignStatus.DRAFT, CampaignStatus.SCHEDULED))
        self.assertTrue(can_transition(CampaignStatus.SCHEDULED, CampaignStatus.SENDING))
        self.assertTrue(can_transition(CampaignStatus.SENDING, CampaignStatus.SENT))

    def test_sent_is_terminal(self):
        for status in CampaignStatus:
            self.assertFalse(can_transition(CampaignStatus.SENT, status))

    def test_ensure_claimable(self):
        self.assertEqual(
            ensure_claimable({"status": "scheduled"}, SendMode.POLLED), CampaignStatus.SCHEDULED
        )
        self.assertEqual(
            ensure_claimable({"status": "draft"}, SendMode.INTERACTIVE), CampaignStatus.DRAFT
        )
        with self.assertRaises(InvalidStatus):
            ensure_claimable({"status": "draft"}, SendMode.POLLED)
        with self.assertRaises(AlreadySent):
            ensure_claimable({"status": "sent"}, SendMode.INTERACTIVE)
        with self.assertRaises(AlreadySending):
            ensure_claimable({"status": "sending"}, SendMode.INTERACTIVE)
        with self.assertRaises(InvalidStatus):
            ensure_claimable({"status": "archived"}, SendMode.INTERACTIVE)


class ClaimTestCase(unittest.TestCase):

    def setUp(self):
        self.db = FakeDatabase()
        self.store = Store(self.db)
        self.clock = FixedClock()
        self.claims = ClaimStateMachine(self.store, clock=self.clock, lease_minutes=15)
        self.site = add_website(self.db)

    def campaign(self, **fields):
        campaign_id = add_campaign(self.db, self.site, **fields)
        return self.store.campaigns.get_by_id(campaign_id)

    def raw(self, campaign_id):
        return self.db["campaigns"].raw(campaign_id)


class TestClaim(ClaimTestCase):

    def test_claim_moves_to_sending(self):
        campaign = self.campaign()
        claim = self.claims.claim(campaign, SendMode.POLLED)

        self.assertIsNotNone(claim)
        self.assertEqual(claim.claimed_from, CampaignStatus.SCHEDULED)
        raw = self.raw(campaign["_id"])
        self.assertEqual(raw["status"], "sending")
        self.assertEqual(raw["claim_token"], claim.token)
        self.assertEqual(raw["claimed_from"], "scheduled")
        self.assertEqual(raw["lease_expires_at"], self.clock.now + timedelta(minutes=15))

    def test_interactive_claims_draft(self):
        campaign = self.campaign(status="draft", scheduled_for=None)
        claim = self.claims.claim(campaign, SendMode.INTERACTIVE)
        self.assertEqual(claim.claimed_from, CampaignStatus.DRAFT)

    def test_polled_does_not_claim_draft(self):
        campaign = self.campaign(status="draft")
        self.assertIsNone(self.claims.claim(campaign, SendMode.POLLED))
        self.assertEqual(self.raw(campaign["_id"])["status"], "draft")

    def test_claim_requires_matching_website(self):
        campaign = self.campaign()
        campaign["website_id"] = ObjectId()
        self.assertIsNone(self.claims.claim(campaign, SendMode.POLLED))

    def test_second_claim_returns_none(self):
        campaign = self.campaign()
        self.assertIsNotNone(self.claims.claim(campaign, SendMode.POLLED))
        self.assertIsNone(self.claims.claim(campaign, SendMode.POLLED))

    def test_at_most_one_of_many_concurrent_claims(self):
        campaign = self.campaign()
        with ThreadPoolExecutor(max_workers=16) as pool:
            results = list(pool.map(
                lambda _: self.claims.claim(campaign, SendMode.POLLED), range(32)
            ))

        winners = [r for r in results if r is not None]
        self.assertEqual(len(winners), 1)
        self.assertEqual(self.raw(campaign["_id"])["claim_token"], winners[0].token)

    def test_reservation_stored_on_claim(self):
        campaign = self.campaign()
        sub_id = ObjectId()
        reservation = Reservation(True, sub_id, 7, 3000, 7, 2993)
        self.claims.claim(campaign, SendMode.POLLED, reservation)
        self.assertEqual(self.raw(campaign["_id"])["reservation"], {"subscription_id": sub_id, "count": 7})

    def test_storage_error_during_claim_returns_hold(self):
        sub_id = add_plan(self.db, self.site, emails_pending=3)
        campaign = self.campaign()
        reservation = Reservation(True, sub_id, 3, 10000, 3, 9997)

        with patch.object(self.store.campaigns, "claim", side_effect=PyMongoError("primary stepped down")):
            with self.assertRaises(PyMongoError):
                self.claims.claim(campaign, SendMode.POLLED, reservation)

        self.assertEqual(self.raw(campaign["_id"])["status"], "scheduled")
        self.assertEqual(self.db["subscriptions"].raw(sub_id)["emails_pending"], 0)

    def test_claim_applied_but_reply_lost_is_undone(self):
        sub_id = add_plan(self.db, self.site, emails_pending=3)
        campaign = self.campaign()
        reservation = Reservation(True, sub_id, 3, 10000, 3, 9997)
        real_claim = self.store.campaigns.claim

        def applied_then_failed(*args):
            real_claim(*args)
            raise PyMongoError("connection reset")

        with patch.object(self.store.campaigns, "claim", side_effect=applied_then_failed):
            with self.assertRaises(PyMongoError):
                self.claims.claim(campaign, SendMode.POLLED, reservation)

        raw = self.raw(campaign["_id"])
        self.assertEqual(raw["status"], "scheduled")
        for field in CLAIM_FIELDS:
            self.assertNotIn(field, raw)
        self.assertEqual(self.db["subscriptions"].raw(sub_id)["emails_pending"], 0)
        self.clock.advance(minutes=16)
        self.assertEqual(self.claims.sweep_stale(), 0)


class TestClaimLifecycle(ClaimTestCase):

    def test_mark_sent_clears_claim_fields(self):
        campaign = self.campaign()
        claim = self.claims.claim(campaign, SendMode.POLLED)
        self.claims.mark_sent(claim, 4, 5)

        raw = self.raw(campaign["_id"])
        self.assertEqual(raw["status"], "sent")
        self.assertEqual(raw["sent_count"], 4)
        self.assertEqual(raw["recipient_count"], 5)
        self.assertEqual(raw["sent_at"], self.clock.now)
        for field in CLAIM_FIELDS:
            self.assertNotIn(field, raw)

    def test_mark_sent_with_stale_token_raises(self):
        campaign = self.campaign()
        claim = self.claims.claim(campaign, SendMode.POLLED)
        claim.token = "someone-else"
        with self.assertRaises(ClaimLost):
            self.claims.mark_sent(claim, 1, 1)
        self.assertEqual(self.raw(campaign["_id"])["status"], "sending")

    def test_renew_extends_lease(self):
        campaign = self.campaign()
        claim = self.claims.claim(campaign, SendMode.POLLED)
        self.clock.advance(minutes=10)
        self.claims.renew(claim)
        self.assertEqual(self.raw(campaign["_id"])["lease_expires_at"], self.clock.now + timedelta(minutes=15))

    def test_renew_after_sweep_raises_claim_lost(self):
        campaign = self.campaign()
        claim = self.claims.claim(campaign, SendMode.POLLED)
        self.clock.advance(minutes=16)
        self.assertEqual(self.claims.sweep_stale(), 1)
        with self.assertRaises(ClaimLost):
            self.claims.renew(claim)

    def test_rollback_restores_prior_status(self):
        campaign = self.campaign(status="draft", scheduled_for=None)
        claim = self.claims.claim(campaign, SendMode.INTERACTIVE)
        self.assertTrue(self.claims.rollback(claim))

        raw = self.raw(campaign["_id"])
        self.assertEqual(raw["status"], "draft")
        for field in CLAIM_FIELDS:
            self.assertNotIn(field, raw)

    def test_rollback_never_raises(self):
        campaign = self.campaign()
        claim = self.claims.claim(campaign, SendMode.POLLED)
        with patch.object(self.store.campaigns, "release_claim", side_effect=PyMongoError("down")), \
                patch("utils.logging_utils.time.sleep"):
            self.assertFalse(self.claims.rollback(claim))
        self.assertEqual(self.raw(campaign["_id"])["status"], "sending")

    def test_rollback_retries_transient_errors(self):
        campaign = self.campaign()
        claim = self.claims.claim(campaign, SendMode.POLLED)
        real_release = self.store.campaigns.release_claim
        calls = []

        def flaky_release(*args):
            calls.append(args)
            if len(calls) == 1:
                raise PyMongoError("blip")
            return real_release(*args)

        with patch.object(self.store.campaigns, "release_claim", side_effect=flaky_release), \
                patch("utils.logging_utils.time.sleep"):
            self.assertTrue(self.claims.rollback(claim))
        self.assertEqual(len(calls), 2)
        self.assertEqual(self.raw(campaign["_id"])["status"], "scheduled")


class TestSweep(ClaimTestCase):

    def test_sweep_reverts_expired_and_releases_hold(self):
        sub_id = add_plan(self.db, self.site, emails_pending=7)
        campaign = self.campaign()
        self.claims.claim(campaign, SendMode.POLLED, Reservation(True, sub_id, 7, 10000, 7, 9993))

        self.clock.advance(minutes=16)
        self.assertEqual(self.claims.sweep_stale(), 1)

        raw = self.raw(campaign["_id"])
        self.assertEqual(raw["status"], "scheduled")
        for field in CLAIM_FIELDS:
            self.assertNotIn(field, raw)
        self.assertEqual(self.db["subscriptions"].raw(sub_id)["emails_pending"], 0)

    def test_sweep_charges_deliveries_of_abandoned_claim(self):
        sub_id = add_plan(self.db, self.site, emails_pending=5)
        campaign = self.campaign()
        claim = self.claims.claim(campaign, SendMode.POLLED, Reservation(True, sub_id, 5, 10000, 5, 9995))
        self.store.messages.record(campaign["_id"], "<1@test>", "a@example.com", claim.token)
        self.store.messages.record(campaign["_id"], "<2@test>", "b@example.com", claim.token)
        self.store.messages.record(campaign["_id"], "<3@test>", "c@example.com", "older-claim")

        self.clock.advance(minutes=16)
        self.assertEqual(self.claims.sweep_stale(), 1)

        sub = self.db["subscriptions"].raw(sub_id)
        self.assertEqual(sub["emails_sent_this_month"], 2)
        self.assertEqual(sub["emails_pending"], 0)

    def test_swept_sender_charges_only_what_sweep_did_not(self):
        sub_id = add_plan(self.db, self.site, emails_pending=4)
        campaign = self.campaign()
        claim = self.claims.claim(campaign, SendMode.POLLED, Reservation(True, sub_id, 4, 10000, 4, 9996))
        self.store.messages.record(campaign["_id"], "<1@test>", "a@example.com", claim.token)

        self.clock.advance(minutes=16)
        self.claims.sweep_stale()

        # the sender was still alive: one more recorded delivery, one whose row was lost
        self.store.messages.record(campaign["_id"], "<2@test>", "b@example.com", claim.token)
        self.assertEqual(self.claims.unsettled_deliveries(claim, 3), 2)

    def test_lease_due_after_half_the_lease(self):
        claim = self.claims.claim(self.campaign(), SendMode.POLLED)
        self.clock.advance(minutes=7)
        self.assertFalse(self.claims.lease_due(claim))
        self.clock.advance(minutes=1)
        self.assertTrue(self.claims.lease_due(claim))
        self.claims.renew(claim)
        self.assertFalse(self.claims.lease_due(claim))

    def test_sweep_ignores_live_lease(self):
        campaign = self.campaign()
        self.claims.claim(campaign, SendMode.POLLED)
        self.clock.advance(minutes=14)
        self.assertEqual(self.claims.sweep_stale(), 0)
        self.assertEqual(self.raw(campaign["_id"])["status"], "sending")

    def test_sweep_without_claimed_from_falls_back(self):
        past = self.clock.now - timedelta(minutes=1)
        scheduled = add_campaign(self.db, self.site, status="sending",
                                 claim_token="t1", lease_expires_at=past)
        draft = add_campaign(self.db, self.site, status="sending", scheduled_for=None,
                             claim_token="t2", lease_expires_at=past)

        self.assertEqual(self.claims.sweep_stale(), 2)
        self.assertEqual(self.raw(scheduled)["status"], "scheduled")
        self.assertEqual(self.raw(draft)["status"], "draft")


if __name__ == "__main__":
    unittest.main()
