"""
Unit tests for dispatch/recipients.py

Tests cover:
- Tag union, status filter, excluded tags and excluded contacts
- Default status filters
- Deterministic ordering
- Contacts loaded per website
"""

import unittest
from bson import ObjectId
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from dispatch.recipients import resolve, status_filters_for, parse_recipient_status, load_contacts
from database import RecipientStatus, Store
from fakes import FakeDatabase, add_contact


def contact(cid, status="active", tags=()):
    return {"_id": cid, "email": f"{cid}@example.com", "status": status, "tag_ids": list(tags)}


class TestResolve(unittest.TestCase):

    def test_tag_status_and_exclusions_combined(self):
        # A{t1, active}, B{t1,t2, active}, C{t1, unsubscribed}
        # tag_ids=[t1], excluded_tag_ids=[t2] → {A}
        contacts = [
            contact("A", tags=["t1"]),
            contact("B", tags=["t1", "t2"]),
            contact("C", status="unsubscribed", tags=["t1"]),
        ]
        campaign = {"tag_ids": ["t1"], "excluded_tag_ids": ["t2"]}

        resolved = resolve(campaign, contacts)
        self.assertEqual([c["_id"] for c in resolved], ["A"])

    def test_empty_tags_means_all_contacts(self):
        contacts = [contact("A"), contact("B", tags=["t9"]), contact("C", status="pending")]
        resolved = resolve({"tag_ids": []}, contacts)
        self.assertEqual([c["_id"] for c in resolved], ["A", "B", "C"])

    def test_any_matching_tag_is_enough(self):
        contacts = [contact("A", tags=["t1"]), contact("B", tags=["t2"]), contact("C", tags=["t3"])]
        resolved = resolve({"tag_ids": ["t1", "t2"]}, contacts)
        self.assertEqual([c["_id"] for c in resolved], ["A", "B"])

    def test_default_status_filters_drop_unsubscribed(self):
        contacts = [
            contact("A", status="active"),
            contact("B", status="confirmed"),
            contact("C", status="pending"),
            contact("D", status="unsubscribed"),
        ]
        resolved = resolve({}, contacts)
        self.assertEqual([c["_id"] for c in resolved], ["A", "B", "C"])

    def test_custom_status_filters(self):
        contacts = [contact("A", status="active"), contact("B", status="pending")]
        resolved = resolve({"status_filters": ["pending"]}, contacts)
        self.assertEqual([c["_id"] for c in resolved], ["B"])

    def test_unknown_status_never_matches(self):
        contacts = [contact("A", status="bounced"), contact("B", status=None)]
        self.assertEqual(resolve({}, contacts), [])

    def test_excluded_contact_ids(self):
        contacts = [contact("A"), contact("B"), contact("C")]
        resolved = resolve({"excluded_contact_ids": ["B"]}, contacts)
        self.assertEqual([c["_id"] for c in resolved], ["A", "C"])

    def test_exclusion_applies_even_without_include_tags(self):
        contacts = [contact("A", tags=["vip"]), contact("B", tags=["blocked"])]
        resolved = resolve({"excluded_tag_ids": ["blocked"]}, contacts)
        self.assertEqual([c["_id"] for c in resolved], ["A"])

    def test_object_id_and_string_ids_compare_equal(self):
        tag = ObjectId()
        a, b = ObjectId(), ObjectId()
        contacts = [contact(a, tags=[tag]), contact(b, tags=[tag])]
        campaign = {"tag_ids": [str(tag)], "excluded_contact_ids": [str(b)]}

        resolved = resolve(campaign, contacts)
        self.assertEqual([c["_id"] for c in resolved], [a])

    def test_result_sorted_by_id(self):
        ids = [ObjectId() for _ in range(5)]
        contacts = [contact(i) for i in reversed(ids)]
        resolved = resolve({}, contacts)
        self.assertEqual([c["_id"] for c in resolved], ids)

    def test_mixed_id_types_sort(self):
        oid = ObjectId()
        contacts = [contact(oid), contact(42), contact("legacy-7")]
        resolved = resolve({}, contacts)
        self.assertEqual([c["_id"] for c in resolved], sorted([oid, 42, "legacy-7"], key=str))

    def test_same_input_same_output(self):
        contacts = [contact("C"), contact("A", tags=["t1"]), contact("B", tags=["t1"])]
        campaign = {"tag_ids": ["t1"]}
        self.assertEqual(resolve(campaign, contacts), resolve(campaign, list(reversed(contacts))))


class TestStatusFilters(unittest.TestCase):

    def test_defaults(self):
        self.assertEqual(
            status_filters_for({}),
            {RecipientStatus.ACTIVE, RecipientStatus.CONFIRMED, RecipientStatus.PENDING},
        )

    def test_parse_is_case_insensitive(self):
        self.assertEqual(parse_recipient_status(" Active "), RecipientStatus.ACTIVE)
        self.assertIsNone(parse_recipient_status("nope"))

    def test_unknown_filter_values_ignored(self):
        self.assertEqual(status_filters_for({"status_filters": ["active", "x"]}), {RecipientStatus.ACTIVE})


class TestLoadContacts(unittest.TestCase):

    def test_only_contacts_of_the_website(self):
        db = FakeDatabase()
        site, other = ObjectId(), ObjectId()
        add_contact(db, site, "a@example.com")
        add_contact(db, other, "b@example.com")
        add_contact(db, site, "c@example.com")

        emails = [c["email"] for c in load_contacts(Store(db), site)]
        self.assertEqual(emails, ["a@example.com", "c@example.com"])


if __name__ == "__main__":
    unittest.main()
