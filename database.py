from pymongo import MongoClient, ReturnDocument
from bson import ObjectId
from bson.errors import InvalidId
from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, Any, Iterable, Set
import pytz
import config

_client = None


def get_db():
    """Return the default database from DATABASE_URL (client created lazily)."""
    global _client
    if _client is None:
        _client = MongoClient(config.DATABASE_URL)
    return _client.get_database()


def ensure_indexes(db):
    db["campaigns"].create_index([("status", 1), ("scheduled_for", 1)])
    db["campaigns"].create_index([("status", 1), ("lease_expires_at", 1)])
    db["contacts"].create_index([("website_id", 1)])
    db["contacts"].create_index([("email", 1), ("website_id", 1)], unique=True)
    db["subscriptions"].create_index([("website_id", 1), ("product_type", 1), ("status", 1)])
    db["campaign_messages"].create_index("message_id", unique=True)
    db["campaign_messages"].create_index([("campaign_id", 1), ("recipient_email", 1)])
    db["campaign_messages"].create_index([("campaign_id", 1), ("claim_token", 1)])


def utcnow() -> datetime:
    """Naive UTC now, matching what pymongo hands back for stored dates."""
    return datetime.now(pytz.UTC).replace(tzinfo=None)


def to_object_id(value):
    """Accept an ObjectId or its hex string; anything else is returned as-is."""
    if isinstance(value, ObjectId):
        return value
    if isinstance(value, str):
        try:
            return ObjectId(value)
        except InvalidId:
            return value
    return value


class CampaignStatus(str, Enum):
    DRAFT = "draft"
    SCHEDULED = "scheduled"
    SENDING = "sending"
    SENT = "sent"


class RecipientStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    CONFIRMED = "confirmed"
    UNSUBSCRIBED = "unsubscribed"


class Tier(str, Enum):
    BASIC = "basic"
    ESSENTIAL = "essential"
    PRO = "pro"


# Fields that only exist while a campaign is held in `sending`
CLAIM_FIELDS = ("claim_token", "claimed_from", "claimed_at", "lease_expires_at", "reservation")


class Campaign:
    """Newsletter campaign model"""

    def __init__(self, db):
        self._collection = db["campaigns"]

    def get_by_id(self, campaign_id, website_id=None) -> Optional[Dict]:
        query = {"_id": to_object_id(campaign_id)}
        if website_id is not None:
            query["website_id"] = to_object_id(website_id)
        return self._collection.find_one(query)

    def get_due(self, now: datetime) -> List[Dict]:
        """Scheduled campaigns whose send time has passed, oldest first."""
        return list(self._collection.find(
            {
                "status": CampaignStatus.SCHEDULED.value,
                "scheduled_for": {"$lte": now},
            },
            sort=[("scheduled_for", 1)],
        ))

    def claim(self, campaign_id, website_id, from_status: str,
              claim: Dict[str, Any]) -> Optional[Dict]:
        """
        Atomically move a campaign from `from_status` into `sending`.

        One conditional findOneAndUpdate: only the caller whose filter still
        matches gets a document back (as it was before the claim), every
        other caller gets None.
        """
        now = claim.get("claimed_at") or utcnow()
        return self._collection.find_one_and_update(
            {
                "_id": to_object_id(campaign_id),
                "website_id": to_object_id(website_id),
                "status": from_status,
            },
            {
                "$set": {
                    **claim,
                    "status": CampaignStatus.SENDING.value,
                    "claimed_from": from_status,
                    "updated_at": now,
                }
            },
            return_document=ReturnDocument.BEFORE,
        )

    def renew_lease(self, campaign_id, claim_token: str, lease_expires_at: datetime) -> bool:
        result = self._collection.update_one(
            {
                "_id": to_object_id(campaign_id),
                "status": CampaignStatus.SENDING.value,
                "claim_token": claim_token,
            },
            {"$set": {"lease_expires_at": lease_expires_at}},
        )
        return result.matched_count > 0

    def mark_sent(self, campaign_id, claim_token: str, sent_count: int,
                  recipient_count: int, sent_at: datetime) -> Optional[Dict]:
        """Finish a claim. Returns the claimed document, None if the token no longer holds it."""
        return self._collection.find_one_and_update(
            {
                "_id": to_object_id(campaign_id),
                "status": CampaignStatus.SENDING.value,
                "claim_token": claim_token,
            },
            {
                "$set": {
                    "status": CampaignStatus.SENT.value,
                    "sent_at": sent_at,
                    "sent_count": sent_count,
                    "recipient_count": recipient_count,
                    "updated_at": sent_at,
                },
                "$unset": {field: "" for field in CLAIM_FIELDS},
            },
            return_document=ReturnDocument.BEFORE,
        )

    def release_claim(self, campaign_id, claim_token: str, restore_status: str,
                      now: Optional[datetime] = None) -> Optional[Dict]:
        """Put a claimed campaign back to the state it was claimed from."""
        return self._collection.find_one_and_update(
            {
                "_id": to_object_id(campaign_id),
                "status": CampaignStatus.SENDING.value,
                "claim_token": claim_token,
            },
            {
                "$set": {"status": restore_status, "updated_at": now or utcnow()},
                "$unset": {field: "" for field in CLAIM_FIELDS},
            },
            return_document=ReturnDocument.BEFORE,
        )

    def get_expired_claims(self, now: datetime) -> List[Dict]:
        return list(self._collection.find({
            "status": CampaignStatus.SENDING.value,
            "lease_expires_at": {"$lt": now},
        }))

    def held_reservations(self, subscription_id) -> int:
        """Emails still held by campaigns in `sending` against one subscription."""
        subscription_id = to_object_id(subscription_id)
        held = 0
        for doc in self._collection.find({"status": CampaignStatus.SENDING.value}):
            reservation = doc.get("reservation") or {}
            if reservation.get("subscription_id") == subscription_id:
                held += int(reservation.get("count") or 0)
        return held

    def revert_expired_claim(self, campaign_id, claim_token: str, restore_status: str,
                             now: datetime) -> Optional[Dict]:
        """Revert one abandoned claim; the lease check is repeated inside the update."""
        return self._collection.find_one_and_update(
            {
                "_id": to_object_id(campaign_id),
                "status": CampaignStatus.SENDING.value,
                "claim_token": claim_token,
                "lease_expires_at": {"$lt": now},
            },
            {
                "$set": {"status": restore_status, "updated_at": now},
                "$unset": {field: "" for field in CLAIM_FIELDS},
            },
            return_document=ReturnDocument.BEFORE,
        )


class Contact:
    """Tenant contact list (tags are embedded as tag_ids)"""

    def __init__(self, db):
        self._collection = db["contacts"]

    def for_website(self, website_id) -> List[Dict]:
        return list(self._collection.find(
            {"website_id": to_object_id(website_id)},
            sort=[("_id", 1)],
        ))


class EmailTemplate:
    def __init__(self, db):
        self._collection = db["email_templates"]

    def get_html(self, template_id) -> Optional[str]:
        if not template_id:
            return None
        template = self._collection.find_one({"_id": to_object_id(template_id)})
        return template.get("html") if template else None


class Website:
    def __init__(self, db):
        self._collection = db["websites"]

    def get_by_id(self, website_id) -> Optional[Dict]:
        return self._collection.find_one({"_id": to_object_id(website_id)})


class Subscription:
    """
    Plan and add-on subscriptions.

    The monthly counter is only ever changed with $inc / conditional $set
    evaluated by MongoDB, never read-add-write from Python.
    """

    PRODUCT_PLAN = "plan"
    PRODUCT_ADDON = "addon"
    STATUS_ACTIVE = "active"
    STATUS_CANCELLED = "cancelled"

    def __init__(self, db):
        self._collection = db["subscriptions"]

    def get_by_id(self, subscription_id) -> Optional[Dict]:
        return self._collection.find_one({"_id": to_object_id(subscription_id)})

    def get_active_plan(self, website_id) -> Optional[Dict]:
        return self._collection.find_one({
            "website_id": to_object_id(website_id),
            "product_type": Subscription.PRODUCT_PLAN,
            "status": Subscription.STATUS_ACTIVE,
        })

    def get_addons(self, website_id, product_ids: Iterable[str]) -> List[Dict]:
        return list(self._collection.find({
            "website_id": to_object_id(website_id),
            "product_type": Subscription.PRODUCT_ADDON,
            "product_id": {"$in": list(product_ids)},
            "status": {"$in": [Subscription.STATUS_ACTIVE, Subscription.STATUS_CANCELLED]},
        }))

    def roll_over(self, subscription_id, month_start: datetime, now: datetime) -> bool:
        """Reset the monthly counter once, the first time a new month is seen."""
        result = self._collection.update_one(
            {
                "_id": to_object_id(subscription_id),
                "$or": [
                    {"email_limit_reset_date": None},
                    {"email_limit_reset_date": {"$lt": month_start}},
                ],
            },
            {"$set": {"emails_sent_this_month": 0, "email_limit_reset_date": now}},
        )
        return result.modified_count > 0

    def reserve(self, subscription_id, count: int, limit: int) -> Optional[Dict]:
        """Hold `count` emails only if sent + pending + count stays within limit."""
        return self._collection.find_one_and_update(
            {
                "_id": to_object_id(subscription_id),
                "$expr": {
                    "$lte": [
                        {"$add": [
                            {"$ifNull": ["$emails_sent_this_month", 0]},
                            {"$ifNull": ["$emails_pending", 0]},
                            count,
                        ]},
                        limit,
                    ]
                },
            },
            {"$inc": {"emails_pending": count}},
            return_document=ReturnDocument.AFTER,
        )

    def commit(self, subscription_id, sent_count: int, reserved: int):
        self._collection.update_one(
            {"_id": to_object_id(subscription_id)},
            {"$inc": {"emails_sent_this_month": sent_count, "emails_pending": -reserved}},
        )

    def release(self, subscription_id, reserved: int):
        if reserved <= 0:
            return
        self._collection.update_one(
            {"_id": to_object_id(subscription_id)},
            {"$inc": {"emails_pending": -reserved}},
        )

    def reset_pending(self, subscription_id, held: int):
        """Overwrite the hold counter with what in-flight campaigns actually hold."""
        self._collection.update_one(
            {"_id": to_object_id(subscription_id)},
            {"$set": {"emails_pending": max(0, held)}},
        )


class CampaignMessage:
    """Append-only campaign → transport message-id log"""

    def __init__(self, db):
        self._collection = db["campaign_messages"]

    def record(self, campaign_id, message_id: str, recipient_email: str,
               claim_token: str = None) -> str:
        result = self._collection.insert_one({
            "campaign_id": to_object_id(campaign_id),
            "message_id": message_id,
            "recipient_email": recipient_email,
            "claim_token": claim_token,
            "charged": False,
            "created_at": utcnow(),
        })
        return str(result.inserted_id)

    def count_for_claim(self, campaign_id, claim_token: str) -> int:
        return self._collection.count_documents(
            {"campaign_id": to_object_id(campaign_id), "claim_token": claim_token}
        )

    def charge_claim(self, campaign_id, claim_token: str) -> int:
        """
        Flag the claim's rows that nobody has charged to quota yet and return
        how many were flagged. Each row flips once, so whichever of the stale
        sweep and the swept sender gets to a row first is the one charging it.
        """
        result = self._collection.update_many(
            {
                "campaign_id": to_object_id(campaign_id),
                "claim_token": claim_token,
                "charged": {"$ne": True},
            },
            {"$set": {"charged": True}},
        )
        return result.modified_count

    def delivered_emails(self, campaign_id) -> Set[str]:
        return set(self._collection.distinct(
            "recipient_email", {"campaign_id": to_object_id(campaign_id)}
        ))


class Store:
    """All collection wrappers over one database handle."""

    def __init__(self, db=None):
        self.db = db if db is not None else get_db()
        self.campaigns = Campaign(self.db)
        self.contacts = Contact(self.db)
        self.templates = EmailTemplate(self.db)
        self.websites = Website(self.db)
        self.subscriptions = Subscription(self.db)
        self.messages = CampaignMessage(self.db)
