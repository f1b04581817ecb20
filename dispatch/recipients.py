"""
Recipient Resolver — computes the final audience of a campaign.

    resolved = (contacts with any tag in tag_ids, or all contacts if empty)
               ∩ status in status_filters
               − contacts with any tag in excluded_tag_ids
               − contacts listed in excluded_contact_ids

The result is sorted by the string form of the contact id so identical
inputs always give the same list.
"""

import logging
from typing import Dict, Iterable, List, Optional, Set

from database import RecipientStatus

logger = logging.getLogger("campaigns.recipients")

DEFAULT_STATUS_FILTERS = frozenset({
    RecipientStatus.ACTIVE,
    RecipientStatus.CONFIRMED,
    RecipientStatus.PENDING,
})


def parse_recipient_status(value) -> Optional[RecipientStatus]:
    """Map a stored status string onto RecipientStatus (None if unknown)."""
    if isinstance(value, RecipientStatus):
        return value
    try:
        return RecipientStatus(str(value).strip().lower())
    except ValueError:
        return None


def status_filters_for(campaign: Dict) -> Set[RecipientStatus]:
    raw = campaign.get("status_filters")
    if not raw:
        return set(DEFAULT_STATUS_FILTERS)
    parsed = {parse_recipient_status(s) for s in raw}
    parsed.discard(None)
    return parsed


def _ids(values: Optional[Iterable]) -> Set[str]:
    # Ids are compared by string form: tag and contact ids may be stored as
    # ObjectId, int or legacy strings depending on where they came from.
    return {str(v) for v in (values or [])}


def resolve(campaign: Dict, contacts: Iterable[Dict]) -> List[Dict]:
    """Return the contacts this campaign should be sent to."""
    tag_ids = _ids(campaign.get("tag_ids"))
    excluded_tag_ids = _ids(campaign.get("excluded_tag_ids"))
    excluded_contact_ids = _ids(campaign.get("excluded_contact_ids"))
    statuses = status_filters_for(campaign)

    contacts = list(contacts)

    if tag_ids:
        base = [c for c in contacts if tag_ids & _ids(c.get("tag_ids"))]
    else:
        base = contacts

    base = [c for c in base if parse_recipient_status(c.get("status")) in statuses]

    if excluded_tag_ids:
        excluded = {
            str(c["_id"]) for c in contacts
            if excluded_tag_ids & _ids(c.get("tag_ids"))
        }
        base = [c for c in base if str(c["_id"]) not in excluded]

    if excluded_contact_ids:
        base = [c for c in base if str(c["_id"]) not in excluded_contact_ids]

    resolved = sorted(base, key=lambda c: str(c["_id"]))
    logger.debug(
        "recipients_resolved",
        extra={
            "campaign_id": str(campaign.get("_id")),
            "contacts": len(contacts),
            "resolved": len(resolved),
        },
    )
    return resolved


def load_contacts(store, website_id) -> List[Dict]:
    return store.contacts.for_website(website_id)
