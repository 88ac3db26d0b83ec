from typing import Optional

from .store import InMemoryStore

REFERRALS_COLLECTION = "referrals"


class ReferralLookup:
    """Finds the affiliate a user was referred by, if any.

    Referral documents are keyed by user uid and only their ``affiliate_id``
    is consulted.
    """

    def __init__(self, store: InMemoryStore):
        self.store = store

    def affiliate_for(self, user_uid: str) -> Optional[str]:
        doc = self.store.get(REFERRALS_COLLECTION, user_uid)
        if not doc:
            return None
        return doc.get("affiliate_id") or None
