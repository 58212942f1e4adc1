"""
User profile lookups.
"""
from typing import Optional

from storefront.document_store import DocumentStore, USERS
from storefront.models import UserProfile


class ProfileService:
    """Service for user profile reads"""

    def __init__(self, store: DocumentStore):
        self.store = store

    def get_profile(self, uid: str) -> Optional[UserProfile]:
        doc = self.store.get(USERS, uid)
        if doc is None:
            return None
        return UserProfile.model_validate({**doc, "uid": uid})

    def is_admin(self, uid: str) -> bool:
        profile = self.get_profile(uid)
        return profile is not None and profile.role == "admin"
