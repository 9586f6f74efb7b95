"""
User Repository.

Handles data access for the ``users`` profile collection.  Profile rows
are created by a database trigger when someone signs up, so ``create``
is only used by administrative tooling.
"""

from __future__ import annotations

from typing import Optional

from expenditure.models.enums import Collection
from expenditure.models.reference import UserProfile
from expenditure.repositories.base_repository import BaseRepository, OrderBy


class UserRepository(BaseRepository[UserProfile]):
    """Data access layer for UserProfile entities."""

    TABLE = Collection.USERS
    MODEL = UserProfile
    REQUIRED_FIELDS = frozenset({"id", "email"})
    SERVER_COLUMNS = frozenset({"created_at"})
    RELATIONS = frozenset({"organizations"})
    DEFAULT_ORDER = (OrderBy("full_name"), OrderBy("id"))

    async def get_by_email(self, email: str) -> Optional[UserProfile]:
        """Fetch a profile by email address.

        The address is trimmed and lowercased before the exact match,
        which is the form the auth server stores and the profile trigger
        copies.  Rows written with mixed-case addresses are not found.
        """
        rows = await self.fetch_all(filters={"email": email.strip().lower()})
        return rows[0] if rows else None
