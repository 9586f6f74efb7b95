"""
Organization Repository.

Handles data access for the ``organizations`` collection.
"""

from __future__ import annotations

from expenditure.models.enums import Collection
from expenditure.models.reference import Organization
from expenditure.repositories.base_repository import BaseRepository, OrderBy


class OrganizationRepository(BaseRepository[Organization]):
    """Data access layer for Organization entities."""

    TABLE = Collection.ORGANIZATIONS
    MODEL = Organization
    REQUIRED_FIELDS = frozenset({"name"})
    DEFAULT_ORDER = (OrderBy("name"), OrderBy("id"))
