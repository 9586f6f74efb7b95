"""
Expense Category Repository.

Handles data access for the ``expense_categories`` collection.
"""

from __future__ import annotations

from expenditure.models.enums import Collection
from expenditure.models.reference import ExpenseCategory
from expenditure.repositories.base_repository import BaseRepository, OrderBy


class CategoryRepository(BaseRepository[ExpenseCategory]):
    """Data access layer for ExpenseCategory entities."""

    TABLE = Collection.EXPENSE_CATEGORIES
    MODEL = ExpenseCategory
    REQUIRED_FIELDS = frozenset({"name", "organization_id"})
    RELATIONS = frozenset({"organizations"})
    DEFAULT_ORDER = (OrderBy("name"), OrderBy("id"))
