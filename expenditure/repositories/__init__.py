"""
Repository Layer Package.

Provides typed data-access abstractions over the Supabase PostgREST API,
one repository per collection.  Services never build queries directly.

Usage:
    from expenditure.repositories import ExpenseRepository, OrderBy
"""

from expenditure.repositories.base_repository import BaseRepository, OrderBy
from expenditure.repositories.category_repository import CategoryRepository
from expenditure.repositories.expense_repository import ExpenseRepository
from expenditure.repositories.organization_repository import OrganizationRepository
from expenditure.repositories.user_repository import UserRepository

__all__ = [
    "BaseRepository",
    "OrderBy",
    "CategoryRepository",
    "ExpenseRepository",
    "OrganizationRepository",
    "UserRepository",
]
