"""
Data Models Package.

Re-exports all Pydantic models:
    from expenditure.models import Expense, ExpenseCategory, UserProfile, Organization
    from expenditure.models import ExpenseStatus, ChangeKind, Collection
    from expenditure.models import ChangeEvent, SubscriptionErrorEvent, RemoteResult
"""

from __future__ import annotations

from pydantic import BaseModel

from expenditure.models.enums import (
    ChangeKind,
    Collection,
    DataErrorCode,
    ExpenseStatus,
    SubscriptionState,
)
from expenditure.models.reference import ExpenseCategory, Organization, UserProfile
from expenditure.models.expense import Expense, ExpenseCreate, ExpenseUpdate
from expenditure.models.events import ChangeEvent, StreamEvent, SubscriptionErrorEvent
from expenditure.models.results import RemoteResult
from expenditure.models.user import SessionUser

# Record model used to decode rows of each collection.
RECORD_MODELS: dict[str, type[BaseModel]] = {
    Collection.ORGANIZATIONS: Organization,
    Collection.USERS: UserProfile,
    Collection.EXPENSE_CATEGORIES: ExpenseCategory,
    Collection.EXPENSES: Expense,
}

__all__ = [
    "ChangeKind",
    "Collection",
    "DataErrorCode",
    "ExpenseStatus",
    "SubscriptionState",
    "ExpenseCategory",
    "Organization",
    "UserProfile",
    "Expense",
    "ExpenseCreate",
    "ExpenseUpdate",
    "ChangeEvent",
    "StreamEvent",
    "SubscriptionErrorEvent",
    "RemoteResult",
    "SessionUser",
    "RECORD_MODELS",
]
