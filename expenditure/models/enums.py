"""
Shared Enumerations for Expenditure Models.

All string enumerations for type-safe field constraints.
StrEnum values compare equal to their string equivalents,
so code like ``if status == 'pending'`` continues to work.
"""

from __future__ import annotations
from enum import StrEnum


class Collection(StrEnum):
    """Database tables exposed by the data layer."""

    ORGANIZATIONS = "organizations"
    USERS = "users"
    EXPENSE_CATEGORIES = "expense_categories"
    EXPENSES = "expenses"


class ExpenseStatus(StrEnum):
    """Expense approval states.

    Transitions are governed by the database policies; the client never
    validates them.
    """

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ChangeKind(StrEnum):
    """Kind of change carried by a realtime notification."""

    INSERTED = "inserted"
    UPDATED = "updated"
    DELETED = "deleted"


class SubscriptionState(StrEnum):
    """Lifecycle of a single change subscription."""

    IDLE = "idle"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


class DataErrorCode(StrEnum):
    """Error categories carried by :class:`RemoteResult`."""

    CONFIGURATION = "configuration"
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    REMOTE = "remote"
    SUBSCRIPTION = "subscription"
    UNAUTHENTICATED = "unauthenticated"
