"""
Expense Models.

``Expense`` mirrors a row of the ``expenses`` table, optionally with its
category, submitter and organization expanded inline.  ``ExpenseCreate`` and
``ExpenseUpdate`` describe the writable field sets and are validated
client-side before any request is sent.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from expenditure.models.enums import ExpenseStatus
from expenditure.models.reference import ExpenseCategory, Organization, UserProfile


class Expense(BaseModel):
    """Represents an expense record."""

    id: str
    amount: Decimal
    category_id: str
    description: Optional[str] = None
    expense_date: date
    organization_id: str
    user_id: str
    status: ExpenseStatus = ExpenseStatus.PENDING
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    # Relationships (present only when the fetch asked for expansion)
    category: Optional[ExpenseCategory] = Field(
        default=None, alias="expense_categories",
    )
    user: Optional[UserProfile] = Field(default=None, alias="users")
    organization: Optional[Organization] = Field(default=None, alias="organizations")

    model_config = {
        "from_attributes": True,
        "populate_by_name": True,
        "extra": "ignore",
    }


class ExpenseCreate(BaseModel):
    """Fields accepted when creating an expense.

    ``id`` and ``status`` are assigned by the server.
    """

    amount: Decimal = Field(gt=0)
    category_id: str = Field(min_length=1)
    description: Optional[str] = None
    expense_date: date
    organization_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)

    model_config = {"extra": "forbid"}


class ExpenseUpdate(BaseModel):
    """Partial update; only explicitly set fields are sent."""

    amount: Optional[Decimal] = Field(default=None, gt=0)
    category_id: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    expense_date: Optional[date] = None
    status: Optional[ExpenseStatus] = None

    model_config = {"extra": "forbid"}
