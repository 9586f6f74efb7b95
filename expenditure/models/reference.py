"""
Reference Models.

Read-mostly records joined into expense views: organizations,
expense categories and user profiles.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class Organization(BaseModel):
    """A tenant organization."""

    id: str
    name: str
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True, "extra": "ignore"}


class ExpenseCategory(BaseModel):
    """A spending category defined by an organization."""

    id: str
    name: str
    description: Optional[str] = None
    organization_id: Optional[str] = None
    created_at: Optional[datetime] = None

    organization: Optional[Organization] = Field(default=None, alias="organizations")

    model_config = {"from_attributes": True, "populate_by_name": True, "extra": "ignore"}


class UserProfile(BaseModel):
    """Profile row from the ``users`` table.

    ``id`` matches the Supabase auth UUID.  The row is created by a
    database trigger on sign-up, so every field but ``id`` may be absent
    for a freshly registered user.
    """

    id: str
    email: Optional[str] = None
    full_name: Optional[str] = None
    organization_id: Optional[str] = None
    role: Optional[str] = None
    created_at: Optional[datetime] = None

    organization: Optional[Organization] = Field(default=None, alias="organizations")

    model_config = {"from_attributes": True, "populate_by_name": True, "extra": "ignore"}
