"""
Session User Model.

The authenticated identity held by ``SessionManager``.  Built from the
Supabase auth user, not from the ``users`` profile table.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class SessionUser(BaseModel):
    """Represents the signed-in user.

    ``display_name`` comes from the ``full_name`` entry of the auth
    user's metadata and falls back to the local part of the email.
    """

    id: str  # Supabase UUID
    email: str
    display_name: str
    last_sign_in_at: Optional[datetime] = None

    model_config = {"from_attributes": True}
