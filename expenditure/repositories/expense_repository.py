"""
Expense Repository.

Handles data access for the ``expenses`` collection, expanded by default
with the expense category and the submitting user.
"""

from __future__ import annotations

from typing import Optional

from expenditure.client import ClientHandle
from expenditure.logger import StructuredLogger
from expenditure.models.enums import Collection, ExpenseStatus
from expenditure.models.expense import Expense, ExpenseCreate, ExpenseUpdate
from expenditure.repositories.base_repository import BaseRepository, OrderBy


class ExpenseRepository(BaseRepository[Expense]):
    """Data access layer for Expense entities.

    The default ordering (newest ``expense_date`` first, ties by ``id``)
    is the same standing order the local snapshot uses, so a freshly
    fetched list can be dropped into the reconciler unchanged.
    """

    TABLE = Collection.EXPENSES
    MODEL = Expense
    CREATE_MODEL = ExpenseCreate
    UPDATE_MODEL = ExpenseUpdate
    RELATIONS = frozenset({"expense_categories", "users", "organizations"})
    DEFAULT_EXPAND = frozenset({"expense_categories", "users"})
    DEFAULT_ORDER = (OrderBy("expense_date", descending=True), OrderBy("id"))

    def __init__(
        self,
        client: ClientHandle,
        logger: StructuredLogger,
        *,
        idempotent_delete: bool = True,
    ) -> None:
        super().__init__(client, logger, idempotent_delete=idempotent_delete)

    async def fetch_by_status(
        self,
        status: ExpenseStatus,
        expand: Optional[frozenset[str]] = None,
    ) -> list[Expense]:
        """Fetch every expense currently in *status*."""
        return await self.fetch_all(
            expand=expand, filters={"status": ExpenseStatus(status).value},
        )

    async def set_status(self, expense_id: str, status: ExpenseStatus) -> Expense:
        """Move an expense to *status*.

        Whether the transition is allowed is decided by the database
        policies, not here.
        """
        return await self.update(expense_id, ExpenseUpdate(status=status))
