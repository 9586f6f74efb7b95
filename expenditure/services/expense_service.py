"""
Expense Service.

Session-gated facade over the collection repositories.  Every method
returns a ``RemoteResult`` instead of raising, so UI-facing callers must
handle both the success and the failure branch explicitly.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any, Optional, Union

from expenditure.auth import SessionManager
from expenditure.errors import AuthenticationError
from expenditure.logger import StructuredLogger
from expenditure.models.enums import ExpenseStatus
from expenditure.models.expense import Expense, ExpenseCreate, ExpenseUpdate
from expenditure.models.reference import ExpenseCategory, Organization, UserProfile
from expenditure.models.results import RemoteResult
from expenditure.repositories.base_repository import OrderBy
from expenditure.repositories.category_repository import CategoryRepository
from expenditure.repositories.expense_repository import ExpenseRepository
from expenditure.repositories.organization_repository import OrganizationRepository
from expenditure.repositories.user_repository import UserRepository
from expenditure.services.auth_service import AuthService
from expenditure.services.base_service import BaseService


class ExpenseService(BaseService):
    """Expense CRUD plus reference-data lookups for the signed-in user.

    Parameters
    ----------
    expense_repo / category_repo / user_repo / organization_repo:
        Collection repositories sharing one client handle.
    session:
        Session holder; every call requires a valid session because the
        tables are protected by row-level security.
    logger:
        Structured JSON logger.
    auth_service:
        When given, a locally expired session is re-read from the client
        (which refreshes tokens itself) before a call is refused.
    """

    def __init__(
        self,
        expense_repo: ExpenseRepository,
        category_repo: CategoryRepository,
        user_repo: UserRepository,
        organization_repo: OrganizationRepository,
        session: SessionManager,
        logger: StructuredLogger,
        auth_service: Optional[AuthService] = None,
    ) -> None:
        super().__init__(logger)
        self._expenses = expense_repo
        self._categories = category_repo
        self._users = user_repo
        self._organizations = organization_repo
        self._session = session
        self._auth = auth_service

    async def _session_failure(self) -> Optional[RemoteResult[Any]]:
        try:
            self._session.require()
            return None
        except AuthenticationError as exc:
            if self._auth is None:
                return RemoteResult.from_error(exc)

        # The client refreshes tokens on its own; pick up its current session.
        await self._auth.get_current_session()
        try:
            self._session.require()
        except AuthenticationError as exc:
            return RemoteResult.from_error(exc)
        self._logger.info("Session re-synchronised from the client.")
        return None

    # ------------------------------------------------------------------
    # Expenses
    # ------------------------------------------------------------------

    async def list_expenses(
        self,
        order_by: Optional[Sequence[OrderBy]] = None,
        expand: Optional[frozenset[str]] = None,
    ) -> RemoteResult[list[Expense]]:
        if (failure := await self._session_failure()) is not None:
            return failure
        return await self._as_result(
            self._expenses.fetch_all(order_by=order_by, expand=expand),
            operation_name="list_expenses",
        )

    async def list_expenses_by_status(
        self, status: ExpenseStatus,
    ) -> RemoteResult[list[Expense]]:
        if (failure := await self._session_failure()) is not None:
            return failure
        return await self._as_result(
            self._expenses.fetch_by_status(status),
            operation_name="list_expenses_by_status",
        )

    async def get_expense(self, expense_id: str) -> RemoteResult[Optional[Expense]]:
        if (failure := await self._session_failure()) is not None:
            return failure
        return await self._as_result(
            self._expenses.get_by_id(expense_id),
            operation_name="get_expense",
        )

    async def create_expense(
        self, fields: Union[Mapping[str, Any], ExpenseCreate],
    ) -> RemoteResult[Expense]:
        """Create an expense; ``user_id`` defaults to the signed-in user."""
        if (failure := await self._session_failure()) is not None:
            return failure
        if isinstance(fields, Mapping) and "user_id" not in fields:
            fields = {**fields, "user_id": self._session.get_current_user().id}
        return await self._as_result(
            self._expenses.create(fields),
            operation_name="create_expense",
        )

    async def update_expense(
        self,
        expense_id: str,
        fields: Union[Mapping[str, Any], ExpenseUpdate],
    ) -> RemoteResult[Expense]:
        if (failure := await self._session_failure()) is not None:
            return failure
        return await self._as_result(
            self._expenses.update(expense_id, fields),
            operation_name="update_expense",
        )

    async def delete_expense(self, expense_id: str) -> RemoteResult[None]:
        if (failure := await self._session_failure()) is not None:
            return failure
        return await self._as_result(
            self._expenses.delete(expense_id),
            operation_name="delete_expense",
        )

    async def approve_expense(self, expense_id: str) -> RemoteResult[Expense]:
        if (failure := await self._session_failure()) is not None:
            return failure
        return await self._as_result(
            self._expenses.set_status(expense_id, ExpenseStatus.APPROVED),
            operation_name="approve_expense",
        )

    async def reject_expense(self, expense_id: str) -> RemoteResult[Expense]:
        if (failure := await self._session_failure()) is not None:
            return failure
        return await self._as_result(
            self._expenses.set_status(expense_id, ExpenseStatus.REJECTED),
            operation_name="reject_expense",
        )

    # ------------------------------------------------------------------
    # Reference data
    # ------------------------------------------------------------------

    async def list_categories(self) -> RemoteResult[list[ExpenseCategory]]:
        if (failure := await self._session_failure()) is not None:
            return failure
        return await self._as_result(
            self._categories.fetch_all(), operation_name="list_categories",
        )

    async def list_users(self) -> RemoteResult[list[UserProfile]]:
        if (failure := await self._session_failure()) is not None:
            return failure
        return await self._as_result(
            self._users.fetch_all(), operation_name="list_users",
        )

    async def list_organizations(self) -> RemoteResult[list[Organization]]:
        if (failure := await self._session_failure()) is not None:
            return failure
        return await self._as_result(
            self._organizations.fetch_all(), operation_name="list_organizations",
        )
