"""
Services Package.

Services depend on the repository layer for data access, the
subscription manager for change streams and the session holder for the
authenticated user.

The ``create_services()`` factory wires every repository and service
together around one ``ClientHandle``, returning a typed dict that the
application layer can consume without knowing the dependency graph.
"""

from __future__ import annotations

from typing import TypedDict

from expenditure.auth import SessionManager
from expenditure.client import ClientHandle
from expenditure.config import AppConfig
from expenditure.logger import get_logger
from expenditure.models.enums import Collection
from expenditure.models.expense import Expense
from expenditure.reconciler import LocalStateReconciler
from expenditure.repositories.category_repository import CategoryRepository
from expenditure.repositories.expense_repository import ExpenseRepository
from expenditure.repositories.organization_repository import OrganizationRepository
from expenditure.repositories.user_repository import UserRepository
from expenditure.services.auth_service import AuthService
from expenditure.services.collection_feed import CollectionFeed
from expenditure.services.expense_service import ExpenseService
from expenditure.subscriptions import SubscriptionManager


class ServiceContainer(TypedDict):
    """Typed container for all repositories and services."""

    # --- Repositories ---
    expense_repository: ExpenseRepository
    category_repository: CategoryRepository
    user_repository: UserRepository
    organization_repository: OrganizationRepository

    # --- Realtime ---
    subscription_manager: SubscriptionManager
    expense_reconciler: LocalStateReconciler[Expense]

    # --- Services ---
    auth_service: AuthService
    expense_service: ExpenseService
    expense_feed: CollectionFeed[Expense]


def create_services(
    client: ClientHandle,
    config: AppConfig,
    session: SessionManager,
) -> ServiceContainer:
    """
    Wire all repositories and services together.

    This is the single composition root for the data layer.  The
    application entry-point calls this once at startup.

    Args:
        client: Connected client handle shared by every component.
        config: Application configuration.
        session: Session holder shared with the UI layer.

    Returns:
        ServiceContainer mapping names to fully-wired instances.
    """
    logger = get_logger("expenditure.services")

    # ------------------------------------------------------------------
    # 1. Repositories (data-access layer)
    # ------------------------------------------------------------------
    repo_logger = get_logger("expenditure.repositories")
    expense_repo = ExpenseRepository(
        client, repo_logger, idempotent_delete=config.IDEMPOTENT_DELETE,
    )
    category_repo = CategoryRepository(
        client, repo_logger, idempotent_delete=config.IDEMPOTENT_DELETE,
    )
    user_repo = UserRepository(
        client, repo_logger, idempotent_delete=config.IDEMPOTENT_DELETE,
    )
    organization_repo = OrganizationRepository(
        client, repo_logger, idempotent_delete=config.IDEMPOTENT_DELETE,
    )

    # ------------------------------------------------------------------
    # 2. Realtime (subscriptions + local snapshot)
    # ------------------------------------------------------------------
    subscription_manager = SubscriptionManager(
        client,
        get_logger("expenditure.realtime"),
        schema=config.REALTIME_SCHEMA,
        reconnect_base_s=config.REALTIME_RECONNECT_BASE_S,
        reconnect_max_s=config.REALTIME_RECONNECT_MAX_S,
        max_reconnect_attempts=config.REALTIME_MAX_RECONNECT_ATTEMPTS,
    )
    expense_reconciler: LocalStateReconciler[Expense] = LocalStateReconciler(
        get_logger("expenditure.reconciler"),
        order_field="expense_date",
        descending=True,
        collection=Collection.EXPENSES,
    )

    # ------------------------------------------------------------------
    # 3. Services
    # ------------------------------------------------------------------
    auth_service = AuthService(client=client, session=session, logger=logger)
    expense_service = ExpenseService(
        expense_repo=expense_repo,
        category_repo=category_repo,
        user_repo=user_repo,
        organization_repo=organization_repo,
        session=session,
        logger=logger,
        auth_service=auth_service,
    )
    expense_feed: CollectionFeed[Expense] = CollectionFeed(
        expense_repo,
        subscription_manager,
        expense_reconciler,
        logger,
        read_attempts=config.READ_RETRY_ATTEMPTS,
        read_retry_base_s=config.READ_RETRY_BASE_S,
    )

    return ServiceContainer(
        expense_repository=expense_repo,
        category_repository=category_repo,
        user_repository=user_repo,
        organization_repository=organization_repo,
        subscription_manager=subscription_manager,
        expense_reconciler=expense_reconciler,
        auth_service=auth_service,
        expense_service=expense_service,
        expense_feed=expense_feed,
    )
