"""Bulk import orchestrator.

WHAT:
    Drives one user's order import end to end:
    1. trigger_bulk_export: start a Shopify bulk operation over the lookback
       period (IDLE -> TRIGGERED)
    2. on_bulk_export_finished: resolve the export URL (EXPORT_READY), stream
       and upsert the orders (IMPORTED), then reconcile every stored order of
       the user against all of the user's campaigns (RECONCILED -> IDLE)
    3. trigger_bulk_exports_for_all_users: the daily fan-out over every user
       with a Shopify integration

WHY:
    Routers and scheduled jobs share the same logic; routers stay thin
    (request parsing, error mapping) while this module owns the flow.

NOTE:
    - Nothing is recorded locally between trigger and finish; the webhook
      carries the user id (`state`) and the operation id.
    - No automatic retries. A failure propagates to the caller; Shopify
      redelivers the webhook and every step is idempotent.
    - Work for one user is serialized through UserLockRegistry.

REFERENCES:
    - postmatch/services/bulk_export_reader.py
    - postmatch/services/order_store.py
    - postmatch/services/profile_matcher.py
    - postmatch/routers/shopify_webhooks.py (webhook entry point)
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple

import httpx
from sqlalchemy.orm import sessionmaker

from postmatch.database import session_scope
from postmatch.deps import Settings, get_settings
from postmatch.errors import NotFoundError, ValidationError
from postmatch.models import Campaign, Integration, IntegrationTypeEnum, Order, User
from postmatch.services.bulk_export_reader import read_bulk_export
from postmatch.services.order_store import UpsertResult, upsert_orders
from postmatch.services.profile_matcher import reconcile_order
from postmatch.services.shopify_client import ShopifyClient
from postmatch.services.user_locks import UserLockRegistry
from postmatch.telemetry.sentry import capture_exception

logger = logging.getLogger(__name__)

ClientFactory = Callable[[str, str], ShopifyClient]


class ImportStage(str, enum.Enum):
    IDLE = "idle"
    TRIGGERED = "triggered"
    EXPORT_READY = "export_ready"
    IMPORTED = "imported"
    RECONCILED = "reconciled"


# =============================================================================
# RESULT TYPES
# =============================================================================

@dataclass
class BulkExportTrigger:
    """A started bulk operation."""
    user_id: str
    operation_id: str
    status: Optional[str] = None


@dataclass
class ReconcileStats:
    orders_reconciled: int = 0
    links_created: int = 0
    placeholder_links_created: int = 0


@dataclass
class BulkImportResult:
    """Outcome of importing and reconciling one finished export."""
    user_id: str
    operation_id: str
    orders_read: int = 0
    lines_skipped: int = 0
    orders_created: int = 0
    orders_updated: int = 0
    orders_deleted: int = 0
    orders_reconciled: int = 0
    links_created: int = 0
    placeholder_links_created: int = 0

    @property
    def message(self) -> str:
        return (
            f"Imported {self.orders_created} new orders ({self.orders_updated} refunded, "
            f"{self.orders_deleted} removed), {self.links_created} attribution links created"
        )


@dataclass
class BulkTriggerSummary:
    triggered: List[BulkExportTrigger] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


# =============================================================================
# SERVICE
# =============================================================================

class BulkImportService:
    """Bulk export trigger + import + reconciliation for Shopify users.

    Usage:
        service = BulkImportService(SessionLocal, settings)
        trigger = await service.trigger_bulk_export(user_id)
        # ... Shopify calls the bulk_operations/finish webhook ...
        result = await service.on_bulk_export_finished(user_id, trigger.operation_id)

    Tests inject `http_client` (MockTransport) and/or `client_factory`.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        settings: Optional[Settings] = None,
        client_factory: Optional[ClientFactory] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        user_locks: Optional[UserLockRegistry] = None,
    ):
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.http_client = http_client
        self.user_locks = user_locks or UserLockRegistry()
        self._client_factory = client_factory or self._default_client

    def _default_client(self, shop: str, access_token: str) -> ShopifyClient:
        return ShopifyClient(
            shop=shop,
            access_token=access_token,
            api_version=self.settings.SHOPIFY_API_VERSION,
            http_client=self.http_client,
            timeout=self.settings.HTTP_TIMEOUT_SECONDS,
        )

    def _stage(self, user_id: str, stage: ImportStage) -> None:
        logger.info("[BULK_IMPORT] User %s -> %s", user_id, stage.value.upper())

    # -------------------------------------------------------------------------
    # Credentials
    # -------------------------------------------------------------------------

    def _load_shopify_credentials(self, user_id: str) -> Tuple[str, str]:
        """Return (shop, token) of the user's Shopify integration.

        Raises:
            NotFoundError: unknown user, or no usable Shopify integration
        """
        with session_scope(self.session_factory) as db:
            user = db.get(User, user_id)
            if user is None:
                raise NotFoundError(f"User {user_id} not found")

            integration = (
                db.query(Integration)
                .filter(
                    Integration.user_id == user_id,
                    Integration.type == IntegrationTypeEnum.shopify,
                )
                .order_by(Integration.created_at.desc())
                .first()
            )
            if integration is None or not integration.shop or not integration.token:
                raise NotFoundError(f"User {user_id} has no Shopify integration")

            return integration.shop, integration.token

    def _shopify_user_ids(self) -> List[str]:
        with session_scope(self.session_factory) as db:
            rows = (
                db.query(Integration.user_id)
                .filter(Integration.type == IntegrationTypeEnum.shopify)
                .distinct()
                .order_by(Integration.user_id)
                .all()
            )
            return [row[0] for row in rows]

    # -------------------------------------------------------------------------
    # Trigger
    # -------------------------------------------------------------------------

    async def trigger_bulk_export(self, user_id: Optional[str]) -> BulkExportTrigger:
        """Start a bulk export of the user's orders from the lookback period.

        Raises:
            ValidationError: missing user id
            NotFoundError: unknown user or no Shopify integration
            FetchError: Shopify rejected the mutation (userErrors, HTTP, GraphQL)
        """
        if not user_id:
            raise ValidationError("user_id is required")

        async with self.user_locks.hold(user_id):
            shop, token = await asyncio.to_thread(self._load_shopify_credentials, user_id)
            client = self._client_factory(shop, token)

            created_after = (datetime.utcnow() - timedelta(days=self.settings.BULK_EXPORT_LOOKBACK_DAYS)).date()
            operation = await client.run_bulk_orders_query(created_after)

            self._stage(user_id, ImportStage.TRIGGERED)
            return BulkExportTrigger(
                user_id=user_id,
                operation_id=operation["id"],
                status=operation.get("status"),
            )

    async def trigger_bulk_exports_for_all_users(self) -> BulkTriggerSummary:
        """Trigger a bulk export for every user with a Shopify integration.

        Per-user failures are logged and collected; the loop always finishes.
        """
        summary = BulkTriggerSummary()
        user_ids = await asyncio.to_thread(self._shopify_user_ids)
        logger.info("[BULK_IMPORT] Triggering bulk exports for %d users", len(user_ids))

        for user_id in user_ids:
            try:
                summary.triggered.append(await self.trigger_bulk_export(user_id))
            except Exception as e:
                logger.error("[BULK_IMPORT] Trigger failed for user %s: %s", user_id, e, exc_info=True)
                capture_exception(e, extra={"user_id": user_id})
                summary.errors.append(f"{user_id}: {e}")

        logger.info(
            "[BULK_IMPORT] Triggered %d bulk exports (%d failed)",
            len(summary.triggered), len(summary.errors),
        )
        return summary

    # -------------------------------------------------------------------------
    # Finish
    # -------------------------------------------------------------------------

    async def on_bulk_export_finished(
        self,
        user_id: Optional[str],
        operation_id: Optional[str],
    ) -> BulkImportResult:
        """Import a finished export and reconcile the user's orders.

        Raises:
            ValidationError: missing user id or operation id
            NotFoundError: unknown user or no Shopify integration
            FetchError: URL lookup or export download failed
            TransactionError / TransactionTimeout: an order batch failed
        """
        if not user_id or not operation_id:
            raise ValidationError("Both user id (state) and admin_graphql_api_id are required")

        async with self.user_locks.hold(user_id):
            shop, token = await asyncio.to_thread(self._load_shopify_credentials, user_id)
            client = self._client_factory(shop, token)

            url = await client.get_bulk_operation_url(operation_id)
            self._stage(user_id, ImportStage.EXPORT_READY)

            export = await read_bulk_export(
                url,
                http_client=self.http_client,
                timeout=self.settings.HTTP_TIMEOUT_SECONDS,
            )
            upsert: UpsertResult = await upsert_orders(
                self.session_factory,
                user_id,
                export.orders,
                batch_size=self.settings.ORDER_BATCH_SIZE,
                concurrency=self.settings.ORDER_BATCH_CONCURRENCY,
                timeout=self.settings.TRANSACTION_TIMEOUT_SECONDS,
            )
            self._stage(user_id, ImportStage.IMPORTED)

            stats = await asyncio.to_thread(self.reconcile_user_orders, user_id)
            self._stage(user_id, ImportStage.RECONCILED)

            result = BulkImportResult(
                user_id=user_id,
                operation_id=operation_id,
                orders_read=len(export.orders),
                lines_skipped=export.skipped_lines,
                orders_created=upsert.inserted,
                orders_updated=upsert.updated,
                orders_deleted=upsert.deleted,
                orders_reconciled=stats.orders_reconciled,
                links_created=stats.links_created,
                placeholder_links_created=stats.placeholder_links_created,
            )
            logger.info("[BULK_IMPORT] User %s: %s", user_id, result.message)
            self._stage(user_id, ImportStage.IDLE)
            return result

    def reconcile_user_orders(self, user_id: str) -> ReconcileStats:
        """Match every stored order of the user against all of the user's campaigns.

        Runs in one session; committed once all orders are processed.
        """
        stats = ReconcileStats()
        window_days = self.settings.CAMPAIGN_WINDOW_DAYS

        with session_scope(self.session_factory) as db:
            campaigns = db.query(Campaign).filter(Campaign.user_id == user_id).all()
            if not campaigns:
                logger.info("[BULK_IMPORT] User %s has no campaigns, nothing to reconcile", user_id)
                return stats

            orders = (
                db.query(Order)
                .filter(Order.user_id == user_id)
                .order_by(Order.created_at, Order.id)
                .all()
            )
            for order in orders:
                for outcome in reconcile_order(db, order, campaigns, window_days):
                    stats.links_created += outcome.links_created
                    if outcome.placeholder_profile_id and outcome.links_created:
                        stats.placeholder_links_created += outcome.links_created
                stats.orders_reconciled += 1

        logger.info(
            "[BULK_IMPORT] Reconciled %d orders of user %s against %d campaigns: %d links created",
            stats.orders_reconciled, user_id, len(campaigns), stats.links_created,
        )
        return stats
