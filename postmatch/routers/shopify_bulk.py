"""Shopify bulk export trigger endpoints.

WHAT:
    Thin HTTP wrappers around BulkImportService trigger operations.

WHY:
    - Routers handle request parsing only; errors raised by the service are
      rendered by the PostmatchError handler in main.py
    - The same service methods run from scheduled jobs

REFERENCES:
    - postmatch/services/bulk_import_service.py
    - postmatch/routers/shopify_webhooks.py (finish webhook)
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from postmatch.deps import get_import_service
from postmatch.schemas import (
    BulkExportTriggerAllResponse,
    BulkExportTriggerRequest,
    BulkExportTriggerResponse,
)
from postmatch.services.bulk_import_service import BulkExportTrigger, BulkImportService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/shopify/bulk-query", tags=["Shopify Bulk Import"])


def _to_api_response(trigger: BulkExportTrigger) -> BulkExportTriggerResponse:
    return BulkExportTriggerResponse(operation_id=trigger.operation_id, status=trigger.status)


@router.post("/trigger", response_model=BulkExportTriggerResponse)
async def trigger_bulk_export(
    payload: BulkExportTriggerRequest,
    service: BulkImportService = Depends(get_import_service),
) -> BulkExportTriggerResponse:
    """Start a bulk order export for one user.

    WHAT: Issues bulkOperationRunQuery for the user's shop
    WHY: Manual (re)import; Shopify announces completion via webhook

    Errors:
        400 missing user_id, 404 unknown user/integration, 502 Shopify error
    """
    logger.info(f"[SHOPIFY_BULK] Manual trigger for user {payload.user_id}")
    trigger = await service.trigger_bulk_export(payload.user_id)
    return _to_api_response(trigger)


@router.post("/trigger-all", response_model=BulkExportTriggerAllResponse)
async def trigger_bulk_exports_for_all_users(
    service: BulkImportService = Depends(get_import_service),
) -> BulkExportTriggerAllResponse:
    """Start bulk exports for every user with a Shopify integration.

    Per-user failures are returned in `errors`; the response is always 200.
    """
    summary = await service.trigger_bulk_exports_for_all_users()
    return BulkExportTriggerAllResponse(
        triggered=[_to_api_response(t) for t in summary.triggered],
        errors=summary.errors,
    )
