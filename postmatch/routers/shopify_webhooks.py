"""Shopify webhook for finished bulk operations.

WHAT:
    Receives `bulk_operations/finish` and runs the import + reconciliation
    for the user named in the `state` query parameter.

WHY:
    Bulk operations complete asynchronously. The webhook is the only signal
    that an export file is ready.

SECURITY:
    When SHOPIFY_API_SECRET is configured the body must carry a valid
    X-Shopify-Hmac-SHA256 signature; otherwise the check is skipped
    (local development).

REFERENCES:
    - https://shopify.dev/docs/api/usage/bulk-operations/queries#option-b-subscribe-to-the-bulk_operationsfinish-webhook-topic
    - https://shopify.dev/docs/apps/build/webhooks/subscribe/https#step-5-verify-the-webhook
"""

import base64
import hashlib
import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import ValidationError as PydanticValidationError

from postmatch.deps import get_import_service
from postmatch.errors import ValidationError, WebhookSignatureError
from postmatch.schemas import BulkImportResponse, BulkQueryFinishedPayload
from postmatch.services.bulk_import_service import BulkImportResult, BulkImportService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks/shopify", tags=["Shopify Webhooks"])


# =============================================================================
# HMAC VERIFICATION
# =============================================================================

def compute_shopify_hmac(secret: str, request_body: bytes) -> str:
    return base64.b64encode(
        hmac.new(secret.encode("utf-8"), request_body, hashlib.sha256).digest()
    ).decode("utf-8")


def verify_shopify_webhook(request_body: bytes, hmac_header: Optional[str], secret: str) -> bool:
    """Verify that webhook request came from Shopify using HMAC.

    Args:
        request_body: Raw request body bytes
        hmac_header: X-Shopify-Hmac-SHA256 header value
        secret: App shared secret

    Returns:
        True if signature is valid, False otherwise
    """
    if not hmac_header:
        logger.warning("[SHOPIFY_WEBHOOK] Missing HMAC header")
        return False

    # Constant-time comparison
    is_valid = hmac.compare_digest(compute_shopify_hmac(secret, request_body), hmac_header)

    if not is_valid:
        logger.warning("[SHOPIFY_WEBHOOK] Invalid HMAC signature")

    return is_valid


def _parse_payload(body: bytes) -> BulkQueryFinishedPayload:
    if not body.strip():
        return BulkQueryFinishedPayload()
    try:
        return BulkQueryFinishedPayload.model_validate_json(body)
    except PydanticValidationError as e:
        raise ValidationError("Webhook body is not a valid bulk operation payload") from e


def _to_api_response(result: BulkImportResult) -> BulkImportResponse:
    return BulkImportResponse(
        success=True,
        orders_read=result.orders_read,
        lines_skipped=result.lines_skipped,
        orders_created=result.orders_created,
        orders_updated=result.orders_updated,
        orders_deleted=result.orders_deleted,
        orders_reconciled=result.orders_reconciled,
        links_created=result.links_created,
        placeholder_links_created=result.placeholder_links_created,
        message=result.message,
    )


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.post("/bulk-query-finished", response_model=BulkImportResponse)
async def bulk_query_finished(
    request: Request,
    shop: Optional[str] = Query(default=None, description="Shop subdomain"),
    state: Optional[str] = Query(default=None, description="Internal user id"),
    service: BulkImportService = Depends(get_import_service),
) -> BulkImportResponse:
    """Import a finished bulk export and reconcile the user's orders.

    Errors:
        400 missing state / operation id, 401 bad signature,
        404 unknown user, 502 Shopify error, 500/504 batch failure
    """
    body = await request.body()

    secret = service.settings.SHOPIFY_API_SECRET
    if secret and not verify_shopify_webhook(body, request.headers.get("X-Shopify-Hmac-SHA256"), secret):
        raise WebhookSignatureError("Invalid webhook signature")

    payload = _parse_payload(body)
    logger.info(
        f"[SHOPIFY_WEBHOOK] bulk_operations/finish for shop={shop} user={state} "
        f"operation={payload.admin_graphql_api_id} status={payload.status}"
    )
    if payload.error_code:
        logger.warning(f"[SHOPIFY_WEBHOOK] Bulk operation reported error code {payload.error_code}")

    result = await service.on_bulk_export_finished(state, payload.admin_graphql_api_id)
    return _to_api_response(result)
