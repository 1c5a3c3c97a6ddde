"""Pydantic schemas for bulk export records and request/response payloads.

WHAT:
    - Bulk export records: one `BulkOrder` per NDJSON line of a Shopify
      bulk operation result (camelCase aliases match the GraphQL field names)
    - API payloads for the trigger/webhook/revenue endpoints

WHY:
    Validation happens once at the edge; services work with typed records
    instead of raw dicts.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# =============================================================================
# BULK EXPORT RECORDS
# =============================================================================

class _ExportModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ShopMoney(_ExportModel):
    amount: Decimal = Decimal("0")
    currency_code: Optional[str] = Field(default=None, alias="currencyCode")


class MoneySet(_ExportModel):
    shop_money: ShopMoney = Field(default_factory=ShopMoney, alias="shopMoney")


def _amount(money_set: Optional[MoneySet]) -> Decimal:
    if money_set is None:
        return Decimal("0")
    return money_set.shop_money.amount


class BulkAddress(_ExportModel):
    address1: Optional[str] = None
    zip: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None


class BulkCustomer(_ExportModel):
    first_name: Optional[str] = Field(default=None, alias="firstName")
    last_name: Optional[str] = Field(default=None, alias="lastName")
    email: Optional[str] = None
    addresses: List[BulkAddress] = Field(default_factory=list)

    @field_validator("addresses", mode="before")
    @classmethod
    def _none_as_empty(cls, value: Any) -> Any:
        return value or []


class RefundLineItem(_ExportModel):
    subtotal_set: Optional[MoneySet] = Field(default=None, alias="subtotalSet")
    total_tax_set: Optional[MoneySet] = Field(default=None, alias="totalTaxSet")

    @property
    def amount(self) -> Decimal:
        """Refunded value of the line: subtotal + tax."""
        return _amount(self.subtotal_set) + _amount(self.total_tax_set)


def _unwrap_connection(value: Any) -> Any:
    """Accept a plain list, `{"edges": [{"node": ...}]}` or `{"nodes": [...]}`."""
    if value is None:
        return []
    if isinstance(value, dict):
        if "nodes" in value:
            return value["nodes"] or []
        if "edges" in value:
            return [edge.get("node", {}) for edge in value["edges"] or []]
    return value


class Refund(_ExportModel):
    id: Optional[str] = None
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    refund_line_items: List[RefundLineItem] = Field(default_factory=list, alias="refundLineItems")

    @field_validator("refund_line_items", mode="before")
    @classmethod
    def _unwrap(cls, value: Any) -> Any:
        return _unwrap_connection(value)

    @property
    def amount(self) -> Decimal:
        return sum((item.amount for item in self.refund_line_items), Decimal("0"))


class BulkOrder(_ExportModel):
    """One order line of the bulk export."""

    id: str
    created_at: datetime = Field(alias="createdAt")
    total_price_set: Optional[MoneySet] = Field(default=None, alias="totalPriceSet")
    customer: Optional[BulkCustomer] = None
    discount_codes: List[str] = Field(default_factory=list, alias="discountCodes")
    refunds: List[Refund] = Field(default_factory=list)

    @field_validator("discount_codes", "refunds", mode="before")
    @classmethod
    def _none_as_empty(cls, value: Any) -> Any:
        return value or []

    @property
    def total_price(self) -> Decimal:
        return _amount(self.total_price_set)

    @property
    def refunded_amount(self) -> Decimal:
        """Total refunded to date, summed over every refund line item."""
        return sum((refund.amount for refund in self.refunds), Decimal("0"))


# =============================================================================
# API PAYLOADS
# =============================================================================

class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(description="Service status", examples=["ok"])


class ErrorResponse(BaseModel):
    error: str = Field(description="Error class name", examples=["NotFoundError"])
    message: str = Field(description="Human readable message")


class BulkExportTriggerRequest(BaseModel):
    """Request body for manually triggering a user's bulk export."""

    user_id: Optional[str] = Field(default=None, description="Internal user id")


class BulkExportTriggerResponse(BaseModel):
    operation_id: str = Field(description="Shopify BulkOperation gid")
    status: Optional[str] = Field(default=None, description="Operation status reported by Shopify")


class BulkExportTriggerAllResponse(BaseModel):
    triggered: List[BulkExportTriggerResponse] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)


class BulkQueryFinishedPayload(BaseModel):
    """Body of the bulk_operations/finish webhook."""

    model_config = ConfigDict(extra="ignore")

    admin_graphql_api_id: Optional[str] = None
    status: Optional[str] = None
    error_code: Optional[str] = None


class BulkImportResponse(BaseModel):
    """Summary returned once an export has been imported and reconciled."""

    success: bool
    orders_read: int = 0
    lines_skipped: int = 0
    orders_created: int = 0
    orders_updated: int = 0
    orders_deleted: int = 0
    orders_reconciled: int = 0
    links_created: int = 0
    placeholder_links_created: int = 0
    message: str = ""


class CampaignRevenueResponse(BaseModel):
    campaign_id: str
    matched_orders: int = Field(description="Orders linked to real mailed profiles")
    matched_revenue: Decimal
    placeholder_orders: int = Field(description="Orders linked through discount code only")
    placeholder_revenue: Decimal
    total_orders: int
    total_revenue: Decimal
