"""Shopify GraphQL Admin API client for bulk order exports.

WHAT:
    Wrapper for the Shopify Admin GraphQL API with:
    - Authentication handling
    - Rate limiting (2 requests/second)
    - Bulk operation start (`bulkOperationRunQuery`) and result lookup

WHY:
    Large shops have too many orders for cursor pagination inside a webhook
    call. A bulk operation exports every order to one NDJSON file that
    Shopify builds asynchronously and announces via webhook.

NOTE:
    No automatic retries. A failed call raises ShopifyAPIError and the
    caller (webhook handler) answers with an error; Shopify redelivers.

REFERENCES:
    - Bulk operations: https://shopify.dev/docs/api/usage/bulk-operations/queries
    - Rate limits: https://shopify.dev/docs/api/usage/rate-limits
"""

import asyncio
import logging
import time
from datetime import date
from typing import Any, Dict, List, Optional

import httpx

from postmatch.errors import FetchError

logger = logging.getLogger(__name__)

DEFAULT_API_VERSION = "2024-07"

# Shopify allows 2 requests/second for regular apps
RATE_LIMIT_DELAY = 0.5


class ShopifyAPIError(FetchError):
    """Shopify answered with a non-OK status, GraphQL errors or userErrors."""


def shop_domain_for(shop: str) -> str:
    """Accept "mystore" or "mystore.myshopify.com"; return the full domain."""
    shop = shop.strip().lower()
    if shop.startswith("https://"):
        shop = shop[len("https://"):]
    shop = shop.rstrip("/")
    if shop.endswith(".myshopify.com"):
        return shop
    return f"{shop}.myshopify.com"


def build_bulk_orders_query(created_after: date) -> str:
    """Mutation that exports every order created after `created_after`.

    Refund line items are a nested connection, so Shopify writes them as
    separate NDJSON lines carrying `__parentId` (stitched by the reader).
    """
    return f'''
    mutation {{
        bulkOperationRunQuery(
            query: """
            {{
                orders(query: "created_at:>{created_after.isoformat()}") {{
                    edges {{
                        node {{
                            id
                            createdAt
                            discountCodes
                            totalPriceSet {{
                                shopMoney {{
                                    amount
                                    currencyCode
                                }}
                            }}
                            customer {{
                                firstName
                                lastName
                                email
                                addresses(first: 1) {{
                                    address1
                                    zip
                                    city
                                    country
                                }}
                            }}
                            refunds {{
                                id
                                createdAt
                                refundLineItems {{
                                    edges {{
                                        node {{
                                            id
                                            subtotalSet {{
                                                shopMoney {{
                                                    amount
                                                }}
                                            }}
                                            totalTaxSet {{
                                                shopMoney {{
                                                    amount
                                                }}
                                            }}
                                        }}
                                    }}
                                }}
                            }}
                        }}
                    }}
                }}
            }}
            """
        ) {{
            bulkOperation {{
                id
                status
            }}
            userErrors {{
                field
                message
            }}
        }}
    }}
    '''


BULK_OPERATION_URL_QUERY = """
query GetBulkOperationUrl($id: ID!) {
    node(id: $id) {
        ... on BulkOperation {
            id
            status
            url
            partialDataUrl
        }
    }
}
"""


class ShopifyClient:
    """GraphQL client for Shopify Admin API.

    WHAT: Starts bulk order exports and resolves their download URLs
    WHY: Centralized API access with rate limiting and error handling

    Usage:
        client = ShopifyClient(shop="mystore", access_token="shpat_xxx")
        operation = await client.run_bulk_orders_query(date(2024, 1, 1))
        url = await client.get_bulk_operation_url(operation["id"])

    Tests pass `http_client=httpx.AsyncClient(transport=httpx.MockTransport(...))`.
    """

    def __init__(
        self,
        shop: str,
        access_token: str,
        api_version: str = DEFAULT_API_VERSION,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        """Initialize Shopify client.

        Args:
            shop: Shop subdomain or full myshopify.com domain
            access_token: Shopify Admin API access token
            api_version: API version to use (default: 2024-07)
            http_client: Shared AsyncClient; a short-lived one is opened per call if None
            timeout: Request timeout in seconds
        """
        self.shop_domain = shop_domain_for(shop)
        self.access_token = access_token
        self.api_version = api_version
        self.base_url = f"https://{self.shop_domain}/admin/api/{api_version}/graphql.json"
        self._http_client = http_client
        self._timeout = timeout

        # Rate limiting
        self._last_request_time: float = 0

        logger.info(f"[SHOPIFY_CLIENT] Initialized for {self.shop_domain} (API version: {api_version})")

    async def _rate_limit(self) -> None:
        """Wait if needed to respect the 2 req/sec limit."""
        elapsed = time.time() - self._last_request_time

        if elapsed < RATE_LIMIT_DELAY:
            wait_time = RATE_LIMIT_DELAY - elapsed
            logger.debug(f"[SHOPIFY_CLIENT] Rate limiting: waiting {wait_time:.3f}s")
            await asyncio.sleep(wait_time)

        self._last_request_time = time.time()

    async def _post(self, payload: Dict[str, Any]) -> httpx.Response:
        headers = {
            "X-Shopify-Access-Token": self.access_token,
            "Content-Type": "application/json",
        }
        if self._http_client is not None:
            return await self._http_client.post(self.base_url, json=payload, headers=headers)
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            return await client.post(self.base_url, json=payload, headers=headers)

    async def execute(
        self,
        query: str,
        variables: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Execute a GraphQL query against Shopify Admin API.

        Args:
            query: GraphQL query string
            variables: Query variables (optional)

        Returns:
            The `data` object of the response

        Raises:
            ShopifyAPIError: transport failure, non-OK status or GraphQL errors
        """
        await self._rate_limit()

        payload: Dict[str, Any] = {"query": query}
        if variables:
            payload["variables"] = variables

        try:
            response = await self._post(payload)
        except httpx.RequestError as e:
            logger.warning(f"[SHOPIFY_CLIENT] Request error: {e}")
            raise ShopifyAPIError(f"Request to {self.shop_domain} failed: {e}") from e

        if not response.is_success:
            logger.error(f"[SHOPIFY_CLIENT] HTTP error {response.status_code} from {self.shop_domain}")
            raise ShopifyAPIError(
                f"Shopify responded with HTTP {response.status_code}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ShopifyAPIError("Shopify returned a non-JSON body", status_code=response.status_code) from e

        if data.get("errors"):
            errors = data["errors"]
            error_messages = [e.get("message", str(e)) if isinstance(e, dict) else str(e) for e in errors]
            logger.error(f"[SHOPIFY_CLIENT] GraphQL errors: {error_messages}")
            raise ShopifyAPIError(
                f"GraphQL errors: {', '.join(error_messages)}",
                status_code=response.status_code,
                errors=errors,
            )

        return data.get("data") or {}

    # =========================================================================
    # BULK OPERATIONS
    # =========================================================================

    async def run_bulk_orders_query(self, created_after: date) -> Dict[str, Optional[str]]:
        """Start a bulk export of orders created after `created_after`.

        Returns:
            {"id": <BulkOperation gid>, "status": <status>}

        Raises:
            ShopifyAPIError: on userErrors (e.g. another bulk query already running)
        """
        data = await self.execute(build_bulk_orders_query(created_after))
        result = data.get("bulkOperationRunQuery") or {}

        user_errors: List[Dict[str, Any]] = result.get("userErrors") or []
        if user_errors:
            messages = [e.get("message", str(e)) for e in user_errors]
            logger.error(f"[SHOPIFY_CLIENT] Bulk query rejected for {self.shop_domain}: {messages}")
            raise ShopifyAPIError(f"Bulk query rejected: {', '.join(messages)}", errors=user_errors)

        operation = result.get("bulkOperation") or {}
        if not operation.get("id"):
            raise ShopifyAPIError("Bulk query response did not include an operation id")

        logger.info(
            f"[SHOPIFY_CLIENT] Started bulk operation {operation['id']} "
            f"for {self.shop_domain} (status: {operation.get('status')})"
        )
        return {"id": operation["id"], "status": operation.get("status")}

    async def get_bulk_operation_url(self, operation_id: str) -> str:
        """Resolve the download URL of a finished bulk operation.

        Raises:
            ShopifyAPIError: if the operation has no result URL
        """
        data = await self.execute(BULK_OPERATION_URL_QUERY, {"id": operation_id})
        node = data.get("node") or {}
        url = node.get("url")

        if not url:
            raise ShopifyAPIError(
                f"Bulk operation {operation_id} has no result URL "
                f"(status: {node.get('status')}, partial: {bool(node.get('partialDataUrl'))})"
            )

        logger.info(f"[SHOPIFY_CLIENT] Bulk operation {operation_id} result ready")
        return url
