"""Bulk export reader: stream a Shopify NDJSON export into order records.

WHAT:
    Downloads the result file of a bulk operation, decodes it incrementally
    and validates each line into a `BulkOrder`.

WHY:
    Exports for large shops run to hundreds of MB; streaming keeps memory
    bounded to the parsed records rather than the raw body.

ERROR HANDLING:
    - FetchError: non-OK response or missing body (aborts the import)
    - ParseError: one malformed line; logged and skipped, reading continues

CHILD LINES:
    Nested connections are exported as separate lines that carry
    `__parentId`. Refund line items are attached to the refund (by id) of an
    order read earlier in the file; Shopify always writes parents first.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx
from pydantic import ValidationError as PydanticValidationError

from postmatch.errors import FetchError, ParseError
from postmatch.schemas import BulkOrder, RefundLineItem

logger = logging.getLogger(__name__)


@dataclass
class BulkExportResult:
    orders: List[BulkOrder] = field(default_factory=list)
    skipped_lines: int = 0
    child_lines: int = 0
    errors: List[str] = field(default_factory=list)


def parse_order_line(line: str, line_number: Optional[int] = None) -> Dict[str, Any]:
    """Decode one NDJSON line into a JSON object.

    Raises:
        ParseError: invalid JSON or not an object
    """
    try:
        payload = json.loads(line)
    except json.JSONDecodeError as e:
        raise ParseError(f"Line {line_number}: invalid JSON ({e.msg})", line_number=line_number) from e
    if not isinstance(payload, dict):
        raise ParseError(f"Line {line_number}: expected an object", line_number=line_number)
    return payload


def to_bulk_order(payload: Dict[str, Any], line_number: Optional[int] = None) -> BulkOrder:
    try:
        return BulkOrder.model_validate(payload)
    except PydanticValidationError as e:
        raise ParseError(
            f"Line {line_number}: not a valid order ({e.error_count()} errors)",
            line_number=line_number,
        ) from e


class _ExportAssembler:
    """Collects orders and stitches child refund line items onto their refunds."""

    def __init__(self):
        self.result = BulkExportResult()
        self._refunds_by_id: Dict[str, Any] = {}

    def add_line(self, line: str, line_number: int) -> None:
        payload = parse_order_line(line, line_number)

        parent_id = payload.get("__parentId")
        if parent_id:
            self._add_child(payload, parent_id, line_number)
            return

        order = to_bulk_order(payload, line_number)
        self.result.orders.append(order)
        for refund in order.refunds:
            if refund.id:
                self._refunds_by_id[refund.id] = refund

    def _add_child(self, payload: Dict[str, Any], parent_id: str, line_number: int) -> None:
        self.result.child_lines += 1
        refund = self._refunds_by_id.get(parent_id)
        if refund is None:
            logger.debug("[BULK_READER] Line %d: child of unknown parent %s, skipped", line_number, parent_id)
            return
        try:
            refund.refund_line_items.append(RefundLineItem.model_validate(payload))
        except PydanticValidationError as e:
            raise ParseError(f"Line {line_number}: not a valid refund line item", line_number=line_number) from e


async def iter_export_lines(response: httpx.Response) -> AsyncIterator[str]:
    """Yield complete, non-empty lines of a streamed response body."""
    async for line in response.aiter_lines():
        line = line.strip()
        if line:
            yield line


async def read_bulk_export(
    url: str,
    http_client: Optional[httpx.AsyncClient] = None,
    timeout: float = 30.0,
) -> BulkExportResult:
    """Download and parse a bulk export.

    Args:
        url: Ready-for-download result URL of the bulk operation
        http_client: Shared AsyncClient (tests inject a MockTransport client)
        timeout: Request timeout in seconds

    Returns:
        BulkExportResult with parsed orders and the number of skipped lines

    Raises:
        FetchError: the download failed or returned no body
    """
    if http_client is not None:
        return await _read(http_client, url)
    async with httpx.AsyncClient(timeout=timeout) as client:
        return await _read(client, url)


async def _read(client: httpx.AsyncClient, url: str) -> BulkExportResult:
    assembler = _ExportAssembler()
    line_number = 0

    try:
        async with client.stream("GET", url) as response:
            if not response.is_success:
                raise FetchError(
                    f"Bulk export download failed with HTTP {response.status_code}",
                    status_code=response.status_code,
                )
            if response.status_code == 204:
                raise FetchError("Bulk export download returned no body", status_code=204)

            async for line in iter_export_lines(response):
                line_number += 1
                try:
                    assembler.add_line(line, line_number)
                except ParseError as e:
                    assembler.result.skipped_lines += 1
                    assembler.result.errors.append(e.message)
                    logger.warning("[BULK_READER] Skipping malformed line: %s", e.message)
    except httpx.HTTPError as e:
        raise FetchError(f"Bulk export download failed: {e}") from e

    result = assembler.result
    logger.info(
        "[BULK_READER] Read %d orders (%d child lines, %d skipped)",
        len(result.orders), result.child_lines, result.skipped_lines,
    )
    return result
