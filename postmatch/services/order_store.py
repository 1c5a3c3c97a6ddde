"""Order store: batched upsert of bulk-exported orders with refund handling.

WHAT:
    - Inserts orders not seen before (dedup key: user_id + external order id)
      at their refund-adjusted amount; an order that is already fully
      refunded on first sight is not inserted at all
    - Applies refunds to orders already stored: lowers `amount`, or deletes
      the order and its attribution links once nothing is left
    - Never touches an existing order otherwise

WHY:
    The same export can be replayed (webhook redelivery, manual re-trigger),
    so every step must be idempotent. Batches keep transactions small enough
    to finish inside the transaction timeout on large shops.

CONCURRENCY:
    Input is split into contiguous slices of `batch_size`. Each slice runs in
    its own session/transaction on a worker thread; slices run concurrently
    (bounded by `concurrency`). A failing slice rolls back only itself; the
    others stay committed. The caller must not put the same order id in two
    slices of one call (duplicates inside the input are collapsed first).

TIMEOUT:
    The batch deadline is checked after the inserts and again before commit.
    A single statement that hangs is not interrupted by that check; on
    PostgreSQL the engine also sets `statement_timeout` (see
    database.engine_connect_args), elsewhere it runs until the driver gives up.

REFERENCES:
    - postmatch/services/association_ledger.py (link cascade on delete)
    - postmatch/schemas.py (BulkOrder)
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from postmatch.database import session_scope
from postmatch.errors import TransactionError, TransactionTimeout
from postmatch.models import Order
from postmatch.schemas import BulkOrder
from postmatch.services.association_ledger import delete_links_for_orders

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 1000
DEFAULT_CONCURRENCY = 4
DEFAULT_TRANSACTION_TIMEOUT = 10.0


# =============================================================================
# RESULT TYPES
# =============================================================================

@dataclass
class BatchResult:
    """Outcome of one committed batch."""
    batch_index: int
    inserted_order_ids: List[str] = field(default_factory=list)
    updated: int = 0
    deleted: int = 0
    skipped_refunded: int = 0


@dataclass
class UpsertResult:
    """Aggregate outcome of an upsert_orders call."""
    inserted_order_ids: List[str] = field(default_factory=list)
    updated: int = 0
    deleted: int = 0
    skipped_refunded: int = 0
    batches: int = 0
    failed_batches: List[int] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def inserted(self) -> int:
        return len(self.inserted_order_ids)


# =============================================================================
# NORMALIZATION
# =============================================================================

def _as_naive_utc(value: datetime) -> datetime:
    """Stored timestamps are naive UTC; convert aware values."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def format_order_data(order: BulkOrder, user_id: str) -> Dict:
    """Map an export record to Order column values.

    Names, email and address are lower-cased; address and zip come from the
    customer's first address entry. Missing fields become "". Refunds already
    on the record are applied: `amount` is total minus refunds-to-date.
    """
    customer = order.customer
    first_address = customer.addresses[0] if customer and customer.addresses else None
    refunded = order.refunded_amount

    return {
        "order_id": order.id,
        "user_id": user_id,
        "created_at": _as_naive_utc(order.created_at),
        "amount": order.total_price - refunded,
        "refunded_amount": refunded,
        "discount_codes": list(order.discount_codes),
        "first_name": (customer.first_name or "").lower() if customer else "",
        "last_name": (customer.last_name or "").lower() if customer else "",
        "email": (customer.email or "").lower() if customer else "",
        "zip_code": (first_address.zip or "") if first_address else "",
        "address": (first_address.address1 or "").lower() if first_address else "",
    }


def chunk(items: Sequence, size: int) -> List[Sequence]:
    """Split into contiguous slices of at most `size` items."""
    if size <= 0:
        raise ValueError("batch size must be positive")
    return [items[i:i + size] for i in range(0, len(items), size)]


def _dedupe(orders: Sequence[BulkOrder]) -> List[BulkOrder]:
    seen = set()
    unique = []
    for order in orders:
        if order.id in seen:
            logger.warning("[ORDER_STORE] Duplicate order %s in import input, keeping first", order.id)
            continue
        seen.add(order.id)
        unique.append(order)
    return unique


# =============================================================================
# REFUNDS
# =============================================================================

def apply_refund(db: Session, order: Order, incoming: BulkOrder) -> str:
    """Reduce an existing order by its refunds, deleting it when fully refunded.

    The export carries refunds-to-date, so only the part not yet applied
    (tracked in `refunded_amount`) is subtracted. For an order stored before
    any refund this is `amount - refundedAmount`; a replay of the same export
    changes nothing.

    Returns:
        "deleted", "updated" or "unchanged"
    """
    refunded_total = incoming.refunded_amount
    already_applied = Decimal(order.refunded_amount or 0)
    delta = refunded_total - already_applied

    if delta <= 0:
        if delta < 0:
            logger.warning(
                "[ORDER_STORE] Refund total for order %s dropped from %s to %s, keeping amount",
                order.order_id, already_applied, refunded_total,
            )
        return "unchanged"

    new_amount = Decimal(order.amount) - delta

    if new_amount <= 0:
        delete_links_for_orders(db, [order.id])
        db.delete(order)
        logger.info("[ORDER_STORE] Order %s fully refunded, deleted", order.order_id)
        return "deleted"

    order.amount = new_amount
    order.refunded_amount = refunded_total
    logger.info(
        "[ORDER_STORE] Order %s refunded %s, amount now %s",
        order.order_id, delta, new_amount,
    )
    return "updated"


# =============================================================================
# BATCH PROCESSING
# =============================================================================

def _check_deadline(deadline: float, batch_index: int, timeout: float) -> None:
    if time.monotonic() > deadline:
        raise TransactionTimeout(
            f"Order batch {batch_index} exceeded transaction timeout of {timeout:.0f}s",
            batch_index=batch_index,
        )


def process_batch(
    session_factory: sessionmaker,
    user_id: str,
    batch: Sequence[BulkOrder],
    batch_index: int,
    timeout: float = DEFAULT_TRANSACTION_TIMEOUT,
) -> BatchResult:
    """Insert new orders and apply refunds for one batch inside one transaction.

    Raises:
        TransactionTimeout: the batch ran past `timeout` (rolled back)
        TransactionError: any other database failure (rolled back)
    """
    deadline = time.monotonic() + timeout
    result = BatchResult(batch_index=batch_index)
    incoming_by_id = {order.id: order for order in batch}

    try:
        with session_scope(session_factory) as db:
            existing = db.query(Order).filter(
                Order.user_id == user_id,
                Order.order_id.in_(list(incoming_by_id)),
            ).all()
            existing_by_id = {order.order_id: order for order in existing}

            new_rows = []
            for incoming in batch:
                if incoming.id in existing_by_id:
                    continue
                data = format_order_data(incoming, user_id)
                if incoming.refunds and data["amount"] <= 0:
                    # Fully refunded before we ever stored it; nothing to attribute
                    result.skipped_refunded += 1
                    continue
                new_rows.append(Order(**data))

            if new_rows:
                db.add_all(new_rows)
                db.flush()
                result.inserted_order_ids = [row.order_id for row in new_rows]

            _check_deadline(deadline, batch_index, timeout)

            refunded = [
                (existing_by_id[order_id], incoming)
                for order_id, incoming in incoming_by_id.items()
                if order_id in existing_by_id and incoming.refunds
            ]
            for stored, incoming in refunded:
                outcome = apply_refund(db, stored, incoming)
                if outcome == "deleted":
                    result.deleted += 1
                elif outcome == "updated":
                    result.updated += 1

            # Last check before commit: a late batch must not commit
            _check_deadline(deadline, batch_index, timeout)

    except TransactionError:
        raise
    except SQLAlchemyError as e:
        raise TransactionError(f"Order batch {batch_index} failed: {e}", batch_index=batch_index) from e

    logger.info(
        "[ORDER_STORE] Batch %d committed: inserted=%d, updated=%d, deleted=%d, skipped_refunded=%d",
        batch_index, len(result.inserted_order_ids), result.updated, result.deleted,
        result.skipped_refunded,
    )
    return result


async def upsert_orders(
    session_factory: sessionmaker,
    user_id: str,
    orders: Sequence[BulkOrder],
    batch_size: int = DEFAULT_BATCH_SIZE,
    concurrency: int = DEFAULT_CONCURRENCY,
    timeout: float = DEFAULT_TRANSACTION_TIMEOUT,
) -> UpsertResult:
    """Upsert orders for a user in concurrent, independently committed batches.

    Args:
        session_factory: Session factory bound to the target database
        user_id: Owner of the orders
        orders: Parsed export records
        batch_size: Orders per transaction
        concurrency: Max batches in flight
        timeout: Per-batch transaction timeout in seconds

    Returns:
        UpsertResult with ids of inserted orders and refund counts

    Raises:
        TransactionError / TransactionTimeout: after all batches settled, if
        any batch failed. Batches that committed are not rolled back.
    """
    unique_orders = _dedupe(orders)
    batches = chunk(unique_orders, batch_size) if unique_orders else []
    result = UpsertResult(batches=len(batches))

    if not batches:
        logger.info("[ORDER_STORE] No orders to upsert for user %s", user_id)
        return result

    semaphore = asyncio.Semaphore(max(1, concurrency))

    async def _run(index: int, batch: Sequence[BulkOrder]) -> BatchResult:
        async with semaphore:
            return await asyncio.to_thread(process_batch, session_factory, user_id, batch, index, timeout)

    outcomes = await asyncio.gather(
        *(_run(index, batch) for index, batch in enumerate(batches)),
        return_exceptions=True,
    )

    failures: List[BaseException] = []
    for index, outcome in enumerate(outcomes):
        if isinstance(outcome, BaseException):
            failures.append(outcome)
            result.failed_batches.append(index)
            result.errors.append(str(outcome))
            logger.error("[ORDER_STORE] Batch %d failed: %s", index, outcome)
            continue
        result.inserted_order_ids.extend(outcome.inserted_order_ids)
        result.updated += outcome.updated
        result.deleted += outcome.deleted
        result.skipped_refunded += outcome.skipped_refunded

    logger.info(
        "[ORDER_STORE] Upsert complete for user %s: batches=%d, failed=%d, inserted=%d, updated=%d, deleted=%d",
        user_id, result.batches, len(result.failed_batches),
        result.inserted, result.updated, result.deleted,
    )

    if failures:
        _raise_for_failures(failures, result)

    return result


def _raise_for_failures(failures: List[BaseException], result: UpsertResult) -> None:
    summary = (
        f"{len(failures)} of {result.batches} order batches failed "
        f"(batches {result.failed_batches}): {failures[0]}"
    )
    first_index: Optional[int] = result.failed_batches[0] if result.failed_batches else None
    if all(isinstance(f, TransactionTimeout) for f in failures):
        error: TransactionError = TransactionTimeout(summary, batch_index=first_index)
    else:
        error = TransactionError(summary, batch_index=first_index)
    error.partial_result = result
    raise error from failures[0]
