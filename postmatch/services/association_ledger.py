"""Association ledger: order <-> profile attribution links.

WHAT:
    Existence-checked creation of OrderProfile rows, plus the delete used
    when a fully refunded order is removed.

WHY:
    Reconciliation re-runs on every bulk import. Checking before inserting
    keeps at most one row per (order_id, profile_id) pair, so replays are
    no-ops.

NOTE:
    The check and the insert are not atomic. Two concurrent reconciliations
    of the same user could race; bulk_import_service serializes per user
    (see user_locks.py) and the composite primary key rejects a duplicate
    that slips through.
"""

from __future__ import annotations

import logging
from typing import Iterable, List

from sqlalchemy.orm import Session

from postmatch.models import OrderProfile

logger = logging.getLogger(__name__)


def link_exists(db: Session, order_id: str, profile_id: str) -> bool:
    return db.get(OrderProfile, (order_id, profile_id)) is not None


def link_order_to_profile(db: Session, order_id: str, profile_id: str) -> bool:
    """Create the (order, profile) link unless it already exists.

    Returns:
        True if a new link was added to the session, False if it existed.
    """
    if link_exists(db, order_id, profile_id):
        logger.debug("[LEDGER] Order %s already linked to profile %s", order_id, profile_id)
        return False

    db.add(OrderProfile(order_id=order_id, profile_id=profile_id))
    # Flush so a later existence check in the same session sees the row
    db.flush()
    logger.info("[LEDGER] Linked order %s to profile %s", order_id, profile_id)
    return True


def links_for_order(db: Session, order_id: str) -> List[OrderProfile]:
    return db.query(OrderProfile).filter(OrderProfile.order_id == order_id).all()


def delete_links_for_orders(db: Session, order_ids: Iterable[str]) -> int:
    """Delete every link referencing the given orders. Returns rows deleted."""
    ids = list(order_ids)
    if not ids:
        return 0
    deleted = (
        db.query(OrderProfile)
        .filter(OrderProfile.order_id.in_(ids))
        .delete(synchronize_session=False)
    )
    if deleted:
        logger.info("[LEDGER] Removed %d links for %d deleted orders", deleted, len(ids))
    return deleted
