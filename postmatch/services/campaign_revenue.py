"""Attributed revenue per campaign.

Sums order amounts over the campaign segment's attribution links, split into
orders matched to mailed profiles and orders credited to the placeholder.
An order linked to several profiles of the segment counts once.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from postmatch.errors import NotFoundError
from postmatch.models import Campaign, Order, OrderProfile, Profile, ProfileKindEnum, placeholder_profile_id

logger = logging.getLogger(__name__)


@dataclass
class CampaignRevenue:
    campaign_id: str
    matched_orders: int = 0
    matched_revenue: Decimal = Decimal("0")
    placeholder_orders: int = 0
    placeholder_revenue: Decimal = Decimal("0")

    @property
    def total_orders(self) -> int:
        return self.matched_orders + self.placeholder_orders

    @property
    def total_revenue(self) -> Decimal:
        return self.matched_revenue + self.placeholder_revenue


def _sum_orders(db: Session, order_ids) -> tuple:
    count, total = (
        db.query(func.count(Order.id), func.coalesce(func.sum(Order.amount), 0))
        .filter(Order.id.in_(order_ids))
        .one()
    )
    return int(count or 0), Decimal(str(total or 0))


def campaign_revenue(db: Session, campaign_id: str) -> CampaignRevenue:
    """Revenue attributed to a campaign.

    Raises:
        NotFoundError: unknown campaign
    """
    campaign = db.get(Campaign, campaign_id)
    if campaign is None:
        raise NotFoundError(f"Campaign {campaign_id} not found")

    result = CampaignRevenue(campaign_id=campaign.id)

    if campaign.segment_id:
        matched_ids = (
            select(OrderProfile.order_id)
            .join(Profile, Profile.id == OrderProfile.profile_id)
            .where(
                Profile.segment_id == campaign.segment_id,
                Profile.kind == ProfileKindEnum.real,
            )
            .distinct()
        )
        result.matched_orders, result.matched_revenue = _sum_orders(db, matched_ids)

    # Orders already counted as matched are not counted again
    placeholder_ids = (
        select(OrderProfile.order_id)
        .where(OrderProfile.profile_id == placeholder_profile_id(campaign.id))
        .distinct()
    )
    if campaign.segment_id:
        placeholder_ids = placeholder_ids.where(~OrderProfile.order_id.in_(matched_ids))
    result.placeholder_orders, result.placeholder_revenue = _sum_orders(db, placeholder_ids)

    logger.debug(
        "[CAMPAIGN_REVENUE] Campaign %s: matched=%d (%s), placeholder=%d (%s)",
        campaign.id, result.matched_orders, result.matched_revenue,
        result.placeholder_orders, result.placeholder_revenue,
    )
    return result
