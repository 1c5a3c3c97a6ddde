"""Profile matcher: decide which mailed profile generated an order.

WHAT:
    For each campaign whose enrollment window contains the order:
    1. Look for mailed profiles of the campaign's segment that match the
       order by email, or by street prefix + zip + first name + last name
    2. Link every matching profile to the order (idempotently)
    3. With no match, fall back to the campaign's placeholder profile when
       the order used one of the campaign's discount codes
    4. Otherwise attribute nothing for that campaign

WHY:
    There is no foreign key between a storefront order and a letter. Identity
    fields are the only bridge, and discount codes printed on the letter catch
    buyers who ordered under a different name or address.

NOTE:
    A campaign discount code never matches segment profiles directly (that
    would credit every mailed profile of the segment for one coded order).
    Coded orders without an identity match go to the placeholder profile.

REFERENCES:
    - postmatch/services/identity.py (comparison keys)
    - postmatch/services/campaign_windows.py (window filter)
    - postmatch/services/association_ledger.py (link writes)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import and_, func, or_
from sqlalchemy.orm import Session

from postmatch.models import (
    Campaign,
    Order,
    Profile,
    ProfileKindEnum,
    placeholder_profile_id,
)
from postmatch.services.association_ledger import link_order_to_profile
from postmatch.services.campaign_windows import DEFAULT_WINDOW_DAYS, campaigns_for_order
from postmatch.services.identity import OrderIdentity, normalize

logger = logging.getLogger(__name__)


@dataclass
class MatchOutcome:
    """What reconciliation did for one (order, campaign) pair."""
    order_id: str
    campaign_id: str
    matched_profile_ids: List[str] = field(default_factory=list)
    placeholder_profile_id: Optional[str] = None
    links_created: int = 0

    @property
    def attributed(self) -> bool:
        return bool(self.matched_profile_ids or self.placeholder_profile_id)


# =============================================================================
# CANDIDATE SEARCH
# =============================================================================

def _lowered(column):
    return func.lower(func.trim(column))


def find_matching_profiles(db: Session, order: Order, campaign: Campaign) -> List[Profile]:
    """Mailed, real profiles of the campaign's segment that match the order.

    SQL narrows candidates on the exact-equality parts of each rule; the
    last-name token comparison runs in Python on that short list.
    """
    identity = OrderIdentity.from_order(order)
    rules = []
    if identity.can_match_email:
        rules.append(_lowered(Profile.email) == identity.email)
    if identity.can_match_address:
        rules.append(and_(
            _lowered(Profile.zip_code) == identity.zip_code,
            _lowered(Profile.first_name) == identity.first_name,
            func.lower(Profile.address).contains(identity.street_prefix, autoescape=True),
        ))

    if not rules:
        logger.debug("[MATCHER] Order %s has no usable identity fields", order.order_id)
        return []

    candidates = (
        db.query(Profile)
        .filter(
            Profile.segment_id == campaign.segment_id,
            Profile.letter_sent.is_(True),
            Profile.kind == ProfileKindEnum.real,
            Profile.demo == bool(campaign.demo),
            or_(*rules),
        )
        .order_by(Profile.id)
        .all()
    )
    return [profile for profile in candidates if identity.matches(profile)]


def shares_discount_code(order: Order, campaign: Campaign) -> bool:
    """True if any code used on the order is one of the campaign's codes."""
    order_codes = {normalize(code) for code in (order.discount_codes or []) if code}
    campaign_codes = {normalize(code) for code in (campaign.discount_codes or []) if code}
    return bool(order_codes & campaign_codes)


# =============================================================================
# PLACEHOLDER PROFILE
# =============================================================================

def ensure_placeholder_profile(db: Session, campaign: Campaign) -> Tuple[Profile, bool]:
    """Fetch or lazily create the campaign's placeholder profile.

    Returns:
        (profile, created)
    """
    profile_id = placeholder_profile_id(campaign.id)
    profile = db.get(Profile, profile_id)
    if profile is not None:
        return profile, False

    profile = Profile(
        id=profile_id,
        segment_id=campaign.segment_id,
        kind=ProfileKindEnum.placeholder,
        campaign_id=campaign.id,
        first_name="additional",
        last_name="revenue",
        letter_sent=True,
        letter_sent_at=datetime.utcnow(),
        demo=bool(campaign.demo),
    )
    db.add(profile)
    db.flush()
    logger.info("[MATCHER] Created placeholder profile %s", profile_id)
    return profile, True


# =============================================================================
# RECONCILIATION
# =============================================================================

def match_order_to_campaign(db: Session, order: Order, campaign: Campaign) -> MatchOutcome:
    """Attribute one order to one (in-window) campaign.

    The caller is responsible for the window check; see reconcile_order.
    """
    outcome = MatchOutcome(order_id=order.id, campaign_id=campaign.id)

    if not campaign.segment_id:
        logger.warning("[MATCHER] Campaign %s has no segment, skipping", campaign.id)
        return outcome

    profiles = find_matching_profiles(db, order, campaign)
    if profiles:
        for profile in profiles:
            outcome.matched_profile_ids.append(profile.id)
            if link_order_to_profile(db, order.id, profile.id):
                outcome.links_created += 1
        return outcome

    if shares_discount_code(order, campaign):
        placeholder, _ = ensure_placeholder_profile(db, campaign)
        outcome.placeholder_profile_id = placeholder.id
        if link_order_to_profile(db, order.id, placeholder.id):
            outcome.links_created += 1
        logger.info(
            "[MATCHER] Order %s attributed to campaign %s via discount code",
            order.order_id, campaign.id,
        )

    return outcome


def reconcile_order(
    db: Session,
    order: Order,
    campaigns: Iterable[Campaign],
    window_days: int = DEFAULT_WINDOW_DAYS,
) -> List[MatchOutcome]:
    """Evaluate every campaign whose window contains the order, independently."""
    outcomes = []
    for campaign in campaigns_for_order(order, campaigns, window_days):
        outcomes.append(match_order_to_campaign(db, order, campaign))
    return outcomes
