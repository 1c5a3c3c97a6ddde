"""SQLAlchemy ORM models and enums.

This module defines the attribution schema. Primary keys are strings so the
placeholder profile can carry its fixed `additional-revenue-<campaign_id>` id
alongside regular generated ids.
"""

import uuid
from datetime import datetime
import enum

from sqlalchemy import (
    Column,
    String,
    DateTime,
    Enum,
    ForeignKey,
    Numeric,
    JSON,
    Boolean,
    UniqueConstraint,
    Index,
)
from sqlalchemy.orm import relationship, declarative_base


# Single Base used by the entire application
Base = declarative_base()


def _new_id() -> str:
    return str(uuid.uuid4())


# Enums ---------------------------------------------------------

class IntegrationTypeEnum(str, enum.Enum):
    shopify = "shopify"
    klaviyo = "klaviyo"


class CampaignStatusEnum(str, enum.Enum):
    scheduled = "scheduled"
    active = "active"
    paused = "paused"


class ProfileKindEnum(str, enum.Enum):
    """Distinguishes mailed recipients from per-campaign revenue placeholders."""
    real = "real"
    placeholder = "placeholder"


PLACEHOLDER_PROFILE_PREFIX = "additional-revenue-"


def placeholder_profile_id(campaign_id: str) -> str:
    """Fixed id of the placeholder profile that absorbs a campaign's coded revenue."""
    return f"{PLACEHOLDER_PROFILE_PREFIX}{campaign_id}"


# Core models ----------------------------------------------------

class User(Base):
    """A merchant account owning integrations, segments, campaigns and orders."""
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=_new_id)
    email = Column(String, unique=True, nullable=False)
    name = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    integrations = relationship("Integration", back_populates="user", cascade="all, delete-orphan")
    campaigns = relationship("Campaign", back_populates="user")
    segments = relationship("Segment", back_populates="user")

    def __str__(self):
        return self.email


class Integration(Base):
    """Third-party store/CRM credentials for a user.

    WHAT: Shop subdomain + Admin API token for Shopify
    WHY: The bulk export is requested and resolved with these credentials
    """
    __tablename__ = "integrations"

    id = Column(String, primary_key=True, default=_new_id)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    type = Column(Enum(IntegrationTypeEnum, values_callable=lambda obj: [e.value for e in obj]), nullable=False)
    shop = Column(String, nullable=True)  # Subdomain only, e.g. "mystore" for mystore.myshopify.com
    token = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    user = relationship("User", back_populates="integrations")


class Segment(Base):
    """A named group of mail recipients, tied to one user and one campaign."""
    __tablename__ = "segments"

    id = Column(String, primary_key=True, default=_new_id)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    name = Column(String, nullable=False, default="")
    demo = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    user = relationship("User", back_populates="segments")
    profiles = relationship("Profile", back_populates="segment")
    campaign = relationship("Campaign", back_populates="segment", uselist=False)


class Campaign(Base):
    """Direct-mail campaign.

    WHAT: Mailing schedule + discount codes printed on the letters
    WHY: Orders created in [start_date, start_date + 60 days] can be attributed
         to profiles of the campaign's segment
    """
    __tablename__ = "campaigns"

    id = Column(String, primary_key=True, default=_new_id)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    segment_id = Column(String, ForeignKey("segments.id"), nullable=True)
    design_id = Column(String, nullable=True)  # Rendering is handled elsewhere
    name = Column(String, nullable=False, default="")
    discount_codes = Column(JSON, nullable=False, default=list)
    start_date = Column(DateTime, nullable=True)
    status = Column(
        Enum(CampaignStatusEnum, values_callable=lambda obj: [e.value for e in obj]),
        nullable=False,
        default=CampaignStatusEnum.scheduled,
    )
    demo = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    user = relationship("User", back_populates="campaigns")
    segment = relationship("Segment", back_populates="campaign")

    def __str__(self):
        return self.name or self.id


class Profile(Base):
    """A mail recipient (or a campaign's revenue placeholder).

    Only profiles with letter_sent=True can be credited with an order.
    Placeholder profiles have kind=placeholder, id `additional-revenue-<campaign_id>`
    and are never candidates for identity matching.
    """
    __tablename__ = "profiles"
    __table_args__ = (
        Index("ix_profiles_segment_letter_sent", "segment_id", "letter_sent"),
    )

    id = Column(String, primary_key=True, default=_new_id)
    segment_id = Column(String, ForeignKey("segments.id"), nullable=False)
    kind = Column(
        Enum(ProfileKindEnum, values_callable=lambda obj: [e.value for e in obj]),
        nullable=False,
        default=ProfileKindEnum.real,
    )
    campaign_id = Column(String, ForeignKey("campaigns.id"), nullable=True, unique=True)  # placeholder only

    first_name = Column(String, nullable=False, default="")
    last_name = Column(String, nullable=False, default="")
    email = Column(String, nullable=False, default="")
    address = Column(String, nullable=False, default="")
    zip_code = Column(String, nullable=False, default="")
    city = Column(String, nullable=False, default="")
    country = Column(String, nullable=False, default="")
    custom_variable = Column(String, nullable=True)

    letter_sent = Column(Boolean, default=False, nullable=False)
    letter_sent_at = Column(DateTime, nullable=True)
    in_robinson = Column(Boolean, default=False, nullable=False)  # Opt-out registry hit
    demo = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    segment = relationship("Segment", back_populates="profiles")
    order_links = relationship("OrderProfile", back_populates="profile")

    def __str__(self):
        return f"{self.first_name} {self.last_name}".strip() or self.id


class Order(Base):
    """Storefront order, normalized for identity matching.

    WHAT: One row per external order id per user
    WHY: Source of attributed revenue; `amount` is post-refund
    """
    __tablename__ = "orders"
    __table_args__ = (
        UniqueConstraint("user_id", "order_id", name="uq_order_user_external_id"),
    )

    id = Column(String, primary_key=True, default=_new_id)
    order_id = Column(String, nullable=False)  # gid://shopify/Order/xxx
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    created_at = Column(DateTime, nullable=False)

    amount = Column(Numeric(18, 4), nullable=False, default=0)
    # Refund total already subtracted from amount; replays only apply the difference
    refunded_amount = Column(Numeric(18, 4), nullable=False, default=0)
    discount_codes = Column(JSON, nullable=False, default=list)

    # Lower-cased identity copied from the customer record at import time
    first_name = Column(String, nullable=False, default="")
    last_name = Column(String, nullable=False, default="")
    email = Column(String, nullable=False, default="")
    zip_code = Column(String, nullable=False, default="")
    address = Column(String, nullable=False, default="")

    imported_at = Column(DateTime, default=datetime.utcnow)

    profile_links = relationship("OrderProfile", back_populates="order", cascade="all, delete-orphan")

    def __str__(self):
        return self.order_id


class OrderProfile(Base):
    """Attribution link between an order and the profile credited with it."""
    __tablename__ = "order_profiles"

    order_id = Column(String, ForeignKey("orders.id", ondelete="CASCADE"), primary_key=True)
    profile_id = Column(String, ForeignKey("profiles.id", ondelete="CASCADE"), primary_key=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    order = relationship("Order", back_populates="profile_links")
    profile = relationship("Profile", back_populates="order_links")
