"""Pytest configuration for service and HTTP tests

WHAT: Provides a file-backed SQLite database, seeded users/campaigns/profiles,
      and helpers to build Shopify export lines and a MockTransport client
WHY: Order batches run on worker threads, so each test gets its own database
     file (an in-memory database is per-connection)
REFERENCES:
    - postmatch/database.py: engine and session factory construction
    - postmatch/main.py: FastAPI application factory
"""

import json
from datetime import datetime
from typing import Callable, Dict, List, Optional

import httpx
import pytest
from fastapi.testclient import TestClient

from postmatch.database import build_engine, build_session_factory, create_schema, session_scope
from postmatch.deps import Settings
from postmatch.models import (
    Campaign,
    CampaignStatusEnum,
    Integration,
    IntegrationTypeEnum,
    Profile,
    Segment,
    User,
)

SHOP = "teststore"
GRAPHQL_URL = f"https://{SHOP}.myshopify.com/admin/api/2024-07/graphql.json"
EXPORT_URL = "https://storage.example.com/bulk/export.jsonl"
OPERATION_ID = "gid://shopify/BulkOperation/42"


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def test_db_engine(tmp_path):
    """Create a file-backed SQLite engine with the full schema."""
    engine = build_engine(f"sqlite:///{tmp_path / 'postmatch-test.db'}")
    create_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(test_db_engine):
    return build_session_factory(test_db_engine)


# ============================================================================
# Model Fixtures
# ============================================================================

@pytest.fixture
def test_user(session_factory):
    """User with a Shopify integration."""
    with session_scope(session_factory) as db:
        user = User(id="user-1", email="merchant@example.com", name="Merchant")
        db.add(user)
        db.add(Integration(
            id="integration-1",
            user_id=user.id,
            type=IntegrationTypeEnum.shopify,
            shop=SHOP,
            token="shpat_test",
        ))
    return user


@pytest.fixture
def test_segment(session_factory, test_user):
    with session_scope(session_factory) as db:
        segment = Segment(id="segment-1", user_id=test_user.id, name="Spring mailing")
        db.add(segment)
    return segment


@pytest.fixture
def test_campaign(session_factory, test_user, test_segment):
    """Campaign mailed on 2024-03-01 with code SPRING10."""
    with session_scope(session_factory) as db:
        campaign = Campaign(
            id="campaign-1",
            user_id=test_user.id,
            segment_id=test_segment.id,
            name="Spring",
            discount_codes=["SPRING10"],
            start_date=datetime(2024, 3, 1),
            status=CampaignStatusEnum.active,
        )
        db.add(campaign)
    return campaign


@pytest.fixture
def anna(session_factory, test_segment):
    """Mailed profile matching the Anna Berg orders by address."""
    with session_scope(session_factory) as db:
        profile = Profile(
            id="profile-anna",
            segment_id=test_segment.id,
            first_name="anna",
            last_name="berg",
            email="anna@old-mail.dk",
            address="nygade 12b",
            zip_code="8000",
            letter_sent=True,
            letter_sent_at=datetime(2024, 3, 1),
        )
        db.add(profile)
    return profile


# ============================================================================
# Export Helpers
# ============================================================================

def money(amount: str) -> Dict:
    return {"shopMoney": {"amount": amount, "currencyCode": "DKK"}}


def order_record(
    order_id: str,
    created_at: str = "2024-03-15T10:00:00Z",
    total: str = "100.00",
    first_name: Optional[str] = "Anna",
    last_name: Optional[str] = "Berg",
    email: Optional[str] = "anna@example.com",
    address1: Optional[str] = "Nygade 12",
    zip_code: Optional[str] = "8000",
    discount_codes: Optional[List[str]] = None,
    refunds: Optional[List[Dict]] = None,
) -> Dict:
    """One order line of a bulk export, in Shopify's field naming."""
    return {
        "id": f"gid://shopify/Order/{order_id}",
        "createdAt": created_at,
        "totalPriceSet": money(total),
        "discountCodes": discount_codes or [],
        "customer": {
            "firstName": first_name,
            "lastName": last_name,
            "email": email,
            "addresses": [{"address1": address1, "zip": zip_code, "city": "Aarhus", "country": "Denmark"}],
        },
        "refunds": refunds or [],
    }


def refund(refund_id: str, *line_items: Dict) -> Dict:
    return {
        "id": f"gid://shopify/Refund/{refund_id}",
        "createdAt": "2024-03-20T09:00:00Z",
        "refundLineItems": {"edges": [{"node": item} for item in line_items]},
    }


def refund_line(subtotal: str, tax: str = "0.00") -> Dict:
    return {"subtotalSet": money(subtotal), "totalTaxSet": money(tax)}


def ndjson(*records: Dict) -> bytes:
    return "\n".join(json.dumps(r) for r in records).encode("utf-8") + b"\n"


class FakeShopify:
    """MockTransport handler for the Admin GraphQL endpoint and the export file.

    Records every request; `export_body` is served at EXPORT_URL.
    """

    def __init__(self, export_body: bytes = b""):
        self.export_body = export_body
        self.requests: List[httpx.Request] = []
        self.user_errors: List[Dict] = []
        self.graphql_status = 200

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)

        if str(request.url) == EXPORT_URL:
            return httpx.Response(200, content=self.export_body)

        if str(request.url) != GRAPHQL_URL:
            return httpx.Response(404)
        if self.graphql_status != 200:
            return httpx.Response(self.graphql_status, json={"errors": "unavailable"})

        query = json.loads(request.content)["query"]
        if "bulkOperationRunQuery" in query:
            return httpx.Response(200, json={"data": {"bulkOperationRunQuery": {
                "bulkOperation": None if self.user_errors else {"id": OPERATION_ID, "status": "CREATED"},
                "userErrors": self.user_errors,
            }}})
        if "GetBulkOperationUrl" in query:
            return httpx.Response(200, json={"data": {"node": {
                "id": OPERATION_ID, "status": "COMPLETED", "url": EXPORT_URL, "partialDataUrl": None,
            }}})
        return httpx.Response(400, json={"errors": [{"message": "unexpected query"}]})

    @property
    def graphql_queries(self) -> List[str]:
        return [json.loads(r.content)["query"] for r in self.requests if str(r.url) == GRAPHQL_URL]


@pytest.fixture
def fake_shopify() -> FakeShopify:
    return FakeShopify()


@pytest.fixture
def mock_http_client(fake_shopify) -> Callable[[], httpx.AsyncClient]:
    """Factory so each asyncio.run() gets a client created inside its loop."""
    def _make() -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(fake_shopify))
    return _make


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        DATABASE_URL="sqlite://",
        ORDER_BATCH_SIZE=2,
        ORDER_BATCH_CONCURRENCY=1,
        SENTRY_DSN=None,
    )


# ============================================================================
# Application & Client Fixtures
# ============================================================================

@pytest.fixture
def client(session_factory, test_settings, fake_shopify) -> TestClient:
    """TestClient over an app wired to the test database and FakeShopify."""
    from postmatch.main import create_app

    http_client = httpx.AsyncClient(transport=httpx.MockTransport(fake_shopify))
    app = create_app(settings=test_settings, session_factory=session_factory, http_client=http_client)
    return TestClient(app)
