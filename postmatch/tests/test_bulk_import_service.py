"""Orchestrator tests: trigger, finish (import + reconcile), fan-out."""

import asyncio
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from conftest import OPERATION_ID, ndjson, order_record, refund, refund_line
from postmatch.database import session_scope
from postmatch.errors import FetchError, NotFoundError, ValidationError
from postmatch.models import Integration, IntegrationTypeEnum, Order, OrderProfile, User, placeholder_profile_id
from postmatch.services import bulk_import_service
from postmatch.services.bulk_import_service import BulkImportService
from postmatch.services.user_locks import UserLockRegistry


@pytest.fixture
def run_service(session_factory, test_settings, mock_http_client):
    """Call a BulkImportService method inside a fresh event loop."""
    def _run(method, *args):
        async def _inner():
            async with mock_http_client() as http_client:
                service = BulkImportService(session_factory, settings=test_settings, http_client=http_client)
                return await getattr(service, method)(*args)
        return asyncio.run(_inner())
    return _run


def _links(session_factory):
    with session_scope(session_factory) as db:
        rows = db.query(Order.order_id, OrderProfile.profile_id).join(
            OrderProfile, OrderProfile.order_id == Order.id,
        ).all()
        return sorted((order_id, profile_id) for order_id, profile_id in rows)


# ============================================================================
# Trigger
# ============================================================================

def test_trigger_requests_last_year_of_orders(run_service, fake_shopify, test_user):
    trigger = run_service("trigger_bulk_export", test_user.id)

    assert trigger.operation_id == OPERATION_ID
    assert trigger.status == "CREATED"
    cutoff = (datetime.utcnow() - timedelta(days=365)).date().isoformat()
    assert f"created_at:>{cutoff}" in fake_shopify.graphql_queries[0]


def test_trigger_unknown_user_raises_not_found(run_service, fake_shopify):
    with pytest.raises(NotFoundError):
        run_service("trigger_bulk_export", "missing-user")

    assert fake_shopify.requests == []


def test_trigger_without_integration_raises_not_found(run_service, session_factory):
    with session_scope(session_factory) as db:
        db.add(User(id="user-no-shop", email="noshop@example.com"))

    with pytest.raises(NotFoundError):
        run_service("trigger_bulk_export", "user-no-shop")


def test_trigger_requires_user_id(run_service):
    with pytest.raises(ValidationError):
        run_service("trigger_bulk_export", None)


def test_trigger_propagates_user_errors(run_service, fake_shopify, test_user):
    fake_shopify.user_errors = [{"field": None, "message": "already in progress"}]

    with pytest.raises(FetchError):
        run_service("trigger_bulk_export", test_user.id)


def test_trigger_all_collects_per_user_failures(run_service, session_factory, fake_shopify, test_user):
    with session_scope(session_factory) as db:
        db.add(User(id="user-2", email="second@example.com"))
        db.add(Integration(user_id="user-2", type=IntegrationTypeEnum.shopify, shop=None, token=None))

    summary = run_service("trigger_bulk_exports_for_all_users")

    assert [t.user_id for t in summary.triggered] == ["user-1"]
    assert len(summary.errors) == 1
    assert summary.errors[0].startswith("user-2")


# ============================================================================
# Finish
# ============================================================================

def test_finish_imports_and_attributes_orders(run_service, fake_shopify, session_factory, test_campaign, anna):
    fake_shopify.export_body = ndjson(
        order_record("1001"),
        order_record(
            "1002", first_name="Peter", last_name="Lund", email="peter@example.com",
            address1="Havnegade 3", discount_codes=["SPRING10"],
        ),
        order_record("1003", first_name="Ole", email="ole@example.com", address1="Torvet 1"),
        order_record("1004", created_at="2024-06-15T10:00:00Z"),
    )

    result = run_service("on_bulk_export_finished", "user-1", OPERATION_ID)

    assert result.orders_read == 4
    assert result.orders_created == 4
    assert result.orders_reconciled == 4
    assert result.links_created == 2
    assert result.placeholder_links_created == 1
    assert _links(session_factory) == [
        ("gid://shopify/Order/1001", "profile-anna"),
        ("gid://shopify/Order/1002", placeholder_profile_id("campaign-1")),
    ]


def test_replayed_export_adds_no_links_and_refunds_once(run_service, fake_shopify, session_factory, test_campaign, anna):
    fake_shopify.export_body = ndjson(
        order_record("1001", total="100.00", refunds=[refund("r1", refund_line("40.00"))]),
        order_record("1002", discount_codes=["SPRING10"], email="x@example.com", first_name="X"),
    )

    first = run_service("on_bulk_export_finished", "user-1", OPERATION_ID)
    links_after_first = _links(session_factory)
    replay = run_service("on_bulk_export_finished", "user-1", OPERATION_ID)
    third = run_service("on_bulk_export_finished", "user-1", OPERATION_ID)

    assert first.orders_created == 2
    assert replay.orders_created == 0
    assert replay.orders_updated == 0
    assert replay.links_created == 0
    assert third.orders_created == 0
    assert third.orders_updated == 0
    assert _links(session_factory) == links_after_first
    with session_scope(session_factory) as db:
        stored = db.query(Order).filter(Order.order_id == "gid://shopify/Order/1001").one()
        assert stored.amount == Decimal("60.00")


def test_fully_refunded_order_loses_its_attribution(run_service, fake_shopify, session_factory, test_campaign, anna):
    fake_shopify.export_body = ndjson(order_record("1001", total="100.00"))
    run_service("on_bulk_export_finished", "user-1", OPERATION_ID)
    assert len(_links(session_factory)) == 1

    fake_shopify.export_body = ndjson(
        order_record("1001", total="100.00", refunds=[refund("r1", refund_line("100.00"))]),
    )
    result = run_service("on_bulk_export_finished", "user-1", OPERATION_ID)

    assert result.orders_deleted == 1
    assert _links(session_factory) == []


def test_replay_after_full_refund_does_not_restore_order(run_service, fake_shopify, session_factory, test_campaign, anna):
    fake_shopify.export_body = ndjson(order_record("1001", total="100.00"))
    run_service("on_bulk_export_finished", "user-1", OPERATION_ID)
    fake_shopify.export_body = ndjson(
        order_record("1001", total="100.00", refunds=[refund("r1", refund_line("100.00"))]),
    )
    run_service("on_bulk_export_finished", "user-1", OPERATION_ID)

    replay = run_service("on_bulk_export_finished", "user-1", OPERATION_ID)

    assert replay.orders_created == 0
    assert replay.links_created == 0
    assert _links(session_factory) == []
    with session_scope(session_factory) as db:
        assert db.query(Order).count() == 0


def test_order_fully_refunded_on_first_sight_is_never_attributed(
    run_service, fake_shopify, session_factory, test_campaign, anna,
):
    fake_shopify.export_body = ndjson(
        order_record("1001", total="100.00", refunds=[refund("r1", refund_line("100.00"))]),
        order_record("1002", discount_codes=["SPRING10"], email="x@example.com", first_name="X",
                     refunds=[refund("r2", refund_line("100.00"))]),
    )

    result = run_service("on_bulk_export_finished", "user-1", OPERATION_ID)

    assert result.orders_created == 0
    assert result.links_created == 0
    assert _links(session_factory) == []


def test_concurrent_finishes_for_one_user_run_one_at_a_time(
    session_factory, test_settings, mock_http_client, fake_shopify, test_campaign, anna, monkeypatch,
):
    fake_shopify.export_body = ndjson(
        order_record("1001"),
        order_record("1002", discount_codes=["SPRING10"], email="x@example.com", first_name="X"),
    )
    user_locks = UserLockRegistry()
    events = []
    real_upsert = bulk_import_service.upsert_orders

    async def _slow_upsert(session_factory, user_id, orders, **kwargs):
        events.append(("start", user_locks.is_locked(user_id)))
        # Give the other call every chance to enter while this one is mid-import
        await asyncio.sleep(0.05)
        result = await real_upsert(session_factory, user_id, orders, **kwargs)
        events.append(("end", user_locks.is_locked(user_id)))
        return result

    monkeypatch.setattr(bulk_import_service, "upsert_orders", _slow_upsert)

    async def _both():
        async with mock_http_client() as http_client:
            service = BulkImportService(
                session_factory, settings=test_settings, http_client=http_client, user_locks=user_locks,
            )
            return await asyncio.gather(
                service.on_bulk_export_finished("user-1", OPERATION_ID),
                service.on_bulk_export_finished("user-1", OPERATION_ID),
            )

    first, second = asyncio.run(_both())

    assert events == [("start", True), ("end", True), ("start", True), ("end", True)]
    assert first.orders_created + second.orders_created == 2
    assert first.links_created + second.links_created == 2
    links = _links(session_factory)
    assert len(links) == len(set(links)) == 2


def test_finish_skips_malformed_lines(run_service, fake_shopify, test_campaign, anna):
    fake_shopify.export_body = ndjson(order_record("1001")) + b"{broken\n"

    result = run_service("on_bulk_export_finished", "user-1", OPERATION_ID)

    assert result.orders_created == 1
    assert result.lines_skipped == 1


@pytest.mark.parametrize("user_id,operation_id", [(None, OPERATION_ID), ("user-1", None), ("", "")])
def test_finish_requires_user_and_operation(run_service, fake_shopify, test_user, user_id, operation_id):
    with pytest.raises(ValidationError):
        run_service("on_bulk_export_finished", user_id, operation_id)

    assert fake_shopify.requests == []


def test_finish_propagates_url_lookup_failure(run_service, fake_shopify, session_factory, test_user):
    fake_shopify.graphql_status = 500

    with pytest.raises(FetchError):
        run_service("on_bulk_export_finished", "user-1", OPERATION_ID)

    with session_scope(session_factory) as db:
        assert db.query(Order).count() == 0


def test_finish_for_user_without_campaigns_only_imports(run_service, fake_shopify, test_user):
    fake_shopify.export_body = ndjson(order_record("1001"))

    result = run_service("on_bulk_export_finished", "user-1", OPERATION_ID)

    assert result.orders_created == 1
    assert result.orders_reconciled == 0
    assert result.links_created == 0
