"""
Campaign Window Tests (Unit)
============================

WHAT: Unit tests for the enrollment window filter.
WHY: The window is a closed interval; off-by-one errors at either end move
     revenue in or out of a campaign.

REFERENCES:
- postmatch/services/campaign_windows.py
"""

from datetime import datetime
from types import SimpleNamespace

from postmatch.services.campaign_windows import campaigns_for_order, is_in_window, window_for

START = datetime(2024, 3, 1, 9, 0)


def _campaign(campaign_id="c1", start_date=START) -> SimpleNamespace:
    return SimpleNamespace(id=campaign_id, start_date=start_date)


def test_window_is_start_plus_sixty_days() -> None:
    assert window_for(_campaign()) == (START, datetime(2024, 4, 30, 9, 0))


def test_window_bounds_are_inclusive() -> None:
    campaign = _campaign()

    assert is_in_window(START, campaign)
    assert is_in_window(datetime(2024, 4, 30, 9, 0), campaign)
    assert not is_in_window(datetime(2024, 3, 1, 8, 59), campaign)
    assert not is_in_window(datetime(2024, 4, 30, 9, 1), campaign)


def test_window_length_is_configurable() -> None:
    assert is_in_window(datetime(2024, 3, 20), _campaign(), window_days=30)
    assert not is_in_window(datetime(2024, 4, 20), _campaign(), window_days=30)


def test_campaign_without_start_date_never_matches() -> None:
    campaign = _campaign(start_date=None)

    assert window_for(campaign) is None
    assert not is_in_window(START, campaign)


def test_campaigns_for_order_keeps_input_order() -> None:
    campaigns = [
        _campaign("late", datetime(2024, 3, 10)),
        _campaign("expired", datetime(2023, 1, 1)),
        _campaign("early", datetime(2024, 2, 1)),
    ]
    order = SimpleNamespace(created_at=datetime(2024, 3, 15))

    assert [c.id for c in campaigns_for_order(order, campaigns)] == ["late", "early"]
