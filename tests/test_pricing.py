import sys
from datetime import timedelta
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from pricing import BOOSTS, CONTACT_MAX_COST, contact_cost, get_boost


@pytest.mark.parametrize(
    "followers, expected",
    [
        (0, 100),
        (9_999, 100),
        (10_000, 101),
        (50_000, 105),
        (1_000_000, 200),
        (7_000_000, 800),
        (7_009_999, 800),
        (50_000_000, 800),
    ],
)
def test_contact_cost_examples(followers, expected):
    assert contact_cost(followers) == expected


def test_contact_cost_negative_followers_treated_as_zero():
    assert contact_cost(-5_000) == 100


def test_contact_cost_monotonic_and_bounded():
    previous = contact_cost(0)
    for followers in range(0, 10_000_000, 37_501):
        cost = contact_cost(followers)
        assert 100 <= cost <= CONTACT_MAX_COST
        assert cost >= previous
        previous = cost


def test_boost_catalog_prices_and_audiences():
    assert {boost_id: boost.price for boost_id, boost in BOOSTS.items()} == {
        "boost-profile-influencer": 50,
        "boost-featured-influencer": 100,
        "boost-campaign-business": 75,
        "boost-urgent-business": 50,
    }
    featured = get_boost("boost-featured-influencer")
    assert featured is not None
    assert featured.duration == timedelta(days=3)
    assert featured.audience == "influencer"
    assert get_boost("boost-campaign-business").audience == "business"
    assert get_boost("missing") is None
