"""Token prices for marketplace actions."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, Optional

CONTACT_BASE_COST = 100
CONTACT_FOLLOWERS_STEP = 10_000
CONTACT_MAX_COST = 800

AUDIENCE_INFLUENCER = "influencer"
AUDIENCE_BUSINESS = "business"


def contact_cost(followers: int) -> int:
    """Tokens a business pays to contact an influencer with ``followers``.

    One extra token per 10,000 followers on top of a base of 100, capped at
    800. Negative follower counts are treated as zero.
    """

    count = max(int(followers or 0), 0)
    return min(CONTACT_BASE_COST + count // CONTACT_FOLLOWERS_STEP, CONTACT_MAX_COST)


@dataclass(frozen=True)
class Boost:
    boost_id: str
    name: str
    description: str
    price: int
    duration: timedelta
    audience: str

    @property
    def duration_days(self) -> int:
        return self.duration.days


BOOSTS: Dict[str, Boost] = {
    boost.boost_id: boost
    for boost in (
        Boost(
            "boost-profile-influencer",
            "Profile Boost",
            "Increase your profile visibility in search results",
            50,
            timedelta(days=7),
            AUDIENCE_INFLUENCER,
        ),
        Boost(
            "boost-featured-influencer",
            "Featured Influencer",
            "Get featured on the homepage",
            100,
            timedelta(days=3),
            AUDIENCE_INFLUENCER,
        ),
        Boost(
            "boost-campaign-business",
            "Campaign Boost",
            "Increase campaign visibility to influencers",
            75,
            timedelta(days=5),
            AUDIENCE_BUSINESS,
        ),
        Boost(
            "boost-urgent-business",
            "Urgent Campaign Tag",
            "Mark your campaign as urgent",
            50,
            timedelta(days=7),
            AUDIENCE_BUSINESS,
        ),
    )
}


def get_boost(boost_id: str) -> Optional[Boost]:
    return BOOSTS.get((boost_id or "").strip())


__all__ = [
    "AUDIENCE_BUSINESS",
    "AUDIENCE_INFLUENCER",
    "BOOSTS",
    "Boost",
    "CONTACT_MAX_COST",
    "contact_cost",
    "get_boost",
]
