"""
Season naming helpers shared by registration and payment flows.

Program seasons are free-form strings ("Spring Tryout", "Summer League").
Matching is case-insensitive on the trimmed name.
"""

import re
from datetime import datetime
from typing import Optional

from clubhouse.utils.datetime_utils import utcnow


def normalize_season(season: Optional[str]) -> str:
    """Trim and lower-case a season name for comparisons."""
    return (season or "").strip().lower()


def seasons_equal(a: Optional[str], b: Optional[str]) -> bool:
    return normalize_season(a) == normalize_season(b)


def get_current_season(now: Optional[datetime] = None) -> str:
    """
    Return the base season for a date.

    March-May is Spring, June-August Summer, September-November Fall,
    everything else Winter.
    """
    month = (now or utcnow()).month
    if 3 <= month <= 5:
        return "Spring"
    if 6 <= month <= 8:
        return "Summer"
    if 9 <= month <= 11:
        return "Fall"
    return "Winter"


def default_tryout_id(season: str, year: int) -> str:
    """Tryout id used when a registration names a season but no tryout ("spring-tryout-2025-tryout-default")."""
    slug = re.sub(r"\s+", "-", season.strip().lower())
    return f"{slug}-{int(year)}-tryout-default"
