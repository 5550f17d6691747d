"""
Candidate guide filtering.

Guides have already been narrowed to the trip's province by the directory;
these helpers apply the optional language and distance filters, ordering
and pagination.
"""

import math
from typing import Any, Dict, List, Optional, Sequence

from backend.app.domain.trips.pricing import flat_distance_km
from backend.app.models.guide import Guide


def filter_by_language(guides: Sequence[Guide], language: Optional[str]) -> List[Guide]:
    if not language:
        return list(guides)
    wanted = language.strip().lower()
    return [
        guide for guide in guides
        if wanted in [lang.lower() for lang in (guide.languages or [])]
    ]


def sort_by_rating(guides: Sequence[Guide]) -> List[Guide]:
    # Ties broken by id so pagination is stable
    return sorted(guides, key=lambda guide: (-(guide.rating or 0.0), guide.id))


def filter_by_distance(guides: Sequence[Guide], lat: float, lng: float, max_distance_km: float) -> List[Guide]:
    """Keep guides within ``max_distance_km``; guides without a location are dropped."""
    return [
        guide for guide in guides
        if guide.lat is not None and guide.lng is not None
        and flat_distance_km(lat, lng, guide.lat, guide.lng) <= max_distance_km
    ]


def paginate(items: Sequence[Any], page: int, limit: int) -> Dict[str, Any]:
    page = max(page, 1)
    limit = max(limit, 1)
    total = len(items)
    offset = (page - 1) * limit
    return {
        "items": list(items[offset:offset + limit]),
        "total": total,
        "page": page,
        "pages": math.ceil(total / limit) if total else 0,
    }


def empty_page(page: int = 1) -> Dict[str, Any]:
    return {"items": [], "total": 0, "page": page, "pages": 0}
