"""
Directory lookups for users, guides, provinces and places.

Read-mostly data owned by other parts of the platform. The trip core only
reads it, apart from bumping a guide's completed-trip counter.
"""

from typing import Iterable, List, Optional, Dict

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.models.user import User
from backend.app.models.guide import Guide
from backend.app.models.catalog import Place, Province


class Directory:

    def __init__(self, db: AsyncSession):
        self.db = db

    async def find_user(self, user_id: int) -> Optional[User]:
        return await self.db.get(User, user_id)

    async def find_guide(self, guide_id: int) -> Optional[Guide]:
        return await self.db.get(Guide, guide_id)

    async def find_guide_by_user(self, user_id: int) -> Optional[Guide]:
        result = await self.db.execute(select(Guide).where(Guide.user_id == user_id))
        return result.scalar_one_or_none()

    async def find_province(self, province_id: int) -> Optional[Province]:
        return await self.db.get(Province, province_id)

    async def find_place(self, place_id: int) -> Optional[Place]:
        return await self.db.get(Place, place_id)

    async def find_places(self, place_ids: Iterable[int]) -> Dict[int, Place]:
        ids = list(set(place_ids))
        if not ids:
            return {}
        result = await self.db.execute(select(Place).where(Place.id.in_(ids)))
        return {place.id: place for place in result.scalars().all()}

    async def list_active_guides(self, province_id: int) -> List[Guide]:
        """
        Active guides covering ``province_id``.

        Extra provinces are stored as a JSON list, so that half of the
        filter runs in Python to stay portable across SQLite and PostgreSQL.
        """
        result = await self.db.execute(select(Guide).where(Guide.is_active == True))  # noqa: E712
        return [guide for guide in result.scalars().all() if guide.covers_province(province_id)]

    async def increment_guide_trip_count(self, guide_id: int) -> None:
        await self.db.execute(
            update(Guide)
            .where(Guide.id == guide_id)
            .values(total_trips=Guide.total_trips + 1)
            .execution_options(synchronize_session=False)
        )
