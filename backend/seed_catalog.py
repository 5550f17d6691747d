"""
Database seeding script for development data.

Creates a province with a few places, an admin, a tourist and two guides,
and prints an access token for each user. Safe to run more than once.
"""

import asyncio
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import select

from backend.app.core.jwt import create_access_token
from backend.app.db.session import AsyncSessionLocal, engine, Base
from backend.app.models.catalog import Province, Place
from backend.app.models.enums import UserRole
from backend.app.models.guide import Guide
from backend.app.models.user import User
import backend.app.main  # noqa: F401  registers every model

PROVINCE = "Cairo"
PLACES = [
    ("Egyptian Museum", 20.0, 30.0478, 31.2336),
    ("Khan el-Khalili", 0.0, 30.0477, 31.2622),
    ("Cairo Citadel", 15.0, 30.0299, 31.2611),
]
USERS = [
    ("admin", "admin@localguide.dev", UserRole.ADMIN),
    ("tourist", "tourist@localguide.dev", UserRole.TOURIST),
    ("guide_amira", "amira@localguide.dev", UserRole.GUIDE),
    ("guide_omar", "omar@localguide.dev", UserRole.GUIDE),
]
GUIDE_PROFILES = {
    "guide_amira": {"languages": ["english", "arabic"], "price_per_hour": 25.0, "rating": 4.8, "lat": 30.045, "lng": 31.24},
    "guide_omar": {"languages": ["english", "french"], "price_per_hour": 20.0, "rating": 4.5, "lat": 30.03, "lng": 31.25},
}


async def seed_catalog():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with AsyncSessionLocal() as db:
        print("🌱 Starting seeding...")

        result = await db.execute(select(Province).where(Province.name == PROVINCE))
        province = result.scalar_one_or_none()
        if province is None:
            province = Province(name=PROVINCE)
            db.add(province)
            await db.flush()
            for name, ticket_price, lat, lng in PLACES:
                db.add(Place(name=name, province_id=province.id, ticket_price=ticket_price, lat=lat, lng=lng))
            print(f"✅ Created province {PROVINCE} with {len(PLACES)} places")
        else:
            print(f"ℹ️  Province {PROVINCE} already exists, skipping")

        users = {}
        for username, email, role in USERS:
            result = await db.execute(select(User).where(User.username == username))
            user = result.scalar_one_or_none()
            if user is None:
                user = User(username=username, email=email, role=role, is_active=True)
                db.add(user)
                await db.flush()
                print(f"✅ Created {role.value} user {username}")
            users[username] = user

        for username, profile in GUIDE_PROFILES.items():
            user = users[username]
            result = await db.execute(select(Guide).where(Guide.user_id == user.id))
            if result.scalar_one_or_none() is None:
                db.add(Guide(user_id=user.id, province_id=province.id, **profile))
                print(f"✅ Created guide profile for {username}")

        await db.commit()

        print("\n🎉 Seeding completed. Development tokens:")
        for username, user in users.items():
            token = create_access_token({"sub": username, "user_id": user.id, "role": user.role.value})
            print(f"  - {username:<12} {token}")


if __name__ == "__main__":
    asyncio.run(seed_catalog())
