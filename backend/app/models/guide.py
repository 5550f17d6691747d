"""
Guide profile database model.

A guide is a user with a public profile, an hourly rate and the provinces
they cover.
"""

from sqlalchemy import Column, Integer, Float, ForeignKey, DateTime, Boolean, JSON
from sqlalchemy.sql import func
from backend.app.db.session import Base


class Guide(Base):
    """Guide profile."""
    __tablename__ = "guides"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey('users.id'), unique=True, nullable=False, index=True)

    # Coverage
    province_id = Column(Integer, ForeignKey('provinces.id'), nullable=False, index=True)
    extra_province_ids = Column(JSON, nullable=True)  # Additional provinces covered
    languages = Column(JSON, nullable=True)  # ["english", "arabic", ...]

    # Commercial
    price_per_hour = Column(Float, nullable=True)

    # Reputation (maintained outside this service)
    rating = Column(Float, default=0.0, nullable=False)
    total_trips = Column(Integer, default=0, nullable=False)

    # Last known location
    lat = Column(Float, nullable=True)
    lng = Column(Float, nullable=True)

    is_active = Column(Boolean, default=True, nullable=False, index=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def covers_province(self, province_id: int) -> bool:
        return self.province_id == province_id or province_id in (self.extra_province_ids or [])

    def __repr__(self):
        return f"<Guide(id={self.id}, user_id={self.user_id}, rating={self.rating})>"
