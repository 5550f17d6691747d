"""
Province and place catalog models.

Read-mostly reference data used to resolve a trip's province, ticket costs
and stop coordinates.
"""

from sqlalchemy import Column, Integer, String, Float, ForeignKey, DateTime, Boolean
from sqlalchemy.sql import func
from backend.app.db.session import Base


class Province(Base):
    """Administrative region (governorate) guides operate in."""
    __tablename__ = "provinces"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    name = Column(String(120), unique=True, nullable=False, index=True)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<Province(id={self.id}, name='{self.name}')>"


class Place(Base):
    """A visitable place (museum, temple, market...)."""
    __tablename__ = "places"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    province_id = Column(Integer, ForeignKey('provinces.id'), nullable=False, index=True)

    ticket_price = Column(Float, default=0.0, nullable=False)

    # Location
    lat = Column(Float, nullable=True)
    lng = Column(Float, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<Place(id={self.id}, name='{self.name}', province_id={self.province_id})>"
