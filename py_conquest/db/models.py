"""Database models for local game state and the shared backend."""

from sqlalchemy import JSON, BigInteger, Boolean, Column, DateTime, Float, ForeignKey, Index, String, Text
from sqlalchemy.orm import declarative_base, relationship
from datetime import datetime

Base = declarative_base()


# Local device store

class LocalNode(Base):
    """Permanent node persisted on the player's device."""

    __tablename__ = "local_nodes"

    id = Column(String(64), primary_key=True)
    longitude = Column(Float, nullable=False)
    latitude = Column(Float, nullable=False)
    created_at = Column(BigInteger, nullable=False)  # epoch milliseconds
    status = Column(String(16), nullable=False, default="established")
    temporary = Column(Boolean, nullable=False, default=False)


class LocalChain(Base):
    """Permanent chain persisted on the player's device."""

    __tablename__ = "local_chains"

    id = Column(String(64), primary_key=True)
    node_a_id = Column(String(64), nullable=False)
    node_b_id = Column(String(64), nullable=False)
    path = Column(JSON, nullable=False)  # [[lon, lat], ...]
    created_at = Column(BigInteger, nullable=False)
    temporary = Column(Boolean, nullable=False, default=False)


class LocalState(Base):
    """Keyed JSON records, e.g. the active chain attempt."""

    __tablename__ = "local_state"

    key = Column(String(64), primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


# Shared backend

class Profile(Base):
    """Public player profile."""

    __tablename__ = "user_profiles"

    user_id = Column(String(64), primary_key=True)
    username = Column(String(100))
    display_name = Column(String(255))
    avatar_url = Column(String(500))
    territory_area_km2 = Column(Float, default=0.0)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    nodes = relationship("PlayerNode", back_populates="profile", cascade="all, delete-orphan")
    chains = relationship("PlayerChain", back_populates="profile", cascade="all, delete-orphan")


class PlayerNode(Base):
    """Node uploaded by a player."""

    __tablename__ = "nodes"

    id = Column(String(64), primary_key=True)
    user_id = Column(String(64), ForeignKey("user_profiles.user_id"), nullable=False)
    longitude = Column(Float, nullable=False)
    latitude = Column(Float, nullable=False)
    created_at = Column(BigInteger, nullable=False)
    uploaded_at = Column(DateTime, default=datetime.utcnow)

    profile = relationship("Profile", back_populates="nodes")

    __table_args__ = (Index("ix_nodes_user_id", "user_id"),)


class PlayerChain(Base):
    """Chain uploaded by a player; the path only ever holds its two endpoints."""

    __tablename__ = "chains"

    id = Column(String(64), primary_key=True)
    user_id = Column(String(64), ForeignKey("user_profiles.user_id"), nullable=False)
    node_a_id = Column(String(64))
    node_b_id = Column(String(64))
    path = Column(JSON, nullable=False)
    distance_km = Column(Float)
    created_at = Column(BigInteger, nullable=False)
    uploaded_at = Column(DateTime, default=datetime.utcnow)

    profile = relationship("Profile", back_populates="chains")

    __table_args__ = (Index("ix_chains_user_id", "user_id"),)
