"""
Database utilities and models.

This package provides:
- SQLAlchemy models for the local store and the shared backend
- Database connection management
- Player storage and the multiplayer sync backend
"""

from .connection import Database
from .storage import GameStorage, SqlStorage, MemoryStorage
from .backend import ChangeEvent, ChangeFeed, ChangeType, DatabaseBackend, SyncBackend
from .models import Base, LocalNode, LocalChain, LocalState, Profile, PlayerNode, PlayerChain

__all__ = [
    # Connection management
    'Database',

    # Storage
    'GameStorage', 'SqlStorage', 'MemoryStorage',

    # Multiplayer backend
    'ChangeEvent', 'ChangeFeed', 'ChangeType', 'DatabaseBackend', 'SyncBackend',

    # Models
    'Base', 'LocalNode', 'LocalChain', 'LocalState', 'Profile', 'PlayerNode', 'PlayerChain',
]
