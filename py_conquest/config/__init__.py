"""
Configuration for the territory engine.
"""

from .config import Settings, settings

__all__ = ['Settings', 'settings']
