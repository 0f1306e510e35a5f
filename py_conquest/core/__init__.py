"""
Core game engine: geometry, rules, walk tracking and territory.
"""

from .models import Node, Chain, ChainAttempt, NodeStatus, SessionKind
from .geo_math import Bounds, distance, polygon_area, point_in_polygon, convex_hull, bounds, bounds_overlap
from .spatial_index import NodeSpatialIndex
from .stores import NodeStore, ChainStore
from .game_rules import GameRules, ValidationResult
from .chain_factory import create_chain_from_path, finalize_node
from .territory import Territory, TerritoryComputer, ConvexHullStrategy, LoopClosureStrategy

__all__ = ['Node', 'Chain', 'ChainAttempt', 'NodeStatus', 'SessionKind',
           'Bounds', 'distance', 'polygon_area', 'point_in_polygon', 'convex_hull', 'bounds', 'bounds_overlap',
           'NodeSpatialIndex', 'NodeStore', 'ChainStore', 'GameRules', 'ValidationResult',
           'create_chain_from_path', 'finalize_node',
           'Territory', 'TerritoryComputer', 'ConvexHullStrategy', 'LoopClosureStrategy']
