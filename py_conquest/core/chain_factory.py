"""Promotion of a finished walk into nodes and a chain."""

from dataclasses import replace
from typing import NamedTuple, Optional, Sequence

import structlog

from ..utils.timers import now_ms
from .models import Chain, Coordinates, Node, NodeStatus, as_coordinates, new_id, reduce_path

logger = structlog.get_logger()


class ChainCreationResult(NamedTuple):
    node_a: Node
    node_b: Node
    chain: Chain


def finalize_node(pending: Node, temporary: bool = False) -> Node:
    """Return the established version of a pending anchor node."""
    return replace(pending, status=NodeStatus.ESTABLISHED, temporary=temporary)


def create_chain_from_path(
    start: Sequence[float],
    end: Sequence[float],
    path: Sequence[Sequence[float]],
    temporary: bool = False,
    anchor: Optional[Node] = None,
    created_at: Optional[int] = None,
) -> ChainCreationResult:
    """
    Build two established nodes and the chain connecting them.

    Used for both real and simulated walks; only the ``temporary`` flag
    differs. Permanent chains keep just the two endpoint coordinates of the
    recorded path so the full route is never stored.

    Args:
        start: Coordinates of node A
        end: Coordinates of node B
        path: Recorded path of the walk
        temporary: True for simulation sessions
        anchor: Pending anchor node; node A keeps its id when given
        created_at: Creation time in epoch milliseconds (defaults to now)
    """
    timestamp = created_at if created_at is not None else now_ms()
    start_coords: Coordinates = as_coordinates(start)
    end_coords: Coordinates = as_coordinates(end)

    points = [as_coordinates(p) for p in path] or [start_coords, end_coords]
    if temporary:
        chain_path = tuple(points)
    else:
        if len(points) != 2:
            logger.debug("Reducing permanent chain path", points=len(points))
        chain_path = reduce_path(points) if len(points) >= 2 else (start_coords, end_coords)

    if anchor is not None:
        node_a = replace(finalize_node(anchor, temporary), coordinates=start_coords)
    else:
        node_a = Node(id=new_id(), coordinates=start_coords, created_at=timestamp,
                      status=NodeStatus.ESTABLISHED, temporary=temporary)

    node_b = Node(id=new_id(), coordinates=end_coords, created_at=timestamp,
                  status=NodeStatus.ESTABLISHED, temporary=temporary)

    chain = Chain(
        id=new_id(),
        node_a_id=node_a.id,
        node_b_id=node_b.id,
        path=chain_path,
        created_at=timestamp,
        temporary=temporary,
    )

    logger.info("Chain created", chain_id=chain.id,
                kind="temporary" if temporary else "permanent", path_points=len(chain_path))
    return ChainCreationResult(node_a, node_b, chain)
