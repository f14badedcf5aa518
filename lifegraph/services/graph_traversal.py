"""
Bounded-depth walk over the relationship graph.
"""

from collections import deque
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set

from ..models.core import Entity, Relationship
from ..utils.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class Subgraph:
    """Nodes reached from a start entity and every edge touched on the way."""
    root_id: str
    nodes: List[Entity] = field(default_factory=list)
    edges: List[Relationship] = field(default_factory=list)
    depths: Dict[str, int] = field(default_factory=dict)

    @property
    def node_ids(self) -> Set[str]:
        return {node.id for node in self.nodes}


def traverse(start_id: str, entities: Dict[str, Entity], relationships: Iterable[Relationship], max_depth: int = 2) -> Subgraph:
    """Breadth-first walk from start_id, safe on cyclic graphs.

    Nodes are visited once. A node at max_depth contributes its edges, but the
    neighbours behind those edges are not expanded.

    Args:
        start_id: Entity id to start from
        entities: Entities by id
        relationships: All relationships in the graph
        max_depth: Maximum number of hops to expand

    Returns:
        Subgraph with visited nodes and edges deduplicated by id
    """
    subgraph = Subgraph(root_id=start_id)
    if start_id not in entities or max_depth < 0:
        return subgraph

    adjacency: Dict[str, List[Relationship]] = {}
    for relationship in relationships:
        adjacency.setdefault(relationship.source_id, []).append(relationship)
        if relationship.target_id != relationship.source_id:
            adjacency.setdefault(relationship.target_id, []).append(relationship)

    visited: Set[str] = set()
    seen_edges: Set[str] = set()
    queue = deque([(start_id, 0)])

    while queue:
        entity_id, depth = queue.popleft()
        if entity_id in visited or depth > max_depth or entity_id not in entities:
            continue
        visited.add(entity_id)
        subgraph.nodes.append(entities[entity_id])
        subgraph.depths[entity_id] = depth

        for relationship in adjacency.get(entity_id, []):
            if relationship.id not in seen_edges:
                seen_edges.add(relationship.id)
                subgraph.edges.append(relationship)
            neighbour = relationship.other(entity_id)
            if neighbour not in visited:
                queue.append((neighbour, depth + 1))

    logger.debug(f'Traversal from {start_id} reached {len(subgraph.nodes)} nodes, {len(subgraph.edges)} edges')
    return subgraph


def find_path(from_id: str,
              to_id: str,
              entities: Dict[str, Entity],
              relationships: Iterable[Relationship],
              max_depth: int = 4) -> Optional[List[Entity]]:
    """Shortest chain of entities from from_id to to_id, or None beyond max_depth hops.

    Edge direction is ignored.
    """
    subgraph = traverse(from_id, entities, relationships, max_depth)
    if to_id not in subgraph.depths:
        return None

    nodes = {node.id: node for node in subgraph.nodes}
    parents: Dict[str, Optional[str]] = {from_id: None}
    queue = deque([from_id])
    while queue:
        entity_id = queue.popleft()
        if entity_id == to_id:
            break
        for relationship in subgraph.edges:
            if not relationship.touches(entity_id):
                continue
            neighbour = relationship.other(entity_id)
            if neighbour in nodes and neighbour not in parents:
                parents[neighbour] = entity_id
                queue.append(neighbour)

    path = []
    step: Optional[str] = to_id
    while step is not None:
        path.append(nodes[step])
        step = parents[step]
    return path[::-1]
