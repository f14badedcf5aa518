"""
In-memory entity, relationship and memory store with optional write-through persistence.
"""

from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

from ..models.core import SYMMETRIC_RELATIONSHIPS, Domain, Entity, EntityType, Memory, Relationship, RelationshipType
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import utc_now

logger = get_logger(__name__)

UPDATABLE_FIELDS = {'name', 'type', 'domain', 'description', 'icon', 'metadata'}


class EntityStoreError(Exception):
    """Custom exception for entity store errors."""
    pass


class GraphPersistence(Protocol):
    """Storage adapter mirrored by the store on every mutation."""

    def save_entity(self, entity: Entity) -> None:
        ...

    def delete_entity(self, entity_id: str) -> None:
        ...

    def save_relationship(self, relationship: Relationship) -> None:
        ...

    def delete_relationship(self, relationship_id: str) -> None:
        ...

    def save_memory(self, memory: Memory) -> None:
        ...

    def delete_memory(self, memory_id: str) -> None:
        ...

    def load_entities(self) -> List[Entity]:
        ...

    def load_relationships(self) -> List[Relationship]:
        ...

    def load_memories(self) -> List[Memory]:
        ...


def _pair_key(source_id: str, target_id: str, rel_type: RelationshipType) -> Tuple[str, str, str]:
    if rel_type in SYMMETRIC_RELATIONSHIPS:
        low, high = sorted((source_id, target_id))
        return low, high, rel_type.value
    return source_id, target_id, rel_type.value


class EntityStore:
    """Canonical owner of entities, relationships and memories.

    At most one relationship row exists per (source, target, type); for
    symmetric types the pair is unordered. Weights only grow.
    """

    def __init__(self, persistence: Optional[GraphPersistence] = None):
        self.persistence = persistence
        self._entities: Dict[str, Entity] = {}
        self._relationships: Dict[str, Relationship] = {}
        self._pairs: Dict[Tuple[str, str, str], str] = {}
        self._memories: Dict[str, Memory] = {}

    @classmethod
    def load(cls, persistence: GraphPersistence) -> 'EntityStore':
        """Hydrate a store from its persistence adapter."""
        store = cls(persistence)
        for entity in persistence.load_entities():
            store._entities[entity.id] = entity
        for relationship in persistence.load_relationships():
            if relationship.source_id in store._entities and relationship.target_id in store._entities:
                store._index_relationship(relationship)
        for memory in persistence.load_memories():
            store._memories[memory.id] = memory
        logger.info(f'Loaded {len(store._entities)} entities, {len(store._relationships)} relationships, '
                    f'{len(store._memories)} memories')
        return store

    def _write(self, operation: str, *args: Any) -> None:
        if self.persistence is not None:
            getattr(self.persistence, operation)(*args)

    def _commit(self, record: Any, operation: str, **changes: Any) -> Any:
        """Persist a changed copy of a live record, then apply the changes in memory."""
        updated = replace(record, **changes)
        self._write(operation, updated)
        for key in changes:
            setattr(record, key, getattr(updated, key))
        return record

    def _require(self, entity_id: str) -> Entity:
        entity = self._entities.get(entity_id)
        if entity is None:
            raise EntityStoreError(f'Unknown entity: {entity_id}')
        return entity

    def _index_relationship(self, relationship: Relationship) -> None:
        self._relationships[relationship.id] = relationship
        self._pairs[_pair_key(relationship.source_id, relationship.target_id, relationship.type)] = relationship.id

    # Entities

    def create_entity(self,
                      name: str,
                      type: str,
                      domain: str,
                      description: Optional[str] = None,
                      icon: Optional[str] = None,
                      metadata: Optional[Dict[str, Any]] = None,
                      pending_confirmation: Optional[bool] = None) -> Entity:
        """Create an entity. Focus entities start pending confirmation unless told otherwise."""
        try:
            entity_type = EntityType(type)
            if pending_confirmation is None:
                pending_confirmation = entity_type is EntityType.FOCUS
            entity = Entity(name=name,
                            type=entity_type,
                            domain=domain,
                            description=description,
                            icon=icon,
                            metadata=dict(metadata or {}),
                            pending_confirmation=pending_confirmation)
        except ValueError as e:
            raise EntityStoreError(f'Invalid entity {name!r}: {e}')

        self._write('save_entity', entity)
        self._entities[entity.id] = entity
        logger.debug(f'Created entity {entity.name} ({entity.type.value}, {entity.domain.value})')
        return entity

    def add_entity(self, entity: Entity) -> Entity:
        """Insert an already-built entity, e.g. from manual entry."""
        if entity.id in self._entities:
            raise EntityStoreError(f'Entity already exists: {entity.id}')
        self._write('save_entity', entity)
        self._entities[entity.id] = entity
        return entity

    def get_entity(self, entity_id: str) -> Optional[Entity]:
        return self._entities.get(entity_id)

    def list_entities(self) -> List[Entity]:
        """All entities, most recently mentioned first, never-mentioned last."""
        mentioned = [e for e in self._entities.values() if e.last_mentioned is not None]
        never = [e for e in self._entities.values() if e.last_mentioned is None]
        return sorted(mentioned, key=lambda e: e.last_mentioned, reverse=True) + never

    def find_by_name(self, name: str) -> Optional[Entity]:
        """Case-insensitive exact name lookup."""
        wanted = ' '.join(name.casefold().split())
        for entity in self._entities.values():
            if ' '.join(entity.name.casefold().split()) == wanted:
                return entity
        return None

    def entities_by_domain(self, domain: str) -> List[Entity]:
        domain = Domain(domain)
        return [e for e in self._entities.values() if e.domain is domain]

    def update_entity(self, entity_id: str, **fields: Any) -> Entity:
        entity = self._require(entity_id)
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise EntityStoreError(f'Cannot update fields: {", ".join(sorted(unknown))}')
        try:
            if 'name' in fields:
                name = (fields['name'] or '').strip()
                if not name:
                    raise ValueError('Entity name must be non-empty')
                fields['name'] = name
            if 'type' in fields:
                fields['type'] = EntityType(fields['type'])
            if 'domain' in fields:
                fields['domain'] = Domain(fields['domain'])
        except ValueError as e:
            raise EntityStoreError(f'Invalid update for {entity_id}: {e}')

        return self._commit(entity, 'save_entity', updated_at=utc_now(), **fields)

    def approve_entity(self, entity_id: str) -> Entity:
        """Clear the confirmation-pending flag after a human approved the entity."""
        entity = self._require(entity_id)
        return self._commit(entity, 'save_entity', pending_confirmation=False, updated_at=utc_now())

    def touch_mention(self, entity_id: str, now: Optional[datetime] = None) -> Entity:
        entity = self._require(entity_id)
        return self._commit(entity, 'save_entity', last_mentioned=now or utc_now())

    def delete_entity(self, entity_id: str) -> None:
        """Explicit user deletion. Incident relationships go; memories keep the orphaned id."""
        self._require(entity_id)
        for relationship in self.relationships_for(entity_id):
            self._write('delete_relationship', relationship.id)
            del self._relationships[relationship.id]
            self._pairs.pop(_pair_key(relationship.source_id, relationship.target_id, relationship.type), None)
        self._write('delete_entity', entity_id)
        del self._entities[entity_id]
        logger.info(f'Deleted entity {entity_id}')

    # Relationships

    @property
    def relationships(self) -> List[Relationship]:
        return list(self._relationships.values())

    def get_relationship(self, source_id: str, target_id: str, type: str) -> Optional[Relationship]:
        rel_id = self._pairs.get(_pair_key(source_id, target_id, RelationshipType(type)))
        return self._relationships.get(rel_id) if rel_id else None

    def upsert_relationship(self, source_id: str, target_id: str, type: str, weight_delta: float = 1.0) -> Relationship:
        """Create the relationship with weight=delta, or add delta to the existing weight."""
        self._require(source_id)
        self._require(target_id)
        if source_id == target_id:
            raise EntityStoreError('Relationships need two distinct entities')
        if weight_delta < 0:
            raise EntityStoreError('Relationship weight cannot decrease')
        try:
            rel_type = RelationshipType(type)
        except ValueError as e:
            raise EntityStoreError(str(e))

        relationship = self.get_relationship(source_id, target_id, rel_type)
        if relationship is None:
            relationship = Relationship(source_id=source_id, target_id=target_id, type=rel_type, weight=weight_delta)
            self._write('save_relationship', relationship)
            self._index_relationship(relationship)
            return relationship
        return self._commit(relationship, 'save_relationship', weight=relationship.weight + weight_delta)

    def record_co_occurrence(self, entity_ids: Iterable[str]) -> List[Relationship]:
        """Strengthen mentioned_with between every unordered pair in one confirmed batch."""
        ids = list(dict.fromkeys(entity_ids))
        touched = []
        for i in range(len(ids)):
            for j in range(i + 1, len(ids)):
                touched.append(self.upsert_relationship(ids[i], ids[j], RelationshipType.MENTIONED_WITH, 1.0))
        if touched:
            logger.debug(f'Recorded co-occurrence across {len(ids)} entities ({len(touched)} pairs)')
        return touched

    def relationships_for(self, entity_id: str) -> List[Relationship]:
        return [r for r in self._relationships.values() if r.touches(entity_id)]

    def get_related_entities(self, entity_id: str, types: Optional[Sequence[str]] = None) -> List[Tuple[Entity, Relationship]]:
        """Neighbours of an entity, strongest relationship first."""
        self._require(entity_id)
        wanted = {RelationshipType(t) for t in types} if types else None
        related = []
        for relationship in self.relationships_for(entity_id):
            if wanted is not None and relationship.type not in wanted:
                continue
            other = self._entities.get(relationship.other(entity_id))
            if other is not None:
                related.append((other, relationship))
        return sorted(related, key=lambda item: item[1].weight, reverse=True)

    # Memories

    def add_memory(self, memory: Memory) -> Memory:
        self._write('save_memory', memory)
        self._memories[memory.id] = memory
        return memory

    def get_memory(self, memory_id: str) -> Optional[Memory]:
        return self._memories.get(memory_id)

    def list_memories(self, include_expired: bool = False, now: Optional[datetime] = None) -> List[Memory]:
        """Memories, newest first."""
        now = now or utc_now()
        memories = [m for m in self._memories.values() if include_expired or not m.is_expired(now)]
        return sorted(memories, key=lambda m: m.created_at, reverse=True)

    def memories_for_entity(self, entity_id: str) -> List[Memory]:
        return [m for m in self.list_memories() if entity_id in m.entities]

    def purge_expired_memories(self, now: Optional[datetime] = None) -> int:
        now = now or utc_now()
        expired = [m.id for m in self._memories.values() if m.is_expired(now)]
        for memory_id in expired:
            self._write('delete_memory', memory_id)
            del self._memories[memory_id]
        if expired:
            logger.info(f'Purged {len(expired)} expired memories')
        return len(expired)
