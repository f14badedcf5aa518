"""
Amazon Neptune persistence for the knowledge graph, using the Gremlin Python driver with AWS SigV4 authentication.

Entities and memories are vertices; relationships are edges between entity
vertices labelled with the relationship type.
"""

import json
from functools import wraps
from typing import Any, Dict, List, Optional

from boto3 import Session
from botocore.auth import SigV4Auth
from botocore.awsrequest import AWSRequest
from gremlin_python.driver.aiohttp.transport import AiohttpTransport
from gremlin_python.driver.driver_remote_connection import DriverRemoteConnection
from gremlin_python.process.anonymous_traversal import traversal
from gremlin_python.process.graph_traversal import __
from gremlin_python.process.traversal import Cardinality, T

from ..models.core import Entity, Memory, Relationship, RelationshipType
from .config import NeptuneConfig
from .logging_config import get_logger
from .timestamp_utils import to_datetime, to_seconds_str

logger = get_logger(__name__)

ENTITY_LABEL = 'Entity'
MEMORY_LABEL = 'Memory'


class NeptuneError(Exception):
    """Custom exception for Neptune errors."""
    pass


def retry_on_connection_error(func):
    """Decorator to retry Neptune operations on connection errors."""

    @wraps(func)
    def wrapper(self, *args, **kwargs):
        try:
            return func(self, *args, **kwargs)
        except Exception as e:
            if 'cannot write to closing transport' in str(e).lower():
                logger.warning(f'Connection error detected: {e}. Reconnecting...')
                self.close()
                self._connect()
                try:
                    return func(self, *args, **kwargs)
                except Exception as retry_e:
                    logger.error(f'Error in {func.__name__}: {retry_e}')
                    raise NeptuneError(f'Failed to {func.__name__}: {retry_e}')
            else:
                logger.error(f'Error in {func.__name__}: {e}')
                raise NeptuneError(f'Failed to {func.__name__}: {e}')

    return wrapper


def _value(data: Dict[Any, Any], key: str, default: Any = None) -> Any:
    """Read one property from a value_map row; Gremlin wraps vertex properties in lists."""
    value = data.get(key, default)
    if isinstance(value, list):
        return value[0] if value else default
    return value


def _timestamp(value: Optional[str]):
    return to_datetime(int(value)) if value else None


def _seconds(moment) -> Optional[str]:
    return to_seconds_str(moment.timestamp()) if moment is not None else None


def entity_properties(entity: Entity) -> Dict[str, Any]:
    return {
        'name': entity.name,
        'type': entity.type.value,
        'domain': entity.domain.value,
        'description': entity.description,
        'icon': entity.icon,
        'metadata': json.dumps(entity.metadata),
        'created_at': _seconds(entity.created_at),
        'updated_at': _seconds(entity.updated_at),
        'last_mentioned': _seconds(entity.last_mentioned),
        'pending_confirmation': entity.pending_confirmation,
    }


def memory_properties(memory: Memory) -> Dict[str, Any]:
    return {
        'content': memory.content,
        'source_type': memory.source_type.value,
        'source_id': memory.source_id,
        'entities': json.dumps(memory.entities),
        'importance': memory.importance,
        'tags': json.dumps(memory.tags),
        'created_at': _seconds(memory.created_at),
        'expires_at': _seconds(memory.expires_at),
    }


def entity_from_value_map(data: Dict[Any, Any]) -> Entity:
    return Entity(id=_value(data, 'id'),
                  name=_value(data, 'name', ''),
                  type=_value(data, 'type'),
                  domain=_value(data, 'domain'),
                  description=_value(data, 'description'),
                  icon=_value(data, 'icon'),
                  metadata=json.loads(_value(data, 'metadata', '{}')),
                  created_at=_timestamp(_value(data, 'created_at')) or to_datetime(0),
                  updated_at=_timestamp(_value(data, 'updated_at')) or to_datetime(0),
                  last_mentioned=_timestamp(_value(data, 'last_mentioned')),
                  pending_confirmation=bool(_value(data, 'pending_confirmation', False)))


def memory_from_value_map(data: Dict[Any, Any]) -> Memory:
    return Memory(id=_value(data, 'id'),
                  content=_value(data, 'content', ''),
                  source_type=_value(data, 'source_type'),
                  source_id=_value(data, 'source_id'),
                  entities=json.loads(_value(data, 'entities', '[]')),
                  importance=float(_value(data, 'importance', 0.5)),
                  tags=json.loads(_value(data, 'tags', '[]')),
                  created_at=_timestamp(_value(data, 'created_at')) or to_datetime(0),
                  expires_at=_timestamp(_value(data, 'expires_at')))


class NeptuneClient:
    """Amazon Neptune client using Gremlin Python driver with AWS authentication.

    Implements the entity store's persistence adapter.
    """

    def __init__(self, config: NeptuneConfig):
        """
        Initialize Neptune client with Gremlin driver.

        Args:
            config: NeptuneConfig instance with connection parameters
        """
        self.config = config
        self.connection = None
        self.g = None
        self._connect()

        logger.info(f'Connected to Neptune at {config.endpoint}')

    def _connect(self):
        """Establish connection to Neptune."""
        conn_string = f'wss://{self.config.endpoint}:{self.config.port}/gremlin'

        credentials = Session().get_credentials()
        if credentials is None:
            raise NeptuneError('No AWS credentials found')
        creds = credentials.get_frozen_credentials()

        region = Session().region_name or self.config.region or 'us-east-1'

        # Sign the WebSocket upgrade request
        request = AWSRequest(method='GET', url=conn_string, data=None)
        SigV4Auth(creds, 'neptune-db', region).add_auth(request)

        self.connection = DriverRemoteConnection(conn_string,
                                                 'g',
                                                 headers=request.headers.items(),
                                                 transport_factory=lambda: AiohttpTransport(call_from_event_loop=True))
        self.g = traversal().with_remote(self.connection)

    def close(self):
        """Close the Neptune connection."""
        if self.connection is not None:
            self.connection.close()

    def _upsert_vertex(self, label: str, vertex_id: str, properties: Dict[str, Any]) -> None:
        t = self.g.V().has(label, 'id', vertex_id).fold()\
            .coalesce(__.unfold(), __.addV(label).property('id', vertex_id))
        for key, value in properties.items():
            if value is None:
                t = t.side_effect(__.properties(key).drop())
            else:
                t = t.property(Cardinality.single, key, value)
        t.iterate()

    @retry_on_connection_error
    def save_entity(self, entity: Entity) -> None:
        """Create or update an entity vertex."""
        self._upsert_vertex(ENTITY_LABEL, entity.id, entity_properties(entity))
        logger.debug(f'Saved entity vertex: {entity.id}')

    @retry_on_connection_error
    def delete_entity(self, entity_id: str) -> None:
        """Delete an entity vertex and its edges. Memory vertices are left untouched."""
        self.g.V().has(ENTITY_LABEL, 'id', entity_id).both_e().drop().iterate()
        self.g.V().has(ENTITY_LABEL, 'id', entity_id).drop().iterate()
        logger.debug(f'Deleted entity vertex: {entity_id}')

    @retry_on_connection_error
    def save_relationship(self, relationship: Relationship) -> None:
        """Create the edge, or update the weight on an existing one."""
        existing = self.g.E().has('id', relationship.id).to_list()
        if existing:
            self.g.E().has('id', relationship.id).property('weight', relationship.weight).iterate()
            logger.debug(f'Updated relationship weight: {relationship.id} -> {relationship.weight}')
            return

        source = self.g.V().has(ENTITY_LABEL, 'id', relationship.source_id).next()
        target = self.g.V().has(ENTITY_LABEL, 'id', relationship.target_id).next()
        self.g.V(source).addE(relationship.type.value).to(target)\
            .property('id', relationship.id)\
            .property('weight', relationship.weight)\
            .property('metadata', json.dumps(relationship.metadata))\
            .property('created_at', _seconds(relationship.created_at))\
            .next()
        logger.debug(f'Created relationship edge: {relationship.id} ({relationship.type.value})')

    @retry_on_connection_error
    def delete_relationship(self, relationship_id: str) -> None:
        self.g.E().has('id', relationship_id).drop().iterate()
        logger.debug(f'Deleted relationship edge: {relationship_id}')

    @retry_on_connection_error
    def save_memory(self, memory: Memory) -> None:
        self._upsert_vertex(MEMORY_LABEL, memory.id, memory_properties(memory))
        logger.debug(f'Saved memory vertex: {memory.id}')

    @retry_on_connection_error
    def delete_memory(self, memory_id: str) -> None:
        self.g.V().has(MEMORY_LABEL, 'id', memory_id).drop().iterate()
        logger.debug(f'Deleted memory vertex: {memory_id}')

    @retry_on_connection_error
    def load_entities(self) -> List[Entity]:
        rows = self.g.V().has_label(ENTITY_LABEL).value_map().to_list()
        entities = []
        for data in rows:
            try:
                entities.append(entity_from_value_map(data))
            except (ValueError, TypeError) as e:
                logger.warning(f'Skipping unreadable entity vertex {_value(data, "id")}: {e}')
        logger.debug(f'Loaded {len(entities)} entities from Neptune')
        return entities

    @retry_on_connection_error
    def load_relationships(self) -> List[Relationship]:
        rows = self.g.E().has_label(*[t.value for t in RelationshipType])\
            .project('id', 'type', 'source_id', 'target_id', 'weight', 'metadata', 'created_at')\
            .by('id')\
            .by(T.label)\
            .by(__.out_v().values('id'))\
            .by(__.in_v().values('id'))\
            .by('weight')\
            .by(__.coalesce(__.values('metadata'), __.constant('{}')))\
            .by(__.coalesce(__.values('created_at'), __.constant('0')))\
            .to_list()

        relationships = []
        for row in rows:
            try:
                relationships.append(
                    Relationship(id=row['id'],
                                 source_id=row['source_id'],
                                 target_id=row['target_id'],
                                 type=row['type'],
                                 weight=float(row['weight']),
                                 metadata=json.loads(row['metadata']),
                                 created_at=to_datetime(int(row['created_at']))))
            except (ValueError, TypeError) as e:
                logger.warning(f'Skipping unreadable relationship edge {row.get("id")}: {e}')
        logger.debug(f'Loaded {len(relationships)} relationships from Neptune')
        return relationships

    @retry_on_connection_error
    def load_memories(self) -> List[Memory]:
        rows = self.g.V().has_label(MEMORY_LABEL).value_map().to_list()
        memories = []
        for data in rows:
            try:
                memories.append(memory_from_value_map(data))
            except (ValueError, TypeError) as e:
                logger.warning(f'Skipping unreadable memory vertex {_value(data, "id")}: {e}')
        logger.debug(f'Loaded {len(memories)} memories from Neptune')
        return memories

    @retry_on_connection_error
    def health_check(self) -> bool:
        """
        Perform a health check on the Neptune service.

        Returns:
            True if service is healthy, False otherwise
        """
        self.g.V().limit(1).count().next()
        return True

