"""
Core data models for the life-context knowledge graph.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from ..utils.timestamp_utils import utc_now


class EntityType(str, Enum):
    PERSON = 'person'
    PROJECT = 'project'
    COMPANY = 'company'
    EVENT = 'event'
    GOAL = 'goal'
    FOCUS = 'focus'
    CONCEPT = 'concept'
    DOMAIN = 'domain'


class Domain(str, Enum):
    WORK = 'work'
    FAMILY = 'family'
    SPORT = 'sport'
    PERSONAL = 'personal'
    HEALTH = 'health'


class RelationshipType(str, Enum):
    BELONGS_TO = 'belongs_to'
    RELATED_TO = 'related_to'
    MENTIONED_WITH = 'mentioned_with'
    PARENT_OF = 'parent_of'


# Relationship types stored once per unordered pair
SYMMETRIC_RELATIONSHIPS = frozenset({RelationshipType.MENTIONED_WITH})


class SourceType(str, Enum):
    THREAD = 'thread'
    CAPTURE = 'capture'
    UPLOAD = 'upload'


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class Entity:
    """A named node in the user's knowledge graph.

    Focus entities stay ``pending_confirmation`` until a human approves them.
    """
    name: str
    type: EntityType
    domain: Domain
    id: str = field(default_factory=new_id)
    description: Optional[str] = None
    icon: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    last_mentioned: Optional[datetime] = None
    pending_confirmation: bool = False

    def __post_init__(self):
        self.name = (self.name or '').strip()
        if not self.name:
            raise ValueError('Entity name must be non-empty')
        self.type = EntityType(self.type)
        self.domain = Domain(self.domain)


@dataclass
class Relationship:
    """A weighted edge between two entities."""
    source_id: str
    target_id: str
    type: RelationshipType
    weight: float = 1.0
    id: str = field(default_factory=new_id)
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)

    def __post_init__(self):
        self.type = RelationshipType(self.type)
        if self.weight < 0:
            raise ValueError('Relationship weight must be >= 0')

    @property
    def is_symmetric(self) -> bool:
        return self.type in SYMMETRIC_RELATIONSHIPS

    def other(self, entity_id: str) -> str:
        """Return the endpoint opposite to entity_id."""
        return self.target_id if self.source_id == entity_id else self.source_id

    def touches(self, entity_id: str) -> bool:
        return entity_id in (self.source_id, self.target_id)


@dataclass
class Memory:
    """A short extracted fact tied to zero or more entities.

    ``entities`` holds entity ids as weak references: deleting an entity
    leaves the id in place rather than removing the memory.
    """
    content: str
    source_type: SourceType
    id: str = field(default_factory=new_id)
    source_id: Optional[str] = None
    entities: List[str] = field(default_factory=list)
    importance: float = 0.5
    tags: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)
    expires_at: Optional[datetime] = None

    def __post_init__(self):
        self.source_type = SourceType(self.source_type)
        if not 0.0 <= self.importance <= 1.0:
            raise ValueError('Memory importance must be within [0, 1]')

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= (now or utc_now())


@dataclass
class Message:
    """One conversational message; also the unit sent to the language model."""
    role: str  # user | assistant | system
    content: str
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utc_now)

    def to_prompt(self) -> Dict[str, str]:
        return {'role': self.role, 'content': self.content}


@dataclass
class Thread:
    """An ordered conversation plus its rolling summary.

    Messages before ``summary_up_to`` are represented only by ``summary``.
    """
    id: str = field(default_factory=new_id)
    title: Optional[str] = None
    messages: List[Message] = field(default_factory=list)
    summary: Optional[str] = None
    summary_up_to: int = 0
    entity_ids: List[str] = field(default_factory=list)
    domains: List[Domain] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def add_message(self, role: str, content: str) -> Message:
        message = Message(role=role, content=content)
        self.messages.append(message)
        self.updated_at = utc_now()
        return message

    def update_summary(self, summary: Optional[str], summary_up_to: int) -> None:
        """Fold messages up to summary_up_to into summary; the index never moves backwards."""
        if summary_up_to < self.summary_up_to:
            raise ValueError(f'summary_up_to cannot decrease ({self.summary_up_to} -> {summary_up_to})')
        if summary_up_to > len(self.messages):
            raise ValueError(f'summary_up_to {summary_up_to} exceeds message count {len(self.messages)}')
        self.summary = summary
        self.summary_up_to = summary_up_to
        self.updated_at = utc_now()


@dataclass
class CapacityImpact:
    """Capacity estimates (0-100) derived from biometric signals."""
    physical: Optional[float] = None
    cognitive: Optional[float] = None
    emotional: Optional[float] = None


@dataclass(frozen=True)
class Signal:
    """A normalized, read-only event from an external data source."""
    id: str
    source: str
    type: str
    timestamp: datetime
    data: Dict[str, Any] = field(default_factory=dict)
    domain: Optional[Domain] = None
    entity_ids: tuple = ()
    capacity_impact: Optional[CapacityImpact] = None
