"""
Extraction candidates handed to the confirmation workflow.

A candidate is never part of the knowledge graph; it becomes an Entity or
Memory only after it has been confirmed.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional, Union

from .core import Domain, EntityType

EXTRACTABLE_ENTITY_TYPES = (EntityType.PERSON, EntityType.PROJECT, EntityType.COMPANY, EntityType.EVENT, EntityType.GOAL,
                            EntityType.FOCUS)


class Priority(str, Enum):
    CRITICAL = 'critical'
    ACTIVE = 'active'
    BACKGROUND = 'background'


class Importance(str, Enum):
    HIGH = 'high'
    MEDIUM = 'medium'
    LOW = 'low'


class MemoryCategory(str, Enum):
    PREFERENCE = 'preference'
    FACT = 'fact'
    EVENT = 'event'
    DECISION = 'decision'
    INSIGHT = 'insight'


IMPORTANCE_SCORES = {Importance.HIGH: 0.9, Importance.MEDIUM: 0.6, Importance.LOW: 0.3}


@dataclass(frozen=True)
class NeedsConfirmation:
    """The candidate must be shown to the user before it is stored."""
    reason: str


@dataclass(frozen=True)
class AutoApprovable:
    """The candidate may be accepted without an explicit prompt."""
    pass


ConfirmationGate = Union[NeedsConfirmation, AutoApprovable]


@dataclass
class EntityCandidate:
    """A proposed entity. Focus candidates can only carry NeedsConfirmation."""
    name: str
    type: EntityType
    domain: Domain
    gate: ConfirmationGate
    description: Optional[str] = None
    relationship: Optional[str] = None
    priority: Optional[Priority] = None
    date: Optional[str] = None
    target_date: Optional[str] = None
    confidence: Optional[float] = None

    def __post_init__(self):
        self.type = EntityType(self.type)
        self.domain = Domain(self.domain)
        if self.type not in EXTRACTABLE_ENTITY_TYPES:
            raise ValueError(f'{self.type.value} is not an extractable entity type')
        if self.type is EntityType.FOCUS and not isinstance(self.gate, NeedsConfirmation):
            raise ValueError('Focus candidates always require confirmation')
        if self.confidence is not None and not 0.0 <= self.confidence <= 1.0:
            raise ValueError('Candidate confidence must be within [0, 1]')

    @classmethod
    def build(cls, name: str, type: str, domain: str, needs_confirmation: bool = False, reason: str = '', **fields):
        """Construct a candidate, choosing the gate from the flag and the type."""
        entity_type = EntityType(type)
        if entity_type is EntityType.FOCUS:
            gate = NeedsConfirmation(reason or 'interpretive theme inferred across statements')
        elif needs_confirmation:
            gate = NeedsConfirmation(reason or 'flagged as ambiguous during extraction')
        else:
            gate = AutoApprovable()
        return cls(name=name, type=entity_type, domain=Domain(domain), gate=gate, **fields)

    @property
    def needs_confirmation(self) -> bool:
        return isinstance(self.gate, NeedsConfirmation)


@dataclass
class MemoryCandidate:
    """A proposed memory: one fact, preference, decision, event or insight."""
    content: str
    importance: Importance
    category: MemoryCategory
    entity_names: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    expires_at: Optional[datetime] = None

    def __post_init__(self):
        self.importance = Importance(self.importance)
        self.category = MemoryCategory(self.category)
        if not self.content or not self.content.strip():
            raise ValueError('Memory content must be non-empty')

    @property
    def importance_score(self) -> float:
        return IMPORTANCE_SCORES[self.importance]


@dataclass
class DomainCoverage:
    """A life domain covered by a document."""
    type: Domain
    description: Optional[str] = None


@dataclass
class DocumentExtraction:
    """Stage 1 output for a whole document."""
    summary: str
    domains: List[DomainCoverage] = field(default_factory=list)
    entities: List[EntityCandidate] = field(default_factory=list)
    topics_not_covered: List[str] = field(default_factory=list)


@dataclass
class TurnExtraction:
    """Stage 2 output for one user/assistant exchange."""
    entities: List[EntityCandidate] = field(default_factory=list)
    memories: List[MemoryCandidate] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.entities and not self.memories


@dataclass
class OnboardingStatus:
    """Cold-start completion decision used when extraction is unavailable."""
    is_complete: bool
    response: str
