"""
JSON Schemas and typed payloads for each extraction mode.

Each payload class owns the schema sent to the model and a ``from_data``
that validates the decoded response. Single malformed items are dropped;
a response missing a required top-level field is rejected as a whole.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..models.candidates import (EntityCandidate, Importance, MemoryCandidate, MemoryCategory, Priority, DomainCoverage,
                                 DocumentExtraction)
from ..models.core import Domain
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import to_datetime

logger = get_logger(__name__)

DOMAIN_ENUM = ['work', 'family', 'sport', 'personal', 'health']
ENTITY_TYPE_ENUM = ['person', 'project', 'company', 'event', 'goal', 'focus']
PRIORITY_ENUM = ['critical', 'active', 'background']
IMPORTANCE_ENUM = ['high', 'medium', 'low']
CATEGORY_ENUM = ['preference', 'fact', 'event', 'decision', 'insight']


class SchemaValidationError(ValueError):
    """Raised when a decoded response does not match its extraction schema."""
    pass


def _require(data: Any, keys: List[str], mode: str) -> Dict[str, Any]:
    if not isinstance(data, dict):
        raise SchemaValidationError(f'{mode} payload must be an object, got {type(data).__name__}')
    missing = [key for key in keys if key not in data]
    if missing:
        raise SchemaValidationError(f'{mode} payload missing required fields: {", ".join(missing)}')
    return data


def _list_of(data: Dict[str, Any], key: str, mode: str) -> List[Any]:
    value = data.get(key) or []
    if not isinstance(value, list):
        raise SchemaValidationError(f'{mode}.{key} must be an array')
    return value


def _optional_str(item: Dict[str, Any], key: str) -> Optional[str]:
    value = item.get(key)
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _string_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(v).strip() for v in value if isinstance(v, str) and v.strip()]


def _entity_from_item(item: Dict[str, Any], require_confidence: bool) -> EntityCandidate:
    """Build one entity candidate; raises ValueError/KeyError/TypeError on bad input."""
    confidence = item.get('confidence')
    if require_confidence and confidence is None:
        raise ValueError('confidence is required')
    priority = _optional_str(item, 'priority')
    return EntityCandidate.build(name=str(item['name']).strip(),
                                 type=item['type'],
                                 domain=item['domain'],
                                 needs_confirmation=bool(item.get('needsConfirmation', False)),
                                 description=_optional_str(item, 'description'),
                                 relationship=_optional_str(item, 'relationship'),
                                 priority=Priority(priority) if priority else None,
                                 date=_optional_str(item, 'date'),
                                 target_date=_optional_str(item, 'targetDate'),
                                 confidence=float(confidence) if confidence is not None else None)


def _entities_from_items(items: List[Any], require_confidence: bool, mode: str) -> List[EntityCandidate]:
    entities = []
    for item in items:
        if not isinstance(item, dict):
            continue
        try:
            candidate = _entity_from_item(item, require_confidence)
        except (KeyError, ValueError, TypeError) as e:
            logger.debug(f'Dropping invalid {mode} entity {item.get("name")!r}: {e}')
            continue
        if candidate.name:
            entities.append(candidate)
    return entities


def _parse_expiry(value: Optional[str]):
    """Models sometimes answer 'Friday' instead of an ISO date; those expiries are ignored."""
    if not value:
        return None
    try:
        return to_datetime(value)
    except ValueError:
        return None


def _memory_from_item(item: Dict[str, Any], names_key: str) -> MemoryCandidate:
    return MemoryCandidate(content=str(item['content']).strip(),
                           importance=Importance(item['importance']),
                           category=MemoryCategory(item['category']),
                           entity_names=_string_list(item.get(names_key)),
                           tags=_string_list(item.get('tags')),
                           expires_at=_parse_expiry(_optional_str(item, 'expiresAt')))


def _memories_from_items(items: List[Any], names_key: str, mode: str) -> List[MemoryCandidate]:
    memories = []
    for item in items:
        if not isinstance(item, dict):
            continue
        try:
            memories.append(_memory_from_item(item, names_key))
        except (KeyError, ValueError, TypeError) as e:
            logger.debug(f'Dropping invalid {mode} memory: {e}')
    return memories


@dataclass
class DocumentPayload:
    """Whole-document extraction (Stage 1)."""
    extraction: DocumentExtraction

    JSON_SCHEMA = {
        'type': 'object',
        'properties': {
            'summary': {
                'type': 'string',
                'description': 'A 2-3 sentence summary of who this person is and what matters to them'
            },
            'domains': {
                'type': 'array',
                'items': {
                    'type': 'object',
                    'properties': {
                        'type': {
                            'type': 'string',
                            'enum': DOMAIN_ENUM
                        },
                        'description': {
                            'type': 'string',
                            'description': 'Brief description of this life area'
                        },
                    },
                    'required': ['type'],
                },
            },
            'entities': {
                'type': 'array',
                'items': {
                    'type': 'object',
                    'properties': {
                        'name': {
                            'type': 'string'
                        },
                        'type': {
                            'type': 'string',
                            'enum': ENTITY_TYPE_ENUM
                        },
                        'domain': {
                            'type': 'string',
                            'enum': DOMAIN_ENUM
                        },
                        'description': {
                            'type': 'string'
                        },
                        'relationship': {
                            'type': 'string',
                            'description': 'For people: wife, husband, son, daughter, colleague, etc.'
                        },
                        'priority': {
                            'type': 'string',
                            'enum': PRIORITY_ENUM
                        },
                        'date': {
                            'type': 'string',
                            'description': 'For events/goals: relevant date or timeframe'
                        },
                        'targetDate': {
                            'type': 'string',
                            'description': 'For goals: target date if stated'
                        },
                        'needsConfirmation': {
                            'type': 'boolean',
                            'description': 'True if this is interpretive (focuses, inferred goals)'
                        },
                    },
                    'required': ['name', 'type', 'domain'],
                },
            },
            'topicsNotCovered': {
                'type': 'array',
                'items': {
                    'type': 'string'
                },
                'description': 'Life areas or topics NOT mentioned that would be good to ask about',
            },
        },
        'required': ['summary', 'domains', 'entities'],
    }

    @classmethod
    def from_data(cls, data: Any) -> 'DocumentPayload':
        data = _require(data, ['summary', 'domains', 'entities'], 'document')
        domains = []
        for item in _list_of(data, 'domains', 'document'):
            if not isinstance(item, dict):
                continue
            try:
                domains.append(DomainCoverage(type=Domain(item['type']), description=_optional_str(item, 'description')))
            except (KeyError, ValueError) as e:
                logger.debug(f'Dropping invalid domain {item!r}: {e}')
        entities = _entities_from_items(_list_of(data, 'entities', 'document'), require_confidence=False, mode='document')
        return cls(extraction=DocumentExtraction(summary=str(data['summary'] or '').strip(),
                                                 domains=domains,
                                                 entities=entities,
                                                 topics_not_covered=_string_list(data.get('topicsNotCovered'))))


@dataclass
class TurnPayload:
    """Single conversational exchange (Stage 2)."""
    entities: List[EntityCandidate] = field(default_factory=list)
    memories: List[MemoryCandidate] = field(default_factory=list)

    JSON_SCHEMA = {
        'type': 'object',
        'properties': {
            'entities': {
                'type': 'array',
                'items': {
                    'type': 'object',
                    'properties': {
                        'name': {
                            'type': 'string',
                            'description': 'Name of the person, project, company, etc.'
                        },
                        'type': {
                            'type': 'string',
                            'enum': ENTITY_TYPE_ENUM
                        },
                        'domain': {
                            'type': 'string',
                            'enum': DOMAIN_ENUM
                        },
                        'description': {
                            'type': 'string',
                            'description': 'Brief description or context'
                        },
                        'relationship': {
                            'type': 'string',
                            'description': 'For people: their role or relationship'
                        },
                        'priority': {
                            'type': 'string',
                            'enum': PRIORITY_ENUM
                        },
                        'confidence': {
                            'type': 'number',
                            'minimum': 0,
                            'maximum': 1
                        },
                    },
                    'required': ['name', 'type', 'domain', 'confidence'],
                },
            },
            'memories': {
                'type': 'array',
                'items': {
                    'type': 'object',
                    'properties': {
                        'content': {
                            'type': 'string',
                            'description': 'The memorable fact, written as a statement'
                        },
                        'importance': {
                            'type': 'string',
                            'enum': IMPORTANCE_ENUM
                        },
                        'category': {
                            'type': 'string',
                            'enum': CATEGORY_ENUM
                        },
                        'entityNames': {
                            'type': 'array',
                            'items': {
                                'type': 'string'
                            },
                            'description': 'Names of entities mentioned'
                        },
                    },
                    'required': ['content', 'importance', 'category', 'entityNames'],
                },
            },
        },
        'required': ['entities', 'memories'],
    }

    @classmethod
    def from_data(cls, data: Any) -> 'TurnPayload':
        data = _require(data, ['entities', 'memories'], 'turn')
        return cls(entities=_entities_from_items(_list_of(data, 'entities', 'turn'), require_confidence=True, mode='turn'),
                   memories=_memories_from_items(_list_of(data, 'memories', 'turn'), 'entityNames', 'turn'))


@dataclass
class ThreadMemoryPayload:
    """Batch memory extraction over a transcript."""
    should_remember: bool
    facts: List[MemoryCandidate] = field(default_factory=list)

    JSON_SCHEMA = {
        'type': 'object',
        'properties': {
            'facts': {
                'type': 'array',
                'items': {
                    'type': 'object',
                    'properties': {
                        'content': {
                            'type': 'string',
                            'description': 'The memorable fact, written as a statement about the user'
                        },
                        'importance': {
                            'type': 'string',
                            'enum': IMPORTANCE_ENUM,
                            'description': 'How important is this to remember long-term'
                        },
                        'category': {
                            'type': 'string',
                            'enum': CATEGORY_ENUM
                        },
                        'entities': {
                            'type': 'array',
                            'items': {
                                'type': 'string'
                            },
                            'description': 'Names of people, projects, or concepts mentioned'
                        },
                        'tags': {
                            'type': 'array',
                            'items': {
                                'type': 'string'
                            },
                            'description': 'Relevant tags for this fact'
                        },
                        'expiresAt': {
                            'type': 'string',
                            'description': 'ISO date if this fact is time-bound'
                        },
                    },
                    'required': ['content', 'importance', 'category', 'entities', 'tags'],
                },
            },
            'shouldRemember': {
                'type': 'boolean',
                'description': 'Whether there are facts worth storing from this conversation'
            },
        },
        'required': ['facts', 'shouldRemember'],
    }

    @classmethod
    def from_data(cls, data: Any) -> 'ThreadMemoryPayload':
        data = _require(data, ['facts', 'shouldRemember'], 'thread memory')
        return cls(should_remember=bool(data['shouldRemember']),
                   facts=_memories_from_items(_list_of(data, 'facts', 'thread memory'), 'entities', 'thread memory'))


@dataclass
class ConfirmationPayload:
    """Candidates sent back by a client after the user approved them.

    Uses the turn item shape; confidence is optional since document
    candidates carry none.
    """
    entities: List[EntityCandidate] = field(default_factory=list)
    memories: List[MemoryCandidate] = field(default_factory=list)

    @classmethod
    def from_data(cls, data: Any) -> 'ConfirmationPayload':
        data = _require(data, ['entities'], 'confirmation')
        return cls(entities=_entities_from_items(_list_of(data, 'entities', 'confirmation'), require_confidence=False,
                                                 mode='confirmation'),
                   memories=_memories_from_items(_list_of(data, 'memories', 'confirmation'), 'entityNames', 'confirmation'))
