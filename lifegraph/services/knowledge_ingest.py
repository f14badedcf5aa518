"""
Apply confirmed extraction candidates to the entity store.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Union

from ..models.candidates import EntityCandidate, MemoryCandidate
from ..models.core import Entity, Memory, Relationship, RelationshipType, SourceType
from ..utils.logging_config import get_logger
from .entity_extraction import candidate_to_memory, contains_phrase, match_entities_to_names
from .entity_store import EntityStore

logger = get_logger(__name__)


@dataclass
class IngestResult:
    entities: List[Entity] = field(default_factory=list)
    created: List[Entity] = field(default_factory=list)
    relationships: List[Relationship] = field(default_factory=list)
    memories: List[Memory] = field(default_factory=list)


def _candidate_metadata(candidate: EntityCandidate) -> dict:
    metadata = {
        'relationship': candidate.relationship,
        'priority': candidate.priority.value if candidate.priority else None,
        'date': candidate.date,
        'target_date': candidate.target_date,
        'confidence': candidate.confidence,
    }
    return {key: value for key, value in metadata.items() if value is not None}


class KnowledgeIngestService:
    """The confirmation seam: candidates arriving here have been approved by the user."""

    def __init__(self, store: EntityStore):
        self.store = store

    def apply_confirmed(self,
                        entity_candidates: Sequence[EntityCandidate],
                        memory_candidates: Sequence[MemoryCandidate] = (),
                        source_type: Union[SourceType, str] = SourceType.THREAD,
                        source_id: Optional[str] = None) -> IngestResult:
        """Create or touch entities, record co-occurrence, link relationship hints and store memories.

        Args:
            entity_candidates: Approved entity candidates from one extraction batch
            memory_candidates: Approved memory candidates from the same batch
            source_type: Where the batch came from
            source_id: Thread, capture or upload id

        Returns:
            IngestResult describing every change made
        """
        result = IngestResult()

        for candidate in entity_candidates:
            entity = self.store.find_by_name(candidate.name)
            if entity is None:
                entity = self.store.create_entity(name=candidate.name,
                                                  type=candidate.type,
                                                  domain=candidate.domain,
                                                  description=candidate.description,
                                                  metadata=_candidate_metadata(candidate),
                                                  pending_confirmation=False)
                result.created.append(entity)
            self.store.touch_mention(entity.id)
            if entity not in result.entities:
                result.entities.append(entity)

        result.relationships.extend(self.store.record_co_occurrence([e.id for e in result.entities]))

        # "colleague at Nike" links the person to Nike when Nike is known
        for candidate in entity_candidates:
            if not candidate.relationship:
                continue
            entity = self.store.find_by_name(candidate.name)
            for other in self.store.list_entities():
                if other.id != entity.id and contains_phrase(candidate.relationship, other.name):
                    result.relationships.append(self.store.upsert_relationship(entity.id, other.id, RelationshipType.RELATED_TO))

        known = self.store.list_entities()
        for candidate in memory_candidates:
            entity_ids = match_entities_to_names(candidate.entity_names, known)
            memory = self.store.add_memory(candidate_to_memory(candidate, source_type, source_id, entity_ids))
            result.memories.append(memory)

        logger.info(f'Applied confirmed batch: {len(result.created)} new entities, {len(result.entities)} touched, '
                    f'{len(result.memories)} memories')
        return result
