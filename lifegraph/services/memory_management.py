"""
Memory Management Service: one entry point wiring extraction, confirmation, ranking, compaction and traversal.
"""

from datetime import datetime
from typing import List, Optional, Sequence, Union

from ..models.candidates import DocumentExtraction, EntityCandidate, MemoryCandidate, OnboardingStatus, TurnExtraction
from ..models.core import Entity, Signal, SourceType, Thread
from ..models.results import LLMError
from ..utils.bedrock_llm import BedrockLLM
from ..utils.config import AppConfig, config
from ..utils.logging_config import get_logger
from ..utils.neptune_client import NeptuneClient, NeptuneError
from ..utils.opensearch_client import OpenSearchClient, OpenSearchError
from ..utils.provider_registry import LLMProvider, ProviderRegistry, StreamCallbacks, StreamHandle
from .chat_context import ChatContext, ChatContextBuilder
from .context_compactor import ContextCompactor, ManagedContext
from .entity_extraction import ExtractionPipeline, assess_onboarding_completion
from .entity_store import EntityStore, EntityStoreError, GraphPersistence
from .graph_traversal import Subgraph, find_path, traverse
from .knowledge_ingest import IngestResult, KnowledgeIngestService
from .ranking import select_relevant_entities
from .reference_search import OpenSearchNotesPlugin, ReferenceRegistry, SearchResult
from .signals import SignalRegistry

logger = get_logger(__name__)


class MemoryManagementError(Exception):
    """Custom exception for memory management errors."""
    pass


def default_providers(app_config: AppConfig = config) -> ProviderRegistry:
    """Registry holding the Bedrock provider, active by default."""
    registry = ProviderRegistry()
    registry.register(BedrockLLM(app_config.bedrock_llm))
    return registry


class MemoryManagementService:
    """Unified service for extraction, confirmation, context preparation and graph queries."""

    def __init__(self,
                 provider: Optional[LLMProvider] = None,
                 store: Optional[EntityStore] = None,
                 references: Optional[ReferenceRegistry] = None,
                 signals: Optional[SignalRegistry] = None,
                 notes: Optional[OpenSearchNotesPlugin] = None,
                 app_config: AppConfig = config):
        """Initialize the memory management service.

        Args:
            provider: Language-model provider; defaults to the active provider of a Bedrock registry
            store: Entity store; defaults to an in-memory store
            references: Reference plugins searched during chat assembly
            signals: Signal sources rendered into the chat prompt
            notes: Writable notes index, when one is connected
            app_config: Configuration sections for every component
        """
        if provider is None:
            provider = default_providers(app_config).get()
        self.provider = provider
        self.config = app_config
        self.store = store if store is not None else EntityStore()
        self.references = references if references is not None else ReferenceRegistry()
        self.signals = signals if signals is not None else SignalRegistry()
        self.notes = notes

        self.pipeline = ExtractionPipeline(provider, app_config.extraction)
        self.compactor = ContextCompactor(provider, app_config.context)
        self.ingest = KnowledgeIngestService(self.store)
        self.chat = ChatContextBuilder(provider, self.compactor, self.references, app_config.ranking)

        logger.info(f'Initialized MemoryManagementService with provider {provider.id}')

    @classmethod
    def connect(cls, app_config: AppConfig = config) -> 'MemoryManagementService':
        """Build a service backed by Neptune persistence and the OpenSearch notes index.

        Raises:
            MemoryManagementError: If the graph cannot be loaded
        """
        try:
            persistence: GraphPersistence = NeptuneClient(app_config.neptune)
            store = EntityStore.load(persistence)
        except NeptuneError as e:
            logger.error(f'Failed to load knowledge graph: {e}')
            raise MemoryManagementError(f'Graph load failed: {e}')

        references = ReferenceRegistry()
        notes = None
        try:
            client = OpenSearchClient(app_config.opensearch)
            client.create_index_if_not_exists()
            notes = OpenSearchNotesPlugin(client)
            references.register(notes)
        except OpenSearchError as e:
            logger.warning(f'Reference notes unavailable: {e}')

        return cls(store=store, references=references, notes=notes, app_config=app_config)

    # Extraction

    def extract_document(self, text: str, filename_hint: Optional[str] = None) -> Union[DocumentExtraction, LLMError]:
        """Stage 1 extraction over an uploaded document. Nothing is stored until confirm()."""
        return self.pipeline.extract_document(text, filename_hint)

    def extract_turn(self, user_text: str, assistant_text: str) -> TurnExtraction:
        """Stage 2 extraction over one exchange, deduplicated against the current graph."""
        return self.pipeline.extract_turn(user_text,
                                          assistant_text,
                                          existing_entities=self.store.list_entities(),
                                          existing_memories=self.store.list_memories())

    def extract_thread_memories(self, thread: Thread) -> List[MemoryCandidate]:
        return self.pipeline.extract_thread_memories(thread.messages, self.store.list_entities())

    def onboarding_status(self, document: Optional[DocumentExtraction]) -> OnboardingStatus:
        """Cold-start completion check against what the graph already holds."""
        entities = self.store.list_entities()
        domains = list(dict.fromkeys(e.domain.value for e in entities))
        return assess_onboarding_completion(document, domains, len(entities))

    # Confirmation

    def confirm(self,
                entity_candidates: Sequence[EntityCandidate],
                memory_candidates: Sequence[MemoryCandidate] = (),
                source_type: Union[SourceType, str] = SourceType.THREAD,
                source_id: Optional[str] = None) -> IngestResult:
        """Store candidates the user approved.

        Raises:
            MemoryManagementError: If the store rejects the batch
        """
        try:
            return self.ingest.apply_confirmed(entity_candidates, memory_candidates, source_type, source_id)
        except (EntityStoreError, NeptuneError) as e:
            logger.error(f'Failed to apply confirmed candidates: {e}')
            raise MemoryManagementError(f'Confirm failed: {e}')

    def approve_entity(self, entity_id: str) -> Entity:
        try:
            return self.store.approve_entity(entity_id)
        except EntityStoreError as e:
            raise MemoryManagementError(str(e))

    def delete_entity(self, entity_id: str) -> None:
        try:
            self.store.delete_entity(entity_id)
        except (EntityStoreError, NeptuneError) as e:
            logger.error(f'Failed to delete entity {entity_id}: {e}')
            raise MemoryManagementError(f'Delete failed: {e}')

    def cleanup_expired_memories(self, now: Optional[datetime] = None) -> int:
        deleted_count = self.store.purge_expired_memories(now)
        if not deleted_count:
            logger.debug('No expired memories found for cleanup')
        return deleted_count

    # Context

    def prepare_context(self, thread: Thread) -> ManagedContext:
        """Compact a thread for the next model call, advancing its summary when it folds messages."""
        return self.compactor.compact_thread(thread)

    def summarize_thread(self, thread: Thread) -> str:
        entities = [e for e in (self.store.get_entity(eid) for eid in thread.entity_ids) if e is not None]
        return self.compactor.summarize_thread(thread.messages, entities)

    def relevant_entities(self, query: str, max_entities: Optional[int] = None, now: Optional[datetime] = None) -> List[Entity]:
        limit = max_entities if max_entities is not None else self.config.ranking.max_entities
        return select_relevant_entities(query, self.store.list_entities(), limit, now)

    def build_chat_context(self,
                           query: str,
                           thread: Thread,
                           signals: Optional[Sequence[Signal]] = None,
                           user_name: Optional[str] = None,
                           now: Optional[datetime] = None) -> ChatContext:
        """Assemble the prompt for a chat turn from the whole graph."""
        return self.chat.build(query,
                               thread,
                               self.store.list_entities(),
                               self.store.list_memories(now=now),
                               signals if signals is not None else self.signals.signals,
                               user_name=user_name,
                               now=now)

    def respond(self, context: ChatContext, callbacks: StreamCallbacks) -> StreamHandle:
        return self.chat.respond(context, callbacks)

    # Reference notes

    def add_reference_note(self, title: str, content: str, source: Optional[str] = None,
                           tags: Sequence[str] = ()) -> SearchResult:
        """Index a note in the connected notes index.

        Raises:
            MemoryManagementError: If no notes index is connected or indexing fails
        """
        if self.notes is None:
            raise MemoryManagementError('No notes index connected')
        try:
            return self.notes.add_note(title, content, source=source, tags=tags)
        except OpenSearchError as e:
            logger.error(f'Failed to index note {title!r}: {e}')
            raise MemoryManagementError(f'Note indexing failed: {e}')

    def remove_reference_note(self, note_id: str) -> bool:
        if self.notes is None:
            raise MemoryManagementError('No notes index connected')
        try:
            return self.notes.remove_note(note_id)
        except OpenSearchError as e:
            raise MemoryManagementError(f'Note removal failed: {e}')

    # Graph

    def related_graph(self, entity_id: str, max_depth: int = 2) -> Subgraph:
        """Entities and relationships within max_depth hops of an entity.

        Raises:
            MemoryManagementError: If the entity is unknown
        """
        if self.store.get_entity(entity_id) is None:
            raise MemoryManagementError(f'Unknown entity: {entity_id}')
        entities = {entity.id: entity for entity in self.store.list_entities()}
        return traverse(entity_id, entities, self.store.relationships, max_depth)

    def entity_path(self, from_id: str, to_id: str, max_depth: int = 4) -> Optional[List[Entity]]:
        """Shortest chain of entities linking two entities, or None when they are not connected within max_depth.

        Raises:
            MemoryManagementError: If either entity is unknown
        """
        for entity_id in (from_id, to_id):
            if self.store.get_entity(entity_id) is None:
                raise MemoryManagementError(f'Unknown entity: {entity_id}')
        entities = {entity.id: entity for entity in self.store.list_entities()}
        return find_path(from_id, to_id, entities, self.store.relationships, max_depth)
