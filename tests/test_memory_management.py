"""End-to-end tests for services/memory_management.py with a scripted provider."""

from unittest.mock import MagicMock

import pytest

from conftest import FakeProvider, make_messages
from lifegraph.models.core import RelationshipType, SourceType, Thread
from lifegraph.models.results import is_error
from lifegraph.services.memory_management import MemoryManagementError, MemoryManagementService
from lifegraph.utils.opensearch_client import OpenSearchError

TURN_PAYLOAD = {
    'entities': [
        {'name': 'Marco', 'type': 'person', 'domain': 'work', 'confidence': 0.9, 'relationship': 'colleague at Nike'},
        {'name': 'Nike', 'type': 'company', 'domain': 'work', 'confidence': 0.85},
        {'name': 'Paolo', 'type': 'person', 'domain': 'work', 'confidence': 0.9},
    ],
    'memories': [
        {'content': 'Marco is preparing the Nike pitch', 'importance': 'high', 'category': 'fact',
         'entityNames': ['Marco', 'Nike']},
    ],
}


def _service(provider):
    return MemoryManagementService(provider=provider)


class TestExtractConfirmTraverse:
    def test_turn_to_graph(self):
        provider = FakeProvider(extract_results=[TURN_PAYLOAD])
        service = _service(provider)

        extraction = service.extract_turn('I met Marco from Nike about the pitch next week', 'Sounds good.')
        # Paolo never appears in the user's text
        assert [c.name for c in extraction.entities] == ['Marco', 'Nike']

        result = service.confirm(extraction.entities, extraction.memories, SourceType.THREAD, 'thread-1')
        marco = service.store.find_by_name('Marco')
        nike = service.store.find_by_name('Nike')
        assert {e.id for e in result.created} == {marco.id, nike.id}
        assert service.store.get_relationship(marco.id, nike.id, RelationshipType.RELATED_TO) is not None
        assert result.memories[0].entities == [marco.id, nike.id]

        subgraph = service.related_graph(marco.id, max_depth=1)
        assert subgraph.node_ids == {marco.id, nike.id}
        assert len(subgraph.edges) == 2

    def test_existing_entities_passed_to_prompt(self):
        provider = FakeProvider(extract_results=[{'entities': [], 'memories': []}])
        service = _service(provider)
        service.store.create_entity('Celine', 'person', 'family')
        service.extract_turn('Planning the weekend with Celine', 'Nice.')
        assert 'Existing entities (DO NOT re-extract these): Celine (person, family)' in provider.extract_calls[0]['prompt']

    def test_related_graph_unknown_entity(self):
        with pytest.raises(MemoryManagementError):
            _service(FakeProvider()).related_graph('missing')

    def test_entity_path(self):
        service = _service(FakeProvider())
        celine = service.store.create_entity('Celine', 'person', 'family')
        sam = service.store.create_entity('Sam', 'person', 'family')
        nike = service.store.create_entity('Nike', 'company', 'work')
        lone = service.store.create_entity('Chess club', 'project', 'personal')
        service.store.record_co_occurrence([celine.id, sam.id])
        service.store.upsert_relationship(sam.id, nike.id, 'related_to')
        assert service.entity_path(celine.id, nike.id) == [celine, sam, nike]
        assert service.entity_path(celine.id, lone.id) is None
        with pytest.raises(MemoryManagementError):
            service.entity_path(celine.id, 'missing')


class TestDocumentAndOnboarding:
    def test_document_failure_is_returned(self):
        result = _service(FakeProvider()).extract_document('Long bio text', 'bio.md')
        assert is_error(result)

    def test_onboarding_from_graph(self):
        service = _service(FakeProvider())
        assert not service.onboarding_status(None).is_complete
        for name in ('Celine', 'Marco', 'Anna', 'Luca'):
            service.store.create_entity(name, 'person', 'work')
        service.store.create_entity('Ironman Nice', 'goal', 'sport')
        assert service.onboarding_status(None).is_complete


class TestLifecycle:
    def test_approve_unknown_entity(self):
        with pytest.raises(MemoryManagementError):
            _service(FakeProvider()).approve_entity('missing')

    def test_delete_entity(self):
        service = _service(FakeProvider())
        entity = service.store.create_entity('Celine', 'person', 'family')
        service.delete_entity(entity.id)
        assert service.store.get_entity(entity.id) is None
        with pytest.raises(MemoryManagementError):
            service.delete_entity(entity.id)


class TestContext:
    def test_prepare_context_short_thread(self):
        service = _service(FakeProvider())
        thread = Thread(messages=make_messages(3))
        assert service.prepare_context(thread).messages == thread.messages

    def test_summarize_thread_fallback_uses_thread_entities(self):
        service = _service(FakeProvider())
        celine = service.store.create_entity('Celine', 'person', 'family')
        thread = Thread(messages=make_messages(2), entity_ids=[celine.id, 'gone'])
        assert service.summarize_thread(thread) == 'Conversation about Celine'

    def test_relevant_entities(self, now):
        service = _service(FakeProvider())
        service.store.create_entity('Celine', 'person', 'family')
        service.store.create_entity('Marco', 'person', 'work')
        assert [e.name for e in service.relevant_entities('Dinner with Celine', now=now)] == ['Celine']


class TestReferenceNotes:
    def test_requires_connected_index(self):
        with pytest.raises(MemoryManagementError):
            _service(FakeProvider()).add_reference_note('Pitch', 'Outline')

    def test_indexing_failure_wrapped(self):
        notes = MagicMock()
        notes.add_note.side_effect = OpenSearchError('index closed')
        service = MemoryManagementService(provider=FakeProvider(), notes=notes)
        with pytest.raises(MemoryManagementError):
            service.add_reference_note('Pitch', 'Outline')
