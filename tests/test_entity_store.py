"""Tests for services/entity_store.py: entities, weighted relationships and memories."""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from lifegraph.models.core import Entity, EntityType, Memory, Relationship, RelationshipType
from lifegraph.services.entity_store import EntityStore, EntityStoreError


class RecordingPersistence:
    """In-memory persistence adapter that records every write."""

    def __init__(self, entities=(), relationships=(), memories=()):
        self.entities = {e.id: e for e in entities}
        self.relationships = {r.id: r for r in relationships}
        self.memories = {m.id: m for m in memories}
        self.calls = []

    def save_entity(self, entity):
        self.calls.append(('save_entity', entity.id))
        self.entities[entity.id] = entity

    def delete_entity(self, entity_id):
        self.calls.append(('delete_entity', entity_id))
        self.entities.pop(entity_id, None)

    def save_relationship(self, relationship):
        self.calls.append(('save_relationship', relationship.id))
        self.relationships[relationship.id] = relationship

    def delete_relationship(self, relationship_id):
        self.calls.append(('delete_relationship', relationship_id))
        self.relationships.pop(relationship_id, None)

    def save_memory(self, memory):
        self.calls.append(('save_memory', memory.id))
        self.memories[memory.id] = memory

    def delete_memory(self, memory_id):
        self.calls.append(('delete_memory', memory_id))
        self.memories.pop(memory_id, None)

    def load_entities(self):
        return list(self.entities.values())

    def load_relationships(self):
        return list(self.relationships.values())

    def load_memories(self):
        return list(self.memories.values())


@pytest.fixture
def store():
    return EntityStore()


@pytest.fixture
def trio(store):
    a = store.create_entity('Alice', 'person', 'work')
    b = store.create_entity('Bob', 'person', 'work')
    c = store.create_entity('Carol', 'person', 'family')
    return a, b, c


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------

class TestEntities:
    def test_focus_starts_pending(self, store):
        focus = store.create_entity('Work-Life Balance', 'focus', 'personal')
        assert focus.pending_confirmation
        assert not store.create_entity('Celine', 'person', 'family').pending_confirmation

    def test_approve_clears_pending(self, store):
        focus = store.create_entity('Structure', 'focus', 'personal')
        assert not store.approve_entity(focus.id).pending_confirmation

    def test_invalid_entity(self, store):
        with pytest.raises(EntityStoreError):
            store.create_entity('', 'person', 'family')
        with pytest.raises(EntityStoreError):
            store.create_entity('Celine', 'pet', 'family')

    def test_find_by_name(self, store):
        celine = store.create_entity('Celine', 'person', 'family')
        assert store.find_by_name('  CELINE ') is celine
        assert store.find_by_name('Cel') is None

    def test_list_by_last_mentioned(self, store, now):
        older = store.create_entity('Older', 'person', 'work')
        newer = store.create_entity('Newer', 'person', 'work')
        never = store.create_entity('Never', 'person', 'work')
        store.touch_mention(older.id, now - timedelta(days=3))
        store.touch_mention(newer.id, now)
        assert store.list_entities() == [newer, older, never]

    def test_update(self, store):
        entity = store.create_entity('Nike', 'company', 'work')
        store.update_entity(entity.id, name='Nike Inc', description='Client')
        assert entity.name == 'Nike Inc'
        assert entity.description == 'Client'
        with pytest.raises(EntityStoreError):
            store.update_entity(entity.id, id='other')
        with pytest.raises(EntityStoreError):
            store.update_entity(entity.id, domain='hobbies')

    def test_add_entity_rejects_duplicate_id(self, store):
        entity = Entity(name='Celine', type='person', domain='family')
        store.add_entity(entity)
        with pytest.raises(EntityStoreError):
            store.add_entity(entity)

    def test_entities_by_domain(self, store, trio):
        assert [e.name for e in store.entities_by_domain('work')] == ['Alice', 'Bob']

    def test_delete_removes_relationships_and_orphans_memories(self, store, trio):
        a, b, c = trio
        store.record_co_occurrence([a.id, b.id, c.id])
        memory = store.add_memory(Memory(content='Alice mentors Bob', source_type='thread', entities=[a.id, b.id]))
        store.delete_entity(a.id)
        assert store.get_entity(a.id) is None
        assert all(not r.touches(a.id) for r in store.relationships)
        assert len(store.relationships) == 1
        assert store.get_memory(memory.id).entities == [a.id, b.id]

    def test_unknown_entity(self, store):
        with pytest.raises(EntityStoreError):
            store.touch_mention('missing')


# ---------------------------------------------------------------------------
# Relationships
# ---------------------------------------------------------------------------

class TestRelationships:
    def test_co_occurrence_twice_doubles_weights(self, store, trio):
        ids = [e.id for e in trio]
        store.record_co_occurrence(ids)
        store.record_co_occurrence(list(reversed(ids)))
        assert len(store.relationships) == 3
        assert all(r.weight == 2.0 for r in store.relationships)
        assert all(r.type is RelationshipType.MENTIONED_WITH for r in store.relationships)

    def test_co_occurrence_ignores_repeats_in_batch(self, store, trio):
        a, b, _ = trio
        assert len(store.record_co_occurrence([a.id, b.id, a.id])) == 1

    def test_symmetric_pair_is_unordered(self, store, trio):
        a, b, _ = trio
        first = store.upsert_relationship(a.id, b.id, 'mentioned_with')
        second = store.upsert_relationship(b.id, a.id, 'mentioned_with')
        assert first is second
        assert first.weight == 2.0

    def test_directed_pair_is_ordered(self, store, trio):
        a, b, _ = trio
        store.upsert_relationship(a.id, b.id, 'parent_of')
        store.upsert_relationship(b.id, a.id, 'parent_of')
        assert len(store.relationships) == 2

    def test_rejects_self_loops_and_negative_deltas(self, store, trio):
        a, b, _ = trio
        with pytest.raises(EntityStoreError):
            store.upsert_relationship(a.id, a.id, 'related_to')
        with pytest.raises(EntityStoreError):
            store.upsert_relationship(a.id, b.id, 'related_to', weight_delta=-1)
        with pytest.raises(EntityStoreError):
            store.upsert_relationship(a.id, b.id, 'friends_with')

    def test_related_entities_by_weight(self, store, trio):
        a, b, c = trio
        store.upsert_relationship(a.id, b.id, 'related_to', 1.0)
        store.upsert_relationship(a.id, c.id, 'mentioned_with', 3.0)
        related = store.get_related_entities(a.id)
        assert [e.name for e, _ in related] == ['Carol', 'Bob']
        assert [e.name for e, _ in store.get_related_entities(a.id, types=['related_to'])] == ['Bob']


# ---------------------------------------------------------------------------
# Memories
# ---------------------------------------------------------------------------

class TestMemories:
    def test_list_and_filter(self, store, trio, now):
        a, _, _ = trio
        old = store.add_memory(Memory(content='old', source_type='thread', entities=[a.id], created_at=now - timedelta(days=2)))
        new = store.add_memory(Memory(content='new', source_type='capture', created_at=now))
        assert store.list_memories(now=now) == [new, old]
        assert store.memories_for_entity(a.id) == [old]

    def test_purge_expired(self, store, now):
        store.add_memory(Memory(content='gone', source_type='thread', expires_at=now - timedelta(hours=1)))
        kept = store.add_memory(Memory(content='kept', source_type='thread'))
        assert store.purge_expired_memories(now) == 1
        assert store.list_memories(include_expired=True, now=now) == [kept]


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

class TestPersistence:
    def test_write_through(self):
        persistence = RecordingPersistence()
        store = EntityStore(persistence)
        a = store.create_entity('Alice', 'person', 'work')
        b = store.create_entity('Bob', 'person', 'work')
        rel = store.upsert_relationship(a.id, b.id, 'related_to')
        store.delete_entity(b.id)
        assert persistence.calls == [('save_entity', a.id), ('save_entity', b.id), ('save_relationship', rel.id),
                                     ('delete_relationship', rel.id), ('delete_entity', b.id)]

    def test_load_hydrates_and_skips_dangling_edges(self):
        a = Entity(name='Alice', type=EntityType.PERSON, domain='work')
        b = Entity(name='Bob', type=EntityType.PERSON, domain='work')
        good = Relationship(source_id=a.id, target_id=b.id, type='mentioned_with', weight=4.0)
        dangling = Relationship(source_id=a.id, target_id='gone', type='related_to')
        persistence = RecordingPersistence([a, b], [good, dangling], [Memory(content='m', source_type='upload')])
        store = EntityStore.load(persistence)
        assert len(store.list_entities()) == 2
        assert store.relationships == [good]
        assert store.get_relationship(b.id, a.id, 'mentioned_with') is good
        assert len(store.list_memories()) == 1
        assert persistence.calls == []


class TestFailedWrites:
    """A rejected write leaves the in-memory graph exactly as it was."""

    @pytest.fixture
    def persistence(self):
        return MagicMock()

    def test_create_entity(self, persistence):
        persistence.save_entity.side_effect = RuntimeError('neptune down')
        store = EntityStore(persistence)
        with pytest.raises(RuntimeError):
            store.create_entity('Celine', 'person', 'family')
        assert store.list_entities() == []

    def test_touch_and_approve(self, persistence):
        store = EntityStore(persistence)
        focus = store.create_entity('Marathon', 'focus', 'health')
        persistence.save_entity.side_effect = RuntimeError('neptune down')
        with pytest.raises(RuntimeError):
            store.touch_mention(focus.id)
        with pytest.raises(RuntimeError):
            store.approve_entity(focus.id)
        with pytest.raises(RuntimeError):
            store.update_entity(focus.id, description='Spring race')
        assert focus.last_mentioned is None
        assert focus.pending_confirmation
        assert focus.description is None

    def test_relationship_weight(self, persistence):
        store = EntityStore(persistence)
        a = store.create_entity('Alice', 'person', 'work')
        b = store.create_entity('Bob', 'person', 'work')
        rel = store.upsert_relationship(a.id, b.id, 'mentioned_with')
        persistence.save_relationship.side_effect = RuntimeError('neptune down')
        with pytest.raises(RuntimeError):
            store.upsert_relationship(a.id, b.id, 'mentioned_with', 2.0)
        with pytest.raises(RuntimeError):
            store.upsert_relationship(a.id, b.id, 'related_to')
        assert rel.weight == 1.0
        assert store.relationships == [rel]

    def test_delete_entity(self, persistence):
        store = EntityStore(persistence)
        a = store.create_entity('Alice', 'person', 'work')
        b = store.create_entity('Bob', 'person', 'work')
        rel = store.upsert_relationship(a.id, b.id, 'related_to')
        persistence.delete_entity.side_effect = RuntimeError('neptune down')
        with pytest.raises(RuntimeError):
            store.delete_entity(b.id)
        # The edge delete reached storage, the entity delete did not
        assert store.get_entity(b.id) is b
        assert store.get_relationship(a.id, b.id, 'related_to') is None
        persistence.delete_relationship.assert_called_once_with(rel.id)

    def test_add_memory(self, persistence):
        persistence.save_memory.side_effect = RuntimeError('neptune down')
        store = EntityStore(persistence)
        with pytest.raises(RuntimeError):
            store.add_memory(Memory(content='Likes trail running', source_type='thread'))
        assert store.list_memories(include_expired=True) == []
