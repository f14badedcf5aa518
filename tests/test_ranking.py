"""Tests for services/ranking.py: entity and memory relevance."""

from datetime import timedelta

import pytest

from lifegraph.models.core import Entity, Memory
from lifegraph.services.ranking import (format_memories_for_context, recency_bonus, recency_score, score_entity,
                                        score_memory_relevance, select_relevant_entities, select_relevant_memories,
                                        sort_by_recency)


def entity(name, domain='work', description=None, last_mentioned=None, type='person'):
    return Entity(name=name, type=type, domain=domain, description=description, last_mentioned=last_mentioned)


class TestRecencyScore:
    def test_never_mentioned_gets_floor(self, now):
        assert recency_score(None, now) == 0.3

    def test_mentioned_now_is_one(self, now):
        assert recency_score(now, now) == pytest.approx(1.0)

    def test_old_mentions_floor(self, now):
        assert recency_score(now - timedelta(days=90), now) == 0.3

    def test_monotonic(self, now):
        scores = [recency_score(now - timedelta(days=d), now) for d in (0, 1, 5, 10, 20, 25, 40)]
        assert scores == sorted(scores, reverse=True)
        assert all(0.3 <= s <= 1.0 for s in scores)

    def test_sort_by_recency(self, now):
        old = entity('Old', last_mentioned=now - timedelta(days=20))
        new = entity('New', last_mentioned=now - timedelta(hours=2))
        never = entity('Never')
        assert [e.name for e in sort_by_recency([never, old, new], now)] == ['New', 'Old', 'Never']


class TestScoreEntity:
    def test_name_mention_dominates(self, now):
        assert score_entity(entity('Celine', domain='family'), 'Dinner with Celine tonight', now) >= 100

    def test_description_and_domain_keyword(self, now):
        marco = entity('Marco', description='Lead on the Nike pitch')
        # 'nike' and 'pitch' hit the description (10 each); 'pitch' is also a work keyword (15)
        assert score_entity(marco, 'prepare nike pitch', now) == 10 + 10 + 15

    def test_recency_bonus_tiers(self, now):
        assert recency_bonus(now - timedelta(hours=3), now) == 30
        assert recency_bonus(now - timedelta(days=3), now) == 15
        assert recency_bonus(now - timedelta(days=10), now) == 5
        assert recency_bonus(now - timedelta(days=45), now) == 0
        assert recency_bonus(None, now) == 0


class TestSelectRelevantEntities:
    def test_zero_scores_excluded(self, now):
        entities = [entity('Celine', domain='family'), entity('Marco')]
        assert [e.name for e in select_relevant_entities('Is Celine free?', entities, 15, now)] == ['Celine']

    def test_limit_and_order(self, now):
        entities = [entity(f'Person{i}', last_mentioned=now - timedelta(days=i * 3)) for i in range(20)]
        selected = select_relevant_entities('anything', entities, 5, now)
        assert len(selected) == 5
        assert selected[0].name == 'Person0'

    def test_ties_keep_input_order(self, now):
        entities = [entity('Alpha', last_mentioned=now), entity('Beta', last_mentioned=now)]
        assert [e.name for e in select_relevant_entities('hello', entities, 15, now)] == ['Alpha', 'Beta']


class TestMemoryRelevance:
    def test_formula(self, now):
        memory = Memory(content='User is training for the Paris marathon', source_type='thread', importance=0.9, entities=['e1'],
                        created_at=now - timedelta(days=30))
        # 0.27 importance + 0.4 * (2 of 3 terms) + 0.3 * (1 of 2 entities)
        score = score_memory_relevance(memory, 'paris marathon plans', ['e1', 'e2'], now)
        assert score == pytest.approx(0.27 + 0.4 * 2 / 3 + 0.15)

    def test_capped_at_one(self, now):
        memory = Memory(content='marathon training paris', source_type='thread', importance=1.0, entities=['e1'], created_at=now)
        assert score_memory_relevance(memory, 'marathon training paris', ['e1'], now) == 1.0

    def test_select_skips_expired_and_irrelevant(self, now):
        relevant = Memory(content='User prefers morning meetings', source_type='thread', importance=0.9, created_at=now)
        expired = Memory(content='User prefers morning meetings this week', source_type='thread', importance=0.9,
                         created_at=now, expires_at=now - timedelta(days=1))
        weak = Memory(content='Unrelated', source_type='thread', importance=0.1, created_at=now - timedelta(days=60))
        selected = select_relevant_memories([weak, expired, relevant], 'morning meetings', [], 5, now)
        assert selected == [relevant]

    def test_format(self):
        memories = [Memory(content='User likes tea', source_type='thread', tags=['preference', 'food']),
                    Memory(content='Untagged', source_type='thread')]
        assert format_memories_for_context(memories) == ['User likes tea [preference]', 'Untagged']
