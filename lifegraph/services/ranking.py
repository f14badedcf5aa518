"""
Recency and relevance scoring for entities and memories.
"""

import re
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from ..models.core import Domain, Entity, Memory
from ..utils.config import RankingConfig, config
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import days_since, utc_now

logger = get_logger(__name__)

DOMAIN_KEYWORDS: Dict[Domain, Tuple[str, ...]] = {
    Domain.WORK: ('work', 'project', 'client', 'deadline', 'meeting', 'pitch', 'business'),
    Domain.FAMILY: ('family', 'wife', 'husband', 'kid', 'children', 'son', 'daughter', 'home'),
    Domain.SPORT: ('training', 'race', 'run', 'bike', 'swim', 'fitness', 'workout', 'exercise'),
    Domain.HEALTH: ('health', 'sleep', 'recovery', 'stress', 'energy', 'tired', 'sick'),
    Domain.PERSONAL: ('personal', 'hobby', 'side project', 'learn', 'read', 'travel'),
}

NAME_MENTION_SCORE = 100
NAME_WORD_SCORE = 20
DESCRIPTION_WORD_SCORE = 10
DOMAIN_KEYWORD_SCORE = 15
RECENCY_BONUSES = ((1, 30), (7, 15), (30, 5))


def _query_words(query_lower: str) -> List[str]:
    # Deduplicated, order-preserving
    return list(dict.fromkeys(w for w in query_lower.split() if len(w) > 2))


def recency_bonus(last_mentioned: Optional[datetime], now: Optional[datetime] = None) -> int:
    if last_mentioned is None:
        return 0
    days = days_since(last_mentioned, now)
    for limit, bonus in RECENCY_BONUSES:
        if days < limit:
            return bonus
    return 0


def score_entity(entity: Entity, query: str, now: Optional[datetime] = None) -> int:
    """Relevance of one entity to a free-text query."""
    query_lower = query.lower()
    name_lower = entity.name.lower()
    description_lower = (entity.description or '').lower()

    score = 0
    if name_lower and name_lower in query_lower:
        score += NAME_MENTION_SCORE

    for word in _query_words(query_lower):
        if word in name_lower:
            score += NAME_WORD_SCORE
        if word in description_lower:
            score += DESCRIPTION_WORD_SCORE

    # First keyword hit only
    if any(keyword in query_lower for keyword in DOMAIN_KEYWORDS.get(entity.domain, ())):
        score += DOMAIN_KEYWORD_SCORE

    return score + recency_bonus(entity.last_mentioned, now)


def select_relevant_entities(query: str,
                             entities: Sequence[Entity],
                             max_entities: Optional[int] = None,
                             now: Optional[datetime] = None) -> List[Entity]:
    """Top entities by descending score; zero-score entities are excluded, ties keep input order."""
    limit = max_entities if max_entities is not None else config.ranking.max_entities
    now = now or utc_now()
    scored = [(score_entity(entity, query, now), entity) for entity in entities]
    scored = [item for item in scored if item[0] > 0]
    # sorted() is stable
    scored = sorted(scored, key=lambda item: item[0], reverse=True)
    return [entity for _, entity in scored[:limit]]


def recency_score(last_mentioned: Optional[datetime], now: Optional[datetime] = None, ranking_config: Optional[RankingConfig] = None) -> float:
    """max(floor, 1 - days/window); never-mentioned entities get the floor."""
    ranking_config = ranking_config or config.ranking
    if last_mentioned is None:
        return ranking_config.recency_floor
    days = max(0.0, days_since(last_mentioned, now))
    return max(ranking_config.recency_floor, 1.0 - days / ranking_config.recency_window_days)


def sort_by_recency(entities: Sequence[Entity], now: Optional[datetime] = None) -> List[Entity]:
    now = now or utc_now()
    return sorted(entities, key=lambda e: recency_score(e.last_mentioned, now), reverse=True)


_TERM_SPLIT = re.compile(r'\s+')


def score_memory_relevance(memory: Memory, query: str, mentioned_entity_ids: Sequence[str], now: Optional[datetime] = None) -> float:
    """Score a memory for relevance to a query, capped at 1.0.

    Combines importance, query term overlap (terms longer than 3 chars),
    overlap with entities mentioned in the query and a one-week recency bonus.
    """
    score = memory.importance * 0.3

    query_terms = [t for t in _TERM_SPLIT.split(query.lower()) if t]
    if query_terms:
        content_lower = memory.content.lower()
        matching = [t for t in query_terms if len(t) > 3 and t in content_lower]
        score += (len(matching) / len(query_terms)) * 0.4

    if mentioned_entity_ids:
        overlap = len([eid for eid in mentioned_entity_ids if eid in memory.entities])
        score += (overlap / len(mentioned_entity_ids)) * 0.3

    days = int(days_since(memory.created_at, now))
    if days < 7:
        score += 0.1 * (1 - days / 7)

    return min(score, 1.0)


def select_relevant_memories(memories: Sequence[Memory],
                             query: str,
                             mentioned_entity_ids: Sequence[str],
                             max_count: Optional[int] = None,
                             now: Optional[datetime] = None) -> List[Memory]:
    ranking_config = config.ranking
    limit = max_count if max_count is not None else ranking_config.max_memories
    now = now or utc_now()
    scored = []
    for memory in memories:
        if memory.is_expired(now):
            continue
        score = score_memory_relevance(memory, query, mentioned_entity_ids, now)
        if score > ranking_config.min_memory_relevance:
            scored.append((score, memory))
    scored = sorted(scored, key=lambda item: item[0], reverse=True)
    return [memory for _, memory in scored[:limit]]


def format_memories_for_context(memories: Sequence[Memory]) -> List[str]:
    """Render memories as ``content [first tag]`` lines."""
    return [f'{m.content} [{m.tags[0]}]' if m.tags else m.content for m in memories]
