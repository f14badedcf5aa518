"""
Reference search: decide when to look in the user's external notes and gather excerpts for the prompt.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Sequence

from ..models.core import Entity, new_id
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import OpenSearchClient
from ..utils.provider_registry import Registry
from ..utils.timestamp_utils import days_since, to_datetime, utc_now

logger = get_logger(__name__)

EXPLICIT_TRIGGERS = ('my notes', 'i wrote', 'i noted', 'check my', 'find my', 'search my', 'look up', 'remember when',
                     'we discussed', 'i was thinking about')
CONTEXTUAL_TRIGGERS = ('strategy', 'plan', 'decision', 'thinking', 'approach', 'framework', 'model', 'structure')
HISTORY_ENTITY_TYPES = ('project', 'company', 'concept')
LONG_MESSAGE_CHARS = 50
MAX_QUERY_WORDS = 5
MAX_EXCERPTS = 3

STOP_WORDS = frozenset(
    ('the a an is are was were be been being have has had do does did will would could should may might must shall can '
     'need dare ought used to of in for on with at by from as into through during before after above below between '
     'under again further then once here there when where why how all each few more most other some such no nor not '
     'only own same so than too very just and but if or because until while about against up down out off over i me '
     'my myself we our ours ourselves you your yours yourself yourselves he him his himself she her hers herself it '
     'its itself they them their theirs themselves what which who whom this that these those am').split())


@dataclass
class SearchOptions:
    limit: int = 5
    sources: Optional[List[str]] = None


@dataclass
class SearchResult:
    """One hit from a reference source."""
    id: str
    source: str
    title: str
    snippet: str
    url: Optional[str] = None
    type: str = 'note'
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    tags: List[str] = field(default_factory=list)
    score: Optional[float] = None


@dataclass
class ReferenceContext:
    searched: bool
    sources: List[str] = field(default_factory=list)
    results: List[SearchResult] = field(default_factory=list)
    summary: Optional[str] = None
    relevant_excerpts: List[str] = field(default_factory=list)


class ReferencePlugin(Protocol):
    id: str
    name: str

    def search(self, query: str, options: SearchOptions) -> List[SearchResult]:
        ...


def should_search_references(message: str, entity_names: Sequence[str], entity_types: Sequence[str]) -> bool:
    """Heuristic trigger for searching external notes."""
    lower = message.lower()
    if any(trigger in lower for trigger in EXPLICIT_TRIGGERS):
        return True
    has_contextual = any(trigger in lower for trigger in CONTEXTUAL_TRIGGERS)
    if has_contextual and any(str(t) in HISTORY_ENTITY_TYPES for t in entity_types):
        return True
    return bool(entity_names) and len(lower) > LONG_MESSAGE_CHARS


def build_search_query(message: str, entity_names: Sequence[str]) -> str:
    """Entity names followed by up to five content words from the message, deduplicated."""
    words = [w for w in re.sub(r'[^\w\s]', '', message.lower()).split() if len(w) > 2 and w not in STOP_WORDS]
    terms = list(dict.fromkeys([*entity_names, *words[:MAX_QUERY_WORDS]]))
    return ' '.join(terms)


def format_reference_context(results: Sequence[SearchResult]) -> ReferenceContext:
    if not results:
        return ReferenceContext(searched=True)

    sources = list(dict.fromkeys(r.source for r in results))
    plural = '' if len(results) == 1 else 's'
    return ReferenceContext(searched=True,
                            sources=sources,
                            results=list(results),
                            summary=f'Found {len(results)} related note{plural} from {", ".join(sources)}',
                            relevant_excerpts=[f'[{r.title}] {r.snippet}' for r in results[:MAX_EXCERPTS]])


def _relative_date(moment: Optional[datetime], now: Optional[datetime] = None) -> str:
    if moment is None:
        return 'unknown date'
    days = int(days_since(moment, now))
    if days <= 0:
        return 'today'
    if days == 1:
        return 'yesterday'
    if days < 7:
        return f'{days} days ago'
    if days < 30:
        return f'{days // 7} weeks ago'
    if days < 365:
        return f'{days // 30} months ago'
    return f'{days // 365} years ago'


def format_context_for_prompt(context: Optional[ReferenceContext], now: Optional[datetime] = None) -> str:
    if context is None or not context.searched or not context.results:
        return ''
    lines = ['Relevant notes from your archives:']
    for result in context.results[:MAX_EXCERPTS]:
        lines.append(f'\n[{result.title}] ({result.source}, {_relative_date(result.updated_at, now)})')
        lines.append(result.snippet)
    return '\n'.join(lines)


class ReferenceRegistry(Registry[ReferencePlugin]):
    """Connected reference sources, searched together."""

    def search(self, query: str, options: Optional[SearchOptions] = None) -> List[SearchResult]:
        """Search every (or the selected) plugin, newest results first. Failing plugins are skipped."""
        options = options or SearchOptions()
        plugins = [p for p in self.list() if options.sources is None or p.id in options.sources]

        results: List[SearchResult] = []
        for plugin in plugins:
            try:
                results.extend(plugin.search(query, options))
            except Exception as e:
                logger.warning(f'Reference search failed for {plugin.id}: {e}')

        return sorted(results, key=lambda r: r.updated_at.timestamp() if r.updated_at else 0.0, reverse=True)

    def gather_context(self, message: str, entities: Sequence[Entity]) -> ReferenceContext:
        names = [e.name for e in entities]
        types = [e.type.value for e in entities]
        if not should_search_references(message, names, types) or not len(self):
            return ReferenceContext(searched=False)
        return format_reference_context(self.search(build_search_query(message, names), SearchOptions(limit=5)))


class OpenSearchNotesPlugin:
    """Reference plugin backed by an OpenSearch notes index."""

    def __init__(self, client: OpenSearchClient, plugin_id: str = 'opensearch-notes', name: str = 'Notes', snippet_chars: int = 200):
        self.id = plugin_id
        self.name = name
        self.client = client
        self.snippet_chars = snippet_chars

    def _to_result(self, hit: Dict[str, Any]) -> SearchResult:
        document = hit['document']
        content = document.get('content') or ''
        snippet = content if len(content) <= self.snippet_chars else content[:self.snippet_chars].rstrip() + '...'
        return SearchResult(id=hit['id'],
                            source=document.get('source') or self.id,
                            title=document.get('title') or 'Untitled',
                            snippet=snippet,
                            url=document.get('url'),
                            type=document.get('type') or 'note',
                            created_at=to_datetime(document['created_at']) if document.get('created_at') else None,
                            updated_at=to_datetime(document['updated_at']) if document.get('updated_at') else None,
                            tags=list(document.get('tags') or []),
                            score=hit.get('score'))

    def search(self, query: str, options: SearchOptions) -> List[SearchResult]:
        hits = self.client.keyword_search(query, top_k=options.limit)
        return [self._to_result(hit) for hit in hits]

    def add_note(self,
                 title: str,
                 content: str,
                 source: Optional[str] = None,
                 url: Optional[str] = None,
                 tags: Sequence[str] = (),
                 note_id: Optional[str] = None,
                 now: Optional[datetime] = None) -> SearchResult:
        """Index a note so later searches can find it."""
        moment = (now or utc_now()).isoformat()
        document = {
            'id': note_id or new_id(),
            'source': source or self.id,
            'title': title,
            'content': content,
            'url': url,
            'type': 'note',
            'tags': list(tags),
            'created_at': moment,
            'updated_at': moment,
        }
        if not self.client.index_document(document):
            logger.warning(f'Note {document["id"]} was not acknowledged by the index')
        return self._to_result({'id': document['id'], 'document': document})

    def remove_note(self, note_id: str) -> bool:
        return self.client.delete_document(note_id)
