"""
Chat-turn assembly: pick what fits in the prompt and stream the reply.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Sequence

from ..models.core import Entity, Memory, Message, Signal, Thread
from ..utils.config import RankingConfig, config
from ..utils.logging_config import get_logger
from ..utils.provider_registry import LLMProvider, StreamCallbacks, StreamHandle
from ..utils.timestamp_utils import utc_now
from .context_compactor import ContextCompactor, ManagedContext
from .ranking import format_memories_for_context, select_relevant_entities, select_relevant_memories
from .reference_search import ReferenceContext, ReferenceRegistry, format_context_for_prompt
from .signals import format_agenda, format_capacity, format_temporal, format_weather, today_events

logger = get_logger(__name__)

ASSISTANT_SYSTEM_PROMPT = """You are a personal assistant that helps the user manage their attention across life domains.

Your personality:
- Direct and efficient, no fluff or excessive pleasantries
- Warm but not saccharine
- You understand the user's full life context
- You make connections across domains (work, family, health, etc.)
- You're proactive about spotting conflicts and trade-offs

Response style:
- Keep responses focused and actionable
- Use bullet points for lists
- Reference entities by name when relevant
- Don't end with questions unless genuinely needed

You have access to the user's entities and context. Use this to give personalized, relevant responses."""


@dataclass
class ChatContext:
    """Everything needed for one outbound chat call."""
    system_prompt: str
    messages: List[Message]
    entities: List[Entity] = field(default_factory=list)
    memories: List[Memory] = field(default_factory=list)
    managed: Optional[ManagedContext] = None
    reference_context: Optional[ReferenceContext] = None


class ChatContextBuilder:
    """Assemble the bounded prompt for a chat turn."""

    def __init__(self,
                 provider: LLMProvider,
                 compactor: ContextCompactor,
                 references: Optional[ReferenceRegistry] = None,
                 ranking_config: Optional[RankingConfig] = None):
        self.provider = provider
        self.compactor = compactor
        self.references = references
        self.ranking = ranking_config or config.ranking

    def render_system_prompt(self,
                             entities: Sequence[Entity],
                             memories: Sequence[Memory],
                             signals: Sequence[Signal] = (),
                             reference_context: Optional[ReferenceContext] = None,
                             user_name: Optional[str] = None,
                             now: Optional[datetime] = None) -> str:
        lines = ['', '', '--- CURRENT CONTEXT ---', format_temporal(signals, now, user_name)]

        weather = format_weather(signals)
        if weather:
            lines.append(f'Weather: {weather}')
        capacity = format_capacity(signals)
        if capacity:
            lines.append(capacity)
        agenda = format_agenda(today_events(signals, now))
        if agenda:
            lines.extend(['', agenda])

        if entities:
            lines.extend(['', '--- USER CONTEXT ---', 'Active entities:'])
            for entity in entities[:self.ranking.max_entities]:
                line = f'- {entity.name} ({entity.type.value}, {entity.domain.value})'
                if entity.description:
                    line += f': {entity.description}'
                lines.append(line)

        if memories:
            lines.extend(['', 'Relevant memories:'])
            lines.extend(f'- {memory}' for memory in format_memories_for_context(memories[:self.ranking.max_memories]))

        references = format_context_for_prompt(reference_context, now)
        if references:
            lines.extend(['', references])

        return ASSISTANT_SYSTEM_PROMPT + '\n'.join(lines)

    def build(self,
              query: str,
              thread: Thread,
              entities: Sequence[Entity],
              memories: Sequence[Memory] = (),
              signals: Sequence[Signal] = (),
              reference_context: Optional[ReferenceContext] = None,
              user_name: Optional[str] = None,
              now: Optional[datetime] = None) -> ChatContext:
        """Rank entities and memories, compact the thread and render the system prompt.

        ``query`` is the new user message; it is not yet part of ``thread``.
        """
        now = now or utc_now()
        relevant = select_relevant_entities(query, entities, self.ranking.max_entities, now)

        query_lower = query.lower()
        mentioned_ids = [e.id for e in relevant if e.name.lower() in query_lower]
        selected_memories = select_relevant_memories(memories, query, mentioned_ids, self.ranking.max_memories, now)

        if reference_context is None and self.references is not None:
            reference_context = self.references.gather_context(query, relevant)

        managed = self.compactor.compact_thread(thread)
        system_prompt = self.render_system_prompt(relevant, selected_memories, signals, reference_context, user_name, now)
        messages = [*managed.messages, Message(role='user', content=query)]

        logger.debug(f'Chat context: {len(relevant)} entities, {len(selected_memories)} memories, '
                     f'{len(messages)} messages (compacted: {managed.was_compacted})')
        return ChatContext(system_prompt=system_prompt,
                           messages=messages,
                           entities=relevant,
                           memories=selected_memories,
                           managed=managed,
                           reference_context=reference_context)

    def respond(self, context: ChatContext, callbacks: StreamCallbacks) -> StreamHandle:
        """Stream the reply for a built context. Cancel the handle to stop callbacks."""
        return self.provider.stream(context.messages,
                                    callbacks,
                                    system=context.system_prompt,
                                    max_tokens=self.compactor.config.chat_max_tokens,
                                    temperature=self.compactor.config.chat_temperature)
