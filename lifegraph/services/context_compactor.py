"""
Context window management: token estimation, summarization and compaction.

Token counts are a chars/4 heuristic, not tokenizer output, so budgets are
approximate and leave headroom below the model's real limit.
"""

import math
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from ..models.core import Entity, Message, Thread
from ..models.results import is_error
from ..utils.config import ContextConfig, config
from ..utils.logging_config import get_logger
from ..utils.provider_registry import LLMProvider

logger = get_logger(__name__)

THREAD_SUMMARY_MAX_TOKENS = 400

SUMMARY_SYSTEM_PROMPT = """You are summarizing a conversation between a user and their personal assistant.

Create a concise summary (2-5 sentences) that captures:
- Key topics and decisions discussed
- Important entities mentioned (people, projects, events)
- Any commitments or action items
- Emotional context or concerns raised

Focus on information the assistant would need to continue helping the user effectively.
Write in third person (e.g., "The user discussed..." not "You discussed...").
Do not include pleasantries or meta-commentary."""

THREAD_SUMMARY_SYSTEM_PROMPT = """Summarize this conversation thread from a personal attention system.

Create a summary (3-5 sentences) capturing:
- The main topic and purpose of the conversation
- Key decisions, insights, or realizations
- Any patterns or conflicts identified (work/life, priorities, etc.)
- Actionable outcomes or next steps

This summary will be stored for future reference when the user returns to similar topics."""

ADDITIONAL_UNSUMMARIZED = '[Additional conversation occurred but could not be summarized]'
PREVIOUS_UNSUMMARIZED = '[Previous conversation occurred but could not be summarized]'


@dataclass
class ManagedContext:
    """Messages ready to send plus the summary state the caller should persist."""
    messages: List[Message]
    summary: Optional[str]
    was_compacted: bool
    estimated_tokens: int
    summary_up_to: int = 0


def estimate_tokens(text: Optional[str], chars_per_token: int = 4) -> int:
    if not text:
        return 0
    return math.ceil(len(text) / chars_per_token)


def _transcript(messages: Sequence[Message]) -> str:
    return '\n\n'.join(f'{"User" if m.role == "user" else "Assistant"}: {m.content}' for m in messages)


class ContextCompactor:
    """Keep a conversation inside the context budget by folding older turns into a summary."""

    def __init__(self, provider: LLMProvider, context_config: Optional[ContextConfig] = None):
        self.provider = provider
        self.config = context_config or config.context

        logger.info(f'Initialized ContextCompactor (target {self.config.target_context_tokens} tokens, '
                    f'keep {self.config.min_recent_messages} recent messages)')

    def estimate_message_tokens(self, messages: Sequence[Message]) -> int:
        return sum(estimate_tokens(m.content, self.config.chars_per_token) + self.config.message_overhead_tokens for m in messages)

    def estimate_context_tokens(self, system_prompt: str, messages: Sequence[Message], entities: Sequence[Entity] = ()) -> int:
        total = estimate_tokens(system_prompt, self.config.chars_per_token)
        total += self.estimate_message_tokens(messages)
        for entity in entities:
            total += (estimate_tokens(entity.name, self.config.chars_per_token) +
                      estimate_tokens(entity.description, self.config.chars_per_token) + self.config.entity_overhead_tokens)
        return total

    def _managed(self, messages: List[Message], summary: Optional[str], was_compacted: bool, summary_up_to: int) -> ManagedContext:
        return ManagedContext(messages=messages,
                              summary=summary,
                              was_compacted=was_compacted,
                              estimated_tokens=self.estimate_message_tokens(messages),
                              summary_up_to=summary_up_to)

    def prepare_context(self,
                        history: Sequence[Message],
                        existing_summary: Optional[str] = None,
                        summary_up_to: int = 0) -> ManagedContext:
        """Prepare messages for the context window, compacting if necessary.

        The last ``min_recent_messages`` messages are always returned verbatim.

        Args:
            history: Full ordered message history of the thread
            existing_summary: Summary covering history[:summary_up_to], if any
            summary_up_to: Number of leading messages already folded into the summary

        Returns:
            ManagedContext with the messages to send and the summary state to persist
        """
        min_recent = self.config.min_recent_messages
        count = len(history)

        if count <= min_recent:
            return self._managed(list(history), existing_summary, False, summary_up_to)

        # Summarized messages never overlap the verbatim tail
        start = max(0, min(summary_up_to, count - min_recent))
        total_tokens = self.estimate_message_tokens(history)

        if total_tokens < self.config.target_context_tokens:
            if existing_summary:
                messages = [Message(role='user', content=f'[Previous conversation summary: {existing_summary}]'), *history[start:]]
            else:
                messages = list(history)
            return self._managed(messages, existing_summary, False, summary_up_to)

        older = list(history[start:count - min_recent])
        recent = list(history[count - min_recent:])

        if len(older) < self.config.summary_threshold - min_recent:
            logger.debug(f'Only {len(older)} older messages, truncating to the last {min_recent}')
            if existing_summary:
                messages = [Message(role='user', content=f'[Previous conversation summary: {existing_summary}]'), *recent]
            else:
                messages = recent
            return self._managed(messages, existing_summary, True, summary_up_to)

        logger.info(f'Compacting context: {total_tokens} estimated tokens, summarizing {len(older)} messages')
        new_summary, summarized = self.summarize_conversation(older, existing_summary)
        messages = [Message(role='user', content=f'[Conversation context: {new_summary}]'), *recent]
        if summarized:
            managed = self._managed(messages, new_summary, True, max(summary_up_to, count - min_recent))
        else:
            # The marker stands in for this turn only; the same range is retried next time
            managed = self._managed(messages, existing_summary, True, summary_up_to)

        if managed.estimated_tokens > self.config.max_context_tokens:
            logger.warning(f'Compacted context still estimated at {managed.estimated_tokens} tokens '
                           f'(limit {self.config.max_context_tokens})')
        return managed

    def summarize_conversation(self, messages: Sequence[Message], existing_summary: Optional[str] = None) -> Tuple[str, bool]:
        """Summarize a portion of history, folding in the previous summary. Never raises.

        Returns:
            (text, summarized); on failure text is a placeholder marker and summarized is False
        """
        if not messages:
            return existing_summary or '', True

        conversation_text = _transcript(messages)
        if existing_summary:
            prompt = f'Previous summary: {existing_summary}\n\nNew conversation to incorporate:\n{conversation_text}'
        else:
            prompt = conversation_text

        result = self.provider.complete([Message(role='user', content=prompt)],
                                        system=SUMMARY_SYSTEM_PROMPT,
                                        max_tokens=self.config.summary_max_tokens,
                                        temperature=self.config.summary_temperature)

        if is_error(result) or not result.content.strip():
            logger.warning(f'Failed to summarize conversation: {result.error if is_error(result) else "empty summary"}')
            if existing_summary:
                return f'{existing_summary} {ADDITIONAL_UNSUMMARIZED}', False
            return PREVIOUS_UNSUMMARIZED, False

        return result.content.strip(), True

    def summarize_thread(self, messages: Sequence[Message], entities: Sequence[Entity] = ()) -> str:
        """Summarize a whole thread for long-term storage."""
        if not messages:
            return ''

        entity_names = ', '.join(e.name for e in entities)
        entity_context = f'\n\nEntities discussed: {entity_names}' if entity_names else ''

        result = self.provider.complete([Message(role='user', content=_transcript(messages) + entity_context)],
                                        system=THREAD_SUMMARY_SYSTEM_PROMPT,
                                        max_tokens=THREAD_SUMMARY_MAX_TOKENS,
                                        temperature=self.config.summary_temperature)

        if is_error(result):
            logger.warning(f'Failed to summarize thread: {result.error}')
            return f'Conversation about {entity_names or "various topics"}'

        return result.content.strip()

    def compact_thread(self, thread: Thread) -> ManagedContext:
        """Run prepare_context on a thread and persist any summary advance on it."""
        managed = self.prepare_context(thread.messages, thread.summary, thread.summary_up_to)
        if managed.summary_up_to > thread.summary_up_to:
            thread.update_summary(managed.summary, managed.summary_up_to)
        return managed
