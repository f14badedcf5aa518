"""Tests for services/context_compactor.py: token budgets, truncation and summarization."""

from conftest import FakeProvider, make_messages
from lifegraph.models.core import Entity, Message, Thread
from lifegraph.models.results import ErrorCode, LLMError
from lifegraph.services.context_compactor import (ADDITIONAL_UNSUMMARIZED, PREVIOUS_UNSUMMARIZED, ContextCompactor,
                                                  estimate_tokens)


class TestEstimates:
    def test_estimate_tokens_rounds_up(self):
        assert estimate_tokens('abcde') == 2
        assert estimate_tokens('') == 0
        assert estimate_tokens(None) == 0

    def test_message_overhead(self, provider, context_config):
        compactor = ContextCompactor(provider, context_config)
        assert compactor.estimate_message_tokens([Message(role='user', content='abcd' * 5)]) == 5 + 10

    def test_context_tokens_include_system_and_entities(self, provider, context_config):
        compactor = ContextCompactor(provider, context_config)
        entity = Entity(name='Celine', type='person', domain='family')
        total = compactor.estimate_context_tokens('abcd' * 10, [Message(role='user', content='abcd')], [entity])
        assert total == 10 + (1 + 10) + (2 + 0 + 20)


class TestPrepareContext:
    def test_short_history_unchanged(self, provider, context_config):
        history = make_messages(3)
        managed = ContextCompactor(provider, context_config).prepare_context(history)
        assert managed.messages == history
        assert not managed.was_compacted
        assert provider.complete_calls == []

    def test_under_budget_unchanged(self, provider, context_config):
        history = make_messages(6)
        managed = ContextCompactor(provider, context_config).prepare_context(history)
        assert managed.messages == history
        assert not managed.was_compacted

    def test_under_budget_with_summary_prefix(self, provider, context_config):
        history = make_messages(6)
        managed = ContextCompactor(provider, context_config).prepare_context(history, 'Earlier talk', summary_up_to=2)
        assert managed.messages[0].content == '[Previous conversation summary: Earlier talk]'
        assert managed.messages[1:] == history[2:]
        assert managed.summary_up_to == 2

    def test_truncates_when_too_little_to_summarize(self, provider, context_config):
        history = make_messages(8, size=100)
        managed = ContextCompactor(provider, context_config).prepare_context(history)
        assert managed.was_compacted
        assert managed.messages == history[-4:]
        assert managed.summary_up_to == 0
        assert provider.complete_calls == []

    def test_summarizes_older_messages(self, context_config):
        provider = FakeProvider(complete_results=['The user planned a race.'])
        history = make_messages(12, size=100)
        managed = ContextCompactor(provider, context_config).prepare_context(history)
        assert managed.was_compacted
        assert managed.messages[0].content == '[Conversation context: The user planned a race.]'
        assert managed.summary == 'The user planned a race.'
        assert managed.summary_up_to == 8
        call = provider.complete_calls[0]
        assert call['max_tokens'] == context_config.summary_max_tokens
        assert 'message 7' in call['messages'][0].content
        assert 'message 8' not in call['messages'][0].content

    def test_last_messages_always_verbatim(self, context_config):
        provider = FakeProvider(complete_results=['summary'])
        history = make_messages(20, size=200)
        managed = ContextCompactor(provider, context_config).prepare_context(history)
        for sent, original in zip(managed.messages[-4:], history[-4:]):
            assert sent is original

    def test_existing_summary_folded_in(self, context_config):
        provider = FakeProvider(complete_results=['merged'])
        history = make_messages(14, size=100)
        managed = ContextCompactor(provider, context_config).prepare_context(history, 'old summary', summary_up_to=2)
        assert 'Previous summary: old summary' in provider.complete_calls[0]['messages'][0].content
        assert 'message 1 ' not in provider.complete_calls[0]['messages'][0].content
        assert managed.summary_up_to == 10

    def test_summary_failure_without_existing(self, context_config):
        provider = FakeProvider(complete_results=[LLMError(error='down', code=ErrorCode.NETWORK_ERROR)])
        managed = ContextCompactor(provider, context_config).prepare_context(make_messages(12, size=100))
        assert managed.messages[0].content == f'[Conversation context: {PREVIOUS_UNSUMMARIZED}]'
        assert managed.was_compacted
        assert managed.summary is None
        assert managed.summary_up_to == 0

    def test_summary_failure_with_existing(self, context_config):
        provider = FakeProvider(complete_results=[LLMError(error='down', code=ErrorCode.NETWORK_ERROR)])
        managed = ContextCompactor(provider, context_config).prepare_context(make_messages(14, size=100), 'old', summary_up_to=2)
        assert managed.messages[0].content == f'[Conversation context: old {ADDITIONAL_UNSUMMARIZED}]'
        assert managed.summary == 'old'
        assert managed.summary_up_to == 2

    def test_summarize_conversation_reports_failure(self, context_config):
        provider = FakeProvider(complete_results=[LLMError(error='slow down', code=ErrorCode.RATE_LIMITED), 'fine'])
        compactor = ContextCompactor(provider, context_config)
        assert compactor.summarize_conversation(make_messages(2)) == (PREVIOUS_UNSUMMARIZED, False)
        assert compactor.summarize_conversation(make_messages(2)) == ('fine', True)


class TestCompactThread:
    def test_summary_advances_once(self, context_config):
        provider = FakeProvider(complete_results=['first summary'])
        thread = Thread(messages=make_messages(12, size=100))
        compactor = ContextCompactor(provider, context_config)

        compactor.compact_thread(thread)
        assert thread.summary == 'first summary'
        assert thread.summary_up_to == 8

        # Nothing new to fold: the tail is truncated and the summary kept
        managed = compactor.compact_thread(thread)
        assert len(provider.complete_calls) == 1
        assert managed.messages[0].content == '[Previous conversation summary: first summary]'
        assert thread.summary_up_to == 8

    def test_failed_summary_retried_next_turn(self, context_config):
        provider = FakeProvider(complete_results=[LLMError(error='slow down', code=ErrorCode.RATE_LIMITED),
                                                  'The user planned a race.'])
        thread = Thread(messages=make_messages(20, size=100))
        compactor = ContextCompactor(provider, context_config)

        managed = compactor.compact_thread(thread)
        assert managed.messages[0].content == f'[Conversation context: {PREVIOUS_UNSUMMARIZED}]'
        assert thread.summary is None
        assert thread.summary_up_to == 0

        compactor.compact_thread(thread)
        assert len(provider.complete_calls) == 2
        retried = provider.complete_calls[1]['messages'][0].content
        assert 'message 0 ' in retried
        assert 'message 15 ' in retried
        assert thread.summary == 'The user planned a race.'
        assert thread.summary_up_to == 16


class TestSummarizeThread:
    def test_success(self):
        provider = FakeProvider(complete_results=['  A planning chat.  '])
        assert ContextCompactor(provider).summarize_thread(make_messages(2)) == 'A planning chat.'

    def test_fallback_names_entities(self):
        provider = FakeProvider(complete_results=[LLMError(error='down')])
        entities = [Entity(name='Celine', type='person', domain='family'), Entity(name='Marco', type='person', domain='work')]
        assert ContextCompactor(provider).summarize_thread(make_messages(2), entities) == 'Conversation about Celine, Marco'

    def test_fallback_without_entities(self):
        provider = FakeProvider(complete_results=[LLMError(error='down')])
        assert ContextCompactor(provider).summarize_thread(make_messages(2)) == 'Conversation about various topics'

    def test_empty(self, provider):
        assert ContextCompactor(provider).summarize_thread([]) == ''
        assert provider.complete_calls == []
