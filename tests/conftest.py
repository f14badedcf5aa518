"""Shared fixtures for all test modules."""
from datetime import datetime, timezone

import pytest

from lifegraph.models.core import Message
from lifegraph.models.results import ErrorCode, ExtractionData, LLMError, LLMResponse, is_error
from lifegraph.utils.config import ContextConfig, ExtractionConfig, RankingConfig
from lifegraph.utils.provider_registry import StreamHandle

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


class FakeProvider:
    """Deterministic provider with scripted results and call recording.

    Scripted extract results are dicts (wrapped in ExtractionData) or LLMError;
    complete results are strings (wrapped in LLMResponse) or LLMError. An
    exhausted script answers with an API_ERROR.
    """

    id = 'fake'
    name = 'Fake provider'

    def __init__(self, extract_results=(), complete_results=(), stream_chunks=()):
        self.extract_results = list(extract_results)
        self.complete_results = list(complete_results)
        self.stream_chunks = list(stream_chunks)
        self.extract_calls = []
        self.complete_calls = []
        self.stream_calls = []

    def is_configured(self):
        return True

    def extract(self, prompt, input_text, schema, temperature=None):
        self.extract_calls.append({'prompt': prompt, 'input_text': input_text, 'schema': schema, 'temperature': temperature})
        if not self.extract_results:
            return LLMError(error='no scripted extraction', code=ErrorCode.API_ERROR)
        result = self.extract_results.pop(0)
        return result if is_error(result) else ExtractionData(data=result)

    def complete(self, messages, system=None, max_tokens=None, temperature=None):
        self.complete_calls.append({
            'messages': list(messages),
            'system': system,
            'max_tokens': max_tokens,
            'temperature': temperature
        })
        if not self.complete_results:
            return LLMError(error='no scripted completion', code=ErrorCode.API_ERROR)
        result = self.complete_results.pop(0)
        return result if is_error(result) else LLMResponse(content=result)

    def stream(self, messages, callbacks, system=None, max_tokens=None, temperature=None):
        self.stream_calls.append({
            'messages': list(messages),
            'system': system,
            'max_tokens': max_tokens,
            'temperature': temperature
        })
        handle = StreamHandle()
        for chunk in self.stream_chunks:
            if handle.cancelled:
                return handle
            callbacks.on_delta(chunk)
        callbacks.on_end()
        return handle


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def extraction_config():
    return ExtractionConfig()


@pytest.fixture
def context_config():
    """Small budgets so a handful of messages can overflow the target."""
    return ContextConfig(max_context_tokens=2000,
                         target_context_tokens=200,
                         min_recent_messages=4,
                         summary_threshold=10,
                         chars_per_token=4,
                         message_overhead_tokens=10,
                         summary_max_tokens=300,
                         summary_temperature=0.3)


@pytest.fixture
def ranking_config():
    return RankingConfig()


def make_messages(count, size=40):
    """Alternating user/assistant messages, each with a distinct body."""
    messages = []
    for i in range(count):
        role = 'user' if i % 2 == 0 else 'assistant'
        messages.append(Message(role=role, content=f'message {i} ' + 'x' * size))
    return messages
