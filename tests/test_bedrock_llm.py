"""Tests for utils/bedrock_llm.py: Bedrock provider with a mocked runtime client."""

import threading
from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError, NoCredentialsError

from lifegraph.models.core import Message
from lifegraph.models.results import ErrorCode, ExtractionData, LLMError, LLMResponse
from lifegraph.utils.bedrock_llm import BedrockLLM, classify_error, to_bedrock_messages
from lifegraph.utils.config import BedrockLLMConfig
from lifegraph.utils.provider_registry import StreamCallbacks


def _client_error(code, status=400):
    return ClientError({'Error': {'Code': code, 'Message': code}, 'ResponseMetadata': {'HTTPStatusCode': status}}, 'ConverseStream')


def _events(*chunks, usage=None):
    events = [{'contentBlockDelta': {'delta': {'text': chunk}}} for chunk in chunks]
    if usage:
        events.append({'metadata': {'usage': usage, 'metrics': {'latencyMs': 5}}})
    return events


@pytest.fixture
def runtime():
    client = MagicMock()
    with patch('lifegraph.utils.bedrock_llm.boto3.client', return_value=client):
        yield client


@pytest.fixture
def llm(runtime):
    config = BedrockLLMConfig(region='us-east-1',
                              model_id='test-model',
                              max_tokens=256,
                              temperature=0.5,
                              retry_attempts=3,
                              retry_delay=0.0)
    with patch('lifegraph.utils.bedrock_llm.time.sleep'):
        yield BedrockLLM(config)


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------

class TestClassifyError:
    def test_missing_credentials(self):
        assert classify_error(NoCredentialsError()) is ErrorCode.NO_API_KEY

    def test_throttling(self):
        assert classify_error(_client_error('ThrottlingException')) is ErrorCode.RATE_LIMITED
        assert classify_error(_client_error('Whatever', status=429)) is ErrorCode.RATE_LIMITED

    def test_expired_token(self):
        assert classify_error(_client_error('ExpiredTokenException')) is ErrorCode.NO_API_KEY

    def test_network(self):
        assert classify_error(EndpointConnectionError(endpoint_url='https://bedrock')) is ErrorCode.NETWORK_ERROR

    def test_other_client_error(self):
        assert classify_error(_client_error('ValidationException')) is ErrorCode.API_ERROR


class TestToBedrockMessages:
    def test_system_lifted_and_roles_merged(self):
        messages = [
            Message(role='system', content='be brief'),
            Message(role='user', content='[Conversation context: earlier]'),
            Message(role='user', content='hello'),
            Message(role='assistant', content='hi'),
        ]
        converted, system = to_bedrock_messages(messages)
        assert system == ['be brief']
        assert [m['role'] for m in converted] == ['user', 'assistant']
        assert converted[0]['content'][0]['text'] == '[Conversation context: earlier]\n\nhello'


# ---------------------------------------------------------------------------
# complete / extract
# ---------------------------------------------------------------------------

class TestComplete:
    def test_success(self, llm, runtime):
        runtime.converse_stream.return_value = {'stream': _events('Hel', 'lo ', usage={'inputTokens': 3})}
        result = llm.complete([Message(role='user', content='hi')], system='sys', max_tokens=50, temperature=0.1)
        assert isinstance(result, LLMResponse)
        assert result.content == 'Hello'
        assert result.usage['inputTokens'] == 3
        kwargs = runtime.converse_stream.call_args.kwargs
        assert kwargs['system'] == [{'text': 'sys'}]
        assert kwargs['inferenceConfig']['maxTokens'] == 50

    def test_reasoning_deltas_ignored(self, llm, runtime):
        events = [{'contentBlockDelta': {'delta': {'reasoningContent': {'text': 'hmm'}}}}, *_events('OK')]
        runtime.converse_stream.return_value = {'stream': events}
        result = llm.complete([Message(role='user', content='hi')])
        assert result.content == 'OK'

    def test_retries_rate_limit_then_succeeds(self, llm, runtime):
        runtime.converse_stream.side_effect = [_client_error('ThrottlingException'), {'stream': _events('ok')}]
        result = llm.complete([Message(role='user', content='hi')])
        assert isinstance(result, LLMResponse)
        assert runtime.converse_stream.call_count == 2

    def test_rate_limit_exhausted(self, llm, runtime):
        runtime.converse_stream.side_effect = _client_error('ThrottlingException')
        result = llm.complete([Message(role='user', content='hi')])
        assert isinstance(result, LLMError)
        assert result.code is ErrorCode.RATE_LIMITED
        assert runtime.converse_stream.call_count == 3

    def test_non_retryable_error_fails_fast(self, llm, runtime):
        runtime.converse_stream.side_effect = _client_error('ValidationException')
        result = llm.complete([Message(role='user', content='hi')])
        assert result.code is ErrorCode.API_ERROR
        assert runtime.converse_stream.call_count == 1


class TestExtract:
    def test_prefills_json_fence(self, llm, runtime):
        runtime.converse_stream.return_value = {'stream': _events('\n{"entities": [], "memories": []}\n')}
        result = llm.extract('Extract things', 'I met Celine', {'type': 'object'})
        assert isinstance(result, ExtractionData)
        assert result.data == {'entities': [], 'memories': []}
        kwargs = runtime.converse_stream.call_args.kwargs
        assert kwargs['messages'][-1] == {'role': 'assistant', 'content': [{'text': '```json'}]}
        assert kwargs['inferenceConfig']['stopSequences'] == ['```']
        assert '"type": "object"' in kwargs['system'][0]['text']

    def test_unparsable_output(self, llm, runtime):
        runtime.converse_stream.return_value = {'stream': _events('I could not find anything.')}
        result = llm.extract('Extract things', 'text', {'type': 'object'})
        assert isinstance(result, LLMError)
        assert result.code is ErrorCode.PARSE_ERROR


# ---------------------------------------------------------------------------
# stream
# ---------------------------------------------------------------------------

class TestStream:
    def test_streams_deltas_then_end(self, llm, runtime):
        runtime.converse_stream.return_value = {'stream': _events('a', 'b', 'c')}
        deltas, ended = [], []
        handle = llm.stream([Message(role='user', content='hi')], StreamCallbacks(on_delta=deltas.append,
                                                                                 on_end=lambda: ended.append(True)))
        handle.join(timeout=5)
        assert deltas == ['a', 'b', 'c']
        assert ended == [True]

    def test_cancel_stops_callbacks(self, llm, runtime):
        first_delivered = threading.Event()
        proceed = threading.Event()

        def events():
            yield {'contentBlockDelta': {'delta': {'text': 'first'}}}
            proceed.wait(5)
            yield {'contentBlockDelta': {'delta': {'text': 'second'}}}

        runtime.converse_stream.return_value = {'stream': events()}
        deltas, ended = [], []

        def on_delta(text):
            deltas.append(text)
            first_delivered.set()

        handle = llm.stream([Message(role='user', content='hi')], StreamCallbacks(on_delta=on_delta,
                                                                                 on_end=lambda: ended.append(True)))
        assert first_delivered.wait(5)
        handle.cancel()
        proceed.set()
        handle.join(timeout=5)
        assert deltas == ['first']
        assert ended == []

    def test_error_reported(self, llm, runtime):
        runtime.converse_stream.side_effect = _client_error('ValidationException')
        errors = []
        handle = llm.stream([Message(role='user', content='hi')], StreamCallbacks(on_delta=lambda t: None, on_error=errors.append))
        handle.join(timeout=5)
        assert len(errors) == 1

    def test_non_text_deltas_skipped(self, llm, runtime):
        runtime.converse_stream.return_value = {'stream': [
            {'contentBlockDelta': {'delta': {'reasoningContent': {'text': 'thinking'}}}},
            {'contentBlockDelta': {'delta': {'text': 'answer'}}},
        ]}
        deltas, ended, errors = [], [], []
        handle = llm.stream([Message(role='user', content='hi')],
                            StreamCallbacks(on_delta=deltas.append, on_end=lambda: ended.append(True), on_error=errors.append))
        handle.join(timeout=5)
        assert deltas == ['answer']
        assert ended == [True]
        assert errors == []

    def test_malformed_event_reported_as_error(self, llm, runtime):
        runtime.converse_stream.return_value = {'stream': [{'contentBlockDelta': None}]}
        ended, errors = [], []
        handle = llm.stream([Message(role='user', content='hi')],
                            StreamCallbacks(on_delta=lambda t: None, on_end=lambda: ended.append(True), on_error=errors.append))
        handle.join(timeout=5)
        assert ended == []
        assert len(errors) == 1
