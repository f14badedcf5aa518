"""
Amazon Bedrock LLM client wrapper with retry logic and error handling.
"""

import json
import random
import threading
import time
from typing import Any, Dict, List, Optional, Sequence, Tuple

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import (BotoCoreError, ClientError, ConnectionClosedError, ConnectTimeoutError, EndpointConnectionError,
                                 NoCredentialsError, PartialCredentialsError, ReadTimeoutError)

from ..models.core import Message
from ..models.results import CompletionResult, ErrorCode, ExtractionData, ExtractionResult, LLMError, LLMResponse
from .config import BedrockLLMConfig
from .json_utils import JSONRecoveryError, parse_json_response
from .logging_config import get_logger
from .provider_registry import StreamCallbacks, StreamHandle

logger = get_logger(__name__)

THROTTLING_CODES = {'ThrottlingException', 'TooManyRequestsException', 'ServiceQuotaExceededException'}
CREDENTIAL_CODES = {'UnrecognizedClientException', 'ExpiredTokenException', 'InvalidSignatureException'}
RETRYABLE_CODES = {ErrorCode.RATE_LIMITED, ErrorCode.NETWORK_ERROR}

EXTRACTION_SYSTEM_PROMPT = """You are an expert information extractor. Extract structured data from the user's input.
Always respond with valid JSON matching this schema:
{schema}

Important:
- Only include information explicitly stated or strongly implied
- Use null for missing optional fields
- Be conservative with confidence scores
- Do not invent or hallucinate information"""


class BedrockLLMError(Exception):
    """Custom exception for Bedrock LLM errors."""

    def __init__(self, message: str, code: ErrorCode = ErrorCode.API_ERROR):
        super().__init__(message)
        self.code = code


def classify_error(error: Exception) -> ErrorCode:
    """Map a botocore failure onto the engine's error taxonomy."""
    if isinstance(error, (NoCredentialsError, PartialCredentialsError)):
        return ErrorCode.NO_API_KEY
    if isinstance(error, (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError, ConnectionClosedError)):
        return ErrorCode.NETWORK_ERROR
    if isinstance(error, ClientError):
        code = error.response.get('Error', {}).get('Code', '')
        status = error.response.get('ResponseMetadata', {}).get('HTTPStatusCode')
        if code in THROTTLING_CODES or status == 429:
            return ErrorCode.RATE_LIMITED
        if code in CREDENTIAL_CODES:
            return ErrorCode.NO_API_KEY
        return ErrorCode.API_ERROR
    if isinstance(error, BotoCoreError):
        return ErrorCode.NETWORK_ERROR
    return ErrorCode.API_ERROR


def to_bedrock_messages(messages: Sequence[Message]) -> Tuple[List[Dict[str, Any]], List[str]]:
    """Convert engine messages to Converse format.

    System messages are lifted out; consecutive messages with the same role are
    merged because Converse requires alternating turns.
    """
    converted: List[Dict[str, Any]] = []
    system_parts: List[str] = []
    for message in messages:
        role = message.role if isinstance(message, Message) else message['role']
        content = message.content if isinstance(message, Message) else message['content']
        if role == 'system':
            system_parts.append(content)
            continue
        if converted and converted[-1]['role'] == role:
            converted[-1]['content'][0]['text'] += f'\n\n{content}'
        else:
            converted.append({'role': role, 'content': [{'text': content}]})
    return converted, system_parts


class BedrockLLM:
    """Amazon Bedrock LLM client with retry logic and error handling."""

    id = 'bedrock'
    name = 'Amazon Bedrock'

    def __init__(self, config: BedrockLLMConfig):
        """
        Initialize Bedrock LLM client.

        Args:
            config: BedrockLLMConfig instance with connection parameters
        """
        self.config = config
        self.model_id = config.model_id

        # Create Bedrock runtime client with timeout configuration
        self.bedrock_runtime = boto3.client(
            'bedrock-runtime',
            region_name=config.region,
            config=BotoConfig(
                connect_timeout=600,
                read_timeout=600,
                retries={'max_attempts': 0}  # We handle retries manually
            ))

        logger.info(f'Initialized Bedrock LLM client with model: {self.model_id}')

    def is_configured(self) -> bool:
        """Check whether AWS credentials are available."""
        return boto3.Session().get_credentials() is not None

    def _open_stream(self, messages: List[Dict[str, Any]], system_prompt: str, max_tokens: Optional[int],
                     temperature: Optional[float], stop_sequences: Optional[List[str]]):
        inf_params = {
            'maxTokens': max_tokens if max_tokens is not None else self.config.max_tokens,
            'temperature': temperature if temperature is not None else self.config.temperature,
            'stopSequences': stop_sequences or [],
        }
        kwargs = {'modelId': self.model_id, 'messages': messages, 'inferenceConfig': inf_params}
        if system_prompt:
            kwargs['system'] = [{'text': system_prompt}]
        return self.bedrock_runtime.converse_stream(**kwargs).get('stream')

    def generate_response(self,
                          messages: List[Dict[str, Any]],
                          system_prompt: str,
                          max_tokens: Optional[int] = None,
                          temperature: Optional[float] = None,
                          stop_sequences: Optional[List[str]] = None) -> Tuple[str, Optional[Dict[str, Any]]]:
        """
        Generate response using Bedrock LLM with retry logic.

        Args:
            messages: List of message dictionaries in Bedrock format
            system_prompt: System prompt for the conversation
            max_tokens: Maximum tokens to generate (uses config default if None)
            temperature: Temperature for generation (uses config default if None)
            stop_sequences: Stop sequences for generation

        Returns:
            Tuple of (response_text, invoke_metrics)

        Raises:
            BedrockLLMError: If all retry attempts fail or the error is not retryable
        """
        for attempt in range(self.config.retry_attempts):
            try:
                logger.debug(f'Bedrock LLM request attempt {attempt + 1}/{self.config.retry_attempts}')

                stream = self._open_stream(messages, system_prompt, max_tokens, temperature, stop_sequences)

                msg = ''
                invoke_metrics = None

                if stream:
                    for event in stream:
                        if 'contentBlockDelta' in event:
                            msg += event['contentBlockDelta']['delta'].get('text', '')
                        if 'metadata' in event:
                            invoke_metrics = {**event['metadata']['usage'], **event['metadata'].get('metrics', {})}

                logger.debug(f'Bedrock LLM response generated successfully (length: {len(msg)})')
                return msg, invoke_metrics

            except (ClientError, BotoCoreError) as e:
                code = classify_error(e)
                logger.warning(f'Bedrock LLM attempt {attempt + 1}/{self.config.retry_attempts} failed ({code.value}): {e}')

                if code in RETRYABLE_CODES and attempt < self.config.retry_attempts - 1:
                    # Exponential backoff with jitter
                    delay = self.config.retry_delay * (2**attempt) + random.uniform(0, self.config.retry_delay)
                    time.sleep(delay)
                else:
                    raise BedrockLLMError(f'Bedrock LLM failed after {attempt + 1} attempts: {e}', code)

            except Exception as e:
                logger.error(f'Unexpected error in Bedrock LLM: {e}')
                raise BedrockLLMError(f'Unexpected Bedrock LLM error: {e}')

        raise BedrockLLMError(f'Bedrock LLM failed after {self.config.retry_attempts} attempts')

    def complete(self,
                 messages: Sequence[Message],
                 system: Optional[str] = None,
                 max_tokens: Optional[int] = None,
                 temperature: Optional[float] = None) -> CompletionResult:
        """Plain text completion. Returns LLMResponse or LLMError, never raises."""
        bedrock_messages, system_parts = to_bedrock_messages(messages)
        system_prompt = '\n\n'.join([part for part in [system, *system_parts] if part])
        try:
            text, metrics = self.generate_response(bedrock_messages, system_prompt, max_tokens, temperature)
        except BedrockLLMError as e:
            return LLMError(error=str(e), code=e.code)
        return LLMResponse(content=text.strip(), usage=metrics)

    def extract(self, prompt: str, input_text: str, schema: Dict[str, Any], temperature: Optional[float] = 0.3) -> ExtractionResult:
        """Structured extraction against a JSON Schema. Returns ExtractionData or LLMError."""
        system_prompt = EXTRACTION_SYSTEM_PROMPT.format(schema=json.dumps(schema, indent=2))
        llm_messages = [{
            'role': 'user',
            'content': [{
                'text': f'{prompt}\n\nInput to extract from:\n{input_text}'
            }]
        }, {
            'role': 'assistant',
            'content': [{
                'text': '```json'
            }]
        }]

        try:
            response, metrics = self.generate_response(messages=llm_messages,
                                                       system_prompt=system_prompt,
                                                       temperature=temperature,
                                                       stop_sequences=['```'])
        except BedrockLLMError as e:
            logger.error(f'Extraction call failed: {e}')
            return LLMError(error=str(e), code=e.code)

        try:
            data = parse_json_response(response)
        except JSONRecoveryError as e:
            logger.warning(f'Extraction returned unparsable output: {e}')
            return LLMError(error=str(e), code=ErrorCode.PARSE_ERROR)

        return ExtractionData(data=data, usage=metrics)

    def stream(self,
               messages: Sequence[Message],
               callbacks: StreamCallbacks,
               system: Optional[str] = None,
               max_tokens: Optional[int] = None,
               temperature: Optional[float] = None) -> StreamHandle:
        """Stream a response on a background thread. Cancelling the handle silences callbacks."""
        handle = StreamHandle()
        bedrock_messages, system_parts = to_bedrock_messages(messages)
        system_prompt = '\n\n'.join([part for part in [system, *system_parts] if part])

        def run():
            try:
                stream = self._open_stream(bedrock_messages, system_prompt, max_tokens, temperature, None)
                for event in stream or []:
                    if handle.cancelled:
                        return
                    # Reasoning and tool-use deltas carry no text
                    text = event.get('contentBlockDelta', {}).get('delta', {}).get('text')
                    if text:
                        callbacks.on_delta(text)
                if not handle.cancelled:
                    callbacks.on_end()
            except (ClientError, BotoCoreError) as e:
                logger.error(f'Bedrock stream {handle.id} failed ({classify_error(e).value}): {e}')
                if not handle.cancelled:
                    callbacks.on_error(str(e))
            except Exception as e:
                logger.error(f'Unexpected error in Bedrock stream {handle.id}: {e}')
                if not handle.cancelled:
                    callbacks.on_error(str(e))

        thread = threading.Thread(target=run, name=f'bedrock-stream-{handle.id}', daemon=True)
        handle.attach(thread)
        thread.start()
        return handle

    def health_check(self) -> bool:
        """
        Perform a health check on the Bedrock LLM service.

        Returns:
            True if service is healthy, False otherwise
        """
        result = self.complete([Message(role='user', content='Hi')],
                               system="You are a helpful assistant. Respond with just 'OK'.",
                               max_tokens=10,
                               temperature=0.0)
        if isinstance(result, LLMError):
            logger.error(f'Bedrock LLM health check failed: {result.error}')
            return False
        return len(result.content) > 0
