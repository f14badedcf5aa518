"""
Result types returned across the language-model boundary.

Engine entry points return one of these values instead of raising.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Generic, Optional, TypeVar, Union

T = TypeVar('T')


class ErrorCode(str, Enum):
    NO_API_KEY = 'NO_API_KEY'
    RATE_LIMITED = 'RATE_LIMITED'
    NETWORK_ERROR = 'NETWORK_ERROR'
    PARSE_ERROR = 'PARSE_ERROR'
    VALIDATION_ERROR = 'VALIDATION_ERROR'
    API_ERROR = 'API_ERROR'


@dataclass
class LLMError:
    """A failed language-model call."""
    error: str
    code: ErrorCode = ErrorCode.API_ERROR


@dataclass
class LLMResponse:
    """A completed text response."""
    content: str
    usage: Optional[Dict[str, Any]] = None
    stop_reason: Optional[str] = None


@dataclass
class ExtractionData(Generic[T]):
    """Structured data decoded from an extraction call."""
    data: T
    usage: Optional[Dict[str, Any]] = field(default=None)


CompletionResult = Union[LLMResponse, LLMError]
ExtractionResult = Union[ExtractionData, LLMError]


def is_error(result: Any) -> bool:
    """Type guard for LLMError results."""
    return isinstance(result, LLMError)
