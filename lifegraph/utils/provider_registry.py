"""
Language-model provider contract and the registry used to look providers up.

The registry is an ordinary object built at start-up and passed to the
services that need it, so tests can register a deterministic provider.
"""

import threading
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, List, Optional, Protocol, Sequence, TypeVar

from ..models.core import Message
from ..models.results import CompletionResult, ExtractionResult
from .logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class StreamCallbacks:
    """Callbacks invoked while a streamed response arrives."""
    on_delta: Callable[[str], None]
    on_end: Callable[[], None] = lambda: None
    on_error: Callable[[str], None] = lambda error: None


class StreamHandle:
    """Handle for an in-flight streamed response.

    Cancelling stops further callbacks; it does not abort the request server-side.
    """

    def __init__(self, stream_id: Optional[str] = None):
        self.id = stream_id or str(uuid.uuid4())
        self._cancelled = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def cancel(self) -> None:
        if not self._cancelled.is_set():
            logger.debug(f'Stream {self.id} cancelled')
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def attach(self, thread: threading.Thread) -> None:
        self._thread = thread

    def join(self, timeout: Optional[float] = None) -> None:
        """Wait for a background stream to finish."""
        if self._thread is not None:
            self._thread.join(timeout)


class LLMProvider(Protocol):
    """Contract every language-model provider implements."""

    id: str
    name: str

    def is_configured(self) -> bool:
        ...

    def complete(self,
                 messages: Sequence[Message],
                 system: Optional[str] = None,
                 max_tokens: Optional[int] = None,
                 temperature: Optional[float] = None) -> CompletionResult:
        ...

    def extract(self, prompt: str, input_text: str, schema: Dict[str, Any], temperature: Optional[float] = None) -> ExtractionResult:
        ...

    def stream(self,
               messages: Sequence[Message],
               callbacks: StreamCallbacks,
               system: Optional[str] = None,
               max_tokens: Optional[int] = None,
               temperature: Optional[float] = None) -> StreamHandle:
        ...


P = TypeVar('P')


class Registry(Generic[P]):
    """Id-keyed plugin registry."""

    def __init__(self):
        self._items: Dict[str, P] = {}

    def register(self, item: P) -> None:
        self._items[item.id] = item
        logger.debug(f'Registered {type(item).__name__} as {item.id}')

    def unregister(self, item_id: str) -> None:
        self._items.pop(item_id, None)

    def get(self, item_id: str) -> Optional[P]:
        return self._items.get(item_id)

    def list(self) -> List[P]:
        return list(self._items.values())

    def __contains__(self, item_id: str) -> bool:
        return item_id in self._items

    def __len__(self) -> int:
        return len(self._items)


class ProviderRegistry(Registry[LLMProvider]):
    """Registry of language-model providers with one active provider."""

    def __init__(self):
        super().__init__()
        self._active_id: Optional[str] = None

    def set_active(self, provider_id: str) -> bool:
        if provider_id not in self:
            logger.warning(f'Cannot activate unknown provider: {provider_id}')
            return False
        self._active_id = provider_id
        return True

    def get(self, provider_id: Optional[str] = None) -> Optional[LLMProvider]:
        """Return the named provider, else the active one, else the first registered."""
        if provider_id:
            return super().get(provider_id)
        if self._active_id:
            return super().get(self._active_id)
        providers = self.list()
        return providers[0] if providers else None
