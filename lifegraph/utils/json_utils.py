"""
JSON utilities for recovering structured data from LLM responses.
"""

import json
import re
from typing import Any

_FENCED_BLOCK = re.compile(r'```(?:json)?\s*([\s\S]*?)```')


class JSONRecoveryError(ValueError):
    """Raised when no recovery strategy yields valid JSON."""
    pass


def clean_json_response(response: str) -> str:
    """Clean LLM response by removing code block markers.

    Args:
        response: Raw LLM response

    Returns:
        Cleaned JSON string
    """
    response = response.strip()

    # Remove ```json and ``` markers
    if response.startswith('```json'):
        response = response[7:]
    elif response.startswith('```'):
        response = response[3:]

    if response.endswith('```'):
        response = response[:-3]

    return response.strip()


def _outermost_slice(text: str) -> str:
    """Slice from the first opening bracket to the last matching closing bracket."""
    starts = [i for i in (text.find('{'), text.find('[')) if i != -1]
    if not starts:
        return ''
    start = min(starts)
    closing = '}' if text[start] == '{' else ']'
    end = text.rfind(closing)
    if end <= start:
        return ''
    return text[start:end + 1]


def parse_json_response(response: str) -> Any:
    """Parse an LLM response as JSON, trying several recovery strategies.

    Strategies, in order: strip leading/trailing code fences, take the first
    fenced block anywhere in the text, slice between the outermost brackets.

    Args:
        response: Raw LLM response

    Returns:
        Decoded JSON value

    Raises:
        JSONRecoveryError: If every strategy fails
    """
    if response is None:
        raise JSONRecoveryError('Empty response')

    candidates = [clean_json_response(response)]

    match = _FENCED_BLOCK.search(response)
    if match:
        candidates.append(match.group(1).strip())

    candidates.append(_outermost_slice(response))

    last_error = None
    for candidate in candidates:
        if not candidate:
            continue
        try:
            return json.loads(candidate)
        except json.JSONDecodeError as e:
            last_error = e

    raise JSONRecoveryError(f'Could not recover JSON from response: {last_error}')
