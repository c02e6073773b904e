"""
JSON utilities for LLM responses and JSON-typed store columns.
"""

import json
from typing import Any


def clean_json_response(response: str) -> str:
    """Clean LLM response by removing code block markers.

    Args:
        response: Raw LLM response

    Returns:
        Cleaned JSON string
    """
    response = response.strip()

    if response.startswith('```json'):
        response = response[7:]
    elif response.startswith('```'):
        response = response[3:]

    if response.endswith('```'):
        response = response[:-3]

    return response.strip()


def dump_column(value: Any) -> str:
    """Serialize a value for a TEXT column holding JSON."""
    return json.dumps(value, ensure_ascii=False, default=str)


def load_column(value: Any, default: Any = None) -> Any:
    """Deserialize a JSON TEXT column, falling back to default on empty or bad data."""
    if value is None or value == '':
        return default
    if not isinstance(value, str):
        return value
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return default
