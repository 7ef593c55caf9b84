"""
JSON utilities for parsing structured LLM responses.
"""

import json
from typing import Any, Dict


def clean_json_response(response: str) -> str:
    """Strip code fences and any prose surrounding the outermost JSON object.

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

    response = response.strip()

    # Models occasionally add a sentence before or after the object
    start = response.find('{')
    end = response.rfind('}')
    if start != -1 and end > start:
        response = response[start:end + 1]

    return response


def parse_json_object(response: str) -> Dict[str, Any]:
    """Parse an LLM response that must contain a single JSON object.

    Raises:
        ValueError: If the response is not valid JSON or not an object
    """
    cleaned = clean_json_response(response)
    if not cleaned:
        return {}

    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise ValueError(f'Invalid JSON in model response: {e}') from e

    if not isinstance(data, dict):
        raise ValueError(f'Expected JSON object, got {type(data).__name__}')
    return data
