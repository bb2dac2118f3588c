"""JSON envelopes for the API layer."""

from typing import Dict, Any

from adogalo.core.documents import _serialize_value


def success(result: Dict[str, Any] = None, **extra) -> Dict[str, Any]:
    """Wrap an engine result as {"success": true, ...}; documents are serialized."""
    body = {"success": True}
    for key, value in {**(result or {}), **extra}.items():
        body[key] = _serialize_value(value)
    return body
