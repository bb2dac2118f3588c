"""MongoDB document helpers shared by the engines and the API layer."""

from bson import ObjectId, Decimal128
from datetime import datetime
from typing import Dict, Any, Optional

from adogalo.core.errors import NotFoundError


def to_object_id(value: Any, not_found_message: str = "Data tidak ditemukan") -> ObjectId:
    """Parse an id from the outside; malformed ids resolve to not-found."""
    if isinstance(value, ObjectId):
        return value
    if isinstance(value, str) and ObjectId.is_valid(value):
        return ObjectId(value)
    raise NotFoundError(not_found_message, details={"id": str(value)})


def _serialize_value(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, Decimal128):
        return float(value.to_decimal())
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return serialize_doc(value)
    if isinstance(value, list):
        return [_serialize_value(item) for item in value]
    return value


def serialize_doc(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Serialize MongoDB document for JSON response (ObjectId, Decimal128, datetime).

    `_id` is exposed as `id`.
    """
    if doc is None:
        return None
    result = {}
    for key, value in doc.items():
        if key == "_id":
            result["id"] = _serialize_value(value)
        else:
            result[key] = _serialize_value(value)
    return result
