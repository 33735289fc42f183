# healthchain/mongo.py
from datetime import datetime
from typing import Any, Dict, Optional

from bson import ObjectId
from bson.errors import InvalidId

from healthchain.errors import ValidationError


def to_object_id(value: Any, name: str = "id") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError) as e:
        raise ValidationError(f"Invalid {name}: {value!r}") from e


def serialize_doc(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """ObjectIds become strings and ``_id`` is exposed as ``id``."""
    if doc is None:
        return None

    def convert(value):
        if isinstance(value, ObjectId):
            return str(value)
        if isinstance(value, dict):
            return {k: convert(v) for k, v in value.items()}
        if isinstance(value, list):
            return [convert(v) for v in value]
        if isinstance(value, datetime):
            return value.isoformat()
        return value

    out = {k: convert(v) for k, v in doc.items() if k not in ("_id", "password_hash")}
    if "_id" in doc:
        out["id"] = convert(doc["_id"])
    return out


def page_bounds(page: int, limit: int):
    if page < 1 or limit < 1:
        raise ValidationError("page and limit must be >= 1")
    return (page - 1) * limit, limit
