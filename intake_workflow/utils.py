from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId


def utc_now() -> datetime:
    """Naive UTC, matching what pymongo hands back for stored datetimes."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_object_id(value: Union[str, ObjectId]) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None


def convert_objectid(doc: Union[Dict, List, Any]) -> Union[Dict, List, Any]:
    if doc is None:
        return doc

    if isinstance(doc, ObjectId):
        return str(doc)

    if isinstance(doc, list):
        return [convert_objectid(item) for item in doc]

    if isinstance(doc, dict):
        return {key: convert_objectid(value) for key, value in doc.items()}

    if isinstance(doc, datetime):
        return doc.isoformat()

    return doc


def mask_id(value: Optional[str]) -> str:
    if not value:
        return ""
    value = str(value)
    return f"...{value[-6:]}" if len(value) > 6 else value


def mask_phone(phone: Optional[str]) -> str:
    if not phone:
        return ""
    digits = "".join(ch for ch in str(phone) if ch.isdigit())
    return f"***-***-{digits[-4:]}" if len(digits) >= 4 else "***"
