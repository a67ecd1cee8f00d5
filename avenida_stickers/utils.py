import json
import re
from datetime import datetime
from typing import List, Optional

from bson import ObjectId
from bson.errors import InvalidId


def normalize_object_id_value(value) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


def normalize_object_id_list(values) -> List[ObjectId]:
    normalized_ids: List[ObjectId] = []
    if not values:
        return normalized_ids
    for value in values:
        object_id = normalize_object_id_value(value)
        if object_id and object_id not in normalized_ids:
            normalized_ids.append(object_id)
    return normalized_ids


def format_timestamp(value) -> Optional[str]:
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is not None:
        return value.isoformat()
    return f"{value.isoformat()}Z"


def parse_json_list(value) -> list:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        return [item for item in value]
    if isinstance(value, (bytes, bytearray)):
        try:
            value = value.decode("utf-8")
        except UnicodeDecodeError:
            value = ""
    if isinstance(value, str):
        candidate = value.strip()
        if not candidate:
            return []
        try:
            parsed = json.loads(candidate)
            if isinstance(parsed, list):
                return parsed
        except (json.JSONDecodeError, ValueError):
            pass
        if "," in candidate:
            return [
                item.strip()
                for item in candidate.split(",")
                if item and item.strip()
            ]
        return [candidate]
    return []


def parse_boolean(value) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    normalized = str(value or "").strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return None


def safe_positive_int(value, default: int = 0) -> int:
    try:
        numeric = int(float(value))
    except (TypeError, ValueError):
        return default
    return max(default, numeric)


def escape_search_term(value: Optional[str]):
    term = str(value or "").strip()
    if not term:
        return None
    return re.compile(re.escape(term), re.IGNORECASE)
