import logging
from datetime import datetime
from typing import Dict, List, Optional

from pymongo.errors import PyMongoError

RETENTION_DAYS_KEY = "personalized_stickers_auto_delete_days"
AUTO_DELETE_KEY = "enable_auto_delete_personalized"
STICKER_SIZES_KEY = "sticker_sizes"

DEFAULT_RETENTION_DAYS = 15
ALLOWED_VALUE_TYPES = {"number", "string", "boolean", "object", "array"}

DEFAULT_STICKER_SIZES = {
    "sizes": [
        {"id": "small", "name": "Chico", "dimensions": "5x5 cm", "price": 500},
        {"id": "medium", "name": "Mediano", "dimensions": "7x7 cm", "price": 800},
        {"id": "large", "name": "Grande", "dimensions": "10x10 cm", "price": 1200},
    ],
    "currency": "ARS",
}

DEFAULT_SETTINGS = [
    {
        "key": RETENTION_DAYS_KEY,
        "value": DEFAULT_RETENTION_DAYS,
        "type": "number",
        "description": "Days a confirmed personalized sticker is kept before review.",
    },
    {
        "key": AUTO_DELETE_KEY,
        "value": True,
        "type": "boolean",
        "description": "Automatically delete expired temporary personalized stickers.",
    },
    {
        "key": STICKER_SIZES_KEY,
        "value": DEFAULT_STICKER_SIZES,
        "type": "object",
        "description": "Sticker sizes and prices offered in the storefront.",
    },
]


def infer_value_type(value) -> str:
    # bool is a subclass of int, check it first
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (list, tuple)):
        return "array"
    if isinstance(value, dict):
        return "object"
    raise ValueError(f"Unsupported configuration value: {value!r}")


class ConfigStore:
    """Typed key/value settings kept in the ``config`` collection.

    Reads never raise: a missing key or a database failure yields the
    caller's default. Writes raise so the caller can report them.
    """

    def __init__(self, collection, logger: Optional[logging.Logger] = None):
        self.collection = collection
        self.logger = logger or logging.getLogger(__name__)

    def get_value(self, key: str, default=None):
        try:
            document = self.collection.find_one({"key": key})
        except PyMongoError as exc:
            self.logger.error("Unable to read config value %s: %s", key, exc)
            return default
        if not document or "value" not in document:
            return default
        return document["value"]

    def set_value(
        self,
        key: str,
        value,
        value_type: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Dict:
        normalized_key = str(key or "").strip()
        if not normalized_key:
            raise ValueError("A configuration key is required.")

        inferred_type = infer_value_type(value)
        if value_type is None:
            value_type = inferred_type
        if value_type not in ALLOWED_VALUE_TYPES:
            raise ValueError(f"Unknown configuration type: {value_type}")
        if value_type != inferred_type:
            raise ValueError(
                f"Value for {normalized_key} is a {inferred_type}, expected {value_type}."
            )

        now = datetime.utcnow()
        fields = {"value": value, "type": value_type, "updated_at": now}
        if description is not None:
            fields["description"] = description

        self.collection.update_one(
            {"key": normalized_key},
            {"$set": fields, "$setOnInsert": {"created_at": now}},
            upsert=True,
        )
        return self.collection.find_one({"key": normalized_key})

    def initialize_defaults(self) -> List[str]:
        created: List[str] = []
        for setting in DEFAULT_SETTINGS:
            if self.collection.find_one({"key": setting["key"]}):
                continue
            self.set_value(
                setting["key"],
                setting["value"],
                setting["type"],
                setting["description"],
            )
            created.append(setting["key"])
            self.logger.info(
                "Initialized config %s = %s", setting["key"], setting["value"]
            )
        return created

    def all_values(self) -> Dict[str, object]:
        values = {setting["key"]: setting["value"] for setting in DEFAULT_SETTINGS}
        try:
            for document in self.collection.find():
                if document.get("key"):
                    values[document["key"]] = document.get("value")
        except PyMongoError as exc:
            self.logger.error("Unable to list config values: %s", exc)
        return values

    def retention_days(self) -> int:
        raw_value = self.get_value(RETENTION_DAYS_KEY, DEFAULT_RETENTION_DAYS)
        try:
            days = int(raw_value)
        except (TypeError, ValueError):
            return DEFAULT_RETENTION_DAYS
        return days if days > 0 else DEFAULT_RETENTION_DAYS

    def auto_delete_enabled(self) -> bool:
        return bool(self.get_value(AUTO_DELETE_KEY, True))
