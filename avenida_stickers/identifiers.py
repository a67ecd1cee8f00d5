import re
from typing import Optional

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

DISPLAY_ID_DIGITS = 4
PERSONALIZED_PREFIX = "P"

STICKER_SERIES = "stickers"
PERSONALIZED_SERIES = "personalized"


def format_display_id(number: int, prefix: str = "") -> str:
    return f"{prefix}{int(number):0{DISPLAY_ID_DIGITS}d}"


def parse_display_id(value, prefix: str = "") -> Optional[int]:
    candidate = str(value or "").strip()
    match = re.fullmatch(rf"{re.escape(prefix)}(\d{{{DISPLAY_ID_DIGITS},}})", candidate)
    if not match:
        return None
    return int(match.group(1))


def display_id_pattern(prefix: str = "") -> str:
    return rf"^{re.escape(prefix)}\d{{{DISPLAY_ID_DIGITS},}}$"


def is_sticker_display_id(value) -> bool:
    return parse_display_id(value) is not None or (
        parse_display_id(value, PERSONALIZED_PREFIX) is not None
    )


def scan_max(collection, prefix: str = "", field: str = "display_id") -> int:
    """Highest number already used in ``collection`` for the given series."""
    highest = 0
    cursor = collection.find(
        {field: {"$regex": display_id_pattern(prefix)}}, {field: 1}
    )
    for document in cursor:
        number = parse_display_id(document.get(field), prefix)
        if number is not None and number > highest:
            highest = number
    return highest


class IdentifierAllocator:
    """Hands out display ids from per-series counters in ``counters``.

    Each allocation is a single atomic ``$inc``. The counter is seeded from
    the highest id already stored the first time a series is used, so ids
    are never handed out twice even after their records are deleted.
    """

    def __init__(self, database):
        self.db = database
        self.counters = database.counters

    def _seed_value(self, series: str) -> int:
        if series == PERSONALIZED_SERIES:
            # published P ids move to the catalog once their source is deleted
            return max(
                scan_max(self.db.personalized_stickers, PERSONALIZED_PREFIX),
                scan_max(self.db.stickers, PERSONALIZED_PREFIX),
            )
        return scan_max(self.db.stickers)

    def _ensure_counter(self, series: str):
        if self.counters.find_one({"_id": series}):
            return
        seed = self._seed_value(series)
        try:
            self.counters.update_one(
                {"_id": series}, {"$setOnInsert": {"seq": seed}}, upsert=True
            )
        except DuplicateKeyError:
            # another allocator seeded it first
            pass

    def next_value(self, series: str) -> int:
        self._ensure_counter(series)
        counter = self.counters.find_one_and_update(
            {"_id": series},
            {"$inc": {"seq": 1}},
            return_document=ReturnDocument.AFTER,
        )
        return int(counter["seq"])

    def next_sticker_id(self) -> str:
        return format_display_id(self.next_value(STICKER_SERIES))

    def next_personalized_id(self) -> str:
        return format_display_id(
            self.next_value(PERSONALIZED_SERIES), PERSONALIZED_PREFIX
        )
