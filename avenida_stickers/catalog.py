import logging
import math
import re
import unicodedata
from datetime import datetime
from typing import Dict, List, Optional, Tuple
from uuid import uuid4

from pymongo.errors import DuplicateKeyError, PyMongoError

from . import images
from .errors import ApiError, not_found, persistence_error, validation_error
from .identifiers import is_sticker_display_id
from .utils import (
    escape_search_term,
    format_timestamp,
    normalize_object_id_value,
    safe_positive_int,
)

PERSONALIZED_CATEGORY = "personalizados"
DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100
RECENT_STICKERS_LIMIT = 5


def normalize_category_name(value: Optional[str]) -> str:
    if value is None:
        return ""
    condensed = " ".join(str(value).split())
    return condensed.strip().lower()


def slugify_category_name(value: Optional[str]) -> str:
    normalized_name = normalize_category_name(value)
    ascii_name = (
        unicodedata.normalize("NFKD", normalized_name)
        .encode("ascii", "ignore")
        .decode("ascii")
    )
    slug = re.sub(r"[^a-z0-9]+", "-", ascii_name).strip("-")
    if not slug:
        slug = uuid4().hex
    return slug


def unique_categories(names) -> List[str]:
    result: List[str] = []
    for name in names or []:
        normalized = normalize_category_name(name)
        if normalized and normalized not in result:
            result.append(normalized)
    return result


def serialize_sticker(sticker_document) -> Dict:
    if not sticker_document:
        return {}
    return {
        "id": str(sticker_document.get("_id")),
        "displayId": sticker_document.get("display_id", ""),
        "imagePath": sticker_document.get("image_path", ""),
        "categories": list(sticker_document.get("categories") or []),
        "createdAt": format_timestamp(sticker_document.get("created_at")),
        "updatedAt": format_timestamp(sticker_document.get("updated_at")),
    }


class CatalogService:
    """Published stickers and the category registry they are filed under."""

    def __init__(
        self,
        database,
        allocator,
        content_dir: str,
        logger: Optional[logging.Logger] = None,
        fetch_timeout: float = 10,
        download_timeout: float = 15,
        max_download_bytes: Optional[int] = None,
    ):
        self.db = database
        self.stickers = database.stickers
        self.categories = database.categories
        self.allocator = allocator
        self.content_dir = content_dir
        self.logger = logger or logging.getLogger(__name__)
        self.fetch_timeout = fetch_timeout
        self.download_timeout = download_timeout
        self.max_download_bytes = max_download_bytes

    # --- Categories ---

    def ensure_default_categories(self):
        self.categories.update_one(
            {"name": PERSONALIZED_CATEGORY},
            {
                "$setOnInsert": {
                    "name": PERSONALIZED_CATEGORY,
                    "slug": slugify_category_name(PERSONALIZED_CATEGORY),
                    "created_at": datetime.utcnow(),
                }
            },
            upsert=True,
        )

    def category_names(self) -> List[str]:
        return [
            document["name"]
            for document in self.categories.find().sort("name", 1)
            if document.get("name")
        ]

    def validate_categories(self, names) -> Tuple[Optional[List[str]], Optional[ApiError]]:
        requested = unique_categories(names)
        if not requested:
            return [], None
        known = set(self.category_names())
        unknown = [name for name in requested if name not in known]
        if unknown:
            return None, validation_error(
                "Unknown categories: "
                + ", ".join(unknown)
                + ". Available categories: "
                + ", ".join(sorted(known))
            )
        return requested, None

    def sticker_counts_by_category(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        # $unwind drops stickers without categories
        pipeline = [
            {"$unwind": "$categories"},
            {"$group": {"_id": "$categories", "count": {"$sum": 1}}},
        ]
        try:
            for entry in self.stickers.aggregate(pipeline):
                category = entry.get("_id")
                if not category:
                    continue
                counts[category] = int(entry.get("count", 0) or 0)
        except PyMongoError as exc:
            self.logger.warning("Unable to count stickers per category: %s", exc)
        return counts

    def add_category(self, name) -> Tuple[Optional[Dict], Optional[ApiError]]:
        normalized_name = normalize_category_name(name)
        if len(normalized_name) < 2:
            return None, validation_error(
                "Please provide a category name with at least two characters."
            )
        if self.categories.find_one({"name": normalized_name}):
            return None, validation_error("That category already exists.")

        document = {
            "name": normalized_name,
            "slug": slugify_category_name(normalized_name),
            "created_at": datetime.utcnow(),
        }
        try:
            insert_result = self.categories.insert_one(document)
        except DuplicateKeyError:
            return None, validation_error("That category already exists.")
        document["_id"] = insert_result.inserted_id
        self.logger.info("Created category %s", normalized_name)
        return document, None

    def delete_category(self, name) -> Tuple[Optional[int], Optional[ApiError]]:
        normalized_name = normalize_category_name(name)
        if normalized_name == PERSONALIZED_CATEGORY:
            return None, validation_error(
                f'The "{PERSONALIZED_CATEGORY}" category is required and cannot be removed.'
            )
        category_document = self.categories.find_one({"name": normalized_name})
        if not category_document:
            return None, not_found("Category not found.")

        self.categories.delete_one({"_id": category_document["_id"]})
        result = self.stickers.update_many(
            {"categories": normalized_name},
            {
                "$pull": {"categories": normalized_name},
                "$set": {"updated_at": datetime.utcnow()},
            },
        )
        self.logger.info(
            "Deleted category %s (removed from %s stickers)",
            normalized_name,
            result.modified_count,
        )
        return result.modified_count, None

    # --- Stickers ---

    def fetch_sticker(self, sticker_id) -> Tuple[Optional[Dict], Optional[ApiError]]:
        object_id = normalize_object_id_value(sticker_id)
        if not object_id:
            return None, validation_error("Invalid sticker identifier.")
        sticker_document = self.stickers.find_one({"_id": object_id})
        if not sticker_document:
            return None, not_found("Sticker not found.")
        return sticker_document, None

    def build_filter(self, categories=None, search=None) -> Dict:
        query: Dict[str, object] = {}
        requested_categories = unique_categories(categories)
        if requested_categories:
            query["categories"] = {"$in": requested_categories}
        pattern = escape_search_term(search)
        if pattern is not None:
            query["$or"] = [{"display_id": pattern}, {"categories": pattern}]
        return query

    def list_stickers(self, categories=None, search=None, page=1, limit=DEFAULT_PAGE_SIZE):
        page = safe_positive_int(page, 1)
        limit = min(safe_positive_int(limit, 1), MAX_PAGE_SIZE)
        query = self.build_filter(categories, search)

        total = self.stickers.count_documents(query)
        total_pages = math.ceil(total / limit) if total else 0
        cursor = (
            self.stickers.find(query)
            .sort([("created_at", -1), ("_id", -1)])
            .skip((page - 1) * limit)
            .limit(limit)
        )
        pagination = {
            "currentPage": page,
            "totalPages": total_pages,
            "totalStickers": total,
            "limit": limit,
            "hasNextPage": page < total_pages,
            "hasPrevPage": page > 1,
        }
        return list(cursor), pagination

    def search_stickers(self, term) -> Tuple[Optional[List[Dict]], Optional[ApiError]]:
        if escape_search_term(term) is None:
            return None, validation_error("A search term is required.")
        query = self.build_filter(search=term)
        return list(self.stickers.find(query).sort("created_at", -1)), None

    def _insert_sticker(self, display_id: str, image_path: str, categories: List[str]):
        now = datetime.utcnow()
        document = {
            "display_id": display_id,
            "image_path": image_path,
            "categories": categories,
            "created_at": now,
            "updated_at": now,
        }
        insert_result = self.stickers.insert_one(document)
        document["_id"] = insert_result.inserted_id
        return document

    def _store_new_sticker(self, image_path: str, categories) -> Tuple[Optional[Dict], Optional[ApiError]]:
        try:
            document = self._insert_sticker(
                self.allocator.next_sticker_id(), image_path, categories
            )
        except PyMongoError as exc:
            self.remove_image(image_path)
            self.logger.error("Unable to create sticker: %s", exc)
            return None, persistence_error("Error creating the sticker.", str(exc))
        self.logger.info("Created sticker %s", document["display_id"])
        return document, None

    def create_sticker(self, image_file, categories=None):
        resolved_categories, category_error = self.validate_categories(categories)
        if category_error:
            return None, category_error

        image_path, image_error = images.save_upload(image_file, self.content_dir)
        if image_error:
            return None, image_error
        return self._store_new_sticker(image_path, resolved_categories)

    def create_sticker_from_pinterest(self, pinterest_url, categories=None):
        resolved_categories, category_error = self.validate_categories(categories)
        if category_error:
            return None, category_error

        image_url, fetch_error = images.extract_pinterest_image_url(
            pinterest_url, timeout=self.fetch_timeout
        )
        if fetch_error:
            return None, fetch_error
        data, download_error = images.download_image(
            image_url, timeout=self.download_timeout, max_bytes=self.max_download_bytes
        )
        if download_error:
            return None, download_error
        image_path, optimize_error = images.optimize_image(
            data, self.content_dir, f"pinterest_{images.extract_pin_id(pinterest_url) or ''}"
        )
        if optimize_error:
            return None, optimize_error
        return self._store_new_sticker(image_path, resolved_categories)

    def update_sticker(self, sticker_id, categories=None, image_file=None):
        sticker_document, load_error = self.fetch_sticker(sticker_id)
        if load_error:
            return None, load_error

        updates: Dict[str, object] = {}
        if categories is not None:
            resolved_categories, category_error = self.validate_categories(categories)
            if category_error:
                return None, category_error
            updates["categories"] = resolved_categories

        new_image_path = None
        if image_file is not None and getattr(image_file, "filename", ""):
            new_image_path, image_error = images.save_upload(image_file, self.content_dir)
            if image_error:
                return None, image_error
            updates["image_path"] = new_image_path

        if not updates:
            return sticker_document, None

        updates["updated_at"] = datetime.utcnow()
        try:
            self.stickers.update_one({"_id": sticker_document["_id"]}, {"$set": updates})
        except PyMongoError as exc:
            if new_image_path:
                self.remove_image(new_image_path)
            return None, persistence_error("Error updating the sticker.", str(exc))

        if new_image_path:
            self.remove_image(sticker_document.get("image_path"))
        return self.stickers.find_one({"_id": sticker_document["_id"]}), None

    def delete_sticker(self, sticker_id) -> Tuple[Optional[Dict], Optional[ApiError]]:
        sticker_document, load_error = self.fetch_sticker(sticker_id)
        if load_error:
            return None, load_error
        self.stickers.delete_one({"_id": sticker_document["_id"]})
        self.remove_image(sticker_document.get("image_path"))
        self.logger.info("Deleted sticker %s", sticker_document.get("display_id"))
        return sticker_document, None

    def insert_published(
        self, display_id: str, image_path: str, categories: List[str]
    ) -> Tuple[Optional[Dict], Optional[ApiError]]:
        if not is_sticker_display_id(display_id):
            return None, validation_error(f"Invalid sticker identifier: {display_id}")
        try:
            return self._insert_sticker(display_id, image_path, categories), None
        except PyMongoError as exc:
            self.logger.error("Unable to publish sticker %s: %s", display_id, exc)
            return None, persistence_error("Error publishing the sticker.", str(exc))

    def remove_image(self, image_path: Optional[str]):
        try:
            images.remove_image(self.content_dir, image_path)
        except OSError as exc:
            self.logger.warning("Unable to remove image %s: %s", image_path, exc)

    # --- Admin ---

    def dashboard(self) -> Dict:
        category_counts = self.sticker_counts_by_category()
        uncategorized = self.stickers.count_documents(
            {"$or": [{"categories": {"$exists": False}}, {"categories": {"$size": 0}}]}
        )
        category_stats = [
            {"category": name, "count": count}
            for name, count in sorted(
                category_counts.items(), key=lambda item: (-item[1], item[0])
            )
        ]
        if uncategorized:
            category_stats.append({"category": None, "count": uncategorized})

        recent = self.stickers.find().sort("created_at", -1).limit(RECENT_STICKERS_LIMIT)
        return {
            "totalStickers": self.stickers.count_documents({}),
            "totalCategories": self.categories.count_documents({}),
            "categoryStats": category_stats,
            "recentStickers": [serialize_sticker(document) for document in recent],
        }

    def reset_catalog(self) -> Dict[str, int]:
        removed_images = 0
        personalized_collection = self.db.personalized_stickers
        for collection in (self.stickers, personalized_collection):
            for document in collection.find({}, {"image_path": 1}):
                if document.get("image_path"):
                    self.remove_image(document["image_path"])
                    removed_images += 1

        stickers_result = self.stickers.delete_many({})
        personalized_result = personalized_collection.delete_many({})
        self.logger.warning(
            "Catalog reset: %s stickers and %s personalized stickers removed",
            stickers_result.deleted_count,
            personalized_result.deleted_count,
        )
        return {
            "stickers": stickers_result.deleted_count,
            "personalizedStickers": personalized_result.deleted_count,
            "images": removed_images,
        }
