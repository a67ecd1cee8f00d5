"""Lifecycle of personalized stickers.

A personalized sticker is created ``temporary`` when it is dropped into a
cart, or ``active`` when an administrator uploads it directly. Confirming a
cart turns its temporary stickers ``active``. Publishing moves the record
into the public catalog under the same display id and deletes it here.
Temporary stickers whose ``expires_at`` has passed are removed by the
expiry sweep; active stickers are kept until they are published or deleted.
A publish interrupted half-way leaves the record ``publishing``; it stays
listed so the publish can be retried.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from pymongo.errors import PyMongoError

from . import images
from .catalog import PERSONALIZED_CATEGORY, unique_categories
from .errors import ApiError, not_found, persistence_error, validation_error
from .utils import format_timestamp, normalize_object_id_list, normalize_object_id_value

STATUS_TEMPORARY = "temporary"
STATUS_ACTIVE = "active"
STATUS_PUBLISHING = "publishing"
STATUS_PUBLISHED = "published"
STATUSES = (STATUS_TEMPORARY, STATUS_ACTIVE, STATUS_PUBLISHING, STATUS_PUBLISHED)

SOURCE_UPLOAD = "upload"
SOURCE_PINTEREST = "pinterest"

TEMPORARY_LIFETIME = timedelta(hours=1)


def serialize_personalized_sticker(document) -> Dict:
    if not document:
        return {}
    serialized = {
        "id": str(document.get("_id")),
        "displayId": document.get("display_id", ""),
        "imagePath": document.get("image_path", ""),
        "source": document.get("source", ""),
        "status": document.get("status", ""),
        "expiresAt": format_timestamp(document.get("expires_at")),
        "createdAt": format_timestamp(document.get("created_at")),
        "updatedAt": format_timestamp(document.get("updated_at")),
    }
    if document.get("original_url"):
        serialized["originalUrl"] = document["original_url"]
    return serialized


class PersonalizedStickerService:
    def __init__(
        self,
        database,
        allocator,
        config_store,
        catalog,
        content_dir: str,
        logger: Optional[logging.Logger] = None,
        fetch_timeout: float = 10,
        download_timeout: float = 15,
        max_download_bytes: Optional[int] = None,
    ):
        self.collection = database.personalized_stickers
        self.allocator = allocator
        self.config_store = config_store
        self.catalog = catalog
        self.content_dir = content_dir
        self.logger = logger or logging.getLogger(__name__)
        self.fetch_timeout = fetch_timeout
        self.download_timeout = download_timeout
        self.max_download_bytes = max_download_bytes

    def expiration_for(self, status: str, now: Optional[datetime] = None) -> datetime:
        now = now or datetime.utcnow()
        if status == STATUS_TEMPORARY:
            return now + TEMPORARY_LIFETIME
        return now + timedelta(days=self.config_store.retention_days())

    def remove_image(self, image_path: Optional[str]):
        try:
            images.remove_image(self.content_dir, image_path)
        except OSError as exc:
            self.logger.warning("Unable to remove image %s: %s", image_path, exc)

    # --- Creation ---

    def _store(
        self,
        image_path: str,
        source: str,
        temporary: bool,
        original_url: Optional[str] = None,
    ) -> Tuple[Optional[Dict], Optional[ApiError]]:
        status = STATUS_TEMPORARY if temporary else STATUS_ACTIVE
        now = datetime.utcnow()
        document = {
            "image_path": image_path,
            "source": source,
            "status": status,
            "expires_at": self.expiration_for(status, now),
            "created_at": now,
            "updated_at": now,
        }
        if source == SOURCE_PINTEREST:
            document["original_url"] = original_url

        try:
            document["display_id"] = self.allocator.next_personalized_id()
            insert_result = self.collection.insert_one(document)
        except PyMongoError as exc:
            self.remove_image(image_path)
            self.logger.error("Unable to create personalized sticker: %s", exc)
            return None, persistence_error(
                "Error creating the personalized sticker.", str(exc)
            )

        document["_id"] = insert_result.inserted_id
        self.logger.info(
            "Created %s personalized sticker %s from %s",
            status,
            document["display_id"],
            source,
        )
        return document, None

    def create_from_upload(self, image_file, temporary: bool = True):
        data, upload_error = images.read_image_upload(image_file)
        if upload_error:
            return None, upload_error

        image_path, optimize_error = images.optimize_image(
            data, self.content_dir, "personalized"
        )
        if optimize_error:
            return None, optimize_error
        return self._store(image_path, SOURCE_UPLOAD, temporary)

    def create_from_pinterest(self, pinterest_url, temporary: bool = True):
        pinterest_url = str(pinterest_url or "").strip()
        if not pinterest_url:
            return None, validation_error("A Pinterest URL is required.")

        image_url, fetch_error = images.extract_pinterest_image_url(
            pinterest_url, timeout=self.fetch_timeout
        )
        if fetch_error:
            self.logger.warning(
                "Pinterest lookup failed for %s: %s %s",
                pinterest_url,
                fetch_error.message,
                fetch_error.detail,
            )
            return None, fetch_error

        data, download_error = images.download_image(
            image_url,
            timeout=self.download_timeout,
            max_bytes=self.max_download_bytes,
        )
        if download_error:
            self.logger.warning(
                "Image download failed for %s: %s", image_url, download_error.detail
            )
            return None, download_error

        pin_id = images.extract_pin_id(pinterest_url) or ""
        image_path, optimize_error = images.optimize_image(
            data, self.content_dir, f"pinterest_{pin_id}"
        )
        if optimize_error:
            return None, optimize_error
        return self._store(image_path, SOURCE_PINTEREST, temporary, pinterest_url)

    # --- Transitions ---

    def confirm(self, sticker_ids, now: Optional[datetime] = None) -> Dict[str, int]:
        requested = list(sticker_ids or [])
        object_ids = normalize_object_id_list(requested)
        if not object_ids:
            return {"requested": len(requested), "confirmed": 0}

        now = now or datetime.utcnow()
        result = self.collection.update_many(
            {"_id": {"$in": object_ids}, "status": STATUS_TEMPORARY},
            {
                "$set": {
                    "status": STATUS_ACTIVE,
                    "expires_at": self.expiration_for(STATUS_ACTIVE, now),
                    "updated_at": now,
                }
            },
        )
        self.logger.info(
            "Confirmed %s of %s temporary stickers", result.modified_count, len(requested)
        )
        return {"requested": len(requested), "confirmed": result.modified_count}

    def _mark_publishing(self, document, categories: List[str]):
        result = self.collection.update_one(
            {"_id": document["_id"], "status": document["status"]},
            {
                "$set": {
                    "status": STATUS_PUBLISHING,
                    "status_before_publish": document["status"],
                    "publish_categories": categories,
                    "updated_at": datetime.utcnow(),
                }
            },
        )
        return result.modified_count == 1

    def _restore_after_failed_publish(self, document):
        previous_status = document.get("status_before_publish") or document.get("status")
        if previous_status not in (STATUS_TEMPORARY, STATUS_ACTIVE):
            previous_status = STATUS_ACTIVE
        self.collection.update_one(
            {"_id": document["_id"], "status": STATUS_PUBLISHING},
            {
                "$set": {"status": previous_status, "updated_at": datetime.utcnow()},
                "$unset": {"status_before_publish": "", "publish_categories": ""},
            },
        )

    def publish(self, sticker_id, categories=None):
        """Move a personalized sticker into the public catalog.

        The record is flagged ``publishing`` before the catalog entry is
        written, so a publish interrupted half-way is completed by the next
        call instead of leaving two copies behind.
        """
        object_id = normalize_object_id_value(sticker_id)
        if not object_id:
            return None, validation_error("Invalid personalized sticker identifier.")

        requested_categories, category_error = self.catalog.validate_categories(
            categories
        )
        if category_error:
            return None, category_error

        document = self.collection.find_one({"_id": object_id})
        if not document:
            return None, not_found("Personalized sticker not found.")

        status = document.get("status")
        if status == STATUS_PUBLISHED:
            return None, validation_error("This sticker has already been published.")

        final_categories = unique_categories(
            [PERSONALIZED_CATEGORY]
            + list(document.get("publish_categories") or [])
            + requested_categories
        )

        if status != STATUS_PUBLISHING:
            if not self._mark_publishing(document, final_categories):
                document = self.collection.find_one({"_id": object_id})
                if not document:
                    return None, not_found("Personalized sticker not found.")
                if document.get("status") != STATUS_PUBLISHING:
                    return None, ApiError(
                        "The sticker changed while publishing. Please try again.", 409
                    )
                status = STATUS_PUBLISHING
            else:
                document["status_before_publish"] = status
        else:
            self.logger.warning(
                "Resuming interrupted publish of %s", document.get("display_id")
            )

        display_id = document.get("display_id")
        sticker_document = self.catalog.stickers.find_one({"display_id": display_id})
        if sticker_document and status != STATUS_PUBLISHING:
            self._restore_after_failed_publish(document)
            return None, persistence_error(
                f"A catalog sticker with id {display_id} already exists."
            )

        if not sticker_document:
            sticker_document, publish_error = self.catalog.insert_published(
                display_id, document.get("image_path"), final_categories
            )
            if publish_error:
                self._restore_after_failed_publish(document)
                return None, publish_error

        self.collection.delete_one({"_id": object_id})
        self.logger.info(
            "Published personalized sticker %s with categories: %s",
            display_id,
            ", ".join(sticker_document.get("categories") or []),
        )
        return sticker_document, None

    def delete(self, sticker_id) -> Tuple[Optional[Dict], Optional[ApiError]]:
        document, load_error = self.get(sticker_id)
        if load_error:
            return None, load_error

        self.remove_image(document.get("image_path"))
        self.collection.delete_one({"_id": document["_id"]})
        self.logger.info("Deleted personalized sticker %s", document.get("display_id"))
        return document, None

    # --- Queries ---

    def get(self, sticker_id) -> Tuple[Optional[Dict], Optional[ApiError]]:
        object_id = normalize_object_id_value(sticker_id)
        if not object_id:
            return None, validation_error("Invalid personalized sticker identifier.")
        document = self.collection.find_one({"_id": object_id})
        if not document:
            return None, not_found("Personalized sticker not found.")
        return document, None

    def list_visible(self, now: Optional[datetime] = None) -> List[Dict]:
        now = now or datetime.utcnow()
        cursor = self.collection.find(
            {
                "$or": [
                    {"status": {"$in": [STATUS_ACTIVE, STATUS_PUBLISHING]}},
                    {"status": STATUS_TEMPORARY, "expires_at": {"$gt": now}},
                ]
            }
        ).sort("created_at", -1)
        return list(cursor)

    def count_by_status(self) -> Dict[str, int]:
        return {
            status: self.collection.count_documents({"status": status})
            for status in (STATUS_TEMPORARY, STATUS_ACTIVE, STATUS_PUBLISHING)
        }

    # --- Expiry ---

    def sweep_expired(self, now: Optional[datetime] = None) -> Dict[str, object]:
        if not self.config_store.auto_delete_enabled():
            self.logger.info("Automatic deletion of personalized stickers is disabled")
            return {
                "deleted": 0,
                "errors": [],
                "enabled": False,
                "message": "Automatic deletion is disabled.",
            }

        now = now or datetime.utcnow()
        expired = list(
            self.collection.find(
                {"status": STATUS_TEMPORARY, "expires_at": {"$lte": now}}
            )
        )

        deleted = 0
        errors: List[str] = []
        for document in expired:
            label = document.get("display_id") or str(document.get("_id"))
            self.remove_image(document.get("image_path"))
            try:
                self.collection.delete_one({"_id": document["_id"]})
            except PyMongoError as exc:
                self.logger.error("Unable to delete expired sticker %s: %s", label, exc)
                errors.append(f"Error deleting {label}: {exc}")
                continue
            deleted += 1
            self.logger.info("Expired temporary sticker deleted: %s", label)

        if deleted:
            self.logger.info("Expiry sweep removed %s temporary stickers", deleted)
        return {
            "deleted": deleted,
            "errors": errors,
            "enabled": True,
            "message": f"{deleted} expired temporary stickers deleted.",
        }
