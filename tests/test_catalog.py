"""Tests for the catalog store and the category registry."""

import os
from datetime import datetime, timedelta

import pytest
from bson import ObjectId

from avenida_stickers.catalog import (
    PERSONALIZED_CATEGORY,
    normalize_category_name,
    serialize_sticker,
    slugify_category_name,
    unique_categories,
)
from conftest import uploaded_files


def _seed_stickers(catalog, count, categories=None):
    base = datetime(2024, 1, 1)
    documents = [
        {
            "display_id": f"{number:04d}",
            "image_path": f"uploads/{number}.png",
            "categories": list(categories or []),
            "created_at": base + timedelta(minutes=number),
            "updated_at": base + timedelta(minutes=number),
        }
        for number in range(1, count + 1)
    ]
    catalog.stickers.insert_many(documents)
    return documents


class TestCategoryHelpers:
    def test_normalize_collapses_whitespace(self):
        assert normalize_category_name("  Dibujos   Animados ") == "dibujos animados"
        assert normalize_category_name(None) == ""

    def test_slugify(self):
        assert slugify_category_name("Películas Clásicas") == "peliculas-clasicas"

    def test_unique_categories_keeps_order(self):
        assert unique_categories(["B", "a", "b", " ", None]) == ["b", "a"]


class TestCategoryRegistry:
    def test_personalized_category_is_seeded(self, catalog):
        assert catalog.category_names() == [PERSONALIZED_CATEGORY]

    def test_add_category(self, catalog):
        document, error = catalog.add_category("  Anime ")

        assert error is None
        assert document["name"] == "anime"
        assert catalog.category_names() == ["anime", PERSONALIZED_CATEGORY]

    @pytest.mark.parametrize("name", ["", "a", "   "])
    def test_add_category_requires_two_characters(self, catalog, name):
        _, error = catalog.add_category(name)

        assert error.status == 400

    def test_add_duplicate_category(self, catalog):
        catalog.add_category("anime")

        _, error = catalog.add_category("ANIME")

        assert error.status == 400

    def test_delete_category_pulls_it_from_stickers(self, catalog):
        catalog.add_category("anime")
        _seed_stickers(catalog, 2, ["anime", "retro"])

        removed, error = catalog.delete_category("anime")

        assert error is None
        assert removed == 2
        assert catalog.stickers.count_documents({"categories": "anime"}) == 0
        assert "anime" not in catalog.category_names()

    def test_personalized_category_cannot_be_deleted(self, catalog):
        _, error = catalog.delete_category("Personalizados")

        assert error.status == 400
        assert PERSONALIZED_CATEGORY in catalog.category_names()

    def test_delete_unknown_category(self, catalog):
        _, error = catalog.delete_category("ghost")

        assert error.status == 404

    def test_validate_categories(self, catalog):
        catalog.add_category("anime")

        assert catalog.validate_categories(["Anime"]) == (["anime"], None)
        assert catalog.validate_categories(None) == ([], None)
        resolved, error = catalog.validate_categories(["anime", "ghost"])
        assert resolved is None
        assert "ghost" in error.message

    def test_sticker_counts_by_category(self, catalog):
        _seed_stickers(catalog, 3, ["anime"])
        catalog.stickers.insert_one({"display_id": "0010", "categories": ["anime", "retro"]})

        assert catalog.sticker_counts_by_category() == {"anime": 4, "retro": 1}


class TestListing:
    def test_paginates_newest_first(self, catalog):
        _seed_stickers(catalog, 5)

        documents, pagination = catalog.list_stickers(page=1, limit=2)

        assert [document["display_id"] for document in documents] == ["0005", "0004"]
        assert pagination == {
            "currentPage": 1,
            "totalPages": 3,
            "totalStickers": 5,
            "limit": 2,
            "hasNextPage": True,
            "hasPrevPage": False,
        }

    def test_last_page(self, catalog):
        _seed_stickers(catalog, 5)

        documents, pagination = catalog.list_stickers(page=3, limit=2)

        assert [document["display_id"] for document in documents] == ["0001"]
        assert pagination["hasNextPage"] is False
        assert pagination["hasPrevPage"] is True

    def test_limit_is_capped(self, catalog):
        _, pagination = catalog.list_stickers(limit=1000)

        assert pagination["limit"] == 100

    def test_filters_by_category(self, catalog):
        _seed_stickers(catalog, 2, ["anime"])
        catalog.stickers.insert_one(
            {"display_id": "0099", "categories": ["retro"], "created_at": datetime(2024, 2, 1)}
        )

        documents, pagination = catalog.list_stickers(categories=["Retro"])

        assert [document["display_id"] for document in documents] == ["0099"]
        assert pagination["totalStickers"] == 1

    def test_search_by_display_id(self, catalog):
        _seed_stickers(catalog, 12)

        documents, error = catalog.search_stickers("0011")

        assert error is None
        assert [document["display_id"] for document in documents] == ["0011"]

    def test_search_escapes_regex(self, catalog):
        _seed_stickers(catalog, 3)

        documents, error = catalog.search_stickers(".*")

        assert error is None
        assert documents == []

    def test_search_requires_term(self, catalog):
        _, error = catalog.search_stickers("  ")

        assert error.status == 400


class TestStickerWrites:
    def test_create_sticker_allocates_numeric_id(self, catalog, upload, content_dir):
        catalog.add_category("anime")

        document, error = catalog.create_sticker(upload(), ["anime"])

        assert error is None
        assert document["display_id"] == "0001"
        assert document["categories"] == ["anime"]
        assert os.path.exists(os.path.join(content_dir, document["image_path"]))

    def test_create_rejects_unknown_category_before_writing(self, catalog, upload, content_dir):
        _, error = catalog.create_sticker(upload(), ["ghost"])

        assert error.status == 400
        assert uploaded_files(content_dir) == []

    def test_update_replaces_image_and_categories(self, catalog, upload, content_dir):
        catalog.add_category("retro")
        document, _ = catalog.create_sticker(upload())
        old_path = document["image_path"]

        updated, error = catalog.update_sticker(
            str(document["_id"]), categories=["retro"], image_file=upload(filename="new.png")
        )

        assert error is None
        assert updated["categories"] == ["retro"]
        assert updated["image_path"] != old_path
        assert not os.path.exists(os.path.join(content_dir, old_path))

    def test_update_without_changes_returns_document(self, catalog, upload):
        document, _ = catalog.create_sticker(upload())

        updated, error = catalog.update_sticker(str(document["_id"]))

        assert error is None
        assert updated["_id"] == document["_id"]

    def test_delete_removes_image(self, catalog, upload, content_dir):
        document, _ = catalog.create_sticker(upload())

        _, error = catalog.delete_sticker(str(document["_id"]))

        assert error is None
        assert catalog.stickers.count_documents({}) == 0
        assert uploaded_files(content_dir) == []

    def test_fetch_invalid_and_missing(self, catalog):
        assert catalog.fetch_sticker("xyz")[1].status == 400
        assert catalog.fetch_sticker(str(ObjectId()))[1].status == 404

    def test_insert_published_rejects_bad_display_id(self, catalog):
        _, error = catalog.insert_published("abc", "uploads/a.jpg", [])

        assert error.status == 400

    def test_insert_published_enforces_unique_display_id(self, catalog):
        catalog.insert_published("P0001", "uploads/a.jpg", [PERSONALIZED_CATEGORY])

        _, error = catalog.insert_published("P0001", "uploads/b.jpg", [PERSONALIZED_CATEGORY])

        assert error.status == 500

    def test_serialize_sticker(self, catalog):
        document, _ = catalog.insert_published("P0002", "uploads/a.jpg", ["personalizados"])

        serialized = serialize_sticker(document)

        assert serialized["displayId"] == "P0002"
        assert serialized["imagePath"] == "uploads/a.jpg"
        assert serialized["categories"] == ["personalizados"]


class TestAdmin:
    def test_dashboard(self, catalog):
        catalog.add_category("anime")
        _seed_stickers(catalog, 7, ["anime"])
        catalog.stickers.insert_one({"display_id": "0100", "categories": [], "created_at": datetime(2023, 1, 1)})

        stats = catalog.dashboard()

        assert stats["totalStickers"] == 8
        assert stats["totalCategories"] == 2
        assert stats["categoryStats"] == [
            {"category": "anime", "count": 7},
            {"category": None, "count": 1},
        ]
        assert len(stats["recentStickers"]) == 5
        assert stats["recentStickers"][0]["displayId"] == "0007"

    def test_reset_catalog(self, catalog, upload, personalized, content_dir):
        catalog.create_sticker(upload())
        personalized.create_from_upload(upload())

        removed = catalog.reset_catalog()

        assert removed == {"stickers": 1, "personalizedStickers": 1, "images": 2}
        assert uploaded_files(content_dir) == []
        assert catalog.category_names() == [PERSONALIZED_CATEGORY]
