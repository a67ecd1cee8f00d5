import os
import secrets
from datetime import datetime
from functools import wraps
from typing import Dict, List, Optional

import click
from dotenv import load_dotenv
from flask import Flask, jsonify, request, send_from_directory
from flask_cors import CORS
from flask_pymongo import PyMongo
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import PyMongoError
from werkzeug.middleware.proxy_fix import ProxyFix

from .catalog import CatalogService, serialize_sticker
from .config_store import (
    AUTO_DELETE_KEY,
    DEFAULT_STICKER_SIZES,
    RETENTION_DAYS_KEY,
    STICKER_SIZES_KEY,
    ConfigStore,
)
from .errors import ApiError
from .identifiers import IdentifierAllocator
from .images import UPLOADS_SUBDIRECTORY, extract_pinterest_image_url, uploads_directory
from .personalized import PersonalizedStickerService, serialize_personalized_sticker
from .sweeper import DEFAULT_SWEEP_INTERVAL_SECONDS, ExpirySweeper
from .utils import parse_boolean, parse_json_list

load_dotenv()

DEFAULT_MONGO_URI = "mongodb://localhost:27017/avenida-stickers"
DEFAULT_ALLOWED_ORIGINS = [
    "http://localhost:5173",
    "http://localhost:4173",
    "http://localhost:3000",
]


def create_app(test_config: Optional[Dict] = None, database=None) -> Flask:
    """Create and configure the Flask application."""
    app = Flask(__name__)

    trusted_proxy_hops_raw = os.getenv("TRUSTED_PROXY_HOPS", "1")
    try:
        trusted_proxy_hops = max(0, int(trusted_proxy_hops_raw))
    except (TypeError, ValueError):
        trusted_proxy_hops = 1
    if trusted_proxy_hops:
        app.wsgi_app = ProxyFix(
            app.wsgi_app,
            x_for=trusted_proxy_hops,
            x_proto=trusted_proxy_hops,
            x_host=trusted_proxy_hops,
            x_port=trusted_proxy_hops,
        )

    # --- Configuration ---
    app.config["ADMIN_KEY"] = (os.getenv("ADMIN_KEY") or "").strip()
    app.config["MONGO_URI"] = (
        os.getenv("MONGO_URI") or os.getenv("MONGODB_URI") or DEFAULT_MONGO_URI
    )
    max_upload_mb = int(os.getenv("MAX_UPLOAD_SIZE_MB", "10"))
    app.config["MAX_CONTENT_LENGTH"] = max_upload_mb * 1024 * 1024
    app.config["CONTENT_DIRECTORY"] = os.getenv(
        "CONTENT_DIRECTORY", os.path.join(app.root_path, "public")
    )
    app.config["ENABLE_EXPIRY_SWEEPER"] = parse_boolean(
        os.getenv("ENABLE_EXPIRY_SWEEPER", "true")
    ) is not False
    app.config["SWEEP_INTERVAL_SECONDS"] = float(
        os.getenv("SWEEP_INTERVAL_SECONDS", str(DEFAULT_SWEEP_INTERVAL_SECONDS))
    )
    app.config["IMAGE_FETCH_TIMEOUT"] = float(os.getenv("IMAGE_FETCH_TIMEOUT", "10"))
    app.config["IMAGE_DOWNLOAD_TIMEOUT"] = float(
        os.getenv("IMAGE_DOWNLOAD_TIMEOUT", "15")
    )

    if test_config:
        app.config.update(test_config)

    content_directory = app.config["CONTENT_DIRECTORY"]
    upload_directory = uploads_directory(content_directory)

    # --- Initialize extensions ---
    allowed_origins = list(DEFAULT_ALLOWED_ORIGINS) + [
        os.getenv("FRONTEND_URL", "").strip(),
        os.getenv("PUBLIC_FRONTEND_URL", "").strip(),
    ]
    cors_extra = os.getenv("CORS_ALLOWED_ORIGINS", "")
    if cors_extra:
        for origin in cors_extra.split(","):
            trimmed = origin.strip()
            if trimmed:
                allowed_origins.append(trimmed)
    allowed_origins = [origin for origin in allowed_origins if origin]

    CORS(app, origins=allowed_origins or "*")

    if database is None:
        mongo = PyMongo(app)
        database = mongo.db
    db = database

    max_download_bytes = app.config["MAX_CONTENT_LENGTH"]
    config_store = ConfigStore(db.config, logger=app.logger)
    allocator = IdentifierAllocator(db)
    catalog = CatalogService(
        db,
        allocator,
        content_directory,
        logger=app.logger,
        fetch_timeout=app.config["IMAGE_FETCH_TIMEOUT"],
        download_timeout=app.config["IMAGE_DOWNLOAD_TIMEOUT"],
        max_download_bytes=max_download_bytes,
    )
    personalized = PersonalizedStickerService(
        db,
        allocator,
        config_store,
        catalog,
        content_directory,
        logger=app.logger,
        fetch_timeout=app.config["IMAGE_FETCH_TIMEOUT"],
        download_timeout=app.config["IMAGE_DOWNLOAD_TIMEOUT"],
        max_download_bytes=max_download_bytes,
    )
    sweeper = ExpirySweeper(
        personalized.sweep_expired,
        interval_seconds=app.config["SWEEP_INTERVAL_SECONDS"],
        logger=app.logger,
    )

    app.extensions["config_store"] = config_store
    app.extensions["identifier_allocator"] = allocator
    app.extensions["catalog"] = catalog
    app.extensions["personalized_stickers"] = personalized
    app.extensions["expiry_sweeper"] = sweeper

    try:
        db.stickers.create_index("display_id", unique=True)
        db.stickers.create_index("categories")
        db.stickers.create_index([("created_at", DESCENDING)])
        db.personalized_stickers.create_index("display_id", unique=True)
        db.personalized_stickers.create_index(
            [("status", ASCENDING), ("expires_at", ASCENDING)]
        )
        db.personalized_stickers.create_index([("created_at", DESCENDING)])
        db.categories.create_index("name", unique=True)
        db.config.create_index("key", unique=True)
    except PyMongoError as exc:
        app.logger.warning("Unable to ensure sticker indexes: %s", exc)

    try:
        config_store.initialize_defaults()
        catalog.ensure_default_categories()
    except PyMongoError as exc:
        app.logger.warning("Unable to seed default configuration: %s", exc)

    # --- Helpers ---

    def success_response(message: str, status: int = 200, **fields):
        body = {"success": True, "message": message}
        body.update(fields)
        return jsonify(body), status

    def error_response(error: ApiError):
        body = {"success": False, "message": error.message}
        if error.detail:
            body["error"] = error.detail
        return jsonify(body), error.status

    def keys_match(submitted: str, expected: str) -> bool:
        # compare_digest only accepts ASCII str, bytes work for any key
        return secrets.compare_digest(
            submitted.encode("utf-8"), expected.encode("utf-8")
        )

    def check_admin_token():
        admin_key = app.config.get("ADMIN_KEY") or ""
        if not admin_key:
            return error_response(ApiError("Admin configuration is not available.", 500))

        authorization = request.headers.get("Authorization", "")
        if not authorization:
            return error_response(ApiError("Authorization token required.", 401))

        token = authorization
        if token.startswith("Bearer "):
            token = token[len("Bearer "):]
        if not keys_match(token.strip(), admin_key):
            return error_response(ApiError("Access denied.", 403))
        return None

    def admin_required(view):
        @wraps(view)
        def wrapper(*args, **kwargs):
            auth_error = check_admin_token()
            if auth_error:
                return auth_error
            return view(*args, **kwargs)

        return wrapper

    def request_payload() -> Dict:
        payload = request.form.to_dict() if request.form else {}
        if not payload:
            payload = request.get_json(silent=True) or {}
        return payload if isinstance(payload, dict) else {}

    def requested_categories(payload: Dict) -> Optional[List]:
        if request.form and "categories" in request.form:
            values = request.form.getlist("categories")
            if len(values) == 1:
                return parse_json_list(values[0])
            return values
        if "categories" not in payload:
            return None
        return parse_json_list(payload.get("categories"))

    def pinterest_url_from(payload: Dict) -> str:
        return str(
            payload.get("pinterestUrl") or payload.get("pinterest_url") or ""
        ).strip()

    def normalize_sizes_payload(payload: Dict):
        sizes = payload.get("sizes")
        if not isinstance(sizes, list) or not sizes:
            return None, "Invalid sticker size configuration."
        normalized_sizes = []
        for size in sizes:
            if not isinstance(size, dict):
                return None, "Invalid sticker size structure."
            price = size.get("price")
            if isinstance(price, bool) or not isinstance(price, (int, float)) or price < 0:
                return None, "Invalid sticker size structure."
            entry = {
                "id": str(size.get("id") or "").strip(),
                "name": str(size.get("name") or "").strip(),
                "dimensions": str(size.get("dimensions") or "").strip(),
                "price": price,
            }
            if not entry["id"] or not entry["name"] or not entry["dimensions"]:
                return None, "Invalid sticker size structure."
            normalized_sizes.append(entry)

        currency = str(payload.get("currency") or "").strip().upper() or "ARS"
        return {
            "sizes": normalized_sizes,
            "currency": currency,
            "updatedAt": datetime.utcnow().isoformat() + "Z",
        }, None

    # --- Error handlers ---

    @app.errorhandler(PyMongoError)
    def handle_database_error(exc):
        app.logger.error("Database error while handling %s: %s", request.path, exc)
        return error_response(ApiError("Internal database error.", 500, str(exc)))

    @app.errorhandler(404)
    def handle_not_found(_exc):
        return error_response(ApiError("Route not found.", 404))

    @app.errorhandler(413)
    def handle_too_large(_exc):
        return error_response(ApiError("The uploaded file is too large.", 413))

    # --- CLI ---

    @app.cli.command("init-config")
    def init_config_command():
        """Seed default settings and the personalized category."""
        created = config_store.initialize_defaults()
        catalog.ensure_default_categories()
        if created:
            click.echo(f"Initialized settings: {', '.join(created)}")
        else:
            click.echo("Settings already initialized.")

    @app.cli.command("cleanup-expired")
    def cleanup_expired_command():
        """Delete expired temporary personalized stickers now."""
        result = sweeper.run_once()
        if result is None:
            click.echo("A cleanup is already running.")
            return
        click.echo(result["message"])
        for error in result["errors"]:
            click.echo(error, err=True)

    # --- ROUTES ---

    @app.route("/health")
    def health():
        return {"status": "ok"}, 200

    @app.route(f"/{UPLOADS_SUBDIRECTORY}/<path:filename>")
    def serve_uploaded_file(filename: str):
        return send_from_directory(upload_directory, filename)

    # Personalized stickers
    @app.route("/api/personalized-stickers", methods=["POST"])
    @admin_required
    def create_personalized_sticker():
        document, error = personalized.create_from_upload(
            request.files.get("image"), temporary=False
        )
        if error:
            return error_response(error)
        return success_response(
            "Personalized sticker created successfully.",
            201,
            data=serialize_personalized_sticker(document),
        )

    @app.route("/api/personalized-stickers/from-pinterest", methods=["POST"])
    @admin_required
    def create_personalized_sticker_from_pinterest():
        payload = request_payload()
        document, error = personalized.create_from_pinterest(
            pinterest_url_from(payload), temporary=False
        )
        if error:
            return error_response(error)
        return success_response(
            "Personalized sticker imported from Pinterest successfully.",
            201,
            data=serialize_personalized_sticker(document),
        )

    @app.route("/api/personalized-stickers/temporary", methods=["POST"])
    def create_temporary_personalized_sticker():
        document, error = personalized.create_from_upload(
            request.files.get("image"), temporary=True
        )
        if error:
            return error_response(error)
        return success_response(
            "Temporary personalized sticker created successfully.",
            201,
            data=serialize_personalized_sticker(document),
        )

    @app.route("/api/personalized-stickers/temporary/from-pinterest", methods=["POST"])
    def create_temporary_personalized_sticker_from_pinterest():
        payload = request_payload()
        document, error = personalized.create_from_pinterest(
            pinterest_url_from(payload), temporary=True
        )
        if error:
            return error_response(error)
        return success_response(
            "Temporary personalized sticker imported from Pinterest successfully.",
            201,
            data=serialize_personalized_sticker(document),
        )

    @app.route("/api/personalized-stickers/extract-pinterest-url", methods=["POST"])
    def extract_pinterest_image():
        pinterest_url = pinterest_url_from(request_payload())
        if not pinterest_url:
            return error_response(ApiError("A Pinterest URL is required.", 400))
        image_url, error = extract_pinterest_image_url(
            pinterest_url, timeout=app.config["IMAGE_FETCH_TIMEOUT"]
        )
        if error:
            return error_response(error)
        return success_response(
            "Image URL extracted successfully.",
            data={"imageUrl": image_url, "originalUrl": pinterest_url},
        )

    @app.route("/api/personalized-stickers/confirm-temporary", methods=["POST"])
    def confirm_temporary_stickers():
        payload = request.get_json(silent=True) or {}
        sticker_ids = payload.get("stickerIds") if isinstance(payload, dict) else None
        if not isinstance(sticker_ids, list):
            return error_response(ApiError("An array of sticker ids is required.", 400))

        result = personalized.confirm(sticker_ids)
        return success_response(
            f"{result['confirmed']} of {result['requested']} stickers confirmed.",
            data={
                "confirmedCount": result["confirmed"],
                "requestedCount": result["requested"],
            },
        )

    @app.route("/api/personalized-stickers", methods=["GET"])
    def list_personalized_stickers():
        documents = personalized.list_visible()
        return jsonify(
            {
                "success": True,
                "message": "Personalized stickers loaded.",
                "data": [serialize_personalized_sticker(document) for document in documents],
                "count": len(documents),
            }
        )

    @app.route("/api/personalized-stickers/<sticker_id>", methods=["GET"])
    def get_personalized_sticker(sticker_id: str):
        document, error = personalized.get(sticker_id)
        if error:
            return error_response(error)
        return success_response(
            "Personalized sticker loaded.", data=serialize_personalized_sticker(document)
        )

    @app.route("/api/personalized-stickers/<sticker_id>", methods=["DELETE"])
    @admin_required
    def delete_personalized_sticker(sticker_id: str):
        _, error = personalized.delete(sticker_id)
        if error:
            return error_response(error)
        return success_response("Personalized sticker deleted successfully.")

    @app.route("/api/personalized-stickers/<sticker_id>/publish", methods=["POST"])
    @admin_required
    def publish_personalized_sticker(sticker_id: str):
        payload = request.get_json(silent=True) or {}
        categories = payload.get("categories") if isinstance(payload, dict) else None
        sticker_document, error = personalized.publish(
            sticker_id, parse_json_list(categories)
        )
        if error:
            return error_response(error)
        return success_response(
            "Personalized sticker published to the public catalog.",
            data={
                "publishedSticker": serialize_sticker(sticker_document),
                "publishedWithCategories": list(sticker_document.get("categories") or []),
            },
        )

    @app.route("/api/personalized-stickers/cleanup/expired", methods=["POST"])
    def cleanup_expired_personalized_stickers():
        result = sweeper.run_once()
        if result is None:
            return success_response(
                "A cleanup is already running.",
                data={"deleted": 0, "errors": [], "skipped": True},
            )
        return success_response(
            f"Cleanup finished. {result['deleted']} stickers deleted.",
            data={
                "deleted": result["deleted"],
                "errors": result["errors"],
                "enabled": result["enabled"],
                "skipped": False,
            },
        )

    # Stickers
    @app.route("/api/stickers", methods=["GET"])
    def list_stickers():
        documents, pagination = catalog.list_stickers(
            categories=parse_json_list(request.args.get("categories")),
            search=request.args.get("search"),
            page=request.args.get("page", 1),
            limit=request.args.get("limit", 20),
        )
        return jsonify(
            {
                "success": True,
                "message": "Stickers loaded.",
                "data": [serialize_sticker(document) for document in documents],
                "pagination": pagination,
            }
        )

    @app.route("/api/stickers/search", methods=["GET"])
    def search_stickers():
        documents, error = catalog.search_stickers(request.args.get("q"))
        if error:
            return error_response(error)
        return jsonify(
            {
                "success": True,
                "message": "Search finished.",
                "data": [serialize_sticker(document) for document in documents],
                "count": len(documents),
            }
        )

    @app.route("/api/stickers/<sticker_id>", methods=["GET"])
    def get_sticker(sticker_id: str):
        document, error = catalog.fetch_sticker(sticker_id)
        if error:
            return error_response(error)
        return success_response("Sticker loaded.", data=serialize_sticker(document))

    @app.route("/api/stickers", methods=["POST"])
    @admin_required
    def create_sticker():
        payload = request_payload()
        document, error = catalog.create_sticker(
            request.files.get("image"), requested_categories(payload)
        )
        if error:
            return error_response(error)
        return success_response(
            "Sticker created successfully.", 201, data=serialize_sticker(document)
        )

    @app.route("/api/stickers/from-pinterest", methods=["POST"])
    @admin_required
    def create_sticker_from_pinterest():
        payload = request_payload()
        pinterest_url = pinterest_url_from(payload)
        if not pinterest_url:
            return error_response(ApiError("A Pinterest URL is required.", 400))
        document, error = catalog.create_sticker_from_pinterest(
            pinterest_url, requested_categories(payload)
        )
        if error:
            return error_response(error)
        return success_response(
            "Sticker imported from Pinterest successfully.",
            201,
            data=serialize_sticker(document),
        )

    @app.route("/api/stickers/<sticker_id>", methods=["PUT"])
    @admin_required
    def update_sticker(sticker_id: str):
        payload = request_payload()
        document, error = catalog.update_sticker(
            sticker_id,
            categories=requested_categories(payload),
            image_file=request.files.get("image"),
        )
        if error:
            return error_response(error)
        return success_response(
            "Sticker updated successfully.", data=serialize_sticker(document)
        )

    @app.route("/api/stickers/<sticker_id>", methods=["DELETE"])
    @admin_required
    def delete_sticker(sticker_id: str):
        _, error = catalog.delete_sticker(sticker_id)
        if error:
            return error_response(error)
        return success_response("Sticker deleted successfully.")

    # Categories
    @app.route("/api/categories", methods=["GET"])
    def list_categories():
        names = catalog.category_names()
        counts = catalog.sticker_counts_by_category()
        return jsonify(
            {
                "success": True,
                "message": "Categories loaded.",
                "data": names,
                "count": len(names),
                "stickerCounts": {name: counts.get(name, 0) for name in names},
            }
        )

    @app.route("/api/categories", methods=["POST"])
    @admin_required
    def create_category():
        payload = request.get_json(silent=True) or {}
        name = payload.get("name") if isinstance(payload, dict) else None
        if not isinstance(name, str):
            return error_response(ApiError("A category name is required.", 400))
        category_document, error = catalog.add_category(name)
        if error:
            return error_response(error)
        return success_response(
            f"Category '{category_document['name']}' added successfully.",
            201,
            data=catalog.category_names(),
        )

    @app.route("/api/categories/<category>", methods=["DELETE"])
    @admin_required
    def delete_category(category: str):
        removed_from, error = catalog.delete_category(category)
        if error:
            return error_response(error)
        return success_response(
            "Category deleted and removed from every sticker.",
            data=catalog.category_names(),
            removedFromStickers=removed_from,
        )

    # Sizes
    @app.route("/api/sizes", methods=["GET"])
    def get_public_sizes():
        return success_response(
            "Sticker sizes loaded.",
            data=config_store.get_value(STICKER_SIZES_KEY, DEFAULT_STICKER_SIZES),
        )

    # Admin
    @app.route("/api/admin/auth", methods=["POST"])
    def validate_admin_key():
        admin_key = app.config.get("ADMIN_KEY") or ""
        if not admin_key:
            return error_response(ApiError("Admin configuration is not available.", 500))
        payload = request.get_json(silent=True) or {}
        submitted = str(payload.get("adminKey") or "") if isinstance(payload, dict) else ""
        if not submitted or not keys_match(submitted, admin_key):
            return error_response(ApiError("Incorrect admin key.", 401))
        return success_response("Access granted.", token=admin_key)

    @app.route("/api/admin/dashboard", methods=["GET"])
    @admin_required
    def admin_dashboard():
        stats = catalog.dashboard()
        sizes = config_store.get_value(STICKER_SIZES_KEY, DEFAULT_STICKER_SIZES) or {}
        stats["totalSizes"] = len(sizes.get("sizes") or []) if isinstance(sizes, dict) else 0
        stats["personalizedStats"] = personalized.count_by_status()
        return success_response("Dashboard loaded.", data=stats)

    @app.route("/api/admin/sizes", methods=["GET"])
    @admin_required
    def admin_get_sizes():
        return success_response(
            "Sticker sizes loaded.",
            data=config_store.get_value(STICKER_SIZES_KEY, DEFAULT_STICKER_SIZES),
        )

    @app.route("/api/admin/sizes", methods=["PUT"])
    @admin_required
    def admin_update_sizes():
        payload = request.get_json(silent=True) or {}
        if not isinstance(payload, dict):
            payload = {}
        sizes_config, sizes_error = normalize_sizes_payload(payload)
        if sizes_error:
            return error_response(ApiError(sizes_error, 400))
        config_store.set_value(STICKER_SIZES_KEY, sizes_config, "object")
        return success_response(
            "Sticker sizes updated successfully.", data=sizes_config
        )

    @app.route("/api/admin/settings", methods=["GET"])
    @admin_required
    def admin_get_settings():
        return success_response("Settings loaded.", data=config_store.all_values())

    @app.route("/api/admin/settings", methods=["PUT"])
    @admin_required
    def admin_update_settings():
        payload = request.get_json(silent=True) or {}
        if not isinstance(payload, dict) or not payload:
            return error_response(ApiError("No settings were provided.", 400))

        updates: Dict[str, object] = {}
        if RETENTION_DAYS_KEY in payload:
            raw_days = payload.get(RETENTION_DAYS_KEY)
            if isinstance(raw_days, bool):
                raw_days = None
            try:
                days = int(raw_days)
            except (TypeError, ValueError):
                days = 0
            if days <= 0:
                return error_response(
                    ApiError("Retention days must be a positive whole number.", 400)
                )
            updates[RETENTION_DAYS_KEY] = days
        if AUTO_DELETE_KEY in payload:
            enabled = parse_boolean(payload.get(AUTO_DELETE_KEY))
            if enabled is None:
                return error_response(
                    ApiError("Automatic deletion must be true or false.", 400)
                )
            updates[AUTO_DELETE_KEY] = enabled
        if not updates:
            return error_response(ApiError("No supported settings were provided.", 400))

        for key, value in updates.items():
            config_store.set_value(key, value)
        app.logger.info("Settings updated: %s", ", ".join(sorted(updates)))
        return success_response("Settings updated successfully.", data=config_store.all_values())

    @app.route("/api/admin/reset-catalog", methods=["POST"])
    @admin_required
    def admin_reset_catalog():
        payload = request.get_json(silent=True) or {}
        password = str(payload.get("adminPassword") or "") if isinstance(payload, dict) else ""
        if not password or not keys_match(password, app.config["ADMIN_KEY"]):
            return error_response(ApiError("Incorrect admin password.", 401))

        removed = catalog.reset_catalog()
        return success_response(
            f"Catalog reset. {removed['stickers']} stickers and "
            f"{removed['personalizedStickers']} personalized stickers removed.",
            data=removed,
        )

    if app.config["ENABLE_EXPIRY_SWEEPER"]:
        sweeper.start()

    return app
