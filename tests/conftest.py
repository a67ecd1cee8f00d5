"""Shared fixtures for avenida_stickers tests."""

import io
import os

import mongomock
import pytest
from PIL import Image

from avenida_stickers.app import create_app

ADMIN_KEY = "test-admin-key"


def make_image_bytes(size=(64, 48), mode="RGB", color=(200, 30, 30), image_format="PNG") -> bytes:
    """Render a solid image with Pillow and return the encoded bytes."""
    if mode == "RGBA" and len(color) == 3:
        color = color + (128,)
    image = Image.new(mode, size, color)
    buffer = io.BytesIO()
    image.save(buffer, format=image_format)
    return buffer.getvalue()


@pytest.fixture
def png_bytes() -> bytes:
    return make_image_bytes()


@pytest.fixture
def db():
    """In-memory MongoDB database."""
    return mongomock.MongoClient().db


@pytest.fixture
def content_dir(tmp_path) -> str:
    directory = tmp_path / "public"
    directory.mkdir()
    return str(directory)


@pytest.fixture
def app(db, content_dir):
    return create_app(
        test_config={
            "TESTING": True,
            "ADMIN_KEY": ADMIN_KEY,
            "CONTENT_DIRECTORY": content_dir,
            "ENABLE_EXPIRY_SWEEPER": False,
        },
        database=db,
    )


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def admin_headers() -> dict:
    return {"Authorization": f"Bearer {ADMIN_KEY}"}


@pytest.fixture
def personalized(app):
    return app.extensions["personalized_stickers"]


@pytest.fixture
def catalog(app):
    return app.extensions["catalog"]


@pytest.fixture
def config_store(app):
    return app.extensions["config_store"]


class FakeUpload:
    """Minimal stand-in for werkzeug's FileStorage."""

    def __init__(self, data: bytes, filename: str = "sticker.png", mimetype: str = "image/png"):
        self._stream = io.BytesIO(data)
        self.filename = filename
        self.mimetype = mimetype

    def read(self):
        return self._stream.read()

    def save(self, destination):
        with open(destination, "wb") as handle:
            handle.write(self._stream.getvalue())


@pytest.fixture
def upload(png_bytes):
    def _build(data=None, filename="sticker.png", mimetype="image/png"):
        return FakeUpload(png_bytes if data is None else data, filename, mimetype)

    return _build


def uploaded_files(content_dir: str) -> list:
    directory = os.path.join(content_dir, "uploads")
    if not os.path.isdir(directory):
        return []
    return sorted(os.listdir(directory))
