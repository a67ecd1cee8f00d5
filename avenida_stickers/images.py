import io
import os
import re
import time
from typing import Optional, Tuple
from uuid import uuid4

import requests
from PIL import Image, ImageOps, UnidentifiedImageError
from werkzeug.utils import secure_filename

from .errors import ApiError, upstream_error, validation_error

UPLOADS_SUBDIRECTORY = "uploads"
ALLOWED_IMAGE_EXTENSIONS = {"png", "jpg", "jpeg", "gif", "webp"}

MAX_IMAGE_DIMENSION = 2048
JPEG_QUALITY = 90

BROWSER_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
}

PINTEREST_URL_PATTERNS = (
    re.compile(r"^https?://(www\.)?pinterest\.com/pin/\d+"),
    re.compile(r"^https?://(ar|es|br|mx)\.pinterest\.com/pin/\d+"),
    re.compile(r"^https?://pin\.it/[a-zA-Z0-9]+"),
)

PINTEREST_IMAGE_PATTERNS = (
    re.compile(r'"url":\s*"([^"]+\.(?:jpg|jpeg|png|webp|gif)(?:\?[^"]*)?)"'),
    re.compile(r'property="og:image"\s+content="([^"]+)"'),
    re.compile(r'"contentUrl":\s*"([^"]+\.(?:jpg|jpeg|png|webp|gif)(?:\?[^"]*)?)"'),
    re.compile(r'data-test-id="pin-image"[^>]+src="([^"]+)"'),
)


# --- Ingestion ---


def is_valid_pinterest_url(url: Optional[str]) -> bool:
    candidate = str(url or "").strip()
    return any(pattern.match(candidate) for pattern in PINTEREST_URL_PATTERNS)


def extract_pin_id(url: Optional[str]) -> Optional[str]:
    match = re.search(r"/pin/(\d+)", str(url or ""))
    return match.group(1) if match else None


def find_image_url_in_html(html: str) -> Optional[str]:
    for pattern in PINTEREST_IMAGE_PATTERNS:
        match = pattern.search(html or "")
        if not match:
            continue
        image_url = match.group(1).replace("\\u002F", "/").replace('\\"', '"')
        if image_url.startswith("http"):
            return image_url
    return None


def extract_pinterest_image_url(
    pinterest_url: str, timeout: float = 10
) -> Tuple[Optional[str], Optional[ApiError]]:
    if not is_valid_pinterest_url(pinterest_url):
        return None, validation_error(
            "Invalid Pinterest URL. Make sure you use a valid pin link."
        )

    try:
        response = requests.get(
            pinterest_url.strip(), headers=BROWSER_HEADERS, timeout=timeout
        )
        response.raise_for_status()
    except requests.RequestException as exc:
        return None, upstream_error("Could not reach Pinterest.", str(exc))

    image_url = find_image_url_in_html(response.text)
    if not image_url:
        return None, upstream_error("Could not find an image on that Pinterest pin.")
    return image_url, None


def download_image(
    image_url: str, timeout: float = 15, max_bytes: Optional[int] = None
) -> Tuple[Optional[bytes], Optional[ApiError]]:
    headers = {
        "User-Agent": BROWSER_HEADERS["User-Agent"],
        "Referer": "https://pinterest.com/",
    }
    try:
        with requests.get(
            image_url, headers=headers, timeout=timeout, stream=True
        ) as response:
            response.raise_for_status()
            buffer = io.BytesIO()
            for chunk in response.iter_content(chunk_size=64 * 1024):
                if not chunk:
                    continue
                buffer.write(chunk)
                if max_bytes and buffer.tell() > max_bytes:
                    return None, upstream_error("The remote image is too large.")
    except requests.RequestException as exc:
        return None, upstream_error("Could not download the image.", str(exc))

    data = buffer.getvalue()
    if not data:
        return None, upstream_error("The downloaded image was empty.")
    return data, None


# --- Optimizer ---


def uploads_directory(content_dir: str) -> str:
    directory = os.path.join(content_dir, UPLOADS_SUBDIRECTORY)
    os.makedirs(directory, exist_ok=True)
    return directory


def build_image_filename(name_hint: Optional[str] = None, extension: str = ".jpg") -> str:
    base_name = re.sub(r"[^a-zA-Z0-9]", "_", str(name_hint or "")).lower() or "sticker"
    timestamp = int(time.time() * 1000)
    return f"{base_name}_{timestamp}_{uuid4().hex[:8]}{extension}"


def optimize_image(
    data: bytes, content_dir: str, name_hint: Optional[str] = None
) -> Tuple[Optional[str], Optional[ApiError]]:
    """Re-encode ``data`` as a bounded progressive JPEG under ``uploads/``.

    Returns the path relative to ``content_dir``.
    """
    try:
        image = Image.open(io.BytesIO(data))
        image.load()
    except Image.DecompressionBombError:
        return None, validation_error("The image dimensions are too large.")
    except (UnidentifiedImageError, OSError):
        return None, validation_error("The file is not a valid image.")

    destination = None
    try:
        image = ImageOps.exif_transpose(image)
        if image.mode in ("RGBA", "LA") or (
            image.mode == "P" and "transparency" in image.info
        ):
            rgba = image.convert("RGBA")
            background = Image.new("RGB", rgba.size, (255, 255, 255))
            background.paste(rgba, mask=rgba.split()[-1])
            image = background
        else:
            image = image.convert("RGB")

        # thumbnail keeps the aspect ratio and never enlarges
        image.thumbnail((MAX_IMAGE_DIMENSION, MAX_IMAGE_DIMENSION), Image.LANCZOS)

        filename = build_image_filename(name_hint)
        destination = os.path.join(uploads_directory(content_dir), filename)
        image.save(
            destination,
            format="JPEG",
            quality=JPEG_QUALITY,
            progressive=True,
            optimize=True,
        )
    except OSError as exc:
        if destination:
            _discard_partial_file(destination)
        return None, upstream_error("We could not process the image.", str(exc))

    return f"{UPLOADS_SUBDIRECTORY}/{filename}", None


def _discard_partial_file(path: str):
    try:
        os.remove(path)
    except FileNotFoundError:
        pass


# --- Local storage ---


def allowed_image_extension(filename: str) -> bool:
    extension = os.path.splitext(filename)[1].lower().lstrip(".")
    if not extension:
        return False
    return extension in ALLOWED_IMAGE_EXTENSIONS


def is_image_upload(image_file) -> bool:
    mimetype = str(getattr(image_file, "mimetype", "") or "")
    return mimetype.startswith("image/")


def read_image_upload(image_file) -> Tuple[Optional[bytes], Optional[ApiError]]:
    if not image_file or not getattr(image_file, "filename", ""):
        return None, validation_error("An image file is required.")
    if not is_image_upload(image_file):
        return None, validation_error("Only image files are allowed.")
    data = image_file.read()
    if not data:
        return None, validation_error("The uploaded image is empty.")
    return data, None


def save_upload(image_file, content_dir: str) -> Tuple[Optional[str], Optional[ApiError]]:
    if not image_file or not getattr(image_file, "filename", ""):
        return None, validation_error("An image file is required.")

    original_filename = secure_filename(image_file.filename)
    if not original_filename:
        return None, validation_error("Please choose a valid file name.")

    if not allowed_image_extension(original_filename) or not is_image_upload(image_file):
        return (
            None,
            validation_error(
                "Unsupported image format. Upload PNG, JPG, JPEG, GIF, or WEBP files."
            ),
        )

    extension = os.path.splitext(original_filename)[1].lower()
    unique_filename = f"{uuid4().hex}{extension}"
    destination = os.path.join(uploads_directory(content_dir), unique_filename)

    try:
        image_file.save(destination)
    except OSError:
        return None, ApiError("We could not store the uploaded image. Please try again.", 500)

    return f"{UPLOADS_SUBDIRECTORY}/{unique_filename}", None


def resolve_image_path(content_dir: str, image_path: Optional[str]) -> Optional[str]:
    relative = str(image_path or "").strip().lstrip("/\\")
    if not relative:
        return None
    root = os.path.realpath(content_dir)
    target = os.path.realpath(os.path.join(root, relative))
    if os.path.commonpath([root, target]) != root or target == root:
        return None
    return target


def remove_image(content_dir: str, image_path: Optional[str]) -> bool:
    """Delete a stored image. An already missing file counts as removed."""
    target = resolve_image_path(content_dir, image_path)
    if not target:
        return False
    try:
        os.remove(target)
    except FileNotFoundError:
        return True
    return True
