import io
import os
import time
import logging
from pathlib import Path
from typing import Optional

from PIL import Image, UnidentifiedImageError

from .errors import ValidationError

logger = logging.getLogger(__name__)

MAX_FILE_SIZE = 10 * 1024 * 1024
ALLOWED_FORMATS = {"JPEG": "image/jpeg", "PNG": "image/png", "WEBP": "image/webp"}

_CONTENT_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".webp": "image/webp",
    ".gif": "image/gif",
}


def content_type_for(filename: str) -> str:
    return _CONTENT_TYPES.get(Path(filename).suffix.lower(), "application/octet-stream")


def sniff_image(data: bytes) -> str:
    """Return the MIME type of an uploaded image, rejecting anything we can't train on."""
    if len(data) > MAX_FILE_SIZE:
        raise ValidationError("File size exceeds 10MB limit")
    try:
        with Image.open(io.BytesIO(data)) as img:
            fmt = img.format
            img.verify()
    except (UnidentifiedImageError, OSError, SyntaxError) as e:
        raise ValidationError(f"Not a readable image: {e}") from e
    if fmt not in ALLOWED_FORMATS:
        raise ValidationError("Invalid file type. Please upload JPG, PNG, or WebP images")
    return ALLOWED_FORMATS[fmt]


class AssetStore:
    def __init__(self, base_dir: str):
        self.base_dir = Path(base_dir).absolute()
        self.uploads_dir = self.base_dir / "uploads"
        self.uploads_dir.mkdir(parents=True, exist_ok=True)

    def save_upload(self, data: bytes, filename: str) -> str:
        sniff_image(data)
        safe = Path(filename or "image.png").name
        name = f"{time.strftime('%Y%m%d-%H%M%S')}-{os.urandom(3).hex()}-{safe}"
        (self.uploads_dir / name).write_bytes(data)
        logger.info("Stored upload %s (%d bytes)", name, len(data))
        return f"/api/uploads/{name}"

    def resolve(self, filename: str) -> Optional[Path]:
        base = self.uploads_dir.resolve()
        target = (base / filename).resolve()
        if base != target and base not in target.parents:
            raise ValidationError("Invalid path")
        if not target.exists() or not target.is_file():
            return None
        return target

    def delete_upload(self, url: str):
        prefix = "/api/uploads/"
        if not url.startswith(prefix):
            return
        try:
            path = self.resolve(url[len(prefix):])
        except ValidationError:
            return
        if path is not None:
            path.unlink(missing_ok=True)

    def cleanup_old_files(self, max_age: float = 7 * 24 * 60 * 60) -> int:
        now = time.time()
        removed = 0
        for p in self.uploads_dir.iterdir():
            if not p.is_file():
                continue
            if now - p.stat().st_mtime > max_age:
                try:
                    p.unlink()
                    removed += 1
                except OSError as e:
                    logger.error("Failed to remove %s: %s", p, e)
        if removed:
            logger.info("Removed %d old asset files", removed)
        return removed
