import base64
import binascii
import io
import re
import zipfile
from typing import Sequence, Tuple

from ..errors import ValidationError
from ..schemas import TrainingExample

_DATA_URL = re.compile(r"^data:(.+?);base64,(.+)$", re.DOTALL)

_EXTENSIONS = {
    "image/jpeg": "jpeg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
}


def decode_data_url(url: str) -> Tuple[str, bytes]:
    match = _DATA_URL.match(url or "")
    if not match:
        raise ValidationError("Invalid data URL format")
    mime, payload = match.group(1), match.group(2)
    try:
        return mime, base64.b64decode(payload, validate=False)
    except (binascii.Error, ValueError) as e:
        raise ValidationError(f"Invalid base64 payload: {e}") from e


def extension_for(mime: str) -> str:
    if mime in _EXTENSIONS:
        return _EXTENSIONS[mime]
    sub = mime.split("/")[-1] if "/" in mime else ""
    return sub or "png"


def build_archive(examples: Sequence[TrainingExample]) -> bytes:
    """Zip images with same-named caption files: image0.png + image0.txt, ..."""
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as zf:
        for i, ex in enumerate(examples):
            if not ex.image_data:
                raise ValidationError(f"Image data for example {i} is not available; upload it again")
            mime = ex.image.type if ex.image is not None else "image/png"
            zf.writestr(f"image{i}.{extension_for(mime)}", ex.image_data)
            zf.writestr(f"image{i}.txt", ex.description)
    return buf.getvalue()
