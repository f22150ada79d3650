"""
images.py — Inline image parts passed to and returned from Gemini.

An ImagePart is raw bytes plus a MIME type. Helpers load parts from disk
or from data URLs and write rendered images back out as PNG.
"""

from __future__ import annotations

import base64
import io
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Union

from PIL import Image, UnidentifiedImageError

IMAGE_EXTS = {".png", ".jpg", ".jpeg", ".webp"}

_DATA_URL_RE = re.compile(r"^data:([^;]+);base64,(.+)$", re.DOTALL)
_UNSAFE_FILENAME_RE = re.compile(r'[\\/:*?"<>|]')


@dataclass(frozen=True)
class ImagePart:
    data: bytes
    mime_type: str = "image/png"

    def __repr__(self) -> str:
        return f"ImagePart({self.mime_type}, {len(self.data)} bytes)"


def sniff_mime(data: bytes, default: str = "image/jpeg") -> str:
    """Detect the image MIME type from the bytes themselves."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            return Image.MIME.get(img.format or "", default)
    except (UnidentifiedImageError, OSError):
        return default


def load_image(path: Union[str, Path]) -> ImagePart:
    path = Path(path)
    data = path.read_bytes()
    ext = path.suffix.lower().lstrip(".")
    fallback = f"image/{'jpeg' if ext in ('jpg', 'jpeg') else ext or 'png'}"
    return ImagePart(data=data, mime_type=sniff_mime(data, default=fallback))


def from_data_url(value: str) -> ImagePart:
    """
    Parse a `data:<mime>;base64,<payload>` string.
    A bare base64 payload is accepted and assumed to be JPEG.
    """
    m = _DATA_URL_RE.match(value.strip())
    if not m:
        return ImagePart(data=base64.b64decode(value), mime_type="image/jpeg")
    return ImagePart(data=base64.b64decode(m.group(2)), mime_type=m.group(1))


def to_data_url(part: ImagePart) -> str:
    return f"data:{part.mime_type};base64,{base64.b64encode(part.data).decode('ascii')}"


def save_png(part: ImagePart, path: Path) -> Path:
    """Write an image to disk as PNG. Bytes Pillow cannot decode are written as-is."""
    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        with Image.open(io.BytesIO(part.data)) as img:
            img.save(path, format="PNG")
    except (UnidentifiedImageError, OSError):
        path.write_bytes(part.data)
    return path


def safe_filename(title: str, fallback: str = "image") -> str:
    name = _UNSAFE_FILENAME_RE.sub("_", title).strip()
    return name or fallback
