"""
Image helpers for data-URL encoded images.

Generated and uploaded images travel through the system as
``data:<mime>;base64,<payload>`` strings.
"""

import base64
import binascii
import io
import re
from typing import Tuple

from PIL import Image, UnidentifiedImageError

_DATA_URL_RE = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+);base64,(?P<data>.*)$", re.DOTALL)


def to_data_url(data: bytes, mime_type: str = "image/png") -> str:
    """Build a data URL from raw bytes."""
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"


def b64_to_data_url(data_b64: str, mime_type: str = "image/png") -> str:
    """Build a data URL from an already base64-encoded payload."""
    return f"data:{mime_type};base64,{data_b64}"


def split_data_url(image: str, default_mime: str = "image/jpeg") -> Tuple[str, str]:
    """
    Split an image string into (mime_type, base64_payload).

    Bare base64 strings are accepted and reported with ``default_mime``.
    """
    match = _DATA_URL_RE.match(image.strip())
    if match:
        return match.group("mime"), match.group("data")
    return default_mime, image.strip()


def decode_data_url(image: str) -> Tuple[str, bytes]:
    """
    Decode an image string into (mime_type, raw bytes).

    Raises:
        ValueError: If the payload is not valid base64
    """
    mime_type, payload = split_data_url(image)
    try:
        return mime_type, base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"Invalid base64 image payload: {e}") from e


def reencode_as_jpeg(image: str, quality: int = 90) -> str:
    """
    Re-encode any decodable image as a JPEG data URL.

    Raises:
        ValueError: If the image cannot be decoded
    """
    _, raw = decode_data_url(image)
    try:
        with Image.open(io.BytesIO(raw)) as img:
            rgb = img.convert("RGB")
            buffer = io.BytesIO()
            rgb.save(buffer, format="JPEG", quality=quality)
    except (UnidentifiedImageError, OSError) as e:
        raise ValueError(f"Cannot decode image for re-encoding: {e}") from e
    return to_data_url(buffer.getvalue(), "image/jpeg")


def estimate_size_kb(image: str) -> int:
    """Approximate decoded size of a data URL in kilobytes."""
    _, payload = split_data_url(image)
    return round(len(payload) * 0.75 / 1024)
