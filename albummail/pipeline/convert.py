"""
Convert downloaded photos into frame-sized JPEG attachments.
"""

import io
import logging
import re
from dataclasses import dataclass
from typing import Optional

from PIL import Image, ImageOps

from .batch import Attachment
from .fetch import Asset

logger = logging.getLogger(__name__)

class ConversionError(Exception):
    """Raised when an image cannot be decoded or re-encoded."""

@dataclass
class ConverterConfig:
    target_width: int=1280
    target_height: int=800
    jpeg_quality: int=85
    strip_metadata: bool=False

def convert(data: bytes, config: ConverterConfig) -> bytes:
    """
    Resize to fit inside the target frame and re-encode as JPEG.

    Aspect ratio is kept and images are never enlarged. EXIF orientation is
    applied to the pixels so frames that ignore the tag show photos upright.
    """
    try:
        with Image.open(io.BytesIO(data)) as img:
            img = ImageOps.exif_transpose(img)
            exif = img.getexif()
            img = img.convert("RGB")
            img.thumbnail((config.target_width, config.target_height), Image.Resampling.LANCZOS)

            save_kwargs = {"format": "JPEG", "quality": config.jpeg_quality, "optimize": True}
            if not config.strip_metadata and len(exif):
                save_kwargs["exif"] = exif.tobytes()

            out = io.BytesIO()
            img.save(out, **save_kwargs)
            return out.getvalue()
    except (OSError, ValueError, Image.DecompressionBombError) as e:
        raise ConversionError(f"Failed to convert image: {e}") from e

def safe_base_name(name: Optional[str], fallback: str="photo.jpg") -> str:
    """Replace anything outside [A-Za-z0-9_.-] with underscores."""
    if not name:
        return fallback
    clean = re.sub(r"[^\w.\-]+", "_", name, flags=re.ASCII)
    return clean or fallback

def attachment_filename(asset: Asset) -> str:
    """<YYYYMMDD_HHMMSS>_<sanitized original name>.jpg"""
    base = safe_base_name(asset.original_filename or f"{asset.id}.jpg")
    if asset.captured_at is not None:
        base = f"{asset.captured_at.strftime('%Y%m%d_%H%M%S')}_{base}"

    stem, dot, ext = base.rpartition(".")
    if dot and stem and ext.lower() in ("jpg", "jpeg"):
        return f"{stem}.{ext.lower()}"
    return f"{base}.jpg"

def build_attachment(asset: Asset, data: bytes, config: ConverterConfig) -> Attachment:
    jpeg = convert(data, config)
    logger.debug(f"Converted {asset.id}: {len(data)} -> {len(jpeg)} bytes")
    return Attachment(filename=attachment_filename(asset), content=jpeg, content_type="image/jpeg")
