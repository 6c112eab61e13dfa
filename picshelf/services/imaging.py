import base64
import io
import logging
from pathlib import Path

from PIL import Image, UnidentifiedImageError

logger = logging.getLogger("picshelf.imaging")

DECODE_ERRORS = (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError, SyntaxError)


def decode_image(data: bytes) -> Image.Image:
    """Fully decode image bytes; raises one of DECODE_ERRORS on damaged data."""
    image = Image.open(io.BytesIO(data))
    image.load()
    return image


def is_damaged(path: Path) -> bool:
    try:
        with Image.open(path) as image:
            image.load()
        return False
    except DECODE_ERRORS:
        logger.debug("Decode failed for %s", path, exc_info=True)
        return True


def create_thumbnail(image: Image.Image, width: int, height: int) -> str:
    thumb = image.copy()
    if thumb.mode not in ("RGB", "L"):
        thumb = thumb.convert("RGB")
    thumb.thumbnail((width, height), Image.Resampling.LANCZOS)
    buf = io.BytesIO()
    thumb.save(buf, format="JPEG", quality=80)
    encoded = base64.b64encode(buf.getvalue()).decode("ascii")
    return f"data:image/jpeg;base64,{encoded}"
