"""
MIT License — upload normalization for the try-on backend
"""

import io
import logging
import secrets

from PIL import Image, UnidentifiedImageError

from tryon_backend.errors import InvalidRequestError, UploadTooLargeError
from tryon_backend.types import ImageInput

logger = logging.getLogger(__name__)

_ORIENTATION_TAG = 0x0112
_ROTATIONS = {3: 180, 6: 270, 8: 90}


def _strip_exif(img: Image.Image) -> Image.Image:
    # Recreate image to drop EXIF safely
    out = Image.new(img.mode, img.size)
    out.paste(img)
    return out


def _resize_max(img: Image.Image, max_side: int) -> Image.Image:
    w, h = img.size
    scale = min(1.0, max_side / max(w, h))
    if scale < 1.0:
        new_size = (int(w * scale), int(h * scale))
        img = img.resize(new_size, Image.LANCZOS)
    return img


def _autorotate(img: Image.Image) -> Image.Image:
    try:
        orient = img.getexif().get(_ORIENTATION_TAG)
    except Exception as e:
        logger.warning(f"EXIF read failed: {e}")
        return img
    angle = _ROTATIONS.get(orient)
    if angle:
        img = img.rotate(angle, expand=True)
    return img


def prepare_image(
    content: bytes,
    *,
    field: str,
    max_bytes: int,
    max_side: int = 1536,
) -> ImageInput:
    """Validate an uploaded photo and re-encode it as an EXIF-free JPEG.

    Raises InvalidRequestError when the upload is empty or not an image and
    UploadTooLargeError when it exceeds ``max_bytes``.
    """
    if not content:
        raise InvalidRequestError(f"'{field}' is empty")
    if len(content) > max_bytes:
        raise UploadTooLargeError(f"'{field}' is too large (limit {max_bytes // (1024 * 1024)} MB)")

    try:
        img = Image.open(io.BytesIO(content))
        img = _autorotate(img)
        img = img.convert("RGB")
    except UnidentifiedImageError:
        raise InvalidRequestError(f"'{field}' is not a supported image type")
    except Exception as e:
        logger.error(f"Image processing error for {field}: {e}")
        raise InvalidRequestError(f"'{field}' could not be processed")

    img = _strip_exif(img)
    img = _resize_max(img, max_side)

    buf = io.BytesIO()
    img.save(buf, format="JPEG", quality=92, optimize=True)
    return ImageInput(
        data=buf.getvalue(),
        filename=f"{field}-{secrets.token_hex(8)}.jpg",
        content_type="image/jpeg",
    )
