"""Logo normalization: decode an uploaded image and fit it inside 512x512."""
import logging
from io import BytesIO

from PIL import Image, UnidentifiedImageError

from .errors import UploadError

logger = logging.getLogger(__name__)

MAX_SIDE = 512
# refuse to decode anything bigger than a 4096x4096 logo
MAX_PIXELS = 4096 * 4096

# mime subtype -> (Pillow format, file extension)
ALLOWED_IMAGE_TYPES = {
    'png': ('PNG', 'png'),
    'jpeg': ('JPEG', 'jpeg'),
    'jpg': ('JPEG', 'jpg'),
    'gif': ('GIF', 'gif'),
    'webp': ('WEBP', 'webp'),
}


def image_type(mimetype):
    """Map a mime type such as ``image/png`` to (format, extension)"""
    if not mimetype or '/' not in mimetype:
        raise UploadError('Missing image mime type')
    major, subtype = mimetype.lower().split('/', 1)
    subtype = subtype.split(';')[0].split('+')[0].strip()
    if major != 'image' or subtype not in ALLOWED_IMAGE_TYPES:
        raise UploadError(
            f'Unsupported image type {mimetype!r}. Allowed: '
            f'{", ".join(sorted(ALLOWED_IMAGE_TYPES))}'
        )
    return ALLOWED_IMAGE_TYPES[subtype]


def normalize_image(raw, fmt, max_side=MAX_SIDE, max_pixels=MAX_PIXELS):
    """Return ``raw`` re-encoded as ``fmt``, resized to fit max_side x max_side.

    Images already small enough keep their size. Anything Pillow cannot
    decode, or whose header declares more than ``max_pixels``, raises
    UploadError before the pixel data is decoded.
    """
    try:
        with Image.open(BytesIO(raw)) as img:
            width, height = img.size
            if width * height > max_pixels:
                raise UploadError(f'Image too large: {width}x{height} pixels')
            img.load()
            original_size = img.size
            img.thumbnail((max_side, max_side))
            if fmt == 'JPEG' and img.mode not in ('RGB', 'L'):
                img = img.convert('RGB')
            buffer = BytesIO()
            img.save(buffer, format=fmt)
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
        raise UploadError(f'Could not process image: {e}') from e

    logger.debug(f"🖼️ Normalized image {original_size} -> {img.size} ({fmt})")
    return buffer.getvalue()
