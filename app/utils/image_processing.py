import io
import logging
from typing import Tuple
from PIL import Image, UnidentifiedImageError

logger = logging.getLogger(__name__)

# Formats accepted for upload and editing, with the MIME type each one is sent as
SUPPORTED_FORMATS = {
    'JPEG': 'image/jpeg',
    'PNG': 'image/png',
    'GIF': 'image/gif',
    'WEBP': 'image/webp',
    'BMP': 'image/bmp',
}

MIME_EXTENSIONS = {
    'image/jpeg': 'jpg',
    'image/png': 'png',
    'image/gif': 'gif',
    'image/webp': 'webp',
    'image/bmp': 'bmp',
    'image/svg+xml': 'svg',
}

def get_image_format_from_bytes(image_bytes: bytes) -> str:
    """Detect image format from bytes."""
    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            return img.format
    except (UnidentifiedImageError, OSError) as e:
        logger.error(f"Error detecting image format: {e}")
        raise ValueError("Unable to detect image format")

def validate_image_format(image_bytes: bytes) -> bool:
    """Validate if image format is supported."""
    try:
        format_name = get_image_format_from_bytes(image_bytes)
    except ValueError:
        return False
    return format_name in SUPPORTED_FORMATS

def mime_type_for_format(format_name: str) -> str:
    return SUPPORTED_FORMATS.get((format_name or '').upper(), 'image/png')

def extension_for_mime_type(mime_type: str) -> str:
    return MIME_EXTENSIONS.get((mime_type or '').split(';')[0].strip().lower(), 'png')

def downscale_to_max_dimension(image_bytes: bytes, max_dimension: int) -> Tuple[bytes, str]:
    """
    Shrink an image so its longer side is at most `max_dimension`, keeping aspect ratio.

    Returns the (possibly unchanged) bytes together with their MIME type. Images
    already within bounds, and animated images, are returned as-is.
    """
    with Image.open(io.BytesIO(image_bytes)) as image:
        format_name = image.format
        mime_type = mime_type_for_format(format_name)
        width, height = image.size

        if max(width, height) <= max_dimension or getattr(image, "is_animated", False):
            return image_bytes, mime_type

        scale_factor = max_dimension / float(max(width, height))
        new_size = (max(1, int(width * scale_factor)), max(1, int(height * scale_factor)))
        logger.info(f"Downscaling {format_name} image from {width}x{height} to {new_size[0]}x{new_size[1]}")

        resized = image.resize(new_size, Image.Resampling.LANCZOS)

        target_format = format_name if format_name in ('JPEG', 'PNG', 'WEBP') else 'PNG'
        if target_format == 'JPEG' and resized.mode not in ('RGB', 'L'):
            resized = resized.convert('RGB')

        buffer = io.BytesIO()
        save_params = {'format': target_format, 'optimize': True}
        if target_format in ('JPEG', 'WEBP'):
            save_params['quality'] = 90
        resized.save(buffer, **save_params)
        return buffer.getvalue(), mime_type_for_format(target_format)
