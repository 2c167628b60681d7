import io, os, logging
from typing import Tuple
from PIL import Image

logger = logging.getLogger(__name__)

# Pillow format name -> file extension
_EXTENSIONS = {"PNG": "png", "JPEG": "jpg", "GIF": "gif"}

def write_bytes(path: str, data: bytes):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "wb") as f:
        f.write(data)

def panel_file_name(panel_number: int, ext: str) -> str:
    return f"panel_{panel_number:02d}.{ext}"

def decode_artifact(data: bytes) -> Tuple[bytes, str]:
    """Validate image bytes and return (bytes, extension).

    Formats without a browser-friendly extension (e.g. WebP) are re-encoded
    as PNG. Raises if the payload is not an image.
    """
    with Image.open(io.BytesIO(data)) as img:
        img.load()
        fmt = img.format or ""
        if fmt in _EXTENSIONS:
            return data, _EXTENSIONS[fmt]
        logger.info(f"Converting {fmt or 'unknown'} artifact to PNG")
        if img.mode not in ("RGB", "RGBA", "L", "LA"):
            img = img.convert("RGBA")
        out = io.BytesIO()
        img.save(out, "PNG")
        return out.getvalue(), "png"
