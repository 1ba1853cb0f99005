"""
Codec helpers: raw bytes <-> RGBA Pillow images.
Outputs are always written in a lossless raster format.
"""
import io
import os
import tempfile
from typing import Optional

from PIL import Image, UnidentifiedImageError

from core.config import OUTPUT_FORMAT
from core.errors import DecodeFailure, EncodeFailure

# format -> (Pillow format name, extension, media type, save kwargs)
_LOSSLESS_FORMATS = {
    'png': ('PNG', 'png', 'image/png', {'compress_level': 6}),
    'webp': ('WEBP', 'webp', 'image/webp', {'lossless': True}),
    'tiff': ('TIFF', 'tiff', 'image/tiff', {'compression': 'tiff_lzw'}),
    'bmp': ('BMP', 'bmp', 'image/bmp', {}),
}


def _normalize_format(fmt: Optional[str]) -> str:
    key = (fmt or OUTPUT_FORMAT or 'png').strip().lower().lstrip('.')
    if key == 'tif':
        key = 'tiff'
    return key if key in _LOSSLESS_FORMATS else 'png'


def extension_for(fmt: Optional[str] = None) -> str:
    return _LOSSLESS_FORMATS[_normalize_format(fmt)][1]


def media_type_for(fmt: Optional[str] = None) -> str:
    return _LOSSLESS_FORMATS[_normalize_format(fmt)][2]


def decode_image(data: bytes, identity: Optional[str] = None) -> Image.Image:
    """Decode raw bytes into a fully loaded RGBA image.

    Raises:
        DecodeFailure: empty payload or bytes Pillow cannot parse.
    """
    if not data:
        raise DecodeFailure("empty image payload", identity)
    try:
        img = Image.open(io.BytesIO(data))
        img.load()
        return img.convert('RGBA')
    except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as ex:
        raise DecodeFailure(f"cannot decode image: {ex}", identity) from ex


def encode_image(img: Image.Image, fmt: Optional[str] = None, identity: Optional[str] = None) -> bytes:
    """Encode an image to bytes in a lossless format (png by default)."""
    pil_fmt, _, _, opts = _LOSSLESS_FORMATS[_normalize_format(fmt)]
    buf = io.BytesIO()
    try:
        img.save(buf, format=pil_fmt, **opts)
    except (OSError, ValueError, KeyError) as ex:
        raise EncodeFailure(f"cannot encode image as {pil_fmt}: {ex}", identity) from ex
    return buf.getvalue()


def load_image(path: str) -> Image.Image:
    try:
        with open(path, 'rb') as f:
            data = f.read()
    except OSError as ex:
        raise DecodeFailure(f"cannot read {path}: {ex}", os.path.basename(path)) from ex
    return decode_image(data, os.path.basename(path))


def save_image(img: Image.Image, path: str, fmt: Optional[str] = None) -> None:
    """Encode and write `img` to `path` atomically.

    The bytes go to a hidden temp file in the same directory which is then
    renamed over `path`, so a reader polling for `path` never sees a partial
    file. The temp file is removed if anything fails.
    """
    name = os.path.basename(path)
    data = encode_image(img, fmt, name)
    tmp_path = None
    try:
        parent = os.path.dirname(os.path.abspath(path))
        os.makedirs(parent, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=parent, prefix=f".{name}.", suffix=".part")
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.replace(tmp_path, path)
    except OSError as ex:
        if tmp_path and os.path.exists(tmp_path):
            try:
                os.remove(tmp_path)
            except OSError:
                pass
        raise EncodeFailure(f"cannot write {path}: {ex}", name) from ex
