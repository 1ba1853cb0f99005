from typing import NamedTuple, Optional, Tuple, Union
import numpy as np
from PIL import Image

from core.config import WATERMARK_BACKEND, logger

ImageLike = Union[Image.Image, np.ndarray]

_BACKENDS = ('numpy', 'pixel')

if WATERMARK_BACKEND not in _BACKENDS:
    logger.warning(f"Unknown WATERMARK_BACKEND={WATERMARK_BACKEND!r}; using numpy")


class PlacementRect(NamedTuple):
    """Watermark anchor in base coordinates plus the visible (clipped) extent."""
    x: int
    y: int
    width: int
    height: int

    def contains(self, px: int, py: int) -> bool:
        return self.x <= px < self.x + self.width and self.y <= py < self.y + self.height


def _resolve_backend(backend: Optional[str]) -> str:
    b = (backend or WATERMARK_BACKEND or 'numpy').strip().lower()
    return b if b in _BACKENDS else 'numpy'


# ---------- Pixel blender ----------
_ONE = np.float32(1.0)
_U8_MAX = np.float32(255.0)


def blend_alpha(wm_alpha, opacity: float):
    """Blend factor for one watermark alpha value (or array), in float32."""
    return np.asarray(wm_alpha).astype(np.float32) * np.float32(opacity) / _U8_MAX


def blend_channel(base: int, wm: int, alpha: float) -> int:
    """Linear alpha blend of one 8-bit channel in float32; result is clamped then truncated to u8."""
    a = np.float32(alpha)
    v = np.float32(base) * (_ONE - a) + np.float32(wm) * a
    return int(min(255.0, max(0.0, float(v))))


def blend_channels(base: np.ndarray, wm: np.ndarray, alpha: np.ndarray) -> np.ndarray:
    """Vectorised blend_channel. Same float32 expression, so results are bit-identical."""
    a = np.asarray(alpha, dtype=np.float32)
    v = base.astype(np.float32) * (_ONE - a) + wm.astype(np.float32) * a
    return np.clip(v, 0.0, 255.0).astype(np.uint8)


# ---------- Placement ----------
def compute_position(base_w: int, base_h: int, wm_w: int, wm_h: int, margin: int) -> Tuple[int, int]:
    """Bottom-right anchor; saturates to 0 when the watermark plus margin does not fit."""
    return max(0, base_w - (wm_w + margin)), max(0, base_h - (wm_h + margin))


def placement_rect(base_size: Tuple[int, int], wm_size: Tuple[int, int], margin: int) -> PlacementRect:
    bw, bh = base_size
    ww, wh = wm_size
    x, y = compute_position(bw, bh, ww, wh, margin)
    return PlacementRect(x, y, max(0, min(ww, bw - x)), max(0, min(wh, bh - y)))


# ---------- Conversions ----------
def _to_rgba_array(img: ImageLike) -> np.ndarray:
    if isinstance(img, np.ndarray):
        if img.ndim != 3 or img.shape[2] != 4 or img.dtype != np.uint8:
            raise ValueError(f"expected (H, W, 4) uint8 array, got {img.shape} {img.dtype}")
        return img
    return np.array(img.convert('RGBA'), dtype=np.uint8)


def _to_rgba_image(img: ImageLike) -> Image.Image:
    if isinstance(img, np.ndarray):
        return Image.fromarray(np.array(_to_rgba_array(img), dtype=np.uint8, copy=True))
    return img if img.mode == 'RGBA' else img.convert('RGBA')


def prepare_watermark(img: ImageLike) -> np.ndarray:
    """Return a read-only RGBA array suitable for sharing across concurrent jobs."""
    arr = np.array(_to_rgba_array(img), dtype=np.uint8, copy=True)
    arr.setflags(write=False)
    return arr


# ---------- Backends ----------
def _composite_numpy(base: ImageLike, watermark: ImageLike, opacity: float, margin: int) -> Image.Image:
    out = np.array(_to_rgba_array(base), dtype=np.uint8, copy=True)
    over_full = _to_rgba_array(watermark)
    H, W = out.shape[:2]
    h, w = over_full.shape[:2]
    rect = placement_rect((W, H), (w, h), margin)
    if rect.width <= 0 or rect.height <= 0:
        return Image.fromarray(out)
    roi = out[rect.y:rect.y + rect.height, rect.x:rect.x + rect.width, :]
    over = over_full[0:rect.height, 0:rect.width, :]
    alpha = blend_alpha(over[:, :, 3:4], opacity)
    roi[:, :, :3] = blend_channels(roi[:, :, :3], over[:, :, :3], alpha)
    roi[:, :, 3] = 255
    return Image.fromarray(out)


def _blend_pixel(base_px, wm_px, opacity: float) -> Tuple[int, int, int, int]:
    alpha = blend_alpha(wm_px[3], opacity)
    return (
        blend_channel(base_px[0], wm_px[0], alpha),
        blend_channel(base_px[1], wm_px[1], alpha),
        blend_channel(base_px[2], wm_px[2], alpha),
        255,
    )


def _composite_pixels(base: ImageLike, watermark: ImageLike, opacity: float, margin: int) -> Image.Image:
    out = _to_rgba_image(base).copy()
    wm = _to_rgba_image(watermark)
    rect = placement_rect(out.size, wm.size, margin)
    dst = out.load()
    src = wm.load()
    for y in range(rect.y, rect.y + rect.height):
        for x in range(rect.x, rect.x + rect.width):
            dst[x, y] = _blend_pixel(dst[x, y], src[x - rect.x, y - rect.y], opacity)
    return out


def apply_watermark(
    base: ImageLike,
    watermark: ImageLike,
    opacity: float,
    margin: int,
    backend: Optional[str] = None,
) -> Image.Image:
    """Overlay `watermark` at the bottom-right of `base`, `margin` pixels from the edges.

    Pixels under the watermark are blended per channel with alpha
    `wm_alpha * opacity / 255` and become fully opaque; every other pixel is
    copied from the base. The result always has the base's dimensions.
    Opacity is not validated: values outside [0, 1] blend out of gamut and clamp.
    """
    margin = max(0, int(margin))
    if _resolve_backend(backend) == 'pixel':
        return _composite_pixels(base, watermark, opacity, margin)
    return _composite_numpy(base, watermark, opacity, margin)
