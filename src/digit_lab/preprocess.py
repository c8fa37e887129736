from __future__ import annotations

import base64
import io
from dataclasses import dataclass
from typing import Final

import torch
from PIL import Image, ImageOps, UnidentifiedImageError

from .config import ResizePolicy
from .errors import AppError, ErrorCode, InvalidImageError, app_error, status_for
from .inference.types import NormalizedImage

INPUT_SIDE: Final[int] = 28
_LUMA_R: Final[float] = 0.299
_LUMA_G: Final[float] = 0.587
_LUMA_B: Final[float] = 0.114
_SIXTEEN_BIT_MODES: Final[frozenset[str]] = frozenset({"I;16", "I;16L", "I;16B", "I;16N"})


@dataclass(frozen=True)
class NormalizeOptions:
    policy: ResizePolicy
    invert: bool = False


def decode_image(raw: bytes, max_side_px: int | None = None) -> Image.Image:
    """Decode uploaded bytes, forcing a full pixel load so truncation surfaces here.

    The header is read lazily first and ``max_side_px`` is enforced before any
    pixel data is decompressed.
    """
    if not raw:
        raise InvalidImageError("Empty image")
    try:
        img = Image.open(io.BytesIO(raw))
        if max_side_px is not None and max(img.size) > max_side_px:
            raise app_error(ErrorCode.bad_dimensions, "Image dimensions too large")
        img.load()
    except UnidentifiedImageError:
        raise InvalidImageError("Failed to decode image") from None
    except Image.DecompressionBombError:
        raise AppError(
            ErrorCode.too_large,
            status_for(ErrorCode.too_large),
            "Decompression bomb triggered",
        ) from None
    except (OSError, SyntaxError, ValueError):
        raise InvalidImageError("Corrupt or truncated image") from None
    return img


def normalize_image(img: Image.Image, opts: NormalizeOptions) -> NormalizedImage:
    """Turn an arbitrary image into the classifier's 1x1x28x28 float tensor.

    Geometry (letterbox or direct resize) runs on the colour image and the
    luminance is taken from the 28x28 result, so colour inputs are weighted
    per pixel after resampling. Values are clamped to [0, 1] and inverted last.
    """
    base = _flatten(ImageOps.exif_transpose(img) or img)
    if opts.policy == "letterbox":
        sized = _letterbox(base)
    else:
        sized = base.resize((INPUT_SIDE, INPUT_SIDE), resample=Image.Resampling.BICUBIC)

    data = _luminance(sized)
    t = torch.tensor(data, dtype=torch.float32).reshape(1, 1, INPUT_SIDE, INPUT_SIDE)
    t = t.clamp(0.0, 1.0)
    if opts.invert:
        t = 1.0 - t
    return NormalizedImage(tensor=t.contiguous(), policy=opts.policy, invert=opts.invert)


def thumbnail_png_b64(img: Image.Image) -> str:
    """28x28 PNG of the upload on a white background, base64 encoded."""
    src = ImageOps.exif_transpose(img) or img
    if src.mode in _SIXTEEN_BIT_MODES or src.mode == "I":
        src = src.convert("I").point(lambda v: v / 257).convert("L")
    elif src.mode == "F":
        src = src.point(lambda v: v * 255).convert("L")
    rgba = src.convert("RGBA")
    bg = Image.new("RGBA", rgba.size, (255, 255, 255, 255))
    small = Image.alpha_composite(bg, rgba).convert("RGB")
    small = small.resize((INPUT_SIDE, INPUT_SIDE), resample=Image.Resampling.BICUBIC)
    buf = io.BytesIO()
    small.save(buf, format="PNG", optimize=True)
    return base64.b64encode(buf.getvalue()).decode("ascii")


def _flatten(img: Image.Image) -> Image.Image:
    # Transparency lands on the black background the model expects
    mode = img.mode
    if mode in _SIXTEEN_BIT_MODES:
        return img.convert("I")
    if mode in ("L", "I", "F"):
        return img
    if mode == "1":
        return img.convert("L")
    has_alpha = mode in ("RGBA", "LA", "PA", "RGBa", "La") or "transparency" in img.info
    if has_alpha:
        rgba = img.convert("RGBA")
        bg = Image.new("RGBA", rgba.size, (0, 0, 0, 255))
        return Image.alpha_composite(bg, rgba).convert("RGB")
    return img.convert("RGB")


def _letterbox(img: Image.Image) -> Image.Image:
    width, height = img.size
    side = max(width, height)
    canvas = Image.new(img.mode, (side, side), 0)
    canvas.paste(img, ((side - width) // 2, (side - height) // 2))
    return canvas.resize((INPUT_SIDE, INPUT_SIDE), resample=Image.Resampling.BICUBIC)


def _luminance(img: Image.Image) -> list[float]:
    pix = img.load()
    if pix is None:
        raise InvalidImageError("Image has no pixel data")
    width, height = img.size
    if img.mode == "RGB":
        out: list[float] = []
        for y in range(height):
            for x in range(width):
                r, g, b = pix[x, y][:3]
                out.append((_LUMA_R * r + _LUMA_G * g + _LUMA_B * b) / 255.0)
        return out
    if img.mode == "L":
        scale = 255.0
    elif img.mode == "I":
        scale = 65535.0
    elif img.mode == "F":
        scale = 1.0
    else:
        raise InvalidImageError(f"Unsupported pixel format: {img.mode}")
    return [float(pix[x, y]) / scale for y in range(height) for x in range(width)]

