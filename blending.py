"""Raster helpers shared by the compositors: decode, encode, colour adjustment and blend modes.

Layers are straight (non-premultiplied) RGBA. Blending follows the W3C separable
compositing formula, so partial alpha (anti-aliased mask edges, soft shadows)
fades linearly between the untouched backdrop and the blended colour:

    co = cs * as * (1 - ab) + cb * ab * (1 - as) + as * ab * B(cb, cs)
    ao = as + ab * (1 - as)

and the result is un-premultiplied by ``ao``.
"""

import io
from typing import Callable, Dict, Optional, Tuple

import numpy as np
from PIL import Image, ImageChops, ImageEnhance, ImageOps, UnidentifiedImageError

from mockup_types import BlendMode, CompositingError, MockupValidationError, OutputFormat

RESAMPLE = Image.Resampling.LANCZOS
WHITE = (255, 255, 255)


def decode_image(buffer: bytes, *, label: str = "design") -> Image.Image:
    if not buffer:
        raise MockupValidationError(f"The {label} image is empty.")
    try:
        with Image.open(io.BytesIO(buffer)) as source:
            source.load()
            image = ImageOps.exif_transpose(source)
            return image.convert("RGBA")
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as exc:
        raise MockupValidationError(f"The {label} could not be decoded as a raster image: {exc}") from exc


def flatten(image: Image.Image, background: Tuple[int, int, int] = WHITE) -> Image.Image:
    if image.mode == "RGB":
        return image
    rgba = image.convert("RGBA")
    backdrop = Image.new("RGBA", rgba.size, background + (255,))
    return Image.alpha_composite(backdrop, rgba).convert("RGB")


def encode_image(image: Image.Image, output_format: OutputFormat, quality: int) -> bytes:
    if not 1 <= quality <= 100:
        raise MockupValidationError(f"Output quality must be between 1 and 100, got {quality}.")
    output_format = OutputFormat(output_format)
    buffer = io.BytesIO()
    if output_format is OutputFormat.JPEG:
        flatten(image).save(buffer, format="JPEG", quality=quality)
    elif output_format is OutputFormat.WEBP:
        image.save(buffer, format="WEBP", quality=quality)
    else:
        # PNG is lossless; quality has no visible effect.
        image.save(buffer, format="PNG")
    return buffer.getvalue()


def _contrast_lut(factor: float):
    return [max(0, min(255, int(round((value - 128) * factor + 128)))) for value in range(256)]


def adjust_colors(
    image: Image.Image,
    brightness: float = 1.0,
    contrast: float = 1.0,
    saturation: float = 1.0,
) -> Image.Image:
    """Apply ink-absorption style adjustments to RGB, leaving alpha untouched."""
    if brightness == 1.0 and contrast == 1.0 and saturation == 1.0:
        return image
    rgba = image.convert("RGBA")
    alpha = rgba.getchannel("A")
    rgb = rgba.convert("RGB")
    if brightness != 1.0:
        rgb = ImageEnhance.Brightness(rgb).enhance(brightness)
    if contrast != 1.0:
        rgb = rgb.point(_contrast_lut(contrast) * 3)
    if saturation != 1.0:
        rgb = ImageEnhance.Color(rgb).enhance(saturation)
    rgb.putalpha(alpha)
    return rgb


def mask_alpha(mask: Image.Image) -> Image.Image:
    """Return the clipping channel of a mask: its alpha when it carries one, else its luminance."""
    if mask.mode in ("RGBA", "LA", "PA") or "transparency" in mask.info:
        alpha = mask.convert("RGBA").getchannel("A")
        if alpha.getextrema() != (255, 255):
            return alpha
    return mask.convert("L")


def apply_mask(layer: Image.Image, mask: Image.Image) -> Image.Image:
    if layer.size != mask.size:
        raise CompositingError(
            f"Mask is {mask.size[0]}x{mask.size[1]} but the layer is {layer.size[0]}x{layer.size[1]}."
        )
    clipped = layer.convert("RGBA")
    clipped.putalpha(ImageChops.multiply(clipped.getchannel("A"), mask_alpha(mask)))
    return clipped


def _multiply(cb: np.ndarray, cs: np.ndarray) -> np.ndarray:
    return cb * cs


def _screen(cb: np.ndarray, cs: np.ndarray) -> np.ndarray:
    return cb + cs - cb * cs


def _overlay(cb: np.ndarray, cs: np.ndarray) -> np.ndarray:
    return np.where(cb <= 0.5, 2.0 * cb * cs, 1.0 - 2.0 * (1.0 - cb) * (1.0 - cs))


def _normal(cb: np.ndarray, cs: np.ndarray) -> np.ndarray:
    return cs


BLEND_FUNCTIONS: Dict[BlendMode, Callable[[np.ndarray, np.ndarray], np.ndarray]] = {
    BlendMode.MULTIPLY: _multiply,
    BlendMode.SCREEN: _screen,
    BlendMode.OVERLAY: _overlay,
    BlendMode.NORMAL: _normal,
}


def _to_float(image: Image.Image) -> np.ndarray:
    return np.asarray(image.convert("RGBA"), dtype=np.float32) / 255.0


def _to_image(values: np.ndarray) -> Image.Image:
    return Image.fromarray(np.clip(np.rint(values * 255.0), 0, 255).astype(np.uint8), mode="RGBA")


def blend_arrays(backdrop: np.ndarray, source: np.ndarray, mode: BlendMode, opacity: float = 1.0) -> np.ndarray:
    cb, ab = backdrop[..., :3], backdrop[..., 3:4]
    cs, a_s = source[..., :3], source[..., 3:4] * opacity
    mixed = BLEND_FUNCTIONS[BlendMode(mode)](cb, cs)
    ao = a_s + ab * (1.0 - a_s)
    co = cs * a_s * (1.0 - ab) + cb * ab * (1.0 - a_s) + a_s * ab * mixed
    rgb = np.divide(co, ao, out=np.zeros_like(co), where=ao > 0)
    return np.concatenate([rgb, ao], axis=-1)


def blend_layers(
    base: Image.Image,
    layer: Image.Image,
    mode: BlendMode = BlendMode.NORMAL,
    opacity: float = 1.0,
) -> Image.Image:
    """Composite a base-sized layer onto ``base``; pixels outside the layer's alpha bbox are untouched."""
    if base.size != layer.size:
        raise CompositingError(
            f"Layer is {layer.size[0]}x{layer.size[1]} but the base image is {base.size[0]}x{base.size[1]}."
        )
    result = base.convert("RGBA")
    layer = layer.convert("RGBA")
    bbox: Optional[Tuple[int, int, int, int]] = layer.getchannel("A").getbbox()
    if bbox is None or opacity <= 0:
        return result
    blended = blend_arrays(_to_float(result.crop(bbox)), _to_float(layer.crop(bbox)), mode, opacity)
    result.paste(_to_image(blended), bbox[:2])
    return result
