"""Tile a material texture across a render and blend it in at low opacity."""

import logging
import os
from typing import Optional, Tuple

import numpy as np
from PIL import Image, UnidentifiedImageError

from blending import blend_layers
from mockup_types import BlendMode

logger = logging.getLogger(__name__)

NOISE_SEED = 1337
NOISE_TILE = 256
NOISE_SPREAD = 18.0


def tile_texture(texture: Image.Image, size: Tuple[int, int]) -> Image.Image:
    width, height = size
    tiled = Image.new("RGB", size)
    tex_w, tex_h = texture.size

    for y in range(0, height, tex_h):
        for x in range(0, width, tex_w):
            tiled.paste(texture, (x, y))

    return tiled


def noise_texture(tile: int = NOISE_TILE, seed: int = NOISE_SEED) -> Image.Image:
    """Mid-grey fabric grain; seeded so repeated renders are byte-identical."""
    rng = np.random.default_rng(seed)
    grain = rng.normal(128.0, NOISE_SPREAD, size=(tile, tile))
    return Image.fromarray(np.clip(grain, 0, 255).astype(np.uint8), mode="L").convert("RGB")


def load_texture(path: Optional[str]) -> Optional[Image.Image]:
    if not path or not os.path.exists(path):
        return None
    try:
        with Image.open(path) as texture:
            return texture.convert("RGB")
    except (UnidentifiedImageError, OSError) as exc:
        logger.warning("Texture %s is unreadable: %s", path, exc)
        return None


def apply_texture_overlay(image: Image.Image, texture: Optional[Image.Image], opacity: float) -> Image.Image:
    """Overlay-blend ``texture`` (tiled, or procedural grain when None) across the whole image."""
    if opacity <= 0:
        return image
    if texture is None:
        texture = noise_texture()
    tiled = tile_texture(texture.convert("RGB"), image.size).convert("RGBA")
    return blend_layers(image, tiled, BlendMode.OVERLAY, opacity=opacity)
