"""Flat compositing against a fixed product table, kept for older JSON clients.

Each product type maps to a mockup photo and a fractional placement rectangle.
There is no mask or highlight handling; unknown product types use ``t-shirt``.
"""

import base64
import binascii
import logging
import math
import re
from pathlib import Path
from typing import Dict, Optional, Tuple, Union

from PIL import Image, ImageDraw, ImageFilter, UnidentifiedImageError
from pydantic import BaseModel, ConfigDict, Field

from blending import RESAMPLE, adjust_colors, blend_layers, decode_image, encode_image
from mockup_types import BlendMode, CompositingError, MockupValidationError, OutputFormat

logger = logging.getLogger(__name__)

DEFAULT_PRODUCT = "t-shirt"
SHADOW_BORDER = 3
SHADOW_ALPHA = 38
SHADOW_BLUR = 2
DATA_URL_PREFIX = re.compile(r"^data:image/[\w.+-]+;base64,", re.IGNORECASE)


class FractionalRect(BaseModel):
    model_config = ConfigDict(frozen=True)

    x: float = Field(..., ge=0, lt=1)
    y: float = Field(..., ge=0, lt=1)
    width: float = Field(..., gt=0, le=1)
    height: float = Field(..., gt=0, le=1)

    def to_pixels(self, size: Tuple[int, int]) -> Tuple[int, int, int, int]:
        width, height = size
        return (
            math.floor(width * self.x),
            math.floor(height * self.y),
            math.floor(width * self.width),
            math.floor(height * self.height),
        )


class LegacyProduct(BaseModel):
    model_config = ConfigDict(frozen=True)

    mockup_path: str
    position: FractionalRect
    brightness: float = Field(default=1.0, gt=0)
    blend_mode: BlendMode = BlendMode.MULTIPLY


PRODUCT_CONFIGS: Dict[str, LegacyProduct] = {
    "t-shirt-white": LegacyProduct(
        mockup_path="mannequin-white-tilted.png",
        position=FractionalRect(x=0.28, y=0.30, width=0.38, height=0.24),
        brightness=0.94,
    ),
    "t-shirt-white-model": LegacyProduct(
        mockup_path="mannequin-white-model.jpg",
        position=FractionalRect(x=0.30, y=0.35, width=0.40, height=0.30),
        brightness=0.94,
    ),
    "t-shirt": LegacyProduct(
        mockup_path="mannequin-black.png",
        position=FractionalRect(x=0.3, y=0.32, width=0.4, height=0.25),
        brightness=0.92,
    ),
    "t-shirt-black": LegacyProduct(
        mockup_path="mannequin-black.png",
        position=FractionalRect(x=0.3, y=0.32, width=0.4, height=0.25),
        brightness=0.92,
    ),
    "t-shirt-blue": LegacyProduct(
        mockup_path="mannequin-blue.png",
        position=FractionalRect(x=0.3, y=0.32, width=0.4, height=0.25),
        brightness=0.92,
    ),
}


def decode_data_url(artwork_data_url: Optional[str]) -> bytes:
    if not artwork_data_url or not isinstance(artwork_data_url, str):
        raise MockupValidationError("No artwork provided")
    payload = DATA_URL_PREFIX.sub("", artwork_data_url.strip(), count=1)
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise MockupValidationError("Artwork data URL is not valid base64") from exc


def add_shadow_border(artwork: Image.Image) -> Image.Image:
    """Surround the artwork with a thin, soft 15% black halo."""
    width, height = artwork.size
    framed = Image.new("RGBA", (width + SHADOW_BORDER * 2, height + SHADOW_BORDER * 2), (0, 0, 0, 0))
    ImageDraw.Draw(framed).rectangle(
        [(1, 1), (framed.width - 2, framed.height - 2)],
        fill=(0, 0, 0, SHADOW_ALPHA),
    )
    framed = framed.filter(ImageFilter.GaussianBlur(SHADOW_BLUR))
    framed.alpha_composite(artwork.convert("RGBA"), dest=(SHADOW_BORDER, SHADOW_BORDER))
    return framed


class LegacyCompositor:
    def __init__(self, assets_dir: Union[str, Path], products: Optional[Dict[str, LegacyProduct]] = None):
        self.assets_dir = Path(assets_dir)
        self.products = products if products is not None else PRODUCT_CONFIGS
        if DEFAULT_PRODUCT not in self.products:
            raise ValueError(f"Legacy product table must define '{DEFAULT_PRODUCT}'.")

    def product_for(self, product_type: Optional[str]) -> LegacyProduct:
        product = self.products.get(product_type or DEFAULT_PRODUCT)
        if product is None:
            logger.info("Unknown legacy product type '%s'; using '%s'.", product_type, DEFAULT_PRODUCT)
            product = self.products[DEFAULT_PRODUCT]
        return product

    def _load_mockup(self, product: LegacyProduct) -> Image.Image:
        path = self.assets_dir / product.mockup_path
        try:
            with Image.open(path) as mockup:
                return mockup.convert("RGBA")
        except (FileNotFoundError, UnidentifiedImageError, OSError) as exc:
            raise CompositingError(f"Could not load legacy mockup '{product.mockup_path}': {exc}") from exc

    def generate_legacy(self, artwork_data_url: str, product_type: Optional[str] = DEFAULT_PRODUCT) -> bytes:
        artwork = decode_image(decode_data_url(artwork_data_url), label="artwork")
        product = self.product_for(product_type)
        mockup = self._load_mockup(product)

        x, y, width, height = product.position.to_pixels(mockup.size)
        if width <= 0 or height <= 0:
            raise CompositingError(f"Mockup '{product.mockup_path}' is too small for its print position.")

        resized = artwork.resize((width, height), RESAMPLE)
        adjusted = adjust_colors(resized, brightness=product.brightness)
        framed = add_shadow_border(adjusted)

        layer = Image.new("RGBA", mockup.size, (0, 0, 0, 0))
        layer.paste(framed, (x - SHADOW_BORDER, y - SHADOW_BORDER))
        result = blend_layers(mockup, layer, product.blend_mode)
        return encode_image(result, OutputFormat.PNG, 100)
