"""Mask-based mockup rendering: the primary path from a design to a product photo.

Pipeline per render: fill-resize the design into the print area, adjust colours,
place it on a transparent base-sized canvas, clip it with the template mask,
blend it onto the base photo, then layer shadow (multiply), highlight (screen)
and an optional material texture (overlay). Missing optional layers are no-ops.
"""

import logging
import time
from typing import List, Optional

from PIL import Image, ImageDraw, ImageFont, UnidentifiedImageError

from blending import RESAMPLE, adjust_colors, apply_mask, blend_layers, decode_image, encode_image
from mockup_types import (
    BlendMode,
    CompositingError,
    DisplacementConfig,
    GeneratedMockup,
    MockupError,
    MockupResult,
    MockupValidationError,
    OutputFormat,
    Template,
)
from template_library import TemplateLibraryManager
from texture_overlay import apply_texture_overlay, load_texture

logger = logging.getLogger(__name__)

DEFAULT_QUALITY = 90
PREVIEW_FILL = (255, 0, 0, 77)
PREVIEW_OUTLINE = (255, 0, 0, 220)


def _load_font(size: int) -> ImageFont.ImageFont:
    """Best-effort font loading with graceful fallback."""
    for font_name in ("DejaVuSans.ttf", "Arial.ttf"):
        try:
            return ImageFont.truetype(font_name, size)
        except OSError:
            continue
    return ImageFont.load_default()


class MaskCompositor:
    def __init__(self, library: TemplateLibraryManager, texture_file: Optional[str] = None):
        self.library = library
        self.texture_file = texture_file

    def _open_asset(self, relative_path: str, label: str) -> Image.Image:
        path = self.library.resolve_asset(relative_path)
        try:
            with Image.open(path) as asset:
                asset.load()
                return asset.copy()
        except (FileNotFoundError, UnidentifiedImageError, OSError) as exc:
            raise CompositingError(f"Could not load {label} '{relative_path}': {exc}") from exc

    def _open_layer(self, relative_path: str, label: str, size) -> Image.Image:
        layer = self._open_asset(relative_path, label)
        if layer.size != size:
            raise CompositingError(
                f"{label} '{relative_path}' is {layer.size[0]}x{layer.size[1]}, expected {size[0]}x{size[1]}"
            )
        return layer

    def _texture_for(self, template: Template) -> Optional[Image.Image]:
        if template.displacement_path:
            return self._open_asset(template.displacement_path, "displacement map").convert("RGB")
        return load_texture(self.texture_file)

    def compose(self, template: Template, design: Image.Image, config: DisplacementConfig) -> Image.Image:
        base = self._open_asset(template.base_path, "base image").convert("RGBA")
        area = template.print_area
        if not area.fits_within(base.size):
            raise CompositingError(f"Print area of template {template.id} exceeds its base image.")

        fitted = design.resize(area.size, RESAMPLE)
        adjusted = adjust_colors(fitted, config.brightness, config.contrast, config.saturation)

        placed = Image.new("RGBA", base.size, (0, 0, 0, 0))
        placed.paste(adjusted, area.origin)
        if template.mask_path:
            placed = apply_mask(placed, self._open_layer(template.mask_path, "mask", base.size))

        result = blend_layers(base, placed, config.blend_mode)
        if template.shadow_path:
            shadow = self._open_layer(template.shadow_path, "shadow layer", base.size)
            result = blend_layers(result, shadow, BlendMode.MULTIPLY)
        if template.highlight_path:
            highlight = self._open_layer(template.highlight_path, "highlight layer", base.size)
            result = blend_layers(result, highlight, BlendMode.SCREEN)
        if config.texture_overlay:
            result = apply_texture_overlay(result, self._texture_for(template), config.texture_opacity)
        return result

    def render(
        self,
        template_id: str,
        design_buffer: bytes,
        config: Optional[DisplacementConfig] = None,
        output_format: OutputFormat = OutputFormat.PNG,
        output_quality: int = DEFAULT_QUALITY,
    ) -> MockupResult:
        start = time.perf_counter()
        template = self.library.get_template(template_id)
        try:
            output_format = OutputFormat(output_format)
        except ValueError as exc:
            raise MockupValidationError(f"Unsupported output format: {output_format}") from exc
        if not 1 <= output_quality <= 100:
            raise MockupValidationError(f"Output quality must be between 1 and 100, got {output_quality}.")
        design = decode_image(design_buffer)
        config = config or DisplacementConfig()

        try:
            content = encode_image(self.compose(template, design, config), output_format, output_quality)
        except MockupError:
            raise
        except Exception as exc:
            logger.exception("Compositing failed for template %s", template.id)
            raise CompositingError(f"Compositing failed for template {template.id}: {exc}") from exc

        elapsed_ms = int(round((time.perf_counter() - start) * 1000))
        return MockupResult(content=content, media_type=output_format.media_type, generation_ms=elapsed_ms)

    def generate(
        self,
        template_id: str,
        design_buffer: bytes,
        config: Optional[DisplacementConfig] = None,
        output_format: OutputFormat = OutputFormat.PNG,
        output_quality: int = DEFAULT_QUALITY,
    ) -> bytes:
        return self.render(template_id, design_buffer, config, output_format, output_quality).content

    def preview_template(self, template_id: str) -> bytes:
        """Base photo with the print area shaded and labelled, for checking template metadata."""
        template = self.library.get_template(template_id)
        base = self._open_asset(template.base_path, "base image").convert("RGBA")
        area = template.print_area

        overlay = Image.new("RGBA", base.size, (0, 0, 0, 0))
        draw = ImageDraw.Draw(overlay)
        outline_width = max(2, min(area.width, area.height) // 200)
        draw.rectangle(
            [area.origin, (area.x + area.width - 1, area.y + area.height - 1)],
            fill=PREVIEW_FILL,
            outline=PREVIEW_OUTLINE,
            width=outline_width,
        )
        font = _load_font(max(12, min(area.width, area.height) // 20))
        label = f"{template.id}  {area.width}x{area.height} @ ({area.x}, {area.y})"
        draw.text((area.x + outline_width + 8, area.y + outline_width + 8), label, fill="#ffffff", font=font)

        return encode_image(Image.alpha_composite(base, overlay), OutputFormat.PNG, 100)

    def generate_all(
        self,
        design_buffer: bytes,
        *,
        category: Optional[str] = None,
        product_type: Optional[str] = None,
        config: Optional[DisplacementConfig] = None,
        output_format: OutputFormat = OutputFormat.PNG,
        output_quality: int = DEFAULT_QUALITY,
    ) -> List[GeneratedMockup]:
        """Render the design onto every matching template; failed templates are logged and omitted."""
        output_format = OutputFormat(output_format)
        if not 1 <= output_quality <= 100:
            raise MockupValidationError(f"Output quality must be between 1 and 100, got {output_quality}.")
        templates = self.library.find_templates(category=category, product_type=product_type)
        design = decode_image(design_buffer)

        mockups: List[GeneratedMockup] = []
        for template in templates:
            start = time.perf_counter()
            template_config = config or DisplacementConfig(
                brightness=0.92,
                blend_mode=BlendMode.MULTIPLY,
                texture_overlay=template.displacement_path is not None,
            )
            try:
                content = encode_image(self.compose(template, design, template_config), output_format, output_quality)
            except Exception:
                logger.exception("Failed to pre-generate mockup for template %s", template.id)
                continue
            mockups.append(
                GeneratedMockup(
                    template_id=template.id,
                    name=template.name,
                    product_type=template.product_type,
                    category=template.category,
                    content=content,
                    media_type=output_format.media_type,
                    render_ms=int(round((time.perf_counter() - start) * 1000)),
                )
            )

        logger.info("Pre-generated %d/%d mockups", len(mockups), len(templates))
        return mockups
