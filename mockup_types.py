"""Models and errors shared by the template library, compositors and HTTP service."""

import base64
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator


class MockupError(Exception):
    """Base class for errors raised by the compositing engine."""


class MockupValidationError(MockupError):
    """Raised when caller-supplied input (design, parameters, data URL) cannot be used."""


class TemplateNotFound(MockupError):
    """Raised when a template id is absent from the current library snapshot."""


class InvalidTemplate(MockupError):
    """Raised while loading the library for a template that fails validation."""


class CompositingError(MockupError):
    """Raised for unrecoverable raster failures during a render."""


class PerspectiveToolError(MockupError):
    """Raised when the external perspective transform fails or is unavailable."""


class BlendMode(str, Enum):
    MULTIPLY = "multiply"
    OVERLAY = "overlay"
    SCREEN = "screen"
    NORMAL = "normal"

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            normalized = value.strip().lower()
            for member in cls:
                if member.value == normalized:
                    return member
        return None


class OutputFormat(str, Enum):
    PNG = "png"
    JPEG = "jpeg"
    WEBP = "webp"

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            normalized = value.strip().lower()
            if normalized == "jpg":
                return cls.JPEG
            for member in cls:
                if member.value == normalized:
                    return member
        return None

    @property
    def media_type(self) -> str:
        return f"image/{self.value}"

    @property
    def pil_format(self) -> str:
        return self.value.upper()


def to_data_url(content: bytes, media_type: str) -> str:
    return f"data:{media_type};base64,{base64.b64encode(content).decode('ascii')}"


class PrintArea(BaseModel):
    model_config = ConfigDict(frozen=True)

    x: int = Field(..., ge=0)
    y: int = Field(..., ge=0)
    width: int = Field(..., gt=0)
    height: int = Field(..., gt=0)

    @property
    def origin(self) -> Tuple[int, int]:
        return (self.x, self.y)

    @property
    def size(self) -> Tuple[int, int]:
        return (self.width, self.height)

    def fits_within(self, size: Tuple[int, int]) -> bool:
        width, height = size
        return self.x + self.width <= width and self.y + self.height <= height


class Template(BaseModel):
    """One photographed product pose. Asset paths are relative to the templates directory."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    product_type: str = Field(..., alias="productType", min_length=1)
    color: Optional[str] = None
    angle: str = "front"
    category: Optional[str] = None
    base_path: str = Field(..., alias="basePath", min_length=1)
    mask_path: Optional[str] = Field(default=None, alias="maskPath")
    shadow_path: Optional[str] = Field(default=None, alias="shadowPath")
    highlight_path: Optional[str] = Field(default=None, alias="highlightPath")
    displacement_path: Optional[str] = Field(default=None, alias="displacementPath")
    print_area: PrintArea = Field(..., alias="printArea")
    metadata: Optional[Dict[str, Any]] = None

    @field_validator("mask_path", "shadow_path", "highlight_path", "displacement_path", mode="before")
    @classmethod
    def _blank_to_none(cls, value):
        if value in ("", "null"):
            return None
        return value

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class TemplateLibrary(BaseModel):
    """Immutable snapshot of the template catalog."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    templates: Tuple[Template, ...] = ()
    version: str
    last_updated: str = Field(..., alias="lastUpdated")

    def to_payload(self) -> Dict[str, Any]:
        return {
            "templates": [template.to_payload() for template in self.templates],
            "version": self.version,
            "lastUpdated": self.last_updated,
        }


class DisplacementConfig(BaseModel):
    """Colour-science parameters for one render. Factors of 1.0 leave the design untouched."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    brightness: float = Field(default=1.0, gt=0, le=4)
    contrast: float = Field(default=1.0, gt=0, le=4)
    saturation: float = Field(default=1.0, ge=0, le=4)
    blend_mode: BlendMode = Field(default=BlendMode.MULTIPLY, alias="blendMode")
    texture_overlay: bool = Field(default=False, alias="textureOverlay")
    texture_opacity: float = Field(default=0.15, ge=0, le=1, alias="textureOpacity")

    @property
    def is_neutral(self) -> bool:
        return self.brightness == 1.0 and self.contrast == 1.0 and self.saturation == 1.0


class MockupResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    content: bytes
    media_type: str
    generation_ms: int


class GeneratedMockup(BaseModel):
    model_config = ConfigDict(frozen=True)

    template_id: str
    name: str
    product_type: str
    category: Optional[str] = None
    content: bytes
    media_type: str
    render_ms: int

    def to_payload(self) -> Dict[str, Any]:
        return {
            "templateId": self.template_id,
            "name": self.name,
            "productType": self.product_type,
            "category": self.category or "unknown",
            "url": to_data_url(self.content, self.media_type),
            "renderTime": self.render_ms,
        }


class Scene(BaseModel):
    """An angled canvas-on-a-wall render request."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str
    size: str = ""
    wall_color: Tuple[int, int, int] = Field(default=(240, 240, 240), alias="wallColor")
    canvas_width: int = Field(..., gt=60, le=1400, alias="canvasWidth")
    canvas_height: int = Field(..., gt=60, le=1100, alias="canvasHeight")
    angle: float = Field(default=0.0, ge=-60, le=60)
    perspective: bool = True
    depth_effect: float = Field(default=0.15, ge=0, lt=0.5, alias="depthEffect")

    @field_validator("wall_color")
    @classmethod
    def _check_wall_color(cls, value: Tuple[int, int, int]) -> Tuple[int, int, int]:
        if any(channel < 0 or channel > 255 for channel in value):
            raise ValueError("wall colour channels must be within 0-255")
        return value


class SceneRender(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    size: str
    content: bytes
    render_ms: int

    def to_payload(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "size": self.size,
            "url": to_data_url(self.content, "image/jpeg"),
            "renderTime": self.render_ms,
        }
