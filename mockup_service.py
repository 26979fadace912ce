import logging
import os
import time
import uuid
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from starlette.datastructures import UploadFile

from legacy_compositor import DEFAULT_PRODUCT, LegacyCompositor
from mask_compositor import MaskCompositor
from mockup_types import (
    BlendMode,
    CompositingError,
    DisplacementConfig,
    MockupValidationError,
    OutputFormat,
    TemplateNotFound,
)
from perspective import MagickPerspectiveTransform, PerspectiveRenderer
from template_library import TemplateLibraryManager

repo_dir = os.path.dirname(os.path.abspath(__file__))

env_path = os.path.join(repo_dir, ".env")
venv_env_path = os.path.join(repo_dir, ".venv", ".env")
load_dotenv(dotenv_path=venv_env_path, override=False)
load_dotenv(dotenv_path=env_path, override=True)

templates_dir = os.getenv("MOCKUP_TEMPLATES_DIR", os.path.join(repo_dir, "assets", "templates"))
legacy_dir = os.getenv("MOCKUP_LEGACY_DIR", os.path.join(repo_dir, "assets", "legacy"))
texture_file = os.getenv("MOCKUP_TEXTURE_FILE", os.path.join(repo_dir, "assets", "textures", "canvas1.png"))
log_dir = os.getenv("MOCKUP_LOG_DIR", os.path.join(repo_dir, "logs"))
service_log = os.path.join(log_dir, "mockup_service.log")
MAGICK_BINARY = os.getenv("MAGICK_BINARY", "magick")
MAX_DESIGN_BYTES = int(os.getenv("MAX_DESIGN_BYTES", str(25 * 1024 * 1024)))

DEFAULT_BRIGHTNESS = 0.92
DEFAULT_TEXTURE_OPACITY = 0.15
DEFAULT_QUALITY = 90
IMMUTABLE_CACHE = "public, max-age=31536000, immutable"
NO_CACHE = "no-cache, no-store, must-revalidate"

os.makedirs(log_dir, exist_ok=True)

# Engine modules log under their own names; route them all to the service log.
ENGINE_LOGGERS = (
    "mockup_service",
    "template_library",
    "mask_compositor",
    "perspective",
    "legacy_compositor",
    "texture_overlay",
)
_log_handler = logging.FileHandler(service_log)
_log_handler.setFormatter(
    logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s", "%Y-%m-%d %H:%M:%S")
)
for _name in ENGINE_LOGGERS:
    _engine_logger = logging.getLogger(_name)
    _engine_logger.setLevel(logging.INFO)
    if not _engine_logger.handlers:
        _engine_logger.addHandler(_log_handler)
        _engine_logger.propagate = False

logger = logging.getLogger("mockup_service")

template_manager = TemplateLibraryManager(templates_dir)
mask_compositor = MaskCompositor(template_manager, texture_file=texture_file)
perspective_renderer = PerspectiveRenderer(MagickPerspectiveTransform(MAGICK_BINARY))
legacy_compositor = LegacyCompositor(legacy_dir)

app = FastAPI(title="Mockup Compositing Service")


class DesignTooLarge(MockupValidationError):
    """Raised when an uploaded design exceeds MAX_DESIGN_BYTES."""


class GenerateMockupForm(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    template_id: str = Field(..., alias="templateId", min_length=1)
    brightness: float = Field(default=DEFAULT_BRIGHTNESS, gt=0, le=4)
    blend_mode: BlendMode = Field(default=BlendMode.MULTIPLY, alias="blendMode")
    contrast: float = Field(default=1.0, gt=0, le=4)
    saturation: float = Field(default=1.0, ge=0, le=4)
    texture_overlay: bool = Field(default=False, alias="textureOverlay")
    texture_opacity: float = Field(default=DEFAULT_TEXTURE_OPACITY, ge=0, le=1, alias="textureOpacity")
    output_format: OutputFormat = Field(default=OutputFormat.PNG, alias="format")
    quality: int = Field(default=DEFAULT_QUALITY, ge=1, le=100)

    def displacement_config(self) -> DisplacementConfig:
        return DisplacementConfig(
            brightness=self.brightness,
            contrast=self.contrast,
            saturation=self.saturation,
            blend_mode=self.blend_mode,
            texture_overlay=self.texture_overlay,
            texture_opacity=self.texture_opacity,
        )


class PregenerateForm(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    category: Optional[str] = None
    product_type: Optional[str] = Field(default=None, alias="productType")
    output_format: OutputFormat = Field(default=OutputFormat.PNG, alias="format")
    quality: int = Field(default=DEFAULT_QUALITY, ge=1, le=100)


def _error_response(status_code: int, error: str, details: Optional[str] = None) -> JSONResponse:
    content: Dict[str, Any] = {"error": error}
    if details:
        content["details"] = details
    return JSONResponse(status_code=status_code, content=content)


def _format_validation_errors(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()))
        parts.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return "; ".join(parts)


def _elapsed_ms(start: float) -> int:
    return int(round((time.perf_counter() - start) * 1000))


@app.exception_handler(DesignTooLarge)
async def _design_too_large(request: Request, exc: DesignTooLarge):
    return _error_response(413, "Design file is too large", str(exc))


@app.exception_handler(MockupValidationError)
async def _invalid_input(request: Request, exc: MockupValidationError):
    return _error_response(400, "Invalid request", str(exc))


@app.exception_handler(TemplateNotFound)
async def _template_not_found(request: Request, exc: TemplateNotFound):
    return _error_response(404, str(exc))


@app.exception_handler(CompositingError)
async def _compositing_failed(request: Request, exc: CompositingError):
    return _error_response(500, "Failed to generate mockup", str(exc))


def _text_fields(form) -> Dict[str, str]:
    return {key: value.strip() for key, value in form.items() if isinstance(value, str) and value.strip()}


async def _read_upload(form, field: str, label: str) -> bytes:
    upload = form.get(field)
    if not isinstance(upload, UploadFile):
        raise MockupValidationError(f"{label} is required")
    data = await upload.read()
    if len(data) > MAX_DESIGN_BYTES:
        raise DesignTooLarge(f"{label} is {len(data)} bytes which exceeds the {MAX_DESIGN_BYTES} byte limit.")
    return data


async def _generate_from_template(request: Request, request_id: str) -> Response:
    form = await request.form()
    fields = _text_fields(form)
    if not isinstance(form.get("design"), UploadFile):
        raise MockupValidationError("Design file is required")
    if not fields.get("templateId"):
        raise MockupValidationError("Template ID is required")
    try:
        params = GenerateMockupForm.model_validate(fields)
    except ValidationError as exc:
        logger.warning("request %s: invalid mockup parameters: %s", request_id, exc)
        return _error_response(400, "Invalid request parameters", _format_validation_errors(exc))

    # Unknown templates are reported before the upload is read.
    await run_in_threadpool(template_manager.get_template, params.template_id)
    design = await _read_upload(form, "design", "Design file")

    start = time.perf_counter()
    content = await run_in_threadpool(
        mask_compositor.generate,
        params.template_id,
        design,
        params.displacement_config(),
        params.output_format,
        params.quality,
    )
    generation_ms = _elapsed_ms(start)
    logger.info(
        "request %s: rendered template %s as %s in %dms (%d bytes)",
        request_id,
        params.template_id,
        params.output_format.value,
        generation_ms,
        len(content),
    )
    return Response(
        content=content,
        media_type=params.output_format.media_type,
        headers={
            "X-Generation-Time": f"{generation_ms}ms",
            "X-Render-Mode": "mask",
            "Cache-Control": IMMUTABLE_CACHE,
        },
    )


async def _generate_legacy(request: Request, request_id: str) -> Response:
    try:
        payload = await request.json()
    except ValueError as exc:
        raise MockupValidationError("Request body must be JSON or multipart/form-data") from exc
    if not isinstance(payload, dict):
        raise MockupValidationError("Request body must be a JSON object")
    artwork = payload.get("artworkDataUrl")
    if not artwork:
        raise MockupValidationError("No artwork provided")
    product_type = payload.get("productType") or DEFAULT_PRODUCT

    start = time.perf_counter()
    content = await run_in_threadpool(legacy_compositor.generate_legacy, artwork, product_type)
    logger.info("request %s: legacy mockup for '%s' in %dms", request_id, product_type, _elapsed_ms(start))
    return Response(content=content, media_type="image/png", headers={"Cache-Control": IMMUTABLE_CACHE})


@app.post("/generate-mockup")
async def generate_mockup(request: Request):
    request_id = str(uuid.uuid4())
    content_type = request.headers.get("content-type", "")
    logger.info("request %s: received /generate-mockup (%s)", request_id, content_type or "no content type")
    try:
        if "multipart/form-data" in content_type:
            return await _generate_from_template(request, request_id)
        return await _generate_legacy(request, request_id)
    except (MockupValidationError, TemplateNotFound, CompositingError):
        raise
    except Exception as exc:
        logger.exception("request %s: mockup generation failed", request_id)
        return _error_response(500, "Failed to generate mockup", str(exc))


def _endpoint_index() -> Dict[str, Any]:
    return {
        "message": "Mockup generation API",
        "endpoints": {
            "POST /generate-mockup (form-data)": "Generate mockup with template system",
            "POST /generate-mockup (json)": "Legacy mockup generation",
            "GET /generate-mockup?action=templates": "List templates",
            "GET /generate-mockup?action=templates&reload=true": "Reload template library",
            "GET /generate-mockup?action=stats": "Get library stats",
            "GET /generate-mockup?action=clear-cache": "Clear template cache",
            "GET /generate-mockup?action=preview&templateId=X": "Preview template",
            "POST /wall-mockups (form-data)": "Angled canvas-on-wall renders",
            "POST /pregenerate-mockups (form-data)": "Render a design onto every template",
        },
    }


@app.get("/generate-mockup")
async def generate_mockup_info(
    action: Optional[str] = None,
    reload: Optional[str] = None,
    template_id: Optional[str] = Query(default=None, alias="templateId"),
):
    try:
        if action is None:
            return _endpoint_index()

        if action == "templates":
            library = await run_in_threadpool(template_manager.load_library, (reload or "").lower() == "true")
            return library.to_payload()

        if action == "stats":
            return await run_in_threadpool(template_manager.get_stats)

        if action == "clear-cache":
            template_manager.clear_cache()
            return {"success": True, "message": "Template cache cleared"}

        if action == "preview":
            if not template_id:
                return _error_response(400, "Template ID is required for preview")
            preview = await run_in_threadpool(mask_compositor.preview_template, template_id)
            return Response(content=preview, media_type="image/png", headers={"Cache-Control": NO_CACHE})

        return _error_response(400, f"Unknown action: {action}")
    except (MockupValidationError, TemplateNotFound, CompositingError):
        raise
    except Exception as exc:
        logger.exception("GET /generate-mockup action=%s failed", action)
        return _error_response(500, "API request failed", str(exc))


@app.post("/wall-mockups")
async def wall_mockups(request: Request):
    request_id = str(uuid.uuid4())
    form = await request.form()
    image = await _read_upload(form, "image", "Image file")

    start = time.perf_counter()
    try:
        renders = await run_in_threadpool(perspective_renderer.render_scenes, image)
    except MockupValidationError:
        raise
    except Exception as exc:
        logger.exception("request %s: wall mockups failed", request_id)
        return _error_response(500, "Failed to generate wall mockups", str(exc))
    total_ms = _elapsed_ms(start)
    logger.info("request %s: %d wall scene(s) in %dms", request_id, len(renders), total_ms)
    return {
        "success": True,
        "mockups": [render.to_payload() for render in renders],
        "totalTime": total_ms,
    }


@app.post("/pregenerate-mockups")
async def pregenerate_mockups(request: Request):
    request_id = str(uuid.uuid4())
    form = await request.form()
    fields = _text_fields(form)
    if fields.get("category") == "all":
        fields.pop("category")
    try:
        params = PregenerateForm.model_validate(fields)
    except ValidationError as exc:
        return _error_response(400, "Invalid request parameters", _format_validation_errors(exc))
    design = await _read_upload(form, "design", "Design file")

    start = time.perf_counter()
    try:
        mockups = await run_in_threadpool(
            lambda: mask_compositor.generate_all(
                design,
                category=params.category,
                product_type=params.product_type,
                output_format=params.output_format,
                output_quality=params.quality,
            )
        )
    except MockupValidationError:
        raise
    except Exception as exc:
        logger.exception("request %s: pre-generation failed", request_id)
        return _error_response(500, "Failed to pre-generate mockups", str(exc))
    total_ms = _elapsed_ms(start)
    logger.info("request %s: pre-generated %d mockup(s) in %dms", request_id, len(mockups), total_ms)
    return {
        "mockups": [mockup.to_payload() for mockup in mockups],
        "stats": {
            "generated": len(mockups),
            "totalTime": total_ms,
            "averageTime": int(round(total_ms / len(mockups))) if mockups else 0,
        },
    }


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/")
async def root():
    return {
        "message": "Mockup compositing API",
        "submit_endpoint": "/generate-mockup",
        "docs": "/docs",
        "example_template": 'curl -F "templateId=tshirt-black-front" -F "design=@design.png" http://localhost:8000/generate-mockup --output mockup.png',
        "example_jpeg": 'curl -F "templateId=tshirt-black-front" -F "format=jpeg" -F "quality=85" -F "design=@design.png" http://localhost:8000/generate-mockup --output mockup.jpg',
        "example_wall": 'curl -F "image=@design.png" http://localhost:8000/wall-mockups',
        "example_templates": "curl 'http://localhost:8000/generate-mockup?action=templates'",
    }
