"""Angled "canvas on a wall" renders for promotional previews.

The design is centred on a white canvas, warped so the far edge recedes
(one-point perspective), given a painted depth edge and a soft drop shadow, and
composited onto a plain wall. The warp goes through a small transform port:
ImageMagick's perspective distort when the binary is available, otherwise an
anisotropic width scale. Tool failures always degrade to the scale fallback.
"""

import logging
import math
import os
import shutil
import subprocess
import tempfile
import time
from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np
from PIL import Image, ImageDraw, ImageFilter, ImageOps, UnidentifiedImageError

from blending import RESAMPLE, decode_image, encode_image
from mockup_types import OutputFormat, PerspectiveToolError, Scene, SceneRender

logger = logging.getLogger(__name__)

CANVAS_PADDING = 30
ROOM_SIZE = (1600, 1200)
ROOM_LIFT = 50
EDGE_MAX_WIDTH = 30
EDGE_MIN_WIDTH = 5
EDGE_SHADE_RIGHT = 184
EDGE_SHADE_LEFT = 156
SHADOW_BLUR = 25
SHADOW_OFFSET_X = 20
SHADOW_OFFSET_Y = 15
SHADOW_INTENSITY = 0.3
JPEG_QUALITY = 92

Point = Tuple[int, int]
ControlPoints = List[Tuple[Point, Point]]

DEFAULT_SCENES: Tuple[Scene, ...] = (
    Scene(
        name="Angled Canvas - Left View",
        size='24" × 36" Canvas',
        wall_color=(240, 240, 240),
        canvas_width=700,
        canvas_height=1000,
        angle=-15,
        depth_effect=0.15,
    ),
    Scene(
        name="Angled Canvas - Right View",
        size='30" × 40" Canvas',
        wall_color=(235, 235, 235),
        canvas_width=750,
        canvas_height=1000,
        angle=12,
        depth_effect=0.18,
    ),
    Scene(
        name="Straight Canvas - Front View",
        size='18" × 24" Canvas',
        wall_color=(245, 245, 245),
        canvas_width=600,
        canvas_height=800,
        angle=0,
        perspective=False,
        depth_effect=0.1,
    ),
    Scene(
        name="Dramatic Angle - Side View",
        size='20" × 30" Canvas',
        wall_color=(230, 230, 230),
        canvas_width=650,
        canvas_height=950,
        angle=20,
        depth_effect=0.25,
    ),
)


def perspective_control_points(width: int, height: int, angle: float, depth_effect: float) -> ControlPoints:
    """Source/destination corner pairs; the far edge keeps its x but shrinks vertically."""
    shrink = math.floor(height * depth_effect)
    source = [(0, 0), (width, 0), (width, height), (0, height)]
    if angle > 0:
        destination = [(0, 0), (width, shrink), (width, height - shrink), (0, height)]
    else:
        destination = [(0, shrink), (width, 0), (width, height), (0, height - shrink)]
    return list(zip(source, destination))


class PerspectiveTransform:
    """Port for warping a flat canvas into an angled quadrilateral."""

    name = "transform"

    def is_available(self) -> bool:
        return True

    def apply(self, canvas: Image.Image, scene: Scene, control_points: ControlPoints) -> Image.Image:
        raise NotImplementedError


class MagickPerspectiveTransform(PerspectiveTransform):
    name = "magick"

    def __init__(self, binary: str = "magick"):
        self.binary = binary

    def is_available(self) -> bool:
        return shutil.which(self.binary) is not None

    def build_command(self, input_path: str, output_path: str, control_points: ControlPoints) -> List[str]:
        pairs = " ".join(f"{sx},{sy} {dx},{dy}" for (sx, sy), (dx, dy) in control_points)
        return [
            self.binary,
            input_path,
            "-alpha",
            "set",
            "-virtual-pixel",
            "transparent",
            "-distort",
            "Perspective",
            pairs,
            output_path,
        ]

    def apply(self, canvas: Image.Image, scene: Scene, control_points: ControlPoints) -> Image.Image:
        # The directory (and both files in it) is removed on every exit path.
        with tempfile.TemporaryDirectory(prefix="perspective_") as tmpdir:
            input_path = os.path.join(tmpdir, "canvas.png")
            output_path = os.path.join(tmpdir, "canvas_perspective.png")
            try:
                canvas.save(input_path)
            except (OSError, ValueError) as exc:
                raise PerspectiveToolError(f"Could not write the canvas for ImageMagick: {exc}") from exc

            cmd = self.build_command(input_path, output_path, control_points)
            logger.info("Running ImageMagick: %s", " ".join(cmd))
            try:
                proc = subprocess.run(cmd, check=True, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
                if proc.stderr:
                    logger.info("ImageMagick stderr:\n%s", proc.stderr.decode("utf-8", errors="ignore"))
            except FileNotFoundError as exc:
                raise PerspectiveToolError(f"{self.binary} is not installed") from exc
            except subprocess.CalledProcessError as exc:
                stderr = (exc.stderr or b"").decode("utf-8", errors="ignore")
                logger.error("ImageMagick failed (returncode=%s): %s", exc.returncode, stderr)
                raise PerspectiveToolError(stderr or str(exc)) from exc

            try:
                with Image.open(output_path) as warped:
                    warped.load()
                    return warped.convert("RGBA")
            except (FileNotFoundError, UnidentifiedImageError, OSError) as exc:
                raise PerspectiveToolError(f"ImageMagick produced no readable output: {exc}") from exc


class ScaleFallbackTransform(PerspectiveTransform):
    """Degrade to foreshortening only: width scaled by cos(|angle|)."""

    name = "scale"

    def apply(self, canvas: Image.Image, scene: Scene, control_points: ControlPoints) -> Image.Image:
        width = max(1, math.floor(scene.canvas_width * math.cos(math.radians(abs(scene.angle)))))
        return canvas.resize((width, canvas.height), RESAMPLE)


def _visible_rows(image: Image.Image, column: int) -> Optional[Tuple[int, int]]:
    alpha = np.asarray(image.getchannel("A"))[:, column]
    rows = np.nonzero(alpha > 0)[0]
    if rows.size == 0:
        return None
    return int(rows[0]), int(rows[-1])


def add_depth_edge(canvas: Image.Image, angle: float) -> Image.Image:
    """Append a flat-shaded trapezoid on the receding side to suggest canvas thickness."""
    edge_width = math.floor(EDGE_MAX_WIDTH * abs(math.sin(math.radians(angle))))
    if edge_width <= EDGE_MIN_WIDTH:
        return canvas

    width, height = canvas.size
    far_column = width - 1 if angle > 0 else 0
    top, bottom = _visible_rows(canvas, far_column) or (0, height - 1)
    taper = min(math.ceil(edge_width * math.tan(math.radians(abs(angle)))), (bottom - top) // 4)
    shade = EDGE_SHADE_RIGHT if angle > 0 else EDGE_SHADE_LEFT

    extended = Image.new("RGBA", (width + edge_width, height), (0, 0, 0, 0))
    draw = ImageDraw.Draw(extended)
    if angle > 0:
        outer = width + edge_width - 1
        polygon = [(width, top), (outer, top + taper), (outer, bottom - taper), (width, bottom)]
        canvas_x = 0
    else:
        polygon = [(0, top + taper), (edge_width - 1, top), (edge_width - 1, bottom), (0, bottom - taper)]
        canvas_x = edge_width
    draw.polygon(polygon, fill=(shade, shade, shade, 255))
    extended.alpha_composite(canvas, dest=(canvas_x, 0))
    return extended


def build_shadow(canvas: Image.Image) -> Image.Image:
    """Blurred copy of the canvas silhouette, padded so the blur is not clipped."""
    silhouette = Image.new("RGBA", canvas.size, (0, 0, 0, 0))
    silhouette.putalpha(canvas.getchannel("A").point(lambda value: int(value * SHADOW_INTENSITY)))
    shadow = Image.new("RGBA", (canvas.width + SHADOW_BLUR * 3, canvas.height + SHADOW_BLUR * 3), (0, 0, 0, 0))
    shadow.paste(silhouette, (SHADOW_BLUR, SHADOW_BLUR))
    return shadow.filter(ImageFilter.GaussianBlur(SHADOW_BLUR))


class PerspectiveRenderer:
    def __init__(
        self,
        transform: Optional[PerspectiveTransform] = None,
        fallback: Optional[PerspectiveTransform] = None,
    ):
        self.transform = transform if transform is not None else MagickPerspectiveTransform()
        self.fallback = fallback if fallback is not None else ScaleFallbackTransform()

    def build_canvas(self, scene: Scene, design: Image.Image) -> Image.Image:
        content_size = (scene.canvas_width - CANVAS_PADDING * 2, scene.canvas_height - CANVAS_PADDING * 2)
        fitted = ImageOps.contain(design.convert("RGBA"), content_size, RESAMPLE)
        canvas = Image.new("RGBA", (scene.canvas_width, scene.canvas_height), (255, 255, 255, 255))
        offset = ((scene.canvas_width - fitted.width) // 2, (scene.canvas_height - fitted.height) // 2)
        canvas.alpha_composite(fitted, dest=offset)
        return canvas

    def warp_canvas(self, scene: Scene, canvas: Image.Image) -> Image.Image:
        if not scene.perspective or scene.angle == 0:
            return canvas

        points = perspective_control_points(canvas.width, canvas.height, scene.angle, scene.depth_effect)
        warped = None
        if self.transform.is_available():
            try:
                warped = self.transform.apply(canvas, scene, points)
            except PerspectiveToolError as exc:
                logger.warning(
                    "Perspective transform '%s' failed for scene '%s'; using %s fallback: %s",
                    self.transform.name,
                    scene.name,
                    self.fallback.name,
                    exc,
                )
        else:
            logger.warning(
                "Perspective transform '%s' unavailable; using %s fallback for scene '%s'.",
                self.transform.name,
                self.fallback.name,
                scene.name,
            )
        if warped is None:
            warped = self.fallback.apply(canvas, scene, points)
        return add_depth_edge(warped, scene.angle)

    def compose_room(self, scene: Scene, canvas: Image.Image) -> Image.Image:
        room_width, room_height = ROOM_SIZE
        wall = Image.new("RGB", ROOM_SIZE, scene.wall_color)
        canvas_x = (room_width - canvas.width) // 2
        canvas_y = (room_height - canvas.height) // 2 - ROOM_LIFT

        shadow = build_shadow(canvas)
        offset_x = SHADOW_OFFSET_X if scene.angle > 0 else -SHADOW_OFFSET_X
        shadow_position = (canvas_x - SHADOW_BLUR + offset_x, canvas_y - SHADOW_BLUR + SHADOW_OFFSET_Y)
        wall.paste(shadow, shadow_position, shadow)
        wall.paste(canvas, (canvas_x, canvas_y), canvas)
        return wall

    def render_image(self, scene: Scene, design: Image.Image) -> bytes:
        canvas = self.warp_canvas(scene, self.build_canvas(scene, design))
        return encode_image(self.compose_room(scene, canvas), OutputFormat.JPEG, JPEG_QUALITY)

    def render_scene(self, scene: Scene, design_buffer: bytes) -> Optional[bytes]:
        """JPEG bytes for one scene, or None when the scene could not be rendered."""
        try:
            return self.render_image(scene, decode_image(design_buffer))
        except Exception:
            logger.exception("Error generating mockup for scene '%s'", scene.name)
            return None

    def render_scenes(self, design_buffer: bytes, scenes: Optional[Iterable[Scene]] = None) -> List[SceneRender]:
        """Render each scene independently; failed scenes are dropped from the result."""
        design = decode_image(design_buffer)
        scene_list: Sequence[Scene] = tuple(scenes) if scenes is not None else DEFAULT_SCENES

        renders: List[SceneRender] = []
        for scene in scene_list:
            start = time.perf_counter()
            try:
                content = self.render_image(scene, design)
            except Exception:
                logger.exception("Error generating mockup for scene '%s'", scene.name)
                continue
            renders.append(
                SceneRender(
                    name=scene.name,
                    size=scene.size,
                    content=content,
                    render_ms=int(round((time.perf_counter() - start) * 1000)),
                )
            )
        logger.info("Rendered %d/%d wall scenes", len(renders), len(scene_list))
        return renders
