import io
import math
import os
import shutil
import subprocess

import pytest
from PIL import Image

import perspective
from mockup_types import MockupValidationError, PerspectiveToolError, Scene
from perspective import (
    DEFAULT_SCENES,
    MagickPerspectiveTransform,
    PerspectiveRenderer,
    PerspectiveTransform,
    ScaleFallbackTransform,
    add_depth_edge,
    perspective_control_points,
)


class RecordingTransform(PerspectiveTransform):
    name = "recording"

    def __init__(self, fail_for=(), error=RuntimeError):
        self.fail_for = set(fail_for)
        self.error = error
        self.calls = []

    def apply(self, canvas, scene, control_points):
        self.calls.append(scene.name)
        if scene.name in self.fail_for:
            raise self.error(f"cannot warp {scene.name}")
        return canvas.copy()


def _scene(name, angle, **kwargs):
    values = {"canvas_width": 200, "canvas_height": 260, "angle": angle}
    values.update(kwargs)
    return Scene(name=name, **values)


def test_control_points_shrink_far_edge():
    assert perspective_control_points(100, 200, 15, 0.1) == [
        ((0, 0), (0, 0)),
        ((100, 0), (100, 20)),
        ((100, 200), (100, 180)),
        ((0, 200), (0, 200)),
    ]
    left = perspective_control_points(100, 200, -15, 0.1)
    assert left[0] == ((0, 0), (0, 20))
    assert left[3] == ((0, 200), (0, 180))


def test_default_scenes():
    assert len(DEFAULT_SCENES) == 4
    straight = DEFAULT_SCENES[2]
    assert straight.angle == 0
    assert straight.perspective is False


def test_angle_zero_matches_perspective_disabled(png_bytes):
    transform = RecordingTransform()
    renderer = PerspectiveRenderer(transform)
    design = png_bytes((120, 90), (200, 30, 30, 255))

    flat = renderer.render_scene(_scene("flat", 0, perspective=False), design)
    zero = renderer.render_scene(_scene("zero", 0, perspective=True), design)

    assert flat is not None
    assert flat == zero
    assert transform.calls == []


def test_failing_scene_is_dropped(png_bytes):
    scenes = [
        _scene("one", -15),
        _scene("two", 12),
        _scene("three", 20),
        _scene("four", -25),
    ]
    renderer = PerspectiveRenderer(RecordingTransform(fail_for={"three"}))

    renders = renderer.render_scenes(png_bytes((120, 90), (200, 30, 30, 255)), scenes)

    assert [render.name for render in renders] == ["one", "two", "four"]
    for render in renders:
        with Image.open(io.BytesIO(render.content)) as image:
            assert image.format == "JPEG"
            assert image.size == perspective.ROOM_SIZE
        assert render.to_payload()["url"].startswith("data:image/jpeg;base64,")


def test_render_scenes_rejects_bad_design():
    with pytest.raises(MockupValidationError):
        PerspectiveRenderer(RecordingTransform()).render_scenes(b"nope")


def test_tool_error_uses_scale_fallback():
    renderer = PerspectiveRenderer(RecordingTransform(fail_for={"angled"}, error=PerspectiveToolError))
    scene = _scene("angled", 20, canvas_width=600, canvas_height=800)
    canvas = renderer.build_canvas(scene, Image.new("RGBA", (300, 300), (0, 0, 255, 255)))

    warped = renderer.warp_canvas(scene, canvas)

    edge = math.floor(perspective.EDGE_MAX_WIDTH * math.sin(math.radians(20)))
    assert warped.size == (math.floor(600 * math.cos(math.radians(20))) + edge, 800)


def test_unavailable_tool_uses_scale_fallback(monkeypatch):
    transform = MagickPerspectiveTransform("magick-does-not-exist")
    renderer = PerspectiveRenderer(transform)
    scene = _scene("angled", 12)
    calls = []
    monkeypatch.setattr(perspective.subprocess, "run", lambda *args, **kwargs: calls.append(args))

    warped = renderer.warp_canvas(scene, Image.new("RGBA", (200, 260), (255, 255, 255, 255)))

    assert calls == []
    edge = math.floor(perspective.EDGE_MAX_WIDTH * math.sin(math.radians(12)))
    assert warped.size == (math.floor(200 * math.cos(math.radians(12))) + edge, 260)


def test_magick_failure_cleans_temp_dir_and_falls_back(monkeypatch):
    transform = MagickPerspectiveTransform("magick")
    monkeypatch.setattr(transform, "is_available", lambda: True)
    seen = {}

    def fake_run(cmd, **kwargs):
        seen["cmd"] = cmd
        seen["input_exists"] = os.path.exists(cmd[1])
        raise subprocess.CalledProcessError(1, cmd, stderr=b"distort failed")

    monkeypatch.setattr(perspective.subprocess, "run", fake_run)
    renderer = PerspectiveRenderer(transform)
    scene = _scene("angled", 20)

    warped = renderer.warp_canvas(scene, Image.new("RGBA", (200, 260), (255, 255, 255, 255)))

    assert seen["input_exists"] is True
    assert seen["cmd"][:6] == ["magick", seen["cmd"][1], "-alpha", "set", "-virtual-pixel", "transparent"]
    assert seen["cmd"][6:8] == ["-distort", "Perspective"]
    assert not os.path.exists(os.path.dirname(seen["cmd"][1]))
    assert warped.width == math.floor(200 * math.cos(math.radians(20))) + 10


def test_magick_success_cleans_temp_dir(monkeypatch):
    transform = MagickPerspectiveTransform("magick")
    monkeypatch.setattr(transform, "is_available", lambda: True)
    seen = {}

    def fake_run(cmd, **kwargs):
        seen["cmd"] = cmd
        shutil.copyfile(cmd[1], cmd[-1])
        return subprocess.CompletedProcess(cmd, 0, stdout=b"", stderr=b"")

    monkeypatch.setattr(perspective.subprocess, "run", fake_run)
    scene = _scene("angled", 12)
    canvas = Image.new("RGBA", (200, 260), (255, 255, 255, 255))

    warped = transform.apply(canvas, scene, perspective_control_points(200, 260, 12, 0.1))

    assert warped.size == (200, 260)
    assert seen["cmd"][8] == "0,0 0,0 200,0 200,26 200,260 200,234 0,260 0,260"
    assert not os.path.exists(os.path.dirname(seen["cmd"][1]))


def test_missing_binary_raises_tool_error(monkeypatch):
    transform = MagickPerspectiveTransform("magick")

    def fake_run(cmd, **kwargs):
        raise FileNotFoundError(cmd[0])

    monkeypatch.setattr(perspective.subprocess, "run", fake_run)

    with pytest.raises(PerspectiveToolError):
        transform.apply(Image.new("RGBA", (80, 80)), _scene("angled", 12), [])


def test_depth_edge_only_for_steep_angles():
    canvas = Image.new("RGBA", (100, 120), (255, 255, 255, 255))

    assert add_depth_edge(canvas, 5) is canvas
    right = add_depth_edge(canvas, 20)
    left = add_depth_edge(canvas, -20)

    assert right.width == 110
    assert right.getpixel((105, 60))[:3] == (perspective.EDGE_SHADE_RIGHT,) * 3
    assert left.getpixel((4, 60))[:3] == (perspective.EDGE_SHADE_LEFT,) * 3


def test_scale_fallback_width():
    scene = _scene("angled", 60)

    warped = ScaleFallbackTransform().apply(Image.new("RGBA", (200, 260)), scene, [])

    assert warped.size == (100, 260)


def test_unwritable_canvas_uses_scale_fallback(monkeypatch):
    transform = MagickPerspectiveTransform("magick")
    monkeypatch.setattr(transform, "is_available", lambda: True)
    calls = []
    monkeypatch.setattr(perspective.subprocess, "run", lambda *args, **kwargs: calls.append(args))
    canvas = Image.new("RGBA", (200, 260), (255, 255, 255, 255))

    def failing_save(*args, **kwargs):
        raise OSError("No space left on device")

    monkeypatch.setattr(canvas, "save", failing_save)
    with pytest.raises(PerspectiveToolError):
        transform.apply(canvas, _scene("angled", 20), [])

    warped = PerspectiveRenderer(transform).warp_canvas(_scene("angled", 20), canvas)

    assert calls == []
    assert warped.width == math.floor(200 * math.cos(math.radians(20))) + 10
