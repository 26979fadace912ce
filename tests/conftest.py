import io
import json
from datetime import datetime, timedelta, timezone

import pytest
from PIL import Image

BASE_COLOR = (120, 120, 120, 255)
DESIGN_COLOR = (10, 200, 30, 255)


def _png_bytes(size, color, mode="RGBA"):
    buffer = io.BytesIO()
    Image.new(mode, size, color).save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def png_bytes():
    return _png_bytes


@pytest.fixture
def design_png():
    return _png_bytes((100, 80), DESIGN_COLOR)


@pytest.fixture
def templates_dir(tmp_path):
    path = tmp_path / "templates"
    path.mkdir()
    return path


@pytest.fixture
def write_template(templates_dir):
    """Write ``<id>/base.png`` plus optional layers and a metadata.json; returns the metadata dict."""

    def _write(
        template_id,
        *,
        base_size=(200, 200),
        print_area=(40, 50, 100, 80),
        mask=None,
        shadow=None,
        highlight=None,
        displacement=None,
        **fields,
    ):
        folder = templates_dir / template_id
        folder.mkdir()
        Image.new("RGBA", base_size, BASE_COLOR).save(folder / "base.png")
        x, y, width, height = print_area
        metadata = {
            "id": template_id,
            "name": template_id.replace("-", " ").title(),
            "productType": "t-shirt",
            "basePath": f"{template_id}/base.png",
            "printArea": {"x": x, "y": y, "width": width, "height": height},
        }
        for key, image in (
            ("maskPath", mask),
            ("shadowPath", shadow),
            ("highlightPath", highlight),
            ("displacementPath", displacement),
        ):
            if image is not None:
                file_name = key[: -len("Path")] + ".png"
                image.save(folder / file_name)
                metadata[key] = f"{template_id}/{file_name}"
        metadata.update(fields)
        (folder / "metadata.json").write_text(json.dumps(metadata), encoding="utf-8")
        return metadata

    return _write


@pytest.fixture
def ticking_clock():
    """Clock returning a later timestamp on every call."""
    start = datetime(2024, 1, 1, tzinfo=timezone.utc)
    calls = {"count": 0}

    def _now():
        calls["count"] += 1
        return start + timedelta(seconds=calls["count"])

    return _now
