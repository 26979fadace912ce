import asyncio
import base64
import io

import pytest
from fastapi.testclient import TestClient
from PIL import Image

import mockup_service
from legacy_compositor import LegacyCompositor
from mask_compositor import MaskCompositor
from perspective import PerspectiveRenderer, PerspectiveTransform, ScaleFallbackTransform
from template_library import TemplateLibraryManager


class FailingAngleTransform(PerspectiveTransform):
    name = "failing"

    def apply(self, canvas, scene, control_points):
        if scene.angle == 20:
            raise RuntimeError("warp exploded")
        return canvas.copy()


@pytest.fixture
def manager(templates_dir, ticking_clock):
    return TemplateLibraryManager(templates_dir, clock=ticking_clock)


@pytest.fixture
def client(monkeypatch, manager, tmp_path):
    legacy_dir = tmp_path / "legacy"
    legacy_dir.mkdir()
    Image.new("RGB", (300, 300), (30, 30, 30)).save(legacy_dir / "mannequin-black.png")

    monkeypatch.setattr(mockup_service, "template_manager", manager)
    monkeypatch.setattr(mockup_service, "mask_compositor", MaskCompositor(manager))
    monkeypatch.setattr(mockup_service, "perspective_renderer", PerspectiveRenderer(ScaleFallbackTransform()))
    monkeypatch.setattr(mockup_service, "legacy_compositor", LegacyCompositor(legacy_dir))
    return TestClient(mockup_service.app)


def _upload(content, name="design.png"):
    return (name, content, "image/png")


def test_generate_mockup_from_template(client, write_template, png_bytes):
    write_template("poster-front", base_size=(2000, 2000), print_area=(600, 640, 800, 500))

    response = client.post(
        "/generate-mockup",
        data={"templateId": "poster-front"},
        files={"design": _upload(png_bytes((1000, 1000), (10, 120, 220, 255)))},
    )

    assert response.status_code == 200
    assert response.headers["content-type"] == "image/png"
    assert response.headers["x-render-mode"] == "mask"
    assert response.headers["x-generation-time"].endswith("ms")
    assert response.headers["cache-control"] == "public, max-age=31536000, immutable"
    with Image.open(io.BytesIO(response.content)) as image:
        assert image.size == (2000, 2000)


def test_generate_mockup_jpeg_with_options(client, write_template, design_png):
    write_template("tee")

    response = client.post(
        "/generate-mockup",
        data={
            "templateId": "tee",
            "format": "jpeg",
            "quality": "80",
            "blendMode": "screen",
            "brightness": "1.1",
            "textureOverlay": "true",
            "textureOpacity": "",
        },
        files={"design": _upload(design_png)},
    )

    assert response.status_code == 200
    assert response.headers["content-type"] == "image/jpeg"


def test_generate_mockup_unknown_template(client, write_template, design_png):
    write_template("tee")

    response = client.post("/generate-mockup", data={"templateId": "nope"}, files={"design": _upload(design_png)})

    assert response.status_code == 404
    assert response.headers["content-type"].startswith("application/json")
    assert response.json() == {"error": "Template not found: nope"}


def test_generate_mockup_rejects_bad_parameters(client, write_template, design_png):
    write_template("tee")

    response = client.post(
        "/generate-mockup",
        data={"templateId": "tee", "blendMode": "sparkle"},
        files={"design": _upload(design_png)},
    )

    assert response.status_code == 400
    body = response.json()
    assert body["error"] == "Invalid request parameters"
    assert "blendMode" in body["details"]


def test_generate_mockup_requires_design_and_template(client, write_template, design_png):
    write_template("tee")

    missing_design = client.post("/generate-mockup", data={"templateId": "tee"}, files={"other": _upload(b"x")})
    missing_template = client.post("/generate-mockup", data={}, files={"design": _upload(design_png)})

    assert missing_design.status_code == 400
    assert missing_design.json()["details"] == "Design file is required"
    assert missing_template.status_code == 400
    assert missing_template.json()["details"] == "Template ID is required"


def test_generate_mockup_undecodable_design(client, write_template):
    write_template("tee")

    response = client.post("/generate-mockup", data={"templateId": "tee"}, files={"design": _upload(b"garbage")})

    assert response.status_code == 400
    assert response.json()["error"] == "Invalid request"


def test_generate_mockup_design_too_large(client, monkeypatch, write_template, design_png):
    write_template("tee")
    monkeypatch.setattr(mockup_service, "MAX_DESIGN_BYTES", 16)

    response = client.post("/generate-mockup", data={"templateId": "tee"}, files={"design": _upload(design_png)})

    assert response.status_code == 413


def test_generate_mockup_legacy_json(client, png_bytes):
    artwork = "data:image/png;base64," + base64.b64encode(png_bytes((60, 40), (250, 200, 0, 255))).decode("ascii")

    response = client.post("/generate-mockup", json={"artworkDataUrl": artwork, "productType": "spaceship"})

    assert response.status_code == 200
    assert response.headers["content-type"] == "image/png"
    with Image.open(io.BytesIO(response.content)) as image:
        assert image.size == (300, 300)


def test_generate_mockup_legacy_requires_artwork(client):
    response = client.post("/generate-mockup", json={"productType": "t-shirt"})

    assert response.status_code == 400
    assert response.json()["details"] == "No artwork provided"


def test_templates_version_stable_across_reloads(client, write_template):
    write_template("tee", color="black")

    first = client.get("/generate-mockup", params={"action": "templates", "reload": "true"}).json()
    second = client.get("/generate-mockup", params={"action": "templates", "reload": "true"}).json()

    assert first["version"] == second["version"]
    assert [t["id"] for t in first["templates"]] == ["tee"]
    assert first["templates"][0]["printArea"] == {"x": 40, "y": 50, "width": 100, "height": 80}
    assert first["templates"][0]["productType"] == "t-shirt"


def test_clear_cache_then_templates_has_new_last_updated(client, write_template):
    write_template("tee")

    before = client.get("/generate-mockup", params={"action": "templates"}).json()
    cleared = client.get("/generate-mockup", params={"action": "clear-cache"})
    after = client.get("/generate-mockup", params={"action": "templates"}).json()

    assert cleared.json() == {"success": True, "message": "Template cache cleared"}
    assert after["lastUpdated"] != before["lastUpdated"]


def test_stats_action(client, write_template):
    write_template("tee", color="black")
    write_template("mug", productType="mug")

    stats = client.get("/generate-mockup", params={"action": "stats"}).json()

    assert stats["totalTemplates"] == 2
    assert stats["byProductType"] == {"mug": 1, "t-shirt": 1}


def test_preview_action(client, write_template):
    write_template("tee")

    response = client.get("/generate-mockup", params={"action": "preview", "templateId": "tee"})
    missing = client.get("/generate-mockup", params={"action": "preview"})
    unknown = client.get("/generate-mockup", params={"action": "preview", "templateId": "nope"})

    assert response.status_code == 200
    assert response.headers["content-type"] == "image/png"
    assert response.headers["cache-control"].startswith("no-cache")
    assert missing.status_code == 400
    assert unknown.status_code == 404


def test_info_and_unknown_action(client):
    index = client.get("/generate-mockup")
    unknown = client.get("/generate-mockup", params={"action": "dance"})

    assert index.status_code == 200
    assert "endpoints" in index.json()
    assert unknown.status_code == 400
    assert unknown.json() == {"error": "Unknown action: dance"}


def test_wall_mockups(client, png_bytes):
    response = client.post("/wall-mockups", files={"image": _upload(png_bytes((120, 90), (200, 30, 30, 255)))})

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert len(body["mockups"]) == 4
    assert all(m["url"].startswith("data:image/jpeg;base64,") for m in body["mockups"])
    assert body["totalTime"] >= 0


def test_wall_mockups_drop_failing_scene(client, monkeypatch, png_bytes):
    monkeypatch.setattr(mockup_service, "perspective_renderer", PerspectiveRenderer(FailingAngleTransform()))

    response = client.post("/wall-mockups", files={"image": _upload(png_bytes((120, 90), (200, 30, 30, 255)))})

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert [m["name"] for m in body["mockups"]] == [
        "Angled Canvas - Left View",
        "Angled Canvas - Right View",
        "Straight Canvas - Front View",
    ]


def test_wall_mockups_requires_image(client):
    response = client.post("/wall-mockups", data={"note": "nothing"})

    assert response.status_code == 400


def test_pregenerate_mockups(client, write_template, design_png):
    write_template("mug", productType="mug", category="drinkware")
    write_template("tee", category="apparel")

    everything = client.post("/pregenerate-mockups", data={"category": "all"}, files={"design": _upload(design_png)})
    apparel = client.post(
        "/pregenerate-mockups",
        data={"category": "apparel", "format": "webp"},
        files={"design": _upload(design_png)},
    )

    assert everything.status_code == 200
    assert everything.json()["stats"]["generated"] == 2
    body = apparel.json()
    assert [m["templateId"] for m in body["mockups"]] == ["tee"]
    assert body["mockups"][0]["url"].startswith("data:image/webp;base64,")


def test_health_and_root(client):
    assert client.get("/health").json() == {"status": "ok"}
    assert client.get("/").json()["submit_endpoint"] == "/generate-mockup"


def test_template_lookup_runs_off_the_event_loop(client, manager, monkeypatch, write_template, design_png):
    write_template("tee")
    lookup = manager.get_template
    in_event_loop = []

    def recording_lookup(template_id):
        try:
            asyncio.get_running_loop()
            in_event_loop.append(True)
        except RuntimeError:
            in_event_loop.append(False)
        return lookup(template_id)

    monkeypatch.setattr(manager, "get_template", recording_lookup)

    response = client.post("/generate-mockup", data={"templateId": "tee"}, files={"design": _upload(design_png)})

    assert response.status_code == 200
    assert in_event_loop
    assert not any(in_event_loop)


def test_templates_reload_flag_is_case_insensitive(client, write_template):
    write_template("tee")

    cached = client.get("/generate-mockup", params={"action": "templates"}).json()
    again = client.get("/generate-mockup", params={"action": "templates"}).json()
    reloaded = client.get("/generate-mockup", params={"action": "templates", "reload": "True"}).json()

    assert again["lastUpdated"] == cached["lastUpdated"]
    assert reloaded["lastUpdated"] != cached["lastUpdated"]
