"""Template catalog: load, validate and cache product templates.

The catalog is read from a templates directory. When ``library.json`` exists it
is the manifest; otherwise each sub-directory holding a ``metadata.json``
contributes one template. Asset paths are relative to the templates directory.

The cached ``TemplateLibrary`` is an immutable snapshot. Reloads build a new
snapshot and replace the reference in a single assignment, so a render that
already holds the previous snapshot finishes against consistent data.
"""

import hashlib
import json
import logging
import threading
from collections import Counter
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from PIL import Image, UnidentifiedImageError
from pydantic import ValidationError

from mockup_types import InvalidTemplate, Template, TemplateLibrary, TemplateNotFound

logger = logging.getLogger(__name__)

MANIFEST_NAME = "library.json"
METADATA_NAME = "metadata.json"
BASE_VERSION = "1.0.0"
LAYER_LABELS = {
    "mask_path": "mask",
    "shadow_path": "shadow layer",
    "highlight_path": "highlight layer",
}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TemplateLibraryManager:
    def __init__(self, templates_dir: Union[str, Path], clock: Callable[[], datetime] = _utc_now):
        self.templates_dir = Path(templates_dir)
        self._clock = clock
        self._library: Optional[TemplateLibrary] = None
        self._build_lock = threading.Lock()

    @property
    def cached_library(self) -> Optional[TemplateLibrary]:
        return self._library

    def load_library(self, force_reload: bool = False) -> TemplateLibrary:
        library = self._library
        if library is not None and not force_reload:
            return library
        with self._build_lock:
            if not force_reload and self._library is not None:
                return self._library
            library = self._build_library()
            self._library = library
        return library

    def reload_library(self) -> TemplateLibrary:
        return self.load_library(force_reload=True)

    def clear_cache(self) -> None:
        self._library = None
        logger.info("Template cache cleared for %s", self.templates_dir)

    def get_template(self, template_id: str) -> Template:
        for template in self.load_library().templates:
            if template.id == template_id:
                return template
        raise TemplateNotFound(f"Template not found: {template_id}")

    def find_templates(
        self,
        *,
        product_type: Optional[str] = None,
        color: Optional[str] = None,
        angle: Optional[str] = None,
        category: Optional[str] = None,
    ) -> List[Template]:
        matches = []
        for template in self.load_library().templates:
            if product_type and template.product_type != product_type:
                continue
            if color and template.color != color:
                continue
            if angle and template.angle != angle:
                continue
            if category and template.category != category:
                continue
            matches.append(template)
        return matches

    def get_stats(self) -> Dict[str, Any]:
        library = self.load_library()
        templates = library.templates
        return {
            "totalTemplates": len(templates),
            "byProductType": dict(Counter(t.product_type for t in templates)),
            "byAngle": dict(Counter(t.angle for t in templates)),
            "byColor": dict(Counter(t.color for t in templates if t.color)),
            "byCategory": dict(Counter(t.category for t in templates if t.category)),
            "version": library.version,
            "lastUpdated": library.last_updated,
        }

    def resolve_asset(self, relative_path: str) -> Path:
        root = self.templates_dir.resolve()
        candidate = (root / relative_path).resolve()
        if root not in candidate.parents:
            raise InvalidTemplate(f"Asset path '{relative_path}' escapes the templates directory.")
        return candidate

    def image_size(self, relative_path: str, label: str) -> Tuple[int, int]:
        path = self.resolve_asset(relative_path)
        try:
            with Image.open(path) as image:
                return image.size
        except FileNotFoundError as exc:
            raise InvalidTemplate(f"{label} not found: {relative_path}") from exc
        except (UnidentifiedImageError, OSError) as exc:
            raise InvalidTemplate(f"{label} is unreadable: {relative_path} ({exc})") from exc

    def validate_template(self, template: Template) -> Template:
        base_size = self.image_size(template.base_path, "base image")
        area = template.print_area
        if not area.fits_within(base_size):
            raise InvalidTemplate(
                f"print area {area.width}x{area.height} at ({area.x}, {area.y}) exceeds "
                f"base image bounds {base_size[0]}x{base_size[1]}"
            )
        for field_name, label in LAYER_LABELS.items():
            relative_path = getattr(template, field_name)
            if relative_path is None:
                continue
            layer_size = self.image_size(relative_path, label)
            if layer_size != base_size:
                raise InvalidTemplate(
                    f"{label} is {layer_size[0]}x{layer_size[1]}, expected {base_size[0]}x{base_size[1]}"
                )
        if template.displacement_path and not self.resolve_asset(template.displacement_path).is_file():
            logger.warning(
                "Template %s: displacement map %s is missing; texture overlay will use the default texture.",
                template.id,
                template.displacement_path,
            )
            template = template.model_copy(update={"displacement_path": None})
        return template

    def _read_manifest(self, manifest: Path) -> Tuple[Optional[str], List[Tuple[str, Any]]]:
        try:
            data = json.loads(manifest.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.error("Could not read template manifest %s: %s", manifest, exc)
            return None, []
        if isinstance(data, list):
            return None, [(f"{MANIFEST_NAME}[{idx}]", raw) for idx, raw in enumerate(data)]
        if not isinstance(data, dict) or not isinstance(data.get("templates", []), list):
            logger.error("Template manifest %s has no 'templates' list.", manifest)
            return None, []
        version = data.get("version")
        entries = [(f"{MANIFEST_NAME}[{idx}]", raw) for idx, raw in enumerate(data.get("templates", []))]
        return (str(version) if version else None), entries

    def _scan_directories(self) -> List[Tuple[str, Any]]:
        if not self.templates_dir.is_dir():
            logger.warning("Templates directory %s does not exist; library is empty.", self.templates_dir)
            return []
        entries = []
        for entry in sorted(self.templates_dir.iterdir()):
            metadata_path = entry / METADATA_NAME
            if not entry.is_dir() or not metadata_path.is_file():
                continue
            try:
                entries.append((f"{entry.name}/{METADATA_NAME}", json.loads(metadata_path.read_text(encoding="utf-8"))))
            except (OSError, ValueError) as exc:
                logger.warning("Skipping invalid template in %s: %s", entry.name, exc)
        return entries

    def _read_entries(self) -> Tuple[Optional[str], List[Tuple[str, Any]]]:
        manifest = self.templates_dir / MANIFEST_NAME
        if manifest.is_file():
            return self._read_manifest(manifest)
        return None, self._scan_directories()

    @staticmethod
    def _content_version(entries: List[Tuple[str, Any]]) -> str:
        digest = hashlib.sha256(
            json.dumps([raw for _, raw in entries], sort_keys=True, default=str).encode("utf-8")
        ).hexdigest()
        return f"{BASE_VERSION}+{digest[:12]}"

    def _build_library(self) -> TemplateLibrary:
        declared_version, entries = self._read_entries()
        templates: List[Template] = []
        seen = set()
        for origin, raw in entries:
            try:
                template = self.validate_template(Template.model_validate(raw))
            except ValidationError as exc:
                logger.warning("Skipping template from %s: invalid metadata (%d error(s))", origin, exc.error_count())
                continue
            except InvalidTemplate as exc:
                logger.warning("Skipping template from %s: %s", origin, exc)
                continue
            if template.id in seen:
                logger.warning("Skipping template from %s: duplicate id '%s'", origin, template.id)
                continue
            seen.add(template.id)
            templates.append(template)

        library = TemplateLibrary(
            templates=tuple(templates),
            version=declared_version or self._content_version(entries),
            last_updated=self._clock().isoformat(),
        )
        logger.info(
            "Loaded %d of %d template(s) from %s (version %s)",
            len(templates),
            len(entries),
            self.templates_dir,
            library.version,
        )
        return library
