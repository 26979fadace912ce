import argparse
import logging
import os
import sys
import time

from mask_compositor import MaskCompositor
from mockup_types import BlendMode, DisplacementConfig, MockupError, OutputFormat
from template_library import TemplateLibraryManager

DEFAULT_TEXTURE = "assets/textures/canvas1.png"


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="Composite a design onto a product template and write the mockup image."
    )
    parser.add_argument(
        "-t",
        "--template_id",
        default=None,
        help="Template id to render (required unless --all or --list is given).",
    )
    parser.add_argument(
        "-d",
        "--design",
        default=None,
        help="Design image file (PNG, JPEG, WebP).",
    )
    parser.add_argument(
        "-o",
        "--output",
        default=None,
        help="Output image path, or output folder with --all (default: output/).",
    )
    parser.add_argument(
        "--templates_dir",
        default="assets/templates",
        help="Templates directory holding library.json or per-template folders.",
    )
    parser.add_argument(
        "--format",
        dest="output_format",
        default="png",
        help="Output format: png, jpeg or webp (default: png).",
    )
    parser.add_argument(
        "--quality",
        type=int,
        default=90,
        help="Encoder quality 1-100 for jpeg/webp (default: 90).",
    )
    parser.add_argument(
        "--brightness",
        type=float,
        default=0.92,
        help="Brightness factor applied to the design (default: 0.92).",
    )
    parser.add_argument("--contrast", type=float, default=1.0, help="Contrast factor (default: 1.0).")
    parser.add_argument("--saturation", type=float, default=1.0, help="Saturation factor (default: 1.0).")
    parser.add_argument(
        "--blend_mode",
        default="multiply",
        choices=[mode.value for mode in BlendMode],
        help="How the design is blended onto the base photo (default: multiply).",
    )
    parser.add_argument(
        "--texture_overlay",
        action="store_true",
        help="Overlay the material texture after compositing.",
    )
    parser.add_argument(
        "--texture_opacity",
        type=float,
        default=0.15,
        help="Opacity of the texture overlay (default: 0.15).",
    )
    parser.add_argument(
        "--texture_file",
        default=DEFAULT_TEXTURE,
        help="Texture used when a template has no displacement map (set to 'none' for procedural grain).",
    )
    parser.add_argument(
        "--all",
        action="store_true",
        help="Render the design onto every template and write the results into the output folder.",
    )
    parser.add_argument(
        "--list",
        action="store_true",
        help="Print the template catalog and exit.",
    )
    return parser.parse_args(argv)


def resolve_path(repo_dir, user_path):
    if os.path.isabs(user_path):
        return user_path
    candidate = os.path.join(os.getcwd(), user_path)
    if os.path.exists(candidate):
        return os.path.abspath(candidate)
    return os.path.abspath(os.path.join(repo_dir, user_path))


def print_catalog(manager):
    library = manager.load_library()
    print(f"Template library version {library.version} ({len(library.templates)} templates)")
    for template in library.templates:
        area = template.print_area
        print(
            f"  {template.id:<32} {template.product_type:<12} {template.angle:<8} "
            f"{template.color or '-':<10} print area {area.width}x{area.height} @ ({area.x}, {area.y})"
        )


def main(argv=None):
    args = parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s [%(name)s] %(message)s")

    repo_dir = os.path.dirname(os.path.abspath(__file__))
    manager = TemplateLibraryManager(resolve_path(repo_dir, args.templates_dir))

    if args.list:
        print_catalog(manager)
        return 0

    if not args.design:
        print("A design image is required (-d/--design).", file=sys.stderr)
        return 2
    if not args.all and not args.template_id:
        print("A template id is required (-t/--template_id) unless --all is given.", file=sys.stderr)
        return 2

    texture_file = None
    if args.texture_file and args.texture_file.lower() != "none":
        texture_file = resolve_path(repo_dir, args.texture_file)
    compositor = MaskCompositor(manager, texture_file=texture_file)

    try:
        output_format = OutputFormat(args.output_format)
        config = DisplacementConfig(
            brightness=args.brightness,
            contrast=args.contrast,
            saturation=args.saturation,
            blend_mode=args.blend_mode,
            texture_overlay=args.texture_overlay,
            texture_opacity=args.texture_opacity,
        )
    except ValueError as exc:
        print(f"Invalid rendering options: {exc}", file=sys.stderr)
        return 2

    with open(resolve_path(repo_dir, args.design), "rb") as handle:
        design = handle.read()

    extension = "jpg" if output_format is OutputFormat.JPEG else output_format.value
    start_time = time.perf_counter()
    try:
        if args.all:
            output_dir = resolve_path(repo_dir, args.output or "output")
            os.makedirs(output_dir, exist_ok=True)
            mockups = compositor.generate_all(
                design, config=config, output_format=output_format, output_quality=args.quality
            )
            for mockup in mockups:
                path = os.path.join(output_dir, f"{mockup.template_id}.{extension}")
                with open(path, "wb") as handle:
                    handle.write(mockup.content)
                print(f"Wrote {path} ({mockup.render_ms}ms)")
            print(f"Rendered {len(mockups)} mockups in {time.perf_counter() - start_time:.2f} seconds.")
            return 0

        output_path = resolve_path(repo_dir, args.output or os.path.join("output", f"{args.template_id}.{extension}"))
        os.makedirs(os.path.dirname(output_path) or ".", exist_ok=True)
        result = compositor.render(args.template_id, design, config, output_format, args.quality)
    except MockupError as exc:
        print(f"Mockup failed: {exc}", file=sys.stderr)
        return 1

    with open(output_path, "wb") as handle:
        handle.write(result.content)
    print(f"Wrote {output_path} in {result.generation_ms}ms ({len(result.content)} bytes).")
    return 0


if __name__ == "__main__":
    sys.exit(main())
