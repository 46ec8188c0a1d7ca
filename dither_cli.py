from __future__ import annotations

import argparse
import json
import logging
import os
from pathlib import Path

from PIL import Image, ImageOps, UnidentifiedImageError

from dither_core import (
    ALGORITHMS,
    DEFAULT_RESAMPLE,
    RESAMPLE_ENV,
    RESAMPLERS,
    DitherConfig,
    default_resample_name,
    dither_image,
)

logger = logging.getLogger(__name__)

LOG_LEVEL_ENV = "DITHER_GENERATOR_LOG_LEVEL"

# Flag name -> DitherConfig.from_settings key
_OVERRIDES = {
    "algorithm": "algorithm",
    "threshold": "threshold",
    "strength": "strength",
    "scale": "scale",
    "dark": "dark_color",
    "light": "light_color",
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dither-generator",
        description="Dither an image down to two colors.",
    )
    parser.add_argument("input", type=Path, help="Source image")
    parser.add_argument("output", type=Path, help="Where to write the result; format follows the suffix")
    parser.add_argument(
        "--algorithm",
        choices=ALGORITHMS,
        default=None,
        help="Dithering algorithm (default: floyd-steinberg).",
    )
    parser.add_argument("--threshold", type=int, default=None, help="Luminance cut-off, 0-255 (default: 128).")
    parser.add_argument("--strength", type=float, default=None, help="Error/pattern strength, 0-1 (default: 0.5).")
    parser.add_argument(
        "--scale",
        type=int,
        default=None,
        help="Working size in percent, 5-100. Lower values give larger dots (default: 100).",
    )
    parser.add_argument("--dark", default=None, help="Dark color as #rrggbb (default: #000000).")
    parser.add_argument("--light", default=None, help="Light color as #rrggbb (default: #ffffff).")
    parser.add_argument(
        "--resample",
        choices=sorted(RESAMPLERS),
        default=None,
        help=f"Filter for the initial downscale (default: ${RESAMPLE_ENV} or {DEFAULT_RESAMPLE}).",
    )
    parser.add_argument("--config", type=Path, default=None, help="JSON file with settings; flags override it.")
    parser.add_argument(
        "--no-flatten",
        dest="flatten",
        action="store_false",
        help="Keep the source alpha instead of filling transparent areas with the light color.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log pipeline details")
    return parser


def configure_logging(verbose: bool = False) -> None:
    level_name = "DEBUG" if verbose else os.environ.get(LOG_LEVEL_ENV, "INFO").strip().upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")


def load_settings(path: Path) -> dict[str, object]:
    payload = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(payload, dict):
        raise ValueError(f"{path}: expected a JSON object with dither settings")
    return payload


def config_from_args(args: argparse.Namespace) -> DitherConfig:
    settings: dict[str, object] = {}
    if args.config is not None:
        settings.update(load_settings(args.config))
    for flag, key in _OVERRIDES.items():
        value = getattr(args, flag)
        if value is not None:
            settings[key] = value
    return DitherConfig.from_settings(settings)


def run(args: argparse.Namespace) -> int:
    try:
        config = config_from_args(args)
    except (OSError, ValueError) as exc:
        logger.error("Could not read settings: %s", exc)
        return 1

    try:
        with Image.open(args.input) as source:
            image = ImageOps.exif_transpose(source)
            image.load()
    except (OSError, UnidentifiedImageError) as exc:
        logger.error("Could not open %s: %s", args.input, exc)
        return 1

    resample = args.resample or default_resample_name()
    logger.info(
        "Dithering %s (%dx%d) with %s, scale %d%%",
        args.input,
        image.width,
        image.height,
        config.algorithm,
        config.scale,
    )
    result = dither_image(image, config, resample=resample, flatten_output=args.flatten)

    try:
        args.output.parent.mkdir(parents=True, exist_ok=True)
        result.save(args.output)
    except (OSError, ValueError) as exc:
        logger.error("Could not save %s: %s", args.output, exc)
        return 1
    logger.info("Wrote %s", args.output)
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose)
    return run(args)


if __name__ == "__main__":
    raise SystemExit(main())
