from __future__ import annotations

import logging
import math
import os
import re
from dataclasses import dataclass
from typing import Callable, Mapping

import cv2
import numpy as np
from numba import njit
from PIL import Image

logger = logging.getLogger(__name__)

Color = tuple[int, int, int]
Resampler = Callable[[np.ndarray, tuple[int, int]], np.ndarray]

BLACK: Color = (0, 0, 0)
WHITE: Color = (255, 255, 255)

ALGORITHMS = ("floyd-steinberg", "atkinson", "ordered", "stucki", "burkes", "sierra")
ALGORITHM_LABELS = {
    "floyd-steinberg": "Floyd-Steinberg",
    "atkinson": "Atkinson",
    "ordered": "Ordered (Bayer)",
    "stucki": "Stucki",
    "burkes": "Burkes",
    "sierra": "Sierra",
}
DEFAULT_ALGORITHM = "floyd-steinberg"

THRESHOLD_RANGE = (0, 255)
STRENGTH_RANGE = (0.0, 1.0)
SCALE_RANGE = (5, 100)

RESAMPLE_ENV = "DITHER_GENERATOR_RESAMPLE"
DEFAULT_RESAMPLE = "bilinear"

_HEX_COLOR = re.compile(r"#?([0-9a-f]{2})([0-9a-f]{2})([0-9a-f]{2})", re.IGNORECASE)


def parse_color(value: object) -> Color:
    """Parse ``#rrggbb`` (the ``#`` is optional). Anything else maps to black."""
    match = _HEX_COLOR.fullmatch(value) if isinstance(value, str) else None
    if match is None:
        logger.warning("Could not parse color %r, using black", value)
        return BLACK
    return (int(match.group(1), 16), int(match.group(2), 16), int(match.group(3), 16))


def format_color(color: Color) -> str:
    r, g, b = color
    return f"#{r:02x}{g:02x}{b:02x}"


def _coerce_color(value: object) -> Color:
    if isinstance(value, (tuple, list)) and len(value) == 3:
        r, g, b = (int(np.clip(int(channel), 0, 255)) for channel in value)
        return (r, g, b)
    return parse_color(value)


def _setting_number(settings: Mapping[str, object], key: str, default: float) -> float:
    value = settings.get(key, default)
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"Setting {key!r} must be a number, got {value!r}") from None
    if not math.isfinite(number):
        raise ValueError(f"Setting {key!r} must be a number, got {value!r}")
    return number


@njit(cache=True)
def luminance(r, g, b):
    # BT.601 luma; works on scalars and numpy arrays alike.
    return 0.299 * r + 0.587 * g + 0.114 * b


@dataclass
class PixelBuffer:
    """RGBA samples, row-major, stored as a ``(height, width, 4)`` uint8 array."""

    width: int
    height: int
    samples: np.ndarray

    def __post_init__(self) -> None:
        if int(self.width) <= 0 or int(self.height) <= 0:
            raise ValueError(f"Pixel buffer dimensions must be positive, got {self.width}x{self.height}")
        self.width = int(self.width)
        self.height = int(self.height)

        samples = self.samples
        if isinstance(samples, (bytes, bytearray, memoryview)):
            samples = np.frombuffer(samples, dtype=np.uint8)
        samples = np.asarray(samples)

        expected = self.width * self.height * 4
        if samples.size != expected:
            raise ValueError(
                f"Sample array holds {samples.size} values, expected {expected} "
                f"for a {self.width}x{self.height} RGBA buffer"
            )
        if samples.dtype != np.uint8:
            if samples.dtype.kind not in "iu":
                raise ValueError(f"Samples must be integers, got dtype {samples.dtype}")
            if samples.size and (samples.min() < 0 or samples.max() > 255):
                raise ValueError("Sample values must lie in [0, 255]")
            samples = samples.astype(np.uint8)
        self.samples = samples.reshape(self.height, self.width, 4)

    @classmethod
    def filled(cls, width: int, height: int, color: Color, alpha: int = 255) -> PixelBuffer:
        samples = np.empty((height, width, 4), dtype=np.uint8)
        samples[:, :, :3] = color
        samples[:, :, 3] = alpha
        return cls(width, height, samples)

    @property
    def size(self) -> tuple[int, int]:
        return self.width, self.height

    def copy(self) -> PixelBuffer:
        return PixelBuffer(self.width, self.height, self.samples.copy())


@dataclass(frozen=True)
class DitherConfig:
    algorithm: str = DEFAULT_ALGORITHM
    threshold: int = 128
    strength: float = 0.5
    scale: int = 100
    dark_color: Color = BLACK
    light_color: Color = WHITE

    @classmethod
    def from_settings(cls, settings: Mapping[str, object]) -> DitherConfig:
        """Build a config from loosely typed values, clamping numbers into range.

        Colors may be hex strings or RGB triples. The algorithm name is kept
        exactly as given, case included; :func:`apply_dither` sends unknown
        names to Floyd-Steinberg.
        """
        defaults = cls()
        algorithm = str(settings.get("algorithm", defaults.algorithm))
        threshold = int(round(_setting_number(settings, "threshold", defaults.threshold)))
        strength = _setting_number(settings, "strength", defaults.strength)
        scale = int(round(_setting_number(settings, "scale", defaults.scale)))
        return cls(
            algorithm=algorithm,
            threshold=int(np.clip(threshold, *THRESHOLD_RANGE)),
            strength=float(np.clip(strength, *STRENGTH_RANGE)),
            scale=int(np.clip(scale, *SCALE_RANGE)),
            dark_color=_coerce_color(settings.get("dark_color", defaults.dark_color)),
            light_color=_coerce_color(settings.get("light_color", defaults.light_color)),
        )

    def to_settings(self) -> dict[str, object]:
        return {
            "algorithm": self.algorithm,
            "threshold": self.threshold,
            "strength": self.strength,
            "scale": self.scale,
            "dark_color": format_color(self.dark_color),
            "light_color": format_color(self.light_color),
        }


@dataclass(frozen=True)
class DiffusionKernel:
    name: str
    taps: tuple[tuple[int, int, int], ...]
    divisor: int

    def __post_init__(self) -> None:
        for dx, dy, _ in self.taps:
            if dy < 0 or (dy == 0 and dx <= 0):
                raise ValueError(f"{self.name}: offset ({dx}, {dy}) points at an already visited pixel")

    @property
    def total_weight(self) -> float:
        return sum(weight for _, _, weight in self.taps) / self.divisor


DIFFUSION_KERNELS: dict[str, DiffusionKernel] = {
    "floyd-steinberg": DiffusionKernel(
        "floyd-steinberg",
        (
            (1, 0, 7),
            (-1, 1, 3),
            (0, 1, 5),
            (1, 1, 1),
        ),
        16,
    ),
    # Only 6/8 of the error is passed on; the rest is dropped.
    "atkinson": DiffusionKernel(
        "atkinson",
        (
            (1, 0, 1),
            (2, 0, 1),
            (-1, 1, 1),
            (0, 1, 1),
            (1, 1, 1),
            (0, 2, 1),
        ),
        8,
    ),
    "stucki": DiffusionKernel(
        "stucki",
        (
            (1, 0, 8),
            (2, 0, 4),
            (-2, 1, 2),
            (-1, 1, 4),
            (0, 1, 8),
            (1, 1, 4),
            (2, 1, 2),
            (-2, 2, 1),
            (-1, 2, 2),
            (0, 2, 4),
            (1, 2, 2),
            (2, 2, 1),
        ),
        42,
    ),
    "burkes": DiffusionKernel(
        "burkes",
        (
            (1, 0, 8),
            (2, 0, 4),
            (-2, 1, 2),
            (-1, 1, 4),
            (0, 1, 8),
            (1, 1, 4),
            (2, 1, 2),
        ),
        32,
    ),
    "sierra": DiffusionKernel(
        "sierra",
        (
            (1, 0, 5),
            (2, 0, 3),
            (-2, 1, 2),
            (-1, 1, 4),
            (0, 1, 5),
            (1, 1, 4),
            (2, 1, 2),
            (-1, 2, 2),
            (0, 2, 3),
            (1, 2, 2),
        ),
        32,
    ),
}


def bayer_matrix(size: int) -> np.ndarray:
    matrix = np.array([[0]], dtype=np.int32)
    n = 1
    base = np.array([[0, 2], [3, 1]], dtype=np.int32)
    while n < size:
        matrix = np.block(
            [
                [4 * matrix + base[0, 0], 4 * matrix + base[0, 1]],
                [4 * matrix + base[1, 0], 4 * matrix + base[1, 1]],
            ]
        )
        n *= 2
    return matrix


BAYER_MATRIX = bayer_matrix(8)
BAYER_MATRIX.setflags(write=False)


@njit(cache=True)
def _spread_error(rgb: np.ndarray, x: int, y: int, error: float, taps: np.ndarray) -> None:
    h, w = rgb.shape[0], rgb.shape[1]
    for i in range(taps.shape[0]):
        nx = x + int(taps[i, 0])
        ny = y + int(taps[i, 1])
        if 0 <= nx < w and ny < h:
            delta = error * taps[i, 2]
            for c in range(3):
                # Stored like an 8-bit canvas: round half to even, then clamp.
                value = np.rint(rgb[ny, nx, c] + delta)
                rgb[ny, nx, c] = min(255.0, max(0.0, value))


@njit(cache=True)
def _diffuse_raster(
    rgb: np.ndarray,
    taps: np.ndarray,
    threshold: float,
    strength: float,
    dark: np.ndarray,
    light: np.ndarray,
) -> None:
    h, w = rgb.shape[0], rgb.shape[1]
    for y in range(h):
        for x in range(w):
            gray = luminance(rgb[y, x, 0], rgb[y, x, 1], rgb[y, x, 2])
            if gray < threshold:
                rgb[y, x, 0] = dark[0]
                rgb[y, x, 1] = dark[1]
                rgb[y, x, 2] = dark[2]
                new_gray = 0.0
            else:
                rgb[y, x, 0] = light[0]
                rgb[y, x, 1] = light[1]
                rgb[y, x, 2] = light[2]
                new_gray = 255.0
            error = (gray - new_gray) * strength
            _spread_error(rgb, x, y, error, taps)


def kernel_taps(kernel: DiffusionKernel) -> np.ndarray:
    """``(dx, dy, weight / divisor)`` rows as a float array for the raster loop."""
    rows = [(dx, dy, weight / kernel.divisor) for dx, dy, weight in kernel.taps]
    return np.array(rows, dtype=np.float64).reshape(-1, 3)


def diffuse(
    buffer: PixelBuffer,
    kernel: DiffusionKernel,
    threshold: float,
    strength: float,
    dark: Color,
    light: Color,
) -> PixelBuffer:
    work = buffer.samples.astype(np.float64)
    _diffuse_raster(
        work[:, :, :3],
        kernel_taps(kernel),
        float(threshold),
        float(strength),
        np.array(dark, dtype=np.float64),
        np.array(light, dtype=np.float64),
    )
    return PixelBuffer(buffer.width, buffer.height, work.astype(np.uint8))


def order_dither(
    buffer: PixelBuffer,
    threshold: float,
    strength: float,
    dark: Color,
    light: Color,
) -> PixelBuffer:
    h, w = buffer.height, buffer.width
    rgb = buffer.samples[:, :, :3].astype(np.float64)
    gray = luminance(rgb[:, :, 0], rgb[:, :, 1], rgb[:, :, 2])

    m_h, m_w = BAYER_MATRIX.shape
    tiled = np.tile(BAYER_MATRIX, (h // m_h + 1, w // m_w + 1))[:h, :w]
    adjusted = threshold + (tiled - 32) * strength * 2

    out = buffer.samples.copy()
    out[:, :, :3] = np.where(
        (gray < adjusted)[:, :, None],
        np.array(dark, dtype=np.uint8),
        np.array(light, dtype=np.uint8),
    )
    return PixelBuffer(w, h, out)


def pil_resampler(method: Image.Resampling) -> Resampler:
    def resample(samples: np.ndarray, size: tuple[int, int]) -> np.ndarray:
        image = Image.fromarray(np.ascontiguousarray(samples))
        return np.array(image.resize(size, method), dtype=np.uint8)

    return resample


def _area_resample(samples: np.ndarray, size: tuple[int, int]) -> np.ndarray:
    return cv2.resize(np.ascontiguousarray(samples), size, interpolation=cv2.INTER_AREA)


RESAMPLERS: dict[str, Resampler] = {
    "bilinear": pil_resampler(Image.Resampling.BILINEAR),
    "bicubic": pil_resampler(Image.Resampling.BICUBIC),
    "lanczos": pil_resampler(Image.Resampling.LANCZOS),
    "box": pil_resampler(Image.Resampling.BOX),
    "nearest": pil_resampler(Image.Resampling.NEAREST),
    "area": _area_resample,
}


def default_resample_name() -> str:
    value = os.environ.get(RESAMPLE_ENV, "").strip().lower()
    if not value:
        return DEFAULT_RESAMPLE
    if value not in RESAMPLERS:
        logger.warning("Ignoring %s=%r, expected one of %s", RESAMPLE_ENV, value, ", ".join(RESAMPLERS))
        return DEFAULT_RESAMPLE
    return value


def get_resampler(resample: str | Resampler | None) -> Resampler:
    if resample is None:
        return RESAMPLERS[DEFAULT_RESAMPLE]
    if callable(resample):
        return resample
    try:
        return RESAMPLERS[resample.strip().lower()]
    except KeyError:
        raise ValueError(f"Unknown resampler {resample!r}, expected one of {', '.join(RESAMPLERS)}") from None


def scaled_size(width: int, height: int, scale: float) -> tuple[int, int]:
    factor = scale / 100
    return max(1, math.floor(width * factor)), max(1, math.floor(height * factor))


def downscale(buffer: PixelBuffer, scale: float, resample: str | Resampler | None = None) -> PixelBuffer:
    width, height = scaled_size(buffer.width, buffer.height, scale)
    if (width, height) == buffer.size:
        return buffer.copy()
    samples = get_resampler(resample)(buffer.samples, (width, height))
    logger.debug("Downscaled %dx%d to %dx%d", buffer.width, buffer.height, width, height)
    return PixelBuffer(width, height, samples)


def upscale_nearest(buffer: PixelBuffer, width: int, height: int) -> PixelBuffer:
    if (width, height) == buffer.size:
        return buffer.copy()
    image = Image.fromarray(np.ascontiguousarray(buffer.samples))
    image = image.resize((width, height), Image.Resampling.NEAREST)
    return PixelBuffer(width, height, np.array(image, dtype=np.uint8))


def apply_dither(buffer: PixelBuffer, config: DitherConfig) -> PixelBuffer:
    dark = config.dark_color
    light = config.light_color
    if config.algorithm == "ordered":
        return order_dither(buffer, config.threshold, config.strength, dark, light)

    kernel = DIFFUSION_KERNELS.get(config.algorithm)
    if kernel is None:
        logger.warning("Unknown algorithm %r, falling back to %s", config.algorithm, DEFAULT_ALGORITHM)
        kernel = DIFFUSION_KERNELS[DEFAULT_ALGORITHM]
    return diffuse(buffer, kernel, config.threshold, config.strength, dark, light)


def render(buffer: PixelBuffer, config: DitherConfig, resample: str | Resampler | None = None) -> PixelBuffer:
    """Downscale, dither, then blow the result back up to the source size."""
    small = downscale(buffer, config.scale, resample)
    logger.debug(
        "Dithering %dx%d with %s (threshold=%d, strength=%.2f)",
        small.width,
        small.height,
        config.algorithm,
        config.threshold,
        config.strength,
    )
    dithered = apply_dither(small, config)
    return upscale_nearest(dithered, buffer.width, buffer.height)


def buffer_from_image(image: Image.Image) -> PixelBuffer:
    rgba = image.convert("RGBA")
    return PixelBuffer(rgba.width, rgba.height, np.array(rgba, dtype=np.uint8))


def buffer_to_image(buffer: PixelBuffer) -> Image.Image:
    return Image.fromarray(np.ascontiguousarray(buffer.samples))


def flatten(buffer: PixelBuffer, background: Color) -> PixelBuffer:
    samples = buffer.samples.astype(np.float32)
    alpha = samples[:, :, 3:4] / 255.0
    bg = np.array(background, dtype=np.float32)
    rgb = samples[:, :, :3] * alpha + bg * (1.0 - alpha)

    out = np.empty_like(buffer.samples)
    out[:, :, :3] = np.clip(np.rint(rgb), 0, 255).astype(np.uint8)
    out[:, :, 3] = 255
    return PixelBuffer(buffer.width, buffer.height, out)


def dither_image(
    img: Image.Image,
    config: DitherConfig,
    resample: str | Resampler | None = None,
    flatten_output: bool = True,
) -> Image.Image:
    result = render(buffer_from_image(img), config, resample)
    if flatten_output:
        # Transparent areas show the light color, as on the original canvas.
        return buffer_to_image(flatten(result, config.light_color)).convert("RGB")
    return buffer_to_image(result)
