"""Thermal image rendering.

Colormaps, false-color synthesis and temperature text overlays. Rasters are
RGB ``uint8`` arrays (H×W×3); convert to BGR only when handing them to
OpenCV I/O.
"""

from __future__ import annotations

from enum import IntEnum
from typing import TYPE_CHECKING, Iterable, Sequence

import dataclasses

import cv2
import matplotlib.colors as mcolors
import numpy as np

from irpro_orientation import Orientation
from irpro_temperature import FrameStatistics, TemperatureGrid, TemperatureUnit


if TYPE_CHECKING:
    from numpy.typing import NDArray


# =============================================================================
# Colormaps
# =============================================================================


RGB = tuple[float, float, float]


@dataclasses.dataclass(frozen=True, slots=True)
class ColorMap:
    """Named anchor colors spread uniformly over [0, 1]."""

    name: str
    colors: tuple[RGB, ...]

    def __post_init__(self) -> None:
        if len(self.colors) < 2:
            raise ValueError(f"Colormap {self.name} needs at least 2 anchors")


VIRIDIS = ColorMap(
    "Viridis",
    (
        (0.13, 0.13, 0.38),  # Dark purple
        (0.24, 0.29, 0.56),  # Deep blue
        (0.33, 0.45, 0.73),  # Light blue
        (0.51, 0.76, 0.55),  # Light green
        (0.88, 0.98, 0.26),  # Bright yellow
    ),
)
PLASMA = ColorMap(
    "Plasma",
    (
        (0.0, 0.0, 0.13),
        (0.26, 0.02, 0.42),
        (0.65, 0.16, 0.44),
        (1.0, 0.69, 0.0),
        (1.0, 0.99, 0.0),
    ),
)
COOLWARM = ColorMap(
    "Coolwarm",
    (
        (0.0, 0.0, 0.5),
        (0.0, 0.0, 1.0),
        (0.0, 0.5, 1.0),
        (1.0, 0.5, 0.0),
        (1.0, 0.0, 0.0),
    ),
)
MAGMA = ColorMap(
    "Magma",
    (
        (0.0, 0.0, 0.13),
        (0.25, 0.0, 0.27),
        (0.56, 0.0, 0.28),
        (0.89, 0.0, 0.03),
        (1.0, 0.91, 0.0),
    ),
)
TWILIGHT = ColorMap(
    "Twilight",
    (
        (0.0, 0.0, 0.5),
        (0.0, 0.0, 1.0),
        (0.5, 0.0, 1.0),
        (1.0, 0.5, 0.0),
        (1.0, 1.0, 0.0),
    ),
)
AUTUMN = ColorMap("Autumn", ((1.0, 1.0, 0.0), (1.0, 0.5, 0.0), (1.0, 0.0, 0.0)))
SPRING = ColorMap("Spring", ((1.0, 0.0, 1.0), (1.0, 1.0, 0.0)))
WINTER = ColorMap("Winter", ((0.0, 0.0, 1.0), (0.0, 1.0, 0.0)))
JET = ColorMap(
    "Jet",
    (
        (0.0, 0.0, 0.5),
        (0.0, 0.0, 1.0),
        (0.0, 0.5, 1.0),
        (0.0, 1.0, 1.0),
        (0.5, 1.0, 0.0),
        (1.0, 1.0, 0.0),
        (1.0, 0.5, 0.0),
        (1.0, 0.0, 0.0),
    ),
)
INFERNO = ColorMap(
    "Inferno",
    (
        (0.0, 0.0, 0.13),
        (0.23, 0.0, 0.38),
        (0.54, 0.01, 0.61),
        (0.89, 0.38, 0.12),
        (1.0, 0.99, 0.0),
    ),
)

# Catalog in menu order
COLORMAPS: dict[str, ColorMap] = {
    cmap.name: cmap
    for cmap in (
        VIRIDIS,
        PLASMA,
        COOLWARM,
        MAGMA,
        TWILIGHT,
        AUTUMN,
        SPRING,
        WINTER,
        JET,
        INFERNO,
    )
}
COLORMAP_NAMES: tuple[str, ...] = tuple(COLORMAPS)

_LUTS: dict[ColorMap, NDArray[np.uint8]] = {}


def get_colormap(name: str) -> ColorMap:
    """Look up a colormap by name.

    Raises:
        KeyError: If the name is not in the catalog.
    """
    return COLORMAPS[name]


def next_colormap(name: str) -> str:
    """Name of the colormap after ``name`` in the catalog."""
    idx = COLORMAP_NAMES.index(name)
    return COLORMAP_NAMES[(idx + 1) % len(COLORMAP_NAMES)]


def build_lut(colormap: ColorMap) -> NDArray[np.uint8]:
    """Build a 256×3 RGB lookup table from the colormap's anchors.

    Anchors sit at ``i / (n - 1)``; entries in between are interpolated
    linearly per channel.
    """
    cmap = mcolors.LinearSegmentedColormap.from_list(
        colormap.name, list(colormap.colors), N=256
    )
    rgba = cmap(np.arange(256))
    return np.rint(rgba[:, :3] * 255.0).astype(np.uint8)


def get_lut(colormap: ColorMap) -> NDArray[np.uint8]:
    """LUT for a colormap, built once."""
    lut = _LUTS.get(colormap)
    if lut is None:
        lut = _LUTS[colormap] = build_lut(colormap)
    return lut


# =============================================================================
# Colorizer
# =============================================================================


def normalize_to_u8(
    field: NDArray[np.floating], min_value: float, max_value: float
) -> NDArray[np.uint8]:
    """Scale temperatures to 0-255 over [min, max].

    The span is floored at 1.0 so a constant frame maps to 0 everywhere.
    """
    span = max(float(max_value) - float(min_value), 1.0)
    scaled = (np.asarray(field, dtype=np.float32) - np.float32(min_value)) * np.float32(
        255.0 / span
    )
    scaled = np.nan_to_num(scaled, nan=0.0)
    return np.clip(scaled, 0.0, 255.0).astype(np.uint8)


def apply_colormap(img_u8: NDArray[np.uint8], colormap: ColorMap) -> NDArray[np.uint8]:
    """Apply colormap to grayscale image.

    Args:
        img_u8: 8-bit grayscale image (H×W).
        colormap: Colormap to apply.

    Returns:
        RGB color image (H×W×3).

    """
    return get_lut(colormap)[img_u8]


def upscale(img: NDArray[np.uint8], scale: int) -> NDArray[np.uint8]:
    """Enlarge an image by an integer factor with Lanczos resampling."""
    if scale < 1:
        raise ValueError("scale must be >= 1")
    if scale == 1:
        return img
    h, w = img.shape[:2]
    resized = cv2.resize(img, (w * scale, h * scale), interpolation=cv2.INTER_LANCZOS4)
    # cv2.resize may return cv2.UMat on some platforms
    return np.asarray(resized, dtype=np.uint8)


def colorize(
    field: NDArray[np.floating],
    min_value: float,
    max_value: float,
    colormap: ColorMap,
    scale: int = 4,
) -> NDArray[np.uint8]:
    """Render a temperature field as an upscaled false-color RGB image."""
    gray = normalize_to_u8(field, min_value, max_value)
    return upscale(apply_colormap(gray, colormap), scale)


# =============================================================================
# Overlays
# =============================================================================


class OverlayMode(IntEnum):
    """Temperature text overlay modes."""

    OFF = 0
    POINT = 1  # Center and maximum
    GRID = 2  # One label per grid sample


# Color constants (RGB)
COLOR_CENTER = (255, 255, 255)
COLOR_MAX = (255, 0, 0)
COLOR_GRID = (255, 255, 255)
COLOR_OUTLINE = (0, 0, 0)

GRID_VALID_MIN = -50.0  # Grid samples below this are not labeled
FONT = cv2.FONT_HERSHEY_SIMPLEX
OUTLINE = 2  # Extra stroke width of the dark outline


@dataclasses.dataclass(frozen=True, slots=True)
class Label:
    """Text centered at a normalized sensor position."""

    text: str
    x: float
    y: float
    color: tuple[int, int, int] = COLOR_CENTER


def point_labels(stats: FrameStatistics, unit: TemperatureUnit) -> list[Label]:
    """Center temperature in white and maximum temperature in red."""
    return [
        Label(unit.format(stats.center), 0.5, 0.5, COLOR_CENTER),
        Label(unit.format(stats.max), stats.max_x, stats.max_y, COLOR_MAX),
    ]


def grid_labels(
    grid: TemperatureGrid,
    unit: TemperatureUnit,
    valid_min: float = GRID_VALID_MIN,
) -> list[Label]:
    """One label per grid sample, skipping NaN and implausible values."""
    labels = []
    for sample in grid:
        if np.isnan(sample.value) or sample.value < valid_min:
            continue
        labels.append(Label(unit.format(sample.value), sample.x, sample.y, COLOR_GRID))
    return labels


def build_labels(
    stats: FrameStatistics, mode: OverlayMode, unit: TemperatureUnit
) -> list[Label]:
    if mode == OverlayMode.POINT:
        return point_labels(stats, unit)
    if mode == OverlayMode.GRID:
        return grid_labels(stats.grid, unit)
    return []


def render_glyph(
    text: str,
    color: tuple[int, int, int],
    font_scale: float = 0.5,
    thickness: int = 1,
) -> tuple[NDArray[np.uint8], NDArray[np.bool_]]:
    """Render upright text with a dark outline.

    Returns:
        Tuple of (RGB patch, glyph mask). Pixels outside the mask are unused.
    """
    outline = thickness + OUTLINE
    (tw, th), baseline = cv2.getTextSize(text, FONT, font_scale, outline)
    pad = outline
    h = th + baseline + 2 * pad
    w = tw + 2 * pad
    org = (pad, pad + th)

    patch = np.zeros((h, w, 3), dtype=np.uint8)
    mask = np.zeros((h, w), dtype=np.uint8)
    cv2.putText(mask, text, org, FONT, font_scale, 255, outline, cv2.LINE_AA)
    cv2.putText(patch, text, org, FONT, font_scale, COLOR_OUTLINE, outline, cv2.LINE_AA)
    cv2.putText(patch, text, org, FONT, font_scale, color, thickness, cv2.LINE_AA)
    return patch, mask > 0


@dataclasses.dataclass(frozen=True, slots=True)
class Placement:
    """Where a counter-oriented glyph lands in the sensor-space raster."""

    x0: int
    y0: int
    patch: NDArray[np.uint8]
    mask: NDArray[np.bool_]

    @property
    def box(self) -> tuple[int, int, int, int]:
        """(x0, y0, x1, y1), exclusive end, unclipped."""
        h, w = self.mask.shape
        return self.x0, self.y0, self.x0 + w, self.y0 + h


def place_label(
    label: Label,
    raster_shape: Sequence[int],
    orientation: Orientation,
    font_scale: float = 0.5,
) -> Placement:
    """Counter-orient a label's glyph run and center it on its position."""
    patch, mask = render_glyph(label.text, label.color, font_scale)
    patch = orientation.unapply(patch)
    mask = orientation.unapply(mask.astype(np.uint8)) > 0
    h, w = raster_shape[:2]
    ph, pw = mask.shape
    x0 = int(round(label.x * w - pw / 2))
    y0 = int(round(label.y * h - ph / 2))
    return Placement(x0=x0, y0=y0, patch=patch, mask=mask)


def draw_labels(
    raster: NDArray[np.uint8],
    labels: Iterable[Label],
    orientation: Orientation = Orientation.UP,
    font_scale: float = 0.5,
) -> NDArray[np.uint8]:
    """Composite labels onto a copy of a sensor-space raster.

    Glyphs are counter-oriented so they read upright once the result is
    passed through ``orientation.apply``. Only glyph pixels are written;
    labels running off the edge are cropped.
    """
    out = raster.copy()
    h, w = out.shape[:2]
    for label in labels:
        p = place_label(label, out.shape, orientation, font_scale)
        x0, y0, x1, y1 = p.box
        cx0, cy0 = max(x0, 0), max(y0, 0)
        cx1, cy1 = min(x1, w), min(y1, h)
        if cx0 >= cx1 or cy0 >= cy1:
            continue
        sub_mask = p.mask[cy0 - y0 : cy1 - y0, cx0 - x0 : cx1 - x0]
        sub_patch = p.patch[cy0 - y0 : cy1 - y0, cx0 - x0 : cx1 - x0]
        region = out[cy0:cy1, cx0:cx1]
        region[sub_mask] = sub_patch[sub_mask]
    return out


def render_frame(
    field: NDArray[np.floating],
    stats: FrameStatistics,
    colormap: ColorMap,
    orientation: Orientation = Orientation.UP,
    mode: OverlayMode = OverlayMode.POINT,
    unit: TemperatureUnit = TemperatureUnit.CELSIUS,
    scale: int = 4,
) -> NDArray[np.uint8]:
    """Colorize, overlay and orient one frame.

    Returns:
        RGB image at the orientation-adjusted size.
    """
    raster = colorize(field, stats.min, stats.max, colormap, scale)
    labels = build_labels(stats, mode, unit)
    if labels:
        raster = draw_labels(raster, labels, orientation, font_scale=max(0.3, 0.125 * scale))
    return orientation.apply(raster)
