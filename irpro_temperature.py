"""Temperature field processing.

Frame averaging, per-frame statistics (min/max/average/center, histogram,
sample grid) and a rate-limited history of those statistics.
"""

from __future__ import annotations

from collections import deque
from enum import Enum, IntEnum
from typing import TYPE_CHECKING

import dataclasses
import logging
import math
import time

import numpy as np


if TYPE_CHECKING:
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)

HISTOGRAM_BINS = 50

# History defaults
HISTORY_MIN_INTERVAL = 0.1  # Seconds between recorded points
HISTORY_MAX_WINDOW = 60.0  # Seconds of history kept
HISTORY_VALID_MIN = -20.0  # Frames with a lower minimum are warm-up garbage


class GridDensity(IntEnum):
    """Number of grid lines per axis; samples sit between them."""

    LOW = 4
    MEDIUM = 8
    HIGH = 16

    @property
    def label(self) -> str:
        return f"{int(self)}×{int(self)}"


class TemperatureUnit(str, Enum):
    """Temperature display unit."""

    CELSIUS = "C"
    FAHRENHEIT = "F"

    def convert(self, celsius: float) -> float:
        if self is TemperatureUnit.FAHRENHEIT:
            return celsius * 9.0 / 5.0 + 32.0
        return celsius

    def format(self, celsius: float) -> str:
        """Format a Celsius value in this unit, e.g. ``"25.0C"``."""
        return f"{self.convert(celsius):.1f}{self.value}"


# =============================================================================
# Data Types
# =============================================================================


@dataclasses.dataclass(frozen=True, slots=True)
class HistogramPoint:
    """One histogram bin: lower-edge temperature and pixel count."""

    temperature: float
    count: int


@dataclasses.dataclass(frozen=True, slots=True)
class GridSample:
    """Temperature at one grid point and its normalized [0, 1) position."""

    value: float
    x: float
    y: float


@dataclasses.dataclass(frozen=True, slots=True)
class TemperatureGrid:
    """Grid samples as rows of columns."""

    density: int
    samples: tuple[tuple[GridSample, ...], ...]

    @property
    def rows(self) -> int:
        return len(self.samples)

    @property
    def cols(self) -> int:
        return len(self.samples[0]) if self.samples else 0

    def __iter__(self):
        for row in self.samples:
            yield from row


@dataclasses.dataclass(frozen=True, slots=True)
class FrameStatistics:
    """Statistics of one temperature field."""

    min: float
    max: float
    max_x: float  # Normalized column of the first maximum
    max_y: float  # Normalized row of the first maximum
    average: float
    center: float
    histogram: tuple[HistogramPoint, ...]
    grid: TemperatureGrid


@dataclasses.dataclass(frozen=True, slots=True)
class HistoryPoint:
    """Statistics recorded at one moment."""

    timestamp: float
    min: float
    max: float
    average: float
    center: float


# =============================================================================
# Frame Averaging
# =============================================================================


class FrameAverager:
    """Bounded ring of recent fields producing their elementwise mean.

    Only the processing path may call into this class.
    """

    def __init__(self, enabled: bool = False, window: int = 5) -> None:
        self._enabled = bool(enabled)
        self._window = max(1, int(window))
        self._ring: deque[NDArray[np.float32]] = deque()

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def window(self) -> int:
        return self._window

    def __len__(self) -> int:
        return len(self._ring)

    def set_enabled(self, enabled: bool) -> None:
        """Enable or disable averaging. Always starts a fresh ring."""
        self._ring.clear()
        self._enabled = bool(enabled)

    def set_window(self, count: int) -> None:
        """Set the number of frames averaged (minimum 1)."""
        self._window = max(1, int(count))
        while len(self._ring) > self._window:
            self._ring.popleft()

    def push(self, field: NDArray[np.float32]) -> NDArray[np.float32]:
        """Add a field and return the smoothed field.

        Args:
            field: Calibrated temperature field.

        Returns:
            Mean of the buffered fields when averaging is enabled and more
            than one is buffered, otherwise ``field`` itself.
        """
        if not self._enabled:
            return field

        self._ring.append(field)
        while len(self._ring) > self._window:
            self._ring.popleft()
        if len(self._ring) < 2:
            return field

        total = np.zeros(field.shape, dtype=np.float64)
        for frame in self._ring:
            total += frame
        mean = (total / len(self._ring)).astype(np.float32)
        mean.flags.writeable = False
        return mean


# =============================================================================
# Statistics (Pure Functions)
# =============================================================================


def compute_histogram(
    values: NDArray[np.floating],
    min_value: float,
    max_value: float,
    bins: int = HISTOGRAM_BINS,
) -> tuple[HistogramPoint, ...]:
    """Histogram of temperatures between ``min_value`` and ``max_value``.

    Bin width is ``(max - min) / (bins - 1)`` so the maximum lands in its own
    last bin. A constant frame (zero width) yields an empty histogram.

    Args:
        values: Temperatures (any shape).
        min_value: Lowest temperature, start of bin 0.
        max_value: Highest temperature.
        bins: Number of bins (>= 2).

    Returns:
        One ``HistogramPoint(index * width + min, count)`` per bin.
    """
    if bins < 2:
        raise ValueError("bins must be >= 2")
    bin_width = (float(max_value) - float(min_value)) / (bins - 1)
    if bin_width == 0:
        return ()

    flat = np.asarray(values, dtype=np.float64).ravel()
    indexes = np.floor((flat - float(min_value)) / bin_width)
    indexes = np.clip(indexes, 0, bins - 1).astype(np.intp)
    counts = np.bincount(indexes, minlength=bins)
    return tuple(
        HistogramPoint(temperature=i * bin_width + float(min_value), count=int(c))
        for i, c in enumerate(counts)
    )


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def compute_grid(
    field: NDArray[np.floating], density: GridDensity | int = GridDensity.MEDIUM
) -> TemperatureGrid:
    """Sample the field on a regular grid.

    A density of N gives (N-1)×(N-1) samples. Each sample reads the pixel
    nearest ``(step_x * col + step_x / 2, step_y * row + step_y / 2)`` with
    integer steps ``(width-1) // (cols-1)`` and ``(height-1) // (rows-1)``.

    Args:
        field: Temperature field (height × width).
        density: Grid density (>= 3).

    Returns:
        Grid of samples with normalized positions.
    """
    density = int(density)
    if density < 3:
        raise ValueError("grid density must be >= 3")
    height, width = field.shape
    rows = cols = density - 1
    step_x = (width - 1) // (cols - 1)
    step_y = (height - 1) // (rows - 1)

    samples = []
    for row in range(rows):
        y = min(max(_round_half_up(step_y * row + step_y / 2), 0), height - 1)
        line = []
        for col in range(cols):
            x = min(max(_round_half_up(step_x * col + step_x / 2), 0), width - 1)
            line.append(
                GridSample(value=float(field[y, x]), x=x / width, y=y / height)
            )
        samples.append(tuple(line))
    return TemperatureGrid(density=density, samples=tuple(samples))


def compute_statistics(
    field: NDArray[np.floating],
    density: GridDensity | int = GridDensity.MEDIUM,
    bins: int = HISTOGRAM_BINS,
) -> FrameStatistics:
    """Compute min/max/average/center, histogram and grid of one field.

    Args:
        field: Temperature field (height × width), Celsius.
        density: Grid density for the sample grid.
        bins: Histogram bin count.

    Returns:
        Frame statistics.
    """
    height, width = field.shape
    flat = field.ravel()

    max_offset = int(np.argmax(flat))
    min_value = float(flat.min())
    max_value = float(flat[max_offset])
    average = float(flat.mean(dtype=np.float64))
    center = float(flat[width * (height // 2) + width // 2])

    return FrameStatistics(
        min=min_value,
        max=max_value,
        max_x=(max_offset % width) / width,
        max_y=(max_offset // width) / height,
        average=average,
        center=center,
        histogram=compute_histogram(flat, min_value, max_value, bins),
        grid=compute_grid(field, density),
    )


# =============================================================================
# History
# =============================================================================


class HistoryTracker:
    """Time-windowed log of frame statistics for trend display."""

    def __init__(
        self,
        min_interval: float = HISTORY_MIN_INTERVAL,
        max_window: float = HISTORY_MAX_WINDOW,
        valid_min: float = HISTORY_VALID_MIN,
    ) -> None:
        """Initialize the tracker.

        Args:
            min_interval: Minimum seconds between consecutive points.
            max_window: Maximum seconds between oldest and newest point.
            valid_min: Points whose minimum is not above this are ignored.
        """
        if min_interval < 0 or max_window < 0:
            raise ValueError("intervals must be non-negative")
        self.min_interval = min_interval
        self.max_window = max_window
        self.valid_min = valid_min
        self._points: deque[HistoryPoint] = deque()

    def __len__(self) -> int:
        return len(self._points)

    def record(
        self,
        min_value: float,
        max_value: float,
        average: float,
        center: float,
        now: float | None = None,
    ) -> bool:
        """Record statistics if the interval and validity checks pass.

        Returns:
            True if a point was appended.
        """
        if now is None:
            now = time.monotonic()
        if min_value <= self.valid_min:
            return False
        if self._points and now - self._points[-1].timestamp < self.min_interval:
            return False

        self._points.append(
            HistoryPoint(
                timestamp=now,
                min=min_value,
                max=max_value,
                average=average,
                center=center,
            )
        )
        while (
            len(self._points) >= 2
            and self._points[-1].timestamp - self._points[0].timestamp
            > self.max_window
        ):
            self._points.popleft()
        return True

    def snapshot(self) -> tuple[HistoryPoint, ...]:
        return tuple(self._points)

    def clear(self) -> None:
        self._points.clear()
