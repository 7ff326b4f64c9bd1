"""Frame pipeline coordinator.

Turns raw frames into temperature fields, statistics, history and rendered
images, one frame at a time. A frame that arrives while the previous one is
still being processed is dropped, never queued.

Usage:
    pipeline = ThermalPipeline(on_result=show)
    camera = IrProCamera(on_frame=pipeline.submit)
    camera.start()
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, Any, Callable

import dataclasses
import logging
import threading
import time

import numpy as np

from irpro_camera import DEFAULT_SENSOR, FrameError, SensorConfig, decode_temperatures
from irpro_orientation import Orientation
from irpro_recorder import VideoRecorder, save_image
from irpro_render import OverlayMode, get_colormap, render_frame
from irpro_temperature import (
    HISTOGRAM_BINS,
    FrameAverager,
    FrameStatistics,
    GridDensity,
    HistoryPoint,
    HistoryTracker,
    TemperatureUnit,
    compute_statistics,
)


if TYPE_CHECKING:
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)


@dataclasses.dataclass(kw_only=True, frozen=True, slots=True)
class PipelineConfig:
    """Rendering and processing settings, swapped as a whole."""

    colormap: str = "Viridis"
    orientation: Orientation = Orientation.UP
    overlay: OverlayMode = OverlayMode.POINT
    grid_density: GridDensity = GridDensity.MEDIUM
    unit: TemperatureUnit = TemperatureUnit.CELSIUS
    averaging: bool = False
    averaging_window: int = 5
    scale: int = 4  # Upscale factor from sensor to image pixels
    start_row: int = DEFAULT_SENSOR.start_row
    histogram_bins: int = HISTOGRAM_BINS

    def __post_init__(self) -> None:
        get_colormap(self.colormap)
        if self.scale < 1:
            raise ValueError("scale must be >= 1")
        if self.averaging_window < 1:
            raise ValueError("averaging_window must be >= 1")

    def replace(self, **changes: Any) -> PipelineConfig:
        return dataclasses.replace(self, **changes)

    def image_size(self, sensor: SensorConfig = DEFAULT_SENSOR) -> tuple[int, int]:
        """Rendered image size (width, height)."""
        return self.orientation.display_size(
            sensor.width * self.scale, sensor.height * self.scale
        )


@dataclasses.dataclass(kw_only=True, slots=True)
class PipelineStats:
    """Pipeline counters."""

    frames_submitted: int = 0
    frames_processed: int = 0
    frames_busy: int = 0  # Dropped because processing was in flight
    frames_invalid: int = 0  # Dropped because they could not be decoded
    frames_recorded: int = 0
    frames_not_recorded: int = 0  # Encoder not ready


@dataclasses.dataclass(frozen=True, slots=True)
class FrameResult:
    """Everything produced from one frame."""

    field: NDArray[np.float32]
    stats: FrameStatistics
    history: tuple[HistoryPoint, ...]
    image: NDArray[np.uint8]
    frame_index: int
    timestamp: float


ResultCallback = Callable[[FrameResult], Any]


class ThermalPipeline:
    """Single-flight processing of raw thermal frames."""

    def __init__(
        self,
        config: PipelineConfig | None = None,
        on_result: ResultCallback | None = None,
        sensor: SensorConfig = DEFAULT_SENSOR,
        recorder: VideoRecorder | None = None,
        history: HistoryTracker | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or PipelineConfig()
        self.on_result = on_result
        self.sensor = sensor
        self.recorder = recorder or VideoRecorder()
        self.history = history or HistoryTracker()
        self.stats = PipelineStats()
        self._clock = clock

        self._busy = threading.Lock()
        self._config_lock = threading.Lock()
        self._averager = FrameAverager(
            self._config.averaging, self._config.averaging_window
        )
        self._publisher = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="irpro-publish"
        )
        self._latest: FrameResult | None = None
        self._frame_index = 0
        self._closed = False

    # --- Configuration -----------------------------------------------------------
    @property
    def config(self) -> PipelineConfig:
        return self._config

    def update_config(self, config: PipelineConfig) -> bool:
        """Swap in a new configuration.

        Orientation and scale fix the recorded frame size, so changing either
        is refused while recording.

        Returns:
            True if the configuration was applied.
        """
        with self._config_lock:
            current = self._config
            if self.recorder.is_recording and (
                config.orientation != current.orientation
                or config.scale != current.scale
            ):
                logger.warning("Cannot change orientation or scale while recording")
                return False
            self._config = config
        return True

    @property
    def latest(self) -> FrameResult | None:
        """Most recent result, if any."""
        return self._latest

    # --- Processing --------------------------------------------------------------
    def submit(self, buffer: Any, bytes_per_row: int) -> bool:
        """Process a raw frame unless a previous frame is still in flight.

        Returns:
            True if the frame was processed and published.
        """
        self.stats.frames_submitted += 1
        if self._closed or not self._busy.acquire(blocking=False):
            self.stats.frames_busy += 1
            logger.debug("Pipeline busy, dropping frame")
            return False
        try:
            return self._process(buffer, bytes_per_row)
        finally:
            self._busy.release()

    def _process(self, buffer: Any, bytes_per_row: int) -> bool:
        config = self._config
        try:
            field = decode_temperatures(
                buffer, bytes_per_row, config.start_row, self.sensor
            )
        except FrameError as e:
            self.stats.frames_invalid += 1
            logger.debug("Dropping invalid frame: %s", e)
            return False

        self._sync_averager(config)
        field = self._averager.push(field)

        stats = compute_statistics(field, config.grid_density, config.histogram_bins)
        now = self._clock()
        self.history.record(stats.min, stats.max, stats.average, stats.center, now=now)

        image = render_frame(
            field,
            stats,
            get_colormap(config.colormap),
            config.orientation,
            config.overlay,
            config.unit,
            config.scale,
        )
        image.flags.writeable = False

        if self.recorder.is_recording:
            if self.recorder.append_frame(image):
                self.stats.frames_recorded += 1
            else:
                self.stats.frames_not_recorded += 1

        result = FrameResult(
            field=field,
            stats=stats,
            history=self.history.snapshot(),
            image=image,
            frame_index=self._frame_index,
            timestamp=now,
        )
        self._frame_index += 1
        self.stats.frames_processed += 1
        self._latest = result
        if self.on_result is not None:
            self._publisher.submit(self._publish, result)
        return True

    def _sync_averager(self, config: PipelineConfig) -> None:
        if config.averaging != self._averager.enabled:
            self._averager.set_enabled(config.averaging)
        if config.averaging_window != self._averager.window:
            self._averager.set_window(config.averaging_window)

    def _publish(self, result: FrameResult) -> None:
        callback = self.on_result
        if callback is None:
            return
        try:
            callback(result)
        except Exception:
            logger.exception("Result callback failed")

    # --- Output ------------------------------------------------------------------
    @property
    def is_recording(self) -> bool:
        return self.recorder.is_recording

    def start_recording(self, path: str) -> bool:
        """Start recording rendered frames at the current image size."""
        width, height = self._config.image_size(self.sensor)
        return self.recorder.start(path, width, height)

    def stop_recording(self, on_complete: Callable[[], Any] | None = None) -> None:
        self.recorder.stop(on_complete)

    def save_image(self, path: str) -> bool:
        """Save the latest rendered image as PNG."""
        latest = self._latest
        if latest is None:
            logger.warning("No frame to save")
            return False
        return save_image(latest.image, path)

    def close(self) -> None:
        """Stop recording and shut down the publisher."""
        self._closed = True
        if self.recorder.is_recording:
            self.recorder.stop()
            self.recorder.wait(timeout=5.0)
        self._publisher.shutdown(wait=True)
