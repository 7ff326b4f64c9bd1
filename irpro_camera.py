"""IrPro Thermal Camera Driver.

Frame layout, temperature conversion, and capture for IrPro / P2-class
USB (UVC) thermal cameras.

Supports:
- IrPro: VID=0x0BDA, PID=0x5830, 256×192 thermal resolution

The camera streams a 256×384 frame: the top half is the hardware-AGC'd
preview image, the bottom half holds 16-bit fixed-point temperatures in
1/64 Kelvin units.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Any, Callable

import dataclasses
import logging
import threading
import time

import cv2
import numpy as np
import usb.core


if TYPE_CHECKING:
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)

# Temperature conversion constants
TEMP_SCALE = 64  # Raw values are in 1/64 Kelvin units
KELVIN_OFFSET = 273.2  # Calibration offset used by the sensor firmware

# Frame geometry
SENSOR_W = 256
SENSOR_H = 192
THERMAL_ROW_START = 192  # Data half starts right after the preview half


class FrameError(Exception):
    """Raised when a delivered frame cannot be turned into temperatures."""

    pass


class FrameIncompleteError(FrameError):
    """Raised when a raw buffer is missing or shorter than the data extent."""

    pass


class IrProErrorCode(str, Enum):
    """Reasons a capture session can fail to start."""

    NO_DEVICES_FOUND = "No IR camera devices found."
    FAILED_TO_CREATE_DEVICE_INPUT = "Failed to create device input."
    FAILED_TO_ADD_OUTPUT = "Failed to set video output."


class DeviceError(RuntimeError):
    """Raised when the camera cannot be found or attached."""

    def __init__(self, code: IrProErrorCode, detail: str = "") -> None:
        self.code = code
        message = code.value if not detail else f"{code.value} ({detail})"
        super().__init__(message)


@dataclasses.dataclass(kw_only=True, frozen=True, slots=True)
class SensorConfig:
    """Sensor geometry and USB identity."""

    width: int = SENSOR_W  # Thermal columns
    height: int = SENSOR_H  # Thermal rows
    start_row: int = THERMAL_ROW_START  # First data row in the raw frame
    vid: int = 0x0BDA
    pid: int = 0x5830
    byteorder: str = ">"  # Samples arrive big-endian

    @property
    def frame_rows(self) -> int:
        """Total rows in a raw frame: preview + data."""
        return self.start_row + self.height

    @property
    def bytes_per_row(self) -> int:
        """Packed row stride of a raw frame."""
        return 2 * self.width

    @property
    def frame_size(self) -> int:
        """Raw frame size in bytes with a packed stride."""
        return self.frame_rows * self.bytes_per_row


# Default sensor config
DEFAULT_SENSOR = SensorConfig()


# =============================================================================
# Temperature Conversion (Pure Functions)
# =============================================================================


def raw_to_kelvin(raw: float | NDArray[np.uint16]) -> float | NDArray[np.float32]:
    """Convert raw sensor value to Kelvin.

    Args:
        raw: Raw 16-bit sensor value(s) in 1/64 Kelvin units.

    Returns:
        Temperature in Kelvin.

    """
    return np.float32(raw) / np.float32(TEMP_SCALE)


def kelvin_to_celsius(
    kelvin: float | NDArray[np.float32],
) -> float | NDArray[np.float32]:
    """Convert Kelvin to Celsius using the sensor's 273.2 offset."""
    return kelvin - np.float32(KELVIN_OFFSET)


def celsius_to_kelvin(celsius: float) -> float:
    """Convert Celsius to Kelvin using the sensor's 273.2 offset."""
    return celsius + KELVIN_OFFSET


def raw_to_celsius(raw: float | NDArray[np.uint16]) -> float | NDArray[np.float32]:
    """Convert raw sensor value directly to Celsius.

    Formula: (raw / 64) - 273.2

    Args:
        raw: Raw 16-bit sensor value(s).

    Returns:
        Temperature in Celsius (float32).

    """
    return kelvin_to_celsius(raw_to_kelvin(raw))


def celsius_to_raw(celsius: float) -> int:
    """Convert Celsius to the nearest raw sensor value.

    Args:
        celsius: Temperature in Celsius.

    Returns:
        Raw 16-bit sensor value.

    """
    return int(round((celsius + KELVIN_OFFSET) * TEMP_SCALE))


# =============================================================================
# Frame Decoding (Pure Functions)
# =============================================================================


def decode_temperatures(
    buffer: Any,
    bytes_per_row: int,
    start_row: int | None = None,
    config: SensorConfig | None = None,
) -> NDArray[np.float32]:
    """Decode the data half of a raw frame into calibrated temperatures.

    Reads ``config.height`` rows of ``config.width`` 16-bit samples starting at
    ``start_row``, swaps them to host byte order and applies
    ``raw / 64 - 273.2``. Values are not clamped.

    Args:
        buffer: Raw frame bytes (any object exposing the buffer protocol).
        bytes_per_row: Row stride of the raw frame in bytes.
        start_row: First data row (defaults to ``config.start_row``).
        config: Sensor configuration (defaults to IrPro).

    Returns:
        Read-only float32 array of shape (height, width) in Celsius.

    Raises:
        FrameIncompleteError: If the buffer cannot supply the data extent.
    """
    if config is None:
        config = DEFAULT_SENSOR
    if start_row is None:
        start_row = config.start_row
    if buffer is None:
        raise FrameIncompleteError("No frame buffer")

    row_bytes = 2 * config.width
    if bytes_per_row < row_bytes or start_row < 0:
        raise FrameIncompleteError(
            f"Row stride {bytes_per_row} too small for {config.width} samples"
        )

    try:
        view = memoryview(buffer).cast("B")
    except (TypeError, ValueError) as e:
        raise FrameIncompleteError(f"Unusable frame buffer: {e}") from e
    needed = (start_row + config.height - 1) * bytes_per_row + row_bytes
    if view.nbytes < needed:
        raise FrameIncompleteError(f"Got {view.nbytes} bytes, expected {needed}")

    samples = np.ndarray(
        shape=(config.height, config.width),
        dtype=np.dtype(f"{config.byteorder}u2"),
        buffer=view,
        offset=start_row * bytes_per_row,
        strides=(bytes_per_row, 2),
    )
    celsius = raw_to_celsius(samples.astype(np.uint16))
    celsius = np.ascontiguousarray(celsius, dtype=np.float32)
    celsius.flags.writeable = False
    return celsius


def encode_frame(
    celsius: NDArray[np.floating] | float,
    config: SensorConfig | None = None,
    preview: NDArray[np.uint16] | None = None,
) -> bytes:
    """Build a packed raw frame whose data half decodes to ``celsius``.

    Used for replaying recorded fields and for tests.

    Args:
        celsius: Temperature field (height × width) or a constant.
        config: Sensor configuration (defaults to IrPro).
        preview: Optional preview-half content (start_row × width).

    Returns:
        Raw frame bytes with a stride of ``config.bytes_per_row``.
    """
    if config is None:
        config = DEFAULT_SENSOR
    field = np.broadcast_to(
        np.asarray(celsius, dtype=np.float64), (config.height, config.width)
    )
    raw = np.rint((field + KELVIN_OFFSET) * TEMP_SCALE)
    raw = np.clip(raw, 0, 0xFFFF).astype(np.uint16)

    dtype = np.dtype(f"{config.byteorder}u2")
    frame = np.zeros((config.frame_rows, config.width), dtype=dtype)
    if preview is not None:
        frame[: config.start_row, :] = preview
    frame[config.start_row :, :] = raw
    return frame.tobytes()


# =============================================================================
# Capture Session (Stateful)
# =============================================================================


FrameCallback = Callable[[bytes, int], Any]


@dataclasses.dataclass(kw_only=True, slots=True)
class CaptureStats:
    """Capture counters."""

    frames_read: int = 0  # Frames delivered to the callback
    read_failures: int = 0  # cap.read() calls that returned no frame
    callback_errors: int = 0  # Frames whose callback raised


@dataclasses.dataclass(kw_only=True, slots=True)
class IrProCamera:
    """IrPro thermal camera capture session.

    Opens the UVC stream in raw mode and pushes each frame to ``on_frame``
    as ``(buffer, bytes_per_row)`` from a reader thread.
    """

    on_frame: FrameCallback | None = None
    device_index: int = 0
    config: SensorConfig = dataclasses.field(default_factory=lambda: DEFAULT_SENSOR)
    check_usb: bool = True  # Verify the USB device before opening the stream
    stats: CaptureStats = dataclasses.field(default_factory=CaptureStats)
    _cap: Any = dataclasses.field(default=None, repr=False)
    _thread: threading.Thread | None = dataclasses.field(default=None, repr=False)
    _stop_event: threading.Event = dataclasses.field(
        default_factory=threading.Event, repr=False
    )
    _lock: threading.Lock = dataclasses.field(default_factory=threading.Lock, repr=False)

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> bool:
        """Start capturing. A second call while running is a no-op.

        Returns:
            True once frames are being delivered.

        Raises:
            DeviceError: If the device is missing or cannot be attached.
        """
        with self._lock:
            if self.is_running:
                return True

            if self.check_usb:
                self._find_device()

            cap = cv2.VideoCapture(self.device_index)
            if not cap.isOpened():
                cap.release()
                raise DeviceError(
                    IrProErrorCode.FAILED_TO_CREATE_DEVICE_INPUT,
                    f"index {self.device_index}",
                )
            if not cap.set(cv2.CAP_PROP_CONVERT_RGB, 0):
                cap.release()
                raise DeviceError(IrProErrorCode.FAILED_TO_ADD_OUTPUT)
            cap.set(cv2.CAP_PROP_BUFFERSIZE, 1)

            self._cap = cap
            self.stats = CaptureStats()
            self._stop_event.clear()
            self._thread = threading.Thread(target=self._reader, daemon=True)
            self._thread.start()
            logger.info("Camera started (index %d)", self.device_index)
            return True

    def stop(self) -> bool:
        """Stop capturing. A second call while stopped is a no-op.

        Returns:
            True once capture is stopped.
        """
        with self._lock:
            thread = self._thread
            if thread is None:
                return True
            self._stop_event.set()
            if thread is not threading.current_thread():
                thread.join(timeout=2.0)
            self._thread = None
            if self._cap is not None:
                self._cap.release()
                self._cap = None
            logger.info("Camera stopped")
            return True

    def read_frame(self) -> tuple[bytes, int] | None:
        """Read one raw frame.

        Returns:
            ``(buffer, bytes_per_row)`` or None if the read failed.
        """
        if self._cap is None:
            return None
        ok, frame = self._cap.read()
        if not ok or frame is None:
            return None
        raw = np.ascontiguousarray(frame)
        return raw.tobytes(), self.config.bytes_per_row

    # Private methods

    def _find_device(self) -> None:
        """Check that the camera is on the USB bus."""
        try:
            dev = usb.core.find(idVendor=self.config.vid, idProduct=self.config.pid)
        except usb.core.NoBackendError as e:
            raise DeviceError(IrProErrorCode.NO_DEVICES_FOUND, str(e)) from e
        if dev is None:
            raise DeviceError(
                IrProErrorCode.NO_DEVICES_FOUND,
                f"VID=0x{self.config.vid:04X} PID=0x{self.config.pid:04X}",
            )

    def _reader(self) -> None:
        while not self._stop_event.is_set():
            frame = self.read_frame()
            if frame is None:
                self.stats.read_failures += 1
                time.sleep(0.005)
                continue
            self.stats.frames_read += 1
            if self.on_frame is None:
                continue
            try:
                self.on_frame(*frame)
            except Exception:
                self.stats.callback_errors += 1
                logger.exception("Frame callback failed")
