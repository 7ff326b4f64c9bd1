"""Video and still image output.

``VideoRecorder`` appends rendered RGB frames to an H.264 container through
OpenCV's ``VideoWriter``. Frames are timestamped against the wall clock and
handed to a writer thread through a small pool of preallocated buffers; when
the pool is exhausted the frame is dropped from the recording instead of
blocking the caller.
"""

from __future__ import annotations

from collections import deque
from typing import TYPE_CHECKING, Any, Callable

import dataclasses
import logging
import os
import threading
import time

import cv2
import numpy as np


if TYPE_CHECKING:
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)

# Tags OpenCV builds map to an H.264 encoder; which one works depends on the build
H264_FOURCCS = ("avc1", "H264", "X264")


class EncodingSetupError(Exception):
    """Raised when the writer, its input or the buffer pool cannot be created."""

    pass


class EncodingRuntimeError(Exception):
    """Raised when the encoder cannot take a frame right now."""

    pass


@dataclasses.dataclass(kw_only=True, frozen=True, slots=True)
class EncodingProfile:
    """Fixed encoding settings."""

    fourccs: tuple[str, ...] = (*H264_FOURCCS, "mp4v")  # Tried in order
    fps: float = 30.0  # Container frame rate
    pool_size: int = 3  # Pixel buffers in flight


@dataclasses.dataclass(kw_only=True, slots=True)
class RecorderStats:
    """Per-recording counters."""

    frames_appended: int = 0  # Accepted by append_frame
    frames_dropped: int = 0  # Rejected because no buffer was free
    frames_written: int = 0  # Distinct frames written to the container
    frames_repeated: int = 0  # Extra copies written to keep timing
    frames_skipped: int = 0  # Landed on an already written time slot
    write_errors: int = 0
    last_pts: float = 0.0  # Presentation time of the last appended frame


# (path, fourcc, fps, (width, height)) -> writer with write/release/isOpened
WriterFactory = Callable[[str, int, float, tuple[int, int]], Any]


def _default_writer(path: str, fourcc: int, fps: float, size: tuple[int, int]) -> Any:
    return cv2.VideoWriter(path, fourcc, fps, size)


def _remove_existing(path: str) -> None:
    if os.path.exists(path):
        os.remove(path)


class VideoRecorder:
    """Records rendered frames to a video file.

    Usage:
      rec = VideoRecorder()
      if rec.start("out.mp4", 1024, 768):
          rec.append_frame(image)
          rec.stop(lambda: print("done"))

    ``start``/``append_frame``/``stop`` may be called from any one thread;
    the file is complete only once the ``stop`` callback has run.
    """

    def __init__(
        self,
        profile: EncodingProfile | None = None,
        writer_factory: WriterFactory | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.profile = profile or EncodingProfile()
        self._writer_factory = writer_factory or _default_writer
        self._clock = clock
        self.stats = RecorderStats()

        self._lock = threading.Lock()
        self._cond = threading.Condition()
        self._writer: Any = None
        self._thread: threading.Thread | None = None
        self._finished = threading.Event()
        self._finished.set()
        self._finishing = False
        self._size: tuple[int, int] = (0, 0)
        self._start_time = 0.0
        self._free: deque[NDArray[np.uint8]] = deque()
        self._pending: deque[tuple[float, NDArray[np.uint8]]] = deque()
        self.path: str | None = None
        self.fourcc: str | None = None  # Codec tag of the current recording

    @property
    def is_recording(self) -> bool:
        return self._writer is not None and not self._finishing

    @property
    def size(self) -> tuple[int, int]:
        """Frame size (width, height) of the current recording."""
        return self._size

    def start(self, path: str, width: int, height: int) -> bool:
        """Start a new recording.

        Args:
            path: Output file; an existing file is replaced.
            width: Frame width in pixels.
            height: Frame height in pixels.

        Returns:
            True if recording started. Nothing is left half-started on False.
        """
        with self._lock:
            if self._writer is not None:
                logger.warning("Recording already in progress: %s", self.path)
                return False
            logger.info("Start recording video to %s (%dx%d)", path, width, height)
            writer = None
            try:
                if width <= 0 or height <= 0:
                    raise EncodingSetupError(f"Invalid size {width}x{height}")
                _remove_existing(path)
                writer, tag = self._open_writer(path, width, height)
                pool = deque(
                    np.empty((height, width, 3), dtype=np.uint8)
                    for _ in range(max(1, self.profile.pool_size))
                )
            except (EncodingSetupError, OSError, MemoryError, cv2.error) as e:
                logger.error("Failed to start recording: %s", e)
                if writer is not None:
                    writer.release()
                return False

            self.stats = RecorderStats()
            self.path = path
            self.fourcc = tag
            self._size = (width, height)
            self._free = pool
            self._pending = deque()
            self._finishing = False
            self._finished = threading.Event()
            self._writer = writer
            self._start_time = self._clock()
            self._thread = threading.Thread(
                target=self._write_loop, args=(writer,), daemon=True
            )
            self._thread.start()
            return True

    def append_frame(self, image: NDArray[np.uint8]) -> bool:
        """Queue one RGB frame (H×W×3) for encoding.

        Returns:
            False if not recording, the size is wrong, or the encoder is not
            ready (the frame is dropped from the recording).
        """
        if not self.is_recording:
            return False
        width, height = self._size
        if image.shape != (height, width, 3):
            logger.debug("Frame size %s does not match recording", image.shape)
            return False

        pts = max(self._clock() - self._start_time, self.stats.last_pts)
        with self._cond:
            if not self._free:
                self.stats.frames_dropped += 1
                logger.debug("Encoder not ready, dropping frame at %.3fs", pts)
                return False
            buf = self._free.popleft()

        cv2.cvtColor(image, cv2.COLOR_RGB2BGR, dst=buf)
        with self._cond:
            self._pending.append((pts, buf))
            self.stats.frames_appended += 1
            self.stats.last_pts = pts
            self._cond.notify()
        return True

    def stop(self, on_complete: Callable[[], Any] | None = None) -> None:
        """Finish the recording asynchronously.

        ``on_complete`` runs exactly once, after the container is finalized
        (immediately if nothing is recording).
        """
        with self._lock:
            writer_thread = self._thread
            if self._writer is None or self._finishing or writer_thread is None:
                idle = True
            else:
                idle = False
                finished = self._finished
                logger.info("Stopping recording...")
                with self._cond:
                    self._finishing = True
                    self._cond.notify_all()
        if idle:
            if on_complete is not None:
                on_complete()
            return

        def _finish() -> None:
            writer_thread.join()
            with self._lock:
                writer = self._writer
                path, stats = self.path, self.stats
                if writer is not None:
                    writer.release()
                self._writer = None
                self._thread = None
                self._free.clear()
                self._finishing = False
                finished.set()
            logger.info(
                "Recording finished: %s (%d frames, %d dropped)",
                path,
                stats.frames_written,
                stats.frames_dropped,
            )
            if on_complete is not None:
                on_complete()

        threading.Thread(target=_finish, daemon=True).start()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the current (or last) recording is finalized."""
        return self._finished.wait(timeout)

    # --- Internal implementation -------------------------------------------------
    def _open_writer(self, path: str, width: int, height: int) -> tuple[Any, str]:
        """Open a writer with the first codec tag the local OpenCV build accepts."""
        tags = self.profile.fourccs
        for tag in tags:
            writer = self._writer_factory(
                path, cv2.VideoWriter_fourcc(*tag), self.profile.fps, (width, height)
            )
            if writer is not None and writer.isOpened():
                if tag in H264_FOURCCS:
                    logger.info("Video encoder opened with %s", tag)
                else:
                    logger.warning("No H.264 encoder available, recording with %s", tag)
                return writer, tag
            logger.debug("Video encoder %s not available", tag)
            if writer is not None:
                writer.release()
        raise EncodingSetupError(
            f"No video encoder opened for {path} (tried {', '.join(tags)})"
        )

    def _write_loop(self, writer: Any) -> None:
        fps = self.profile.fps
        next_slot = 0
        last: NDArray[np.uint8] | None = None
        while True:
            with self._cond:
                while not self._pending and not self._finishing:
                    self._cond.wait()
                if not self._pending:
                    break
                pts, buf = self._pending.popleft()

            slot = int(round(pts * fps))
            try:
                if slot < next_slot:
                    self.stats.frames_skipped += 1
                else:
                    # Hold the previous frame on screen until this one is due
                    filler = last if last is not None else buf
                    for _ in range(slot - next_slot):
                        _write(writer, filler)
                        self.stats.frames_repeated += 1
                    _write(writer, buf)
                    self.stats.frames_written += 1
                    next_slot = slot + 1
                    if last is None:
                        last = buf.copy()
                    else:
                        np.copyto(last, buf)
            except EncodingRuntimeError as e:
                self.stats.write_errors += 1
                logger.warning("Dropped frame from recording: %s", e)

            with self._cond:
                self._free.append(buf)


def _write(writer: Any, frame: NDArray[np.uint8]) -> None:
    try:
        writer.write(frame)
    except cv2.error as e:
        raise EncodingRuntimeError(str(e)) from e


def save_image(image: NDArray[np.uint8], path: str) -> bool:
    """Save an RGB image as PNG, replacing any existing file.

    Returns:
        True if the file was written.
    """
    try:
        _remove_existing(path)
        ok = bool(cv2.imwrite(path, cv2.cvtColor(image, cv2.COLOR_RGB2BGR)))
    except (OSError, cv2.error) as e:
        logger.error("Failed to save image %s: %s", path, e)
        return False
    if ok:
        logger.info("Image saved: %s", path)
    else:
        logger.error("Failed to save image %s", path)
    return ok
