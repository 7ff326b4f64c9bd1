#!/usr/bin/env python3
"""IrPro Thermal Camera Viewer.

OpenCV window around the frame pipeline.

Controls:
  q - Quit           h - Help
  c - Colormap       o/O - Orientation next/previous
  t - Overlay mode   g - Grid density
  u - Unit (C/F)     a - Frame averaging
  [/] - Averaging window
  space - PNG snapshot
  r - Start/stop recording
  b - Toggle colorbar
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import logging
import time

import cv2
import numpy as np

from irpro_camera import DeviceError, IrProCamera
from irpro_orientation import Orientation
from irpro_pipeline import FrameResult, PipelineConfig, ThermalPipeline
from irpro_render import COLORMAP_NAMES, OverlayMode, get_lut, get_colormap, next_colormap
from irpro_temperature import GridDensity, TemperatureUnit


if TYPE_CHECKING:
    from numpy.typing import NDArray

COLOR_TEXT = (255, 255, 255)  # BGR
WINDOW_NAME = "IrPro Thermal"
MAX_AVERAGING_WINDOW = 30


def _cycle(value, members: list):
    return members[(members.index(value) + 1) % len(members)]


class IrProViewer:
    """IrPro Thermal Camera Viewer."""

    def __init__(
        self,
        config: PipelineConfig | None = None,
        device_index: int = 0,
        check_usb: bool = True,
    ) -> None:
        """Initialize viewer.

        Args:
            config: Initial pipeline configuration.
            device_index: OpenCV capture index of the camera.
            check_usb: Verify the camera is on the USB bus before opening it.
        """
        self.pipeline = ThermalPipeline(config=config)
        self.camera = IrProCamera(
            on_frame=self.pipeline.submit,
            device_index=device_index,
            check_usb=check_usb,
        )
        self.show_help: bool = False
        self.show_colorbar: bool = True
        self.fps: float = 0.0
        self._fps_count: int = 0
        self._fps_time: float = time.time()
        self._last_index: int = -1

    def run(self) -> None:
        """Main viewer loop."""
        print("IrPro Thermal Viewer")
        self.camera.start()
        print("Press 'h' for help")

        cv2.namedWindow(WINDOW_NAME, cv2.WINDOW_NORMAL)
        try:
            while True:
                result = self.pipeline.latest
                if result is not None and result.frame_index != self._last_index:
                    self._last_index = result.frame_index
                    cv2.imshow(WINDOW_NAME, self._compose(result))
                    self._update_fps()

                if not self._handle_key():
                    break
                if cv2.getWindowProperty(WINDOW_NAME, cv2.WND_PROP_VISIBLE) < 1:
                    break
        finally:
            self.camera.stop()
            if self.pipeline.is_recording:
                print("Finishing recording...")
            self.pipeline.close()
            cv2.destroyAllWindows()

    def _update_fps(self) -> None:
        self._fps_count += 1
        now = time.time()
        if now - self._fps_time >= 1.0:
            self.fps = self._fps_count / (now - self._fps_time)
            self._fps_count = 0
            self._fps_time = now

    # --- Drawing -----------------------------------------------------------------
    def _compose(self, result: FrameResult) -> NDArray[np.uint8]:
        """Window image: rendered frame plus viewer-only decorations, BGR."""
        img = cv2.cvtColor(result.image, cv2.COLOR_RGB2BGR)
        config = self.pipeline.config
        if self.show_colorbar:
            self._draw_colorbar(img, result, config)

        unit = config.unit
        status = (
            f"{config.colormap}  min {unit.format(result.stats.min)}"
            f"  max {unit.format(result.stats.max)}  {self.fps:.1f} fps"
        )
        if self.pipeline.is_recording:
            status += "  REC"
            cv2.circle(img, (img.shape[1] - 15, 15), 6, (0, 0, 255), -1, cv2.LINE_AA)
        cv2.putText(img, status, (5, 15), cv2.FONT_HERSHEY_SIMPLEX, 0.4, (0, 0, 0), 3, cv2.LINE_AA)
        cv2.putText(img, status, (5, 15), cv2.FONT_HERSHEY_SIMPLEX, 0.4, COLOR_TEXT, 1, cv2.LINE_AA)

        if self.show_help:
            self._draw_help(img)
        return img

    def _draw_colorbar(
        self,
        img: NDArray[np.uint8],
        result: FrameResult,
        config: PipelineConfig,
        height: float = 0.5,
        width: int = 15,
        ticks: int = 5,
    ) -> None:
        """Draw a colorbar for the current colormap on the center right of the image."""
        ticks = max(2, ticks)
        h, w = img.shape[:2]
        h_cbar = int(height * h)
        if h_cbar < ticks:
            return

        lut = get_lut(get_colormap(config.colormap))
        ind = ((np.arange(0.5, h_cbar) / h_cbar) * 255).astype(np.uint8)
        bar = lut[ind[::-1]][:, ::-1]  # RGB -> BGR

        y_offset = int(0.5 * (1 - height) * h)
        x_offset = 50
        img[y_offset:y_offset + h_cbar, w - x_offset - width:w - x_offset] = bar.reshape(h_cbar, 1, 3)
        cv2.rectangle(
            img,
            (w - x_offset - width, y_offset),
            (w - x_offset, y_offset + h_cbar),
            COLOR_TEXT, 1, cv2.LINE_AA,
        )

        tick_pos = (np.linspace(0, 1, ticks) * h_cbar + y_offset).astype(int)[::-1]
        tick_vals = np.linspace(result.stats.min, result.stats.max, ticks)
        for pos, value in zip(tick_pos, tick_vals):
            cv2.line(img, (w - x_offset - width, pos), (w - x_offset, pos), COLOR_TEXT, 1, cv2.LINE_AA)
            cv2.putText(
                img,
                f"{config.unit.convert(float(value)):.1f}",
                (w - x_offset + 2, pos + 5),
                cv2.FONT_HERSHEY_SIMPLEX,
                0.4,
                COLOR_TEXT,
                1,
                cv2.LINE_AA,
            )

    def _draw_help(self, img: NDArray[np.uint8]) -> None:
        """Draw help overlay."""
        lines = [
            "q-Quit  h-help",
            "c-Colormap  b-Colorbar",
            "o/O-Orientation",
            "t-Overlay  g-Grid density",
            "u-Unit  a-Averaging  [/]-Window",
            "space-Snapshot  r-Record",
        ]
        overlay = img.copy()
        cv2.rectangle(overlay, (5, 25), (250, 35 + 18 * len(lines)), (0, 0, 0), -1)
        cv2.addWeighted(overlay, 0.7, img, 0.3, 0, img)
        for i, line in enumerate(lines):
            cv2.putText(
                img, line, (10, 45 + i * 18), cv2.FONT_HERSHEY_SIMPLEX, 0.4, COLOR_TEXT, 1, cv2.LINE_AA
            )

    # --- Controls ----------------------------------------------------------------
    def _handle_key(self) -> bool:
        """Handle keyboard input. Returns False to quit."""
        key = cv2.waitKey(1) & 0xFF

        if key == 255:
            return True
        if key == ord("q"):
            return False

        config = self.pipeline.config
        if key == ord("c"):
            self._apply(config.replace(colormap=next_colormap(config.colormap)))
            print(f"Colormap: {self.pipeline.config.colormap}")
        elif key == ord("o"):
            if self._apply(config.replace(orientation=config.orientation.next())):
                print(f"Orientation: {self.pipeline.config.orientation.label}")
        elif key == ord("O"):
            if self._apply(config.replace(orientation=config.orientation.previous())):
                print(f"Orientation: {self.pipeline.config.orientation.label}")
        elif key == ord("t"):
            self._apply(config.replace(overlay=_cycle(config.overlay, list(OverlayMode))))
            print(f"Overlay: {self.pipeline.config.overlay.name}")
        elif key == ord("g"):
            density = _cycle(config.grid_density, list(GridDensity))
            self._apply(config.replace(grid_density=density))
            print(f"Grid density: {density.label}")
        elif key == ord("u"):
            self._apply(config.replace(unit=_cycle(config.unit, list(TemperatureUnit))))
            print(f"Unit: {self.pipeline.config.unit.value}")
        elif key == ord("a"):
            self._apply(config.replace(averaging=not config.averaging))
            print("Averaging:", "ON" if self.pipeline.config.averaging else "OFF")
        elif key in (ord("["), ord("]")):
            step = 1 if key == ord("]") else -1
            window = min(MAX_AVERAGING_WINDOW, max(1, config.averaging_window + step))
            self._apply(config.replace(averaging_window=window))
            print(f"Averaging window: {window}")
        elif key == ord(" "):
            self._screenshot()
        elif key == ord("r"):
            self._toggle_recording()
        elif key == ord("b"):
            self.show_colorbar = not self.show_colorbar
        elif key == ord("h"):
            self.show_help = not self.show_help

        return True

    def _apply(self, config: PipelineConfig) -> bool:
        if not self.pipeline.update_config(config):
            print("Stop recording first")
            return False
        return True

    def _screenshot(self) -> None:
        """Save the rendered frame as PNG."""
        ts = time.strftime("%Y%m%d_%H%M%S")
        filename = f"irpro_{ts}.png"
        if self.pipeline.save_image(filename):
            print(f"Saved: {filename}")
        else:
            print("No frame to save")

    def _toggle_recording(self) -> None:
        if self.pipeline.is_recording:
            self.pipeline.stop_recording(lambda: print("Recording saved"))
            print("Recording: stopping")
            return
        ts = time.strftime("%Y%m%d_%H%M%S")
        filename = f"irpro_{ts}.mp4"
        if self.pipeline.start_recording(filename):
            print(f"Recording: {filename}")
        else:
            print("Recording failed to start")


def main() -> None:
    """Entry point."""
    import argparse

    def _enum_arg(enum_cls):
        def parse(val: str):
            try:
                return enum_cls[val.strip().upper().replace("-", "_")]
            except KeyError:
                raise argparse.ArgumentTypeError(f"invalid choice: {val}") from None

        return parse

    parser = argparse.ArgumentParser(
        description="IrPro USB thermal camera viewer",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--device", type=int, default=0, help="OpenCV capture index (default: 0)"
    )
    parser.add_argument(
        "--colormap",
        type=str,
        choices=COLORMAP_NAMES,
        default="Viridis",
        help="Initial colormap (default: Viridis)",
    )
    parser.add_argument(
        "--orientation",
        type=_enum_arg(Orientation),
        default=Orientation.UP,
        help="Initial orientation, e.g. up, left-mirrored (default: up)",
    )
    parser.add_argument(
        "--scale", type=int, default=4, help="Upscale factor (default: 4)"
    )
    parser.add_argument(
        "--grid",
        type=int,
        choices=[int(d) for d in GridDensity],
        default=int(GridDensity.MEDIUM),
        help="Grid density (default: 8)",
    )
    parser.add_argument(
        "--overlay",
        type=_enum_arg(OverlayMode),
        default=OverlayMode.POINT,
        help="Overlay mode: off, point, grid (default: point)",
    )
    parser.add_argument(
        "--unit",
        type=str,
        choices=[u.value for u in TemperatureUnit],
        default="C",
        help="Temperature unit (default: C)",
    )
    parser.add_argument(
        "--average",
        type=int,
        default=0,
        metavar="N",
        help="Average the last N frames (default: off)",
    )
    parser.add_argument(
        "--no-usb-check",
        action="store_true",
        help="Skip the USB presence check before opening the stream",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )
    args = parser.parse_args()

    logging.basicConfig(level=getattr(logging, args.log_level))

    try:
        config = PipelineConfig(
            colormap=args.colormap,
            orientation=args.orientation,
            overlay=args.overlay,
            grid_density=GridDensity(args.grid),
            unit=TemperatureUnit(args.unit),
            averaging=args.average > 1,
            averaging_window=max(1, args.average),
            scale=args.scale,
        )
    except ValueError as e:
        parser.error(str(e))

    try:
        IrProViewer(
            config=config, device_index=args.device, check_usb=not args.no_usb_check
        ).run()
    except DeviceError as e:
        print(f"Error: {e}")
    except KeyboardInterrupt:
        print("\nInterrupted")


if __name__ == "__main__":
    main()
