"""Image orientation.

Each orientation is an optional horizontal mirror followed by a clockwise
rotation. Sizing, coordinate mapping and image transforms all come from the
same table so display, overlay and recording agree.
"""

from __future__ import annotations

from enum import IntEnum
from typing import TYPE_CHECKING

import cv2
import numpy as np


if TYPE_CHECKING:
    from numpy.typing import NDArray


class Orientation(IntEnum):
    """Display orientation of the sensor image."""

    UP = 0
    UP_MIRRORED = 1
    DOWN = 2
    DOWN_MIRRORED = 3
    LEFT = 4
    LEFT_MIRRORED = 5
    RIGHT = 6
    RIGHT_MIRRORED = 7

    @property
    def mirrored(self) -> bool:
        return _TABLE[self][0]

    @property
    def rotation(self) -> int:
        """Clockwise rotation in degrees applied after the mirror."""
        return _TABLE[self][1]

    @property
    def swaps_dimensions(self) -> bool:
        return self.rotation in (90, 270)

    @property
    def label(self) -> str:
        return self.name.replace("_", " ").capitalize()

    def next(self) -> Orientation:
        return Orientation((self + 1) % len(Orientation))

    def previous(self) -> Orientation:
        return Orientation((self - 1) % len(Orientation))

    def display_size(self, width: int, height: int) -> tuple[int, int]:
        """Size (width, height) of a width×height image after orienting."""
        if self.swaps_dimensions:
            return height, width
        return width, height

    def remap_point(self, x: float, y: float) -> tuple[float, float]:
        """Map a normalized sensor position to a normalized display position."""
        if self.mirrored:
            x = 1.0 - x
        if self.rotation == 90:
            return 1.0 - y, x
        if self.rotation == 180:
            return 1.0 - x, 1.0 - y
        if self.rotation == 270:
            return y, 1.0 - x
        return x, y

    def unmap_point(self, x: float, y: float) -> tuple[float, float]:
        """Map a normalized display position back to the sensor."""
        if self.rotation == 90:
            x, y = y, 1.0 - x
        elif self.rotation == 180:
            x, y = 1.0 - x, 1.0 - y
        elif self.rotation == 270:
            x, y = 1.0 - y, x
        if self.mirrored:
            x = 1.0 - x
        return x, y

    def remap_pixel(self, x: int, y: int, width: int, height: int) -> tuple[int, int]:
        """Map pixel (x, y) of a width×height image to its oriented position."""
        if self.mirrored:
            x = width - 1 - x
        if self.rotation == 90:
            return height - 1 - y, x
        if self.rotation == 180:
            return width - 1 - x, height - 1 - y
        if self.rotation == 270:
            return y, width - 1 - x
        return x, y

    def apply(self, image: NDArray[np.uint8]) -> NDArray[np.uint8]:
        """Orient an image (H×W or H×W×C)."""
        if self.mirrored:
            image = cv2.flip(image, 1)
        if self.rotation:
            image = cv2.rotate(image, _CV_ROTATE[self.rotation])
        return np.ascontiguousarray(image)

    def unapply(self, image: NDArray[np.uint8]) -> NDArray[np.uint8]:
        """Inverse of :meth:`apply`.

        Drawing ``unapply(glyph)`` into the sensor image makes the glyph read
        upright once the whole image is oriented; mirrored orientations flip
        the glyph run horizontally.
        """
        if self.rotation:
            image = cv2.rotate(image, _CV_ROTATE[(360 - self.rotation) % 360])
        if self.mirrored:
            image = cv2.flip(image, 1)
        return np.ascontiguousarray(image)


# (mirrored, clockwise rotation)
_TABLE: dict[int, tuple[bool, int]] = {
    Orientation.UP: (False, 0),
    Orientation.UP_MIRRORED: (True, 0),
    Orientation.DOWN: (False, 180),
    Orientation.DOWN_MIRRORED: (True, 180),
    Orientation.LEFT: (False, 270),
    Orientation.LEFT_MIRRORED: (True, 270),
    Orientation.RIGHT: (False, 90),
    Orientation.RIGHT_MIRRORED: (True, 90),
}

_CV_ROTATE = {
    90: cv2.ROTATE_90_CLOCKWISE,
    180: cv2.ROTATE_180,
    270: cv2.ROTATE_90_COUNTERCLOCKWISE,
}
