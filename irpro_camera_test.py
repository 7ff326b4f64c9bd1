"""Unit tests for irpro_camera.py."""

from __future__ import annotations

import sys
import threading

import numpy as np
import pytest

import irpro_camera
from irpro_camera import DEFAULT_SENSOR
from irpro_camera import KELVIN_OFFSET
from irpro_camera import SENSOR_H
from irpro_camera import SENSOR_W
from irpro_camera import TEMP_SCALE
from irpro_camera import THERMAL_ROW_START
from irpro_camera import DeviceError
from irpro_camera import FrameError
from irpro_camera import FrameIncompleteError
from irpro_camera import IrProCamera
from irpro_camera import IrProErrorCode
from irpro_camera import SensorConfig
from irpro_camera import celsius_to_kelvin
from irpro_camera import celsius_to_raw
from irpro_camera import decode_temperatures
from irpro_camera import encode_frame
from irpro_camera import kelvin_to_celsius
from irpro_camera import raw_to_celsius
from irpro_camera import raw_to_kelvin


class TestConstants:
    """Test that constants have expected values."""

    def test_temp_scale(self):
        assert TEMP_SCALE == 64

    def test_kelvin_offset(self):
        assert KELVIN_OFFSET == 273.2

    def test_frame_dimensions(self):
        assert SENSOR_W == 256
        assert SENSOR_H == 192
        assert THERMAL_ROW_START == 192

    def test_default_sensor(self):
        assert DEFAULT_SENSOR.vid == 0x0BDA
        assert DEFAULT_SENSOR.pid == 0x5830
        assert DEFAULT_SENSOR.frame_rows == 384
        assert DEFAULT_SENSOR.bytes_per_row == 512
        assert DEFAULT_SENSOR.frame_size == 384 * 512


class TestTemperatureConversion:
    """Tests for temperature conversion functions."""

    def test_raw_to_kelvin(self):
        assert raw_to_kelvin(64 * 300) == pytest.approx(300.0)

    def test_kelvin_to_celsius(self):
        assert kelvin_to_celsius(273.2) == pytest.approx(0.0, abs=1e-4)

    def test_celsius_to_kelvin(self):
        assert celsius_to_kelvin(25.0) == pytest.approx(298.2)

    def test_raw_to_celsius_scalar(self):
        assert raw_to_celsius(19085) == pytest.approx(19085 / 64 - 273.2, abs=1e-3)

    def test_raw_to_celsius_array(self):
        raw = np.array([17485, 19085, 25485], dtype=np.uint16)
        result = raw_to_celsius(raw)
        assert result.dtype == np.float32
        np.testing.assert_allclose(result, raw / 64.0 - 273.2, atol=1e-3)

    def test_celsius_to_raw(self):
        assert celsius_to_raw(25.0) == 19085

    def test_roundtrip(self):
        """celsius_to_raw inverts raw_to_celsius to within one LSB."""
        for temp in (-20.0, 0.0, 36.6, 100.0, 400.0):
            assert raw_to_celsius(celsius_to_raw(temp)) == pytest.approx(temp, abs=1 / 64)


class TestDecodeTemperatures:
    """Tests for decoding raw frames."""

    def test_shape_and_dtype(self):
        field = decode_temperatures(encode_frame(25.0), DEFAULT_SENSOR.bytes_per_row)
        assert field.shape == (192, 256)
        assert field.dtype == np.float32
        assert not field.flags.writeable

    def test_uniform_frame(self):
        """Every data sample 0x4A8D (19085) decodes to ~25.0 C."""
        data = np.full((384, 256), 19085, dtype=">u2")
        field = decode_temperatures(data.tobytes(), 512)
        np.testing.assert_allclose(field, 19085 / 64 - 273.2, atol=1e-3)
        assert field[0, 0] == pytest.approx(25.003, abs=1e-3)

    def test_big_endian_order(self):
        """Samples are read big-endian regardless of host byte order."""
        frame = bytearray(DEFAULT_SENSOR.frame_size)
        offset = 192 * 512 + 2 * 7
        frame[offset : offset + 2] = bytes([0x4A, 0x8D])
        field = decode_temperatures(bytes(frame), 512)
        assert field[0, 7] == pytest.approx(19085 / 64 - 273.2, abs=1e-3)
        assert field[0, 6] == pytest.approx(-273.2, abs=1e-3)

    def test_matches_formula_for_every_pixel(self):
        rng = np.random.default_rng(1)
        raw = rng.integers(0, 0xFFFF, size=(192, 256), dtype=np.uint16)
        frame = np.zeros((384, 256), dtype=">u2")
        frame[192:] = raw
        field = decode_temperatures(frame.tobytes(), 512)
        np.testing.assert_allclose(field, raw / 64.0 - 273.2, atol=1e-3)

    def test_preview_half_ignored(self):
        preview = np.full((192, 256), 0xFFFF, dtype=np.uint16)
        field = decode_temperatures(encode_frame(30.0, preview=preview), 512)
        np.testing.assert_allclose(field, 30.0, atol=1 / 64)

    def test_padded_stride(self):
        """Rows wider than the data (driver padding) are skipped correctly."""
        stride = 600
        frame = np.zeros((384, stride), dtype=np.uint8)
        packed = np.frombuffer(encode_frame(42.0), dtype=np.uint8).reshape(384, 512)
        frame[:, :512] = packed
        frame[:, 512:] = 0xFF
        field = decode_temperatures(frame.tobytes(), stride)
        np.testing.assert_allclose(field, 42.0, atol=1 / 64)

    def test_last_row_needs_no_padding(self):
        """Only width samples of the final row are required."""
        stride = 600
        buf = bytes(383 * stride + 512)
        field = decode_temperatures(buf, stride)
        assert field.shape == (192, 256)

    def test_custom_start_row(self):
        config = SensorConfig(width=4, height=2, start_row=1)
        frame = np.array(
            [[0, 0, 0, 0], [19085] * 4, [19085] * 4], dtype=">u2"
        ).tobytes()
        field = decode_temperatures(frame, 8, config=config)
        np.testing.assert_allclose(field, 25.003, atol=1e-3)
        shifted = decode_temperatures(frame, 8, start_row=0, config=config)
        assert shifted[0, 0] == pytest.approx(-273.2, abs=1e-3)

    def test_accepts_memoryview(self):
        field = decode_temperatures(memoryview(encode_frame(20.0)), 512)
        assert field[100, 100] == pytest.approx(20.0, abs=1 / 64)


class TestIncompleteFrames:
    """Frames that cannot supply the data extent raise FrameIncompleteError."""

    def test_none_buffer(self):
        with pytest.raises(FrameIncompleteError):
            decode_temperatures(None, 512)

    def test_short_buffer(self):
        with pytest.raises(FrameIncompleteError):
            decode_temperatures(bytes(383 * 512), 512)

    def test_one_byte_short(self):
        with pytest.raises(FrameIncompleteError):
            decode_temperatures(bytes(384 * 512 - 1), 512)

    def test_stride_too_small(self):
        with pytest.raises(FrameIncompleteError):
            decode_temperatures(bytes(384 * 512), 256)

    def test_negative_start_row(self):
        with pytest.raises(FrameIncompleteError):
            decode_temperatures(bytes(384 * 512), 512, start_row=-1)

    def test_strided_view(self):
        wide = np.frombuffer(encode_frame(25.0) * 2, dtype=np.uint8).reshape(384, 1024)
        with pytest.raises(FrameIncompleteError):
            decode_temperatures(wide[:, ::2], 512)

    def test_str_buffer(self):
        with pytest.raises(FrameIncompleteError):
            decode_temperatures("x" * (384 * 512), 512)

    def test_is_frame_error(self):
        assert issubclass(FrameIncompleteError, FrameError)


class TestEncodeFrame:
    """Tests for building raw frames."""

    def test_size(self):
        assert len(encode_frame(0.0)) == DEFAULT_SENSOR.frame_size

    def test_field_encoding(self):
        field = np.linspace(10, 50, 192 * 256, dtype=np.float32).reshape(192, 256)
        decoded = decode_temperatures(encode_frame(field), 512)
        np.testing.assert_allclose(decoded, field, atol=1 / 64)


class _FakeCapture:
    """Stands in for cv2.VideoCapture."""

    def __init__(self, index, opened=True, convert_ok=True, frames=None):
        self.index = index
        self.opened = opened
        self.convert_ok = convert_ok
        self.frames = list(frames or [])
        self.released = False
        self.props = {}

    def isOpened(self):
        return self.opened

    def set(self, prop, value):
        self.props[prop] = value
        if prop == irpro_camera.cv2.CAP_PROP_CONVERT_RGB:
            return self.convert_ok
        return True

    def read(self):
        if self.frames:
            return True, self.frames.pop(0)
        return False, None

    def release(self):
        self.released = True


class TestIrProCamera:
    """Tests for the capture session with a fake VideoCapture."""

    def _patch(self, monkeypatch, **kwargs):
        caps = []

        def factory(index):
            cap = _FakeCapture(index, **kwargs)
            caps.append(cap)
            return cap

        monkeypatch.setattr(irpro_camera.cv2, "VideoCapture", factory)
        return caps

    def test_delivers_frames(self, monkeypatch):
        raw = np.frombuffer(encode_frame(25.0), dtype=np.uint8).reshape(384, 512)
        self._patch(monkeypatch, frames=[raw])
        got = []
        done = threading.Event()

        def on_frame(buf, stride):
            got.append((buf, stride))
            done.set()

        cam = IrProCamera(on_frame=on_frame, check_usb=False)
        assert cam.start() is True
        assert done.wait(2.0)
        cam.stop()
        buf, stride = got[0]
        assert stride == 512
        field = decode_temperatures(buf, stride)
        assert field[0, 0] == pytest.approx(25.0, abs=1 / 64)

    def test_callback_error_keeps_reading(self, monkeypatch):
        """A raising frame callback does not stop the reader thread."""
        raw = np.frombuffer(encode_frame(25.0), dtype=np.uint8).reshape(384, 512)
        self._patch(monkeypatch, frames=[raw, raw, raw])
        calls = []
        done = threading.Event()

        def on_frame(buf, stride):
            calls.append(stride)
            if len(calls) == 1:
                raise ValueError("bad frame")
            if len(calls) == 3:
                done.set()

        cam = IrProCamera(on_frame=on_frame, check_usb=False)
        cam.start()
        assert done.wait(2.0)
        assert cam.is_running
        cam.stop()
        assert len(calls) == 3
        assert cam.stats.callback_errors == 1

    def test_start_idempotent(self, monkeypatch):
        caps = self._patch(monkeypatch)
        cam = IrProCamera(check_usb=False)
        assert cam.start() is True
        assert cam.start() is True
        assert len(caps) == 1
        assert cam.stop() is True
        assert cam.stop() is True
        assert caps[0].released
        assert not cam.is_running

    def test_raw_mode_requested(self, monkeypatch):
        caps = self._patch(monkeypatch)
        cam = IrProCamera(check_usb=False)
        cam.start()
        cam.stop()
        assert caps[0].props[irpro_camera.cv2.CAP_PROP_CONVERT_RGB] == 0

    def test_open_failure(self, monkeypatch):
        caps = self._patch(monkeypatch, opened=False)
        cam = IrProCamera(check_usb=False, device_index=3)
        with pytest.raises(DeviceError) as exc:
            cam.start()
        assert exc.value.code == IrProErrorCode.FAILED_TO_CREATE_DEVICE_INPUT
        assert caps[0].released
        assert not cam.is_running

    def test_raw_mode_failure(self, monkeypatch):
        self._patch(monkeypatch, convert_ok=False)
        with pytest.raises(DeviceError) as exc:
            IrProCamera(check_usb=False).start()
        assert exc.value.code == IrProErrorCode.FAILED_TO_ADD_OUTPUT

    def test_no_usb_device(self, monkeypatch):
        caps = self._patch(monkeypatch)
        monkeypatch.setattr(irpro_camera.usb.core, "find", lambda **kw: None)
        with pytest.raises(DeviceError) as exc:
            IrProCamera().start()
        assert exc.value.code == IrProErrorCode.NO_DEVICES_FOUND
        assert "0x0BDA" in str(exc.value)
        assert caps == []

    def test_usb_device_present(self, monkeypatch):
        self._patch(monkeypatch)
        seen = {}

        def find(**kw):
            seen.update(kw)
            return object()

        monkeypatch.setattr(irpro_camera.usb.core, "find", find)
        cam = IrProCamera()
        assert cam.start()
        cam.stop()
        assert seen == {"idVendor": 0x0BDA, "idProduct": 0x5830}


def _run_tests(test_file: str) -> None:
    """Run pytest on this file."""
    sys.exit(
        pytest.main(
            [
                test_file,
                "-v",
                "-s",
                "-W",
                "ignore::pytest.PytestAssertRewriteWarning",
                *sys.argv[1:],
            ]
        )
    )


if __name__ == "__main__":
    _run_tests(__file__)
