"""Unit tests for irpro_pipeline.py."""

from __future__ import annotations

import sys
import threading

import cv2
import numpy as np
import pytest

from irpro_camera import encode_frame
from irpro_orientation import Orientation
from irpro_pipeline import PipelineConfig
from irpro_pipeline import ThermalPipeline
from irpro_recorder import EncodingProfile
from irpro_recorder import VideoRecorder
from irpro_render import OverlayMode
from irpro_temperature import GridDensity

STRIDE = 512


class _FakeWriter:
    def __init__(self, size):
        self.size = size
        self.frames = []

    def isOpened(self):
        return True

    def write(self, frame):
        self.frames.append(frame.shape)

    def release(self):
        pass


class _Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        self.now += 0.2
        return self.now


@pytest.fixture
def writers():
    return []


@pytest.fixture
def pipeline(writers):
    def factory(path, fourcc, fps, size):
        writer = _FakeWriter(size)
        writers.append(writer)
        return writer

    recorder = VideoRecorder(profile=EncodingProfile(), writer_factory=factory)
    p = ThermalPipeline(
        config=PipelineConfig(scale=1, overlay=OverlayMode.OFF),
        recorder=recorder,
        clock=_Clock(),
    )
    yield p
    p.close()


class TestPipelineConfig:
    """Tests for PipelineConfig."""

    def test_defaults(self):
        config = PipelineConfig()
        assert config.colormap == "Viridis"
        assert config.orientation == Orientation.UP
        assert config.grid_density == GridDensity.MEDIUM
        assert config.image_size() == (1024, 768)

    def test_replace(self):
        config = PipelineConfig().replace(orientation=Orientation.LEFT, scale=2)
        assert config.image_size() == (384, 512)

    def test_unknown_colormap(self):
        with pytest.raises(KeyError):
            PipelineConfig(colormap="Sepia")

    def test_invalid_scale(self):
        with pytest.raises(ValueError):
            PipelineConfig(scale=0)


class TestSubmit:
    """Tests for frame processing."""

    def test_processes_frame(self, pipeline):
        assert pipeline.submit(encode_frame(25.0), STRIDE)
        result = pipeline.latest
        assert result is not None
        assert result.frame_index == 0
        assert result.field.shape == (192, 256)
        assert result.stats.center == pytest.approx(25.0, abs=1 / 64)
        assert result.image.shape == (192, 256, 3)
        assert len(result.history) == 1
        assert pipeline.stats.frames_processed == 1

    def test_frame_indexes_increase(self, pipeline):
        for _ in range(3):
            pipeline.submit(encode_frame(25.0), STRIDE)
        assert pipeline.latest.frame_index == 2

    def test_busy_frame_dropped(self, pipeline):
        pipeline._busy.acquire()
        try:
            assert not pipeline.submit(encode_frame(25.0), STRIDE)
        finally:
            pipeline._busy.release()
        assert pipeline.stats.frames_busy == 1
        assert pipeline.latest is None
        assert pipeline.submit(encode_frame(25.0), STRIDE)

    def test_concurrent_submit_single_flight(self, pipeline):
        """Frames arriving during processing are dropped, not queued."""
        entered = threading.Event()
        release = threading.Event()
        real_push = pipeline._averager.push

        def slow_push(field):
            entered.set()
            release.wait(2.0)
            return real_push(field)

        pipeline._averager.push = slow_push
        worker = threading.Thread(
            target=pipeline.submit, args=(encode_frame(25.0), STRIDE)
        )
        worker.start()
        assert entered.wait(2.0)
        assert not pipeline.submit(encode_frame(30.0), STRIDE)
        release.set()
        worker.join(2.0)
        assert pipeline.stats.frames_processed == 1
        assert pipeline.stats.frames_busy == 1

    def test_invalid_frame_dropped(self, pipeline):
        assert not pipeline.submit(bytes(100), STRIDE)
        assert pipeline.stats.frames_invalid == 1
        assert pipeline.latest is None
        assert len(pipeline.history) == 0

    def test_unusable_buffer_dropped(self, pipeline):
        wide = np.frombuffer(encode_frame(25.0) * 2, dtype=np.uint8).reshape(384, 1024)
        assert not pipeline.submit(wide[:, ::2], STRIDE)
        assert not pipeline.submit(object(), STRIDE)
        assert pipeline.stats.frames_invalid == 2
        assert pipeline.latest is None
        assert pipeline.submit(encode_frame(25.0), STRIDE)

    def test_on_result_published(self):
        got = []
        published = threading.Event()

        def on_result(result):
            got.append(result)
            published.set()

        p = ThermalPipeline(config=PipelineConfig(scale=1), on_result=on_result)
        try:
            assert p.submit(encode_frame(25.0), STRIDE)
            assert published.wait(2.0)
            assert got[0] is p.latest
            assert not got[0].image.flags.writeable
        finally:
            p.close()

    def test_averaging_applied_on_next_frame(self, pipeline):
        pipeline.update_config(
            pipeline.config.replace(averaging=True, averaging_window=2)
        )
        pipeline.submit(encode_frame(20.0), STRIDE)
        pipeline.submit(encode_frame(30.0), STRIDE)
        np.testing.assert_allclose(pipeline.latest.field, 25.0, atol=1 / 32)

    def test_config_change_applied(self, pipeline):
        pipeline.submit(encode_frame(25.0), STRIDE)
        pipeline.update_config(pipeline.config.replace(orientation=Orientation.RIGHT))
        pipeline.submit(encode_frame(25.0), STRIDE)
        assert pipeline.latest.image.shape == (256, 192, 3)


class TestOutput:
    """Tests for recording and snapshots."""

    def test_recording_size_follows_orientation(self, pipeline, writers, tmp_path):
        pipeline.update_config(pipeline.config.replace(orientation=Orientation.LEFT))
        assert pipeline.start_recording(str(tmp_path / "out.mp4"))
        assert pipeline.is_recording
        assert writers[0].size == (192, 256)
        pipeline.submit(encode_frame(25.0), STRIDE)
        assert pipeline.stats.frames_recorded == 1

        done = threading.Event()
        pipeline.stop_recording(done.set)
        assert done.wait(2.0)
        assert not pipeline.is_recording
        assert writers[0].frames[-1] == (256, 192, 3)

    def test_orientation_locked_while_recording(self, pipeline, tmp_path):
        pipeline.start_recording(str(tmp_path / "out.mp4"))
        config = pipeline.config
        assert not pipeline.update_config(config.replace(orientation=Orientation.DOWN))
        assert not pipeline.update_config(config.replace(scale=2))
        assert pipeline.update_config(config.replace(colormap="Jet"))
        assert pipeline.config.colormap == "Jet"
        pipeline.stop_recording()
        assert pipeline.recorder.wait(2.0)
        assert pipeline.update_config(config.replace(orientation=Orientation.DOWN))

    def test_save_image(self, pipeline, tmp_path):
        path = str(tmp_path / "snap.png")
        assert not pipeline.save_image(path)
        pipeline.submit(encode_frame(25.0), STRIDE)
        assert pipeline.save_image(path)
        assert cv2.imread(path).shape == (192, 256, 3)

    def test_closed_pipeline_drops(self, pipeline):
        pipeline.close()
        assert not pipeline.submit(encode_frame(25.0), STRIDE)


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
