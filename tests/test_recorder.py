"""Tests for landmark recording and replay."""

import json

import numpy as np
import pytest

from gesture_link.recorder import LandmarkPlayer, LandmarkRecorder


class FakeClock:
    def __init__(self, now=100.0):
        self.now = now

    def __call__(self):
        return self.now


def _hand(value=1.0):
    return np.full((21, 3), value)


class TestRecorder:
    def test_not_recording_by_default(self):
        recorder = LandmarkRecorder()
        recorder.add_frame(_hand())
        assert not recorder.is_recording
        assert recorder.frame_count == 0

    def test_record_and_save(self, tmp_path):
        clock = FakeClock()
        recorder = LandmarkRecorder(clock=clock)
        recorder.start()
        recorder.add_frame(_hand(), train="fist")
        clock.now += 0.5
        recorder.add_frame(None)
        assert recorder.stop() == 2

        path = tmp_path / "rec" / "session.json"
        recorder.save(path)
        data = json.loads(path.read_text())
        assert data["version"] == 1
        assert data["frame_count"] == 2
        assert data["frames"][0]["timestamp"] == 0.0
        assert data["frames"][0]["train"] == "fist"
        assert data["frames"][1] == {"timestamp": 0.5, "landmarks": None, "train": None}

    def test_two_dimensional_frames_padded(self, tmp_path):
        recorder = LandmarkRecorder(clock=FakeClock())
        recorder.start()
        recorder.add_frame(np.ones((21, 2)))
        recorder.stop()
        recorder.save(tmp_path / "flat.json")
        frame = next(LandmarkPlayer.load(tmp_path / "flat.json").play())
        assert frame.landmarks.shape == (21, 3)

    def test_invalid_frame(self):
        recorder = LandmarkRecorder()
        recorder.start()
        with pytest.raises(ValueError):
            recorder.add_frame(np.ones((3, 3)))


class TestPlayer:
    def _save(self, tmp_path):
        clock = FakeClock()
        recorder = LandmarkRecorder(clock=clock)
        recorder.start()
        for i, train in enumerate(["open", "open", None, "fist", "open"]):
            clock.now = 100.0 + i * 0.1
            recorder.add_frame(_hand(i), train=train)
        recorder.add_frame(None)
        recorder.stop()
        path = tmp_path / "session.json"
        recorder.save(path)
        return path

    def test_load(self, tmp_path):
        player = LandmarkPlayer.load(self._save(tmp_path))
        assert player.frame_count == 6
        assert player.duration == pytest.approx(0.4)
        assert player.labels == ["open", "fist"]

    def test_play(self, tmp_path):
        frames = list(LandmarkPlayer.load(self._save(tmp_path)).play())
        np.testing.assert_array_equal(frames[3].landmarks, _hand(3))
        assert frames[3].train == "fist"
        assert frames[5].landmarks is None

    def test_missing_timestamps(self, tmp_path):
        path = tmp_path / "bare.json"
        path.write_text(json.dumps({"frames": [{"landmarks": None}, {"landmarks": None}]}))
        player = LandmarkPlayer.load(path)
        assert [f.timestamp for f in player.play()] == [0.0, 1.0]

    def test_unsupported_version(self, tmp_path):
        path = tmp_path / "future.json"
        path.write_text(json.dumps({"version": 2, "frames": []}))
        with pytest.raises(ValueError):
            LandmarkPlayer.load(path)

    def test_empty(self):
        player = LandmarkPlayer([])
        assert player.duration == 0.0
        assert list(player.play()) == []
