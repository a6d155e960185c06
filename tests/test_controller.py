"""Tests for the recognition controller."""

import asyncio
import math

import numpy as np
import pytest

from gesture_link.bend import FINGER_JOINTS
from gesture_link.config import SessionConfig
from gesture_link.controller import ControllerState, Mode, RecognitionController
from gesture_link.knn import ExampleStore
from gesture_link.transport import MemoryLink, TransportGateway


def make_hand(spread=20.0, reach=(60, 85, 110, 135), seed=0):
    rng = np.random.RandomState(seed)
    lm = np.zeros((21, 3))
    lm[0] = [320, 400, 0]
    for f, base in enumerate([1, 5, 9, 13, 17]):
        angle = math.radians(-2 * spread + f * spread)
        direction = np.array([math.sin(angle), -math.cos(angle)])
        for j in range(4):
            lm[base + j, :2] = lm[0, :2] + direction * reach[j]
    lm += rng.randn(21, 3) * 2
    return lm


OPEN = make_hand()
FIST = make_hand(spread=8.0, reach=(50, 60, 45, 30), seed=1)


def make_fingers_at(angle_deg):
    phi = math.radians(angle_deg)
    lm = np.zeros((21, 3))
    for f, (i, j, k) in enumerate(FINGER_JOINTS.values()):
        b = np.array([100.0 + 150.0 * f, 300.0, 0.0])
        lm[j] = b
        lm[i] = b + [0.0, 100.0, 0.0]
        lm[k] = b + [100.0 * math.sin(phi), 100.0 * math.cos(phi), 0.0]
    return lm


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


def run(coro):
    return asyncio.run(coro)


def make_session(config=None, store=None):
    clock = FakeClock()
    link = MemoryLink()
    gateway = TransportGateway(link, clock=clock)
    controller = RecognitionController(store=store, gateway=gateway, config=config)
    return controller, link, clock


def train(controller, label, landmarks, frames=3):
    controller.hold_train(True, label)
    for _ in range(frames):
        controller.process_frame(landmarks)
    controller.hold_train(False)


class TestTraining:
    def test_hold_adds_one_example_per_frame(self):
        controller = RecognitionController()
        controller.hold_train(True, "fist")
        for _ in range(4):
            report = controller.process_frame(FIST)
        assert report.state == ControllerState.TRAINING
        assert report.status == "training fist"
        assert controller.store.count_by_label() == {"fist": 4}

    def test_release_returns_to_idle(self):
        controller = RecognitionController()
        train(controller, "fist", FIST)
        assert controller.state == ControllerState.IDLE

    def test_hold_without_label_text_classifies(self):
        controller = RecognitionController()
        train(controller, "fist", FIST)
        controller.hold_train(True, "   ")
        report = controller.process_frame(FIST)
        assert report.state == ControllerState.CLASSIFYING
        assert controller.store.num_examples == 3

    def test_no_hand_keeps_training_state(self):
        controller = RecognitionController()
        controller.hold_train(True, "fist")
        controller.process_frame(FIST)
        report = controller.process_frame(None)
        assert report.status == "no hand"
        assert not report.hand_present
        assert report.state == ControllerState.TRAINING
        assert controller.store.num_examples == 1

    def test_rejected_example(self):
        store = ExampleStore()
        store.add_example(np.zeros(42), "wide")
        controller = RecognitionController(store=store)
        controller.hold_train(True, "fist")
        report = controller.process_frame(FIST)
        assert report.status == "example rejected"
        assert store.count_by_label() == {"wide": 1}

    def test_add_example_from_last_frame(self):
        controller = RecognitionController()
        assert not controller.add_example("peace")
        controller.process_frame(OPEN)
        assert controller.add_example("peace", name="Peace")
        assert [lbl.to_dict() for lbl in controller.labels()] == [
            {"id": "peace", "name": "Peace", "count": 1},
        ]
        controller.process_frame(None)
        assert not controller.add_example("peace")

    def test_remove_and_reset(self):
        controller = RecognitionController()
        train(controller, "fist", FIST)
        train(controller, "open", OPEN)
        assert controller.remove_label("fist") == 3
        assert controller.remove_label("fist") == 0
        assert [lbl.id for lbl in controller.labels()] == ["open"]
        controller.reset_all()
        assert controller.labels() == []
        assert controller.process_frame(OPEN).status == "no labels"


class TestClassification:
    def test_no_labels(self):
        controller = RecognitionController()
        report = controller.process_frame(OPEN)
        assert report.state == ControllerState.IDLE
        assert report.status == "no labels"
        assert report.hand_present

    def test_classifies_trained_gesture(self):
        controller = RecognitionController()
        train(controller, "fist", FIST)
        train(controller, "open", OPEN)
        report = controller.process_frame(FIST)
        assert report.state == ControllerState.CLASSIFYING
        assert report.status == "classified fist"
        assert report.result.label == "fist"
        assert report.result.confidence == pytest.approx(1.0)
        assert report.accepted
        assert report.message == "IDfist"
        # transmission not started
        assert not report.sent

    def test_threshold_is_strict(self):
        controller = RecognitionController(config=SessionConfig(confidence_threshold=1.0))
        train(controller, "fist", FIST)
        report = controller.process_frame(FIST)
        assert report.result.confidence == 1.0
        assert report.status == "below threshold"
        assert not report.accepted
        assert controller.stats.rejected == 1

    def test_ambiguous_hand_rejected(self):
        controller = RecognitionController(config=SessionConfig(k=3))
        train(controller, "open", OPEN, frames=1)
        train(controller, "fist", FIST, frames=2)
        report = controller.process_frame((OPEN + FIST) / 2)
        assert report.result.confidence <= 0.85
        assert report.status == "below threshold"

    def test_query_failure(self):
        store = ExampleStore()
        store.add_example(np.zeros(42), "wide")
        controller = RecognitionController(store=store)
        report = controller.process_frame(OPEN)
        assert report.status == "query failed"
        assert report.result is None
        assert controller.stats.query_failures == 1

    def test_invalid_landmarks(self):
        controller = RecognitionController()
        report = controller.process_frame(np.zeros((5, 3)))
        assert report.status == "invalid landmarks"
        assert not report.hand_present

    @pytest.mark.parametrize("landmarks", [{"x": 1}, "fist", [[None] * 3] * 21])
    def test_malformed_frame_is_skipped(self, landmarks):
        controller = RecognitionController()
        train(controller, "fist", FIST)
        report = controller.process_frame(landmarks)
        assert report.status == "invalid landmarks"
        # next frame is unaffected
        assert controller.process_frame(FIST).status == "classified fist"

    def test_malformed_frame_in_finger_sync(self):
        controller = RecognitionController(config=SessionConfig(mode="finger_sync"))
        assert controller.process_frame({"x": 1}).status == "invalid landmarks"

    def test_flip_mirrors_features(self):
        controller = RecognitionController()
        assert controller.flip
        train(controller, "open", OPEN)
        train(controller, "fist", FIST)
        controller.set_flip(False)
        mirrored = OPEN.copy()
        mirrored[:, 0] = 640.0 - mirrored[:, 0]
        report = controller.process_frame(mirrored)
        assert report.result.label == "open"
        assert report.result.distances[0] < 1e-9

    def test_threshold_setting(self):
        controller = RecognitionController()
        controller.set_threshold(0.7)
        assert controller.threshold == 0.7
        with pytest.raises(ValueError):
            controller.set_threshold(1.5)
        assert controller.threshold == 0.7


class TestTransmission:
    def test_end_to_end_single_send_per_window(self):
        async def scenario():
            controller, link, clock = make_session()
            assert await controller.connect()
            train(controller, "fist", FIST, frames=5)
            controller.start_transmission()
            reports = []
            for i in range(10):
                clock.now = i * 0.01
                reports.append(controller.process_frame(FIST))
                await asyncio.sleep(0)
            await controller.drain()
            return reports, link

        reports, link = run(scenario())
        assert link.messages == ["IDfist"]
        assert [r.sent for r in reports].count(True) == 1
        assert all(r.accepted for r in reports)

    def test_gesture_protocol(self):
        async def scenario():
            controller, link, clock = make_session()
            await controller.connect()
            train(controller, "fist", FIST)
            controller.set_protocol_variant("gesture")
            controller.start_transmission()
            controller.process_frame(FIST)
            await controller.drain()
            return link

        assert run(scenario()).messages == ["Gfist"]

    def test_raw_protocol(self):
        async def scenario():
            controller, link, clock = make_session(SessionConfig(gesture_protocol="raw"))
            await controller.connect()
            train(controller, "fist", FIST)
            controller.start_transmission()
            controller.process_frame(FIST)
            await controller.drain()
            return link

        assert run(scenario()).messages == ["fist"]

    def test_finger_sync_digital(self):
        async def scenario():
            config = SessionConfig(mode="finger_sync", finger_protocol="digital")
            controller, link, clock = make_session(config)
            await controller.connect()
            controller.start_transmission()
            report = controller.process_frame(make_fingers_at(162.8))
            await controller.drain()
            return report, link

        report, link = run(scenario())
        assert report.status == "fingers"
        assert report.bends.as_list() == pytest.approx([92.0] * 5)
        assert link.messages == ["T1I1M1R1P1"]

    def test_finger_sync_analog_and_count(self):
        controller = RecognitionController(config=SessionConfig(mode="finger_sync"))
        assert controller.process_frame(make_fingers_at(162.8)).message == "T92I92M92R92P92"
        controller.set_protocol_variant("count")
        assert controller.process_frame(make_fingers_at(100.0)).message == "0"
        assert controller.finger_protocol.value == "count"
        assert controller.gesture_protocol.value == "id"

    def test_stop_transmission_sends_stop(self):
        async def scenario():
            controller, link, clock = make_session()
            await controller.connect()
            train(controller, "fist", FIST)
            controller.start_transmission()
            controller.process_frame(FIST)
            clock.now = 0.01
            controller.stop_transmission()
            await controller.drain()
            controller.process_frame(FIST)
            await controller.drain()
            return link

        assert run(scenario()).messages == ["IDfist", "stop"]

    def test_stop_without_event_loop(self):
        controller, link, clock = make_session()
        controller.stop_transmission()
        assert not controller.tracking
        assert link.frames == []

    def test_mode_switch_suspends_transmission(self):
        async def scenario():
            controller, link, clock = make_session()
            await controller.connect()
            train(controller, "fist", FIST)
            controller.start_transmission()
            controller.set_mode(Mode.FINGER_SYNC)
            await controller.drain()
            report = controller.process_frame(make_fingers_at(170.0))
            await controller.drain()
            return controller, report, link

        controller, report, link = run(scenario())
        assert controller.mode == Mode.FINGER_SYNC
        assert not controller.tracking
        assert not report.sent
        assert link.messages == ["stop"]
        # labels survive the switch
        assert controller.store.num_labels == 1

    def test_mode_switch_returns_to_idle(self):
        controller = RecognitionController()
        controller.hold_train(True, "fist")
        controller.process_frame(FIST)
        controller.set_mode("finger_sync")
        assert controller.state == ControllerState.IDLE
        assert not controller.add_example("fist")

    def test_link_loss_stops_sends(self):
        async def scenario():
            controller, link, clock = make_session()
            await controller.connect()
            train(controller, "fist", FIST)
            controller.start_transmission()
            link.lose()
            report = controller.process_frame(FIST)
            return controller, report

        controller, report = run(scenario())
        assert report.accepted
        assert not report.sent
        assert controller.gateway.stats.dropped_disconnected == 1


class TestReporting:
    def test_status(self):
        controller = RecognitionController()
        train(controller, "fist", FIST)
        status = controller.status()
        assert status["mode"] == "gesture_knn"
        assert status["state"] == "idle"
        assert status["labels"] == [{"id": "fist", "name": "fist", "count": 3}]
        assert status["link"] is None
        assert status["stats"]["examples_added"] == 3

    def test_frame_report_dict(self):
        controller = RecognitionController()
        train(controller, "fist", FIST)
        data = controller.process_frame(FIST).to_dict()
        assert data["state"] == "classifying"
        assert data["result"]["label"] == "fist"
        assert "bends" not in data
