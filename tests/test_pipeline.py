import json
import os
import threading
import time

import numpy as np
import pytest

from leafpipe.config import Config
from leafpipe.errors import AuthError, CaptureError, DispatchError, LeafpipeError
from leafpipe.services.capture import PcmFrame, PipeSource
from leafpipe.services.nanoleaf import PanelLayout, Segment
from leafpipe.services.pipeline import LatestValue, Pipeline

SAMPLE_RATE = 32000
FRAME = 512


class FakeClient:
    host = "10.0.0.5"
    transport = "udp"

    def __init__(self, panel_ids=(1, 2, 3), auth_fail=False):
        self.panel_ids = panel_ids
        self.auth_fail = auth_fail
        self.sends = []
        self.power = None
        self.power_calls = 0
        self.streaming = False
        self.closed = False
        self.fail_sends = False

    def connect(self):
        if self.auth_fail:
            raise AuthError("rejected")
        return {"name": "fake"}

    def get_layout(self):
        return PanelLayout(
            segments=tuple(Segment(pid, i * 100, 0, 7) for i, pid in enumerate(self.panel_ids))
        )

    def enable_streaming(self):
        self.streaming = True

    def send_colors(self, colors, transition_ds=1):
        if self.fail_sends:
            raise DispatchError("busy")
        self.sends.append(dict(colors))

    def set_power(self, on):
        self.power = on
        self.power_calls += 1

    def close(self):
        self.closed = True


class FakeSource:
    def __init__(self, frames=()):
        self.frames = list(frames)
        self.opened = False
        self.closed = False

    def open(self):
        self.opened = True

    def close(self):
        self.closed = True

    def describe(self):
        return "fake"

    def next_frame(self, timeout=None):
        if self.closed or not self.frames:
            raise CaptureError("source gone")
        return self.frames.pop(0)


def _config(**kwargs):
    base = dict(
        sample_rate=SAMPLE_RATE,
        window_size=2048,
        overlap=0.5,
        update_interval_ms=100,
        loudness_reference=0.6,
    )
    base.update(kwargs)
    return Config(**base)


def _frames(signal, start_ts):
    """Split a mono signal into stereo PcmFrames of FRAME samples."""
    frames = []
    for offset in range(0, len(signal), FRAME):
        chunk = signal[offset:offset + FRAME].astype(np.float32)
        frames.append(PcmFrame(
            samples=np.column_stack((chunk, chunk)),
            channels=2,
            sample_rate=SAMPLE_RATE,
            timestamp=start_ts + offset / SAMPLE_RATE,
        ))
    return frames


def _tone(seconds, amplitude):
    n = int(seconds * SAMPLE_RATE)
    t = np.arange(n) / SAMPLE_RATE
    return amplitude * np.sin(2 * np.pi * 1000 * t)


def _frame_end(frame):
    return frame.timestamp + len(frame) / SAMPLE_RATE


def _levels(sends, segment_id):
    """Max channel (HSV value) of one segment across every payload it was in."""
    return [max(payload[segment_id]) for payload in sends if segment_id in payload]


@pytest.mark.parametrize("spatial", [True, False])
def test_sine_sweep_gives_non_decreasing_loudness_and_brightness(spatial):
    n = 2 * SAMPLE_RATE
    amplitude = np.linspace(0.05, 0.8, n)
    signal = amplitude * np.sin(2 * np.pi * 1000 * np.arange(n) / SAMPLE_RATE)

    client = FakeClient()
    pipeline = Pipeline(_config(spatial=spatial), FakeSource(), client)
    pipeline.start(dispatch_thread=False)

    loudness = []
    onsets = 0
    for frame in _frames(signal, start_ts=100.0):
        for features in pipeline.process_frame(frame):
            loudness.append(features.loudness)
            onsets += features.onset
        pipeline.dispatch_once(now=_frame_end(frame))

    assert onsets == 0
    assert len(loudness) > 50
    assert all(b >= a for a, b in zip(loudness, loudness[1:]))
    assert loudness[-1] > loudness[0]

    # In spatial mode only the panel showing the tone's band tracks loudness;
    # the outer panels follow leakage in their own bands.
    segments = (2,) if spatial else (1, 2, 3)
    for sid in segments:
        brightness = _levels(client.sends, sid)
        assert len(brightness) >= 5
        assert all(b >= a for a, b in zip(brightness, brightness[1:]))
        assert brightness[-1] > brightness[0]


@pytest.mark.parametrize("spatial", [True, False])
def test_silence_after_loud_tick_sends_exactly_one_dim(spatial):
    config = _config(spatial=spatial)
    client = FakeClient()
    pipeline = Pipeline(config, FakeSource(), client)
    pipeline.start(dispatch_thread=False)

    loud = _frames(_tone(0.5, 0.5), start_ts=0.0)
    for frame in loud:
        pipeline.process_frame(frame)
    loud_end = _frame_end(loud[-1])
    assert pipeline.dispatch_once(now=loud_end) == 3
    loud_payload = client.sends[-1]

    sends_before = len(client.sends)
    for frame in _frames(np.zeros(SAMPLE_RATE), start_ts=loud_end):
        pipeline.process_frame(frame)
        pipeline.dispatch_once(now=_frame_end(frame))

    dims = client.sends[sends_before:]
    assert len(dims) == 1
    floor = round(config.brightness_floor * 255)
    assert set(dims[0]) == {1, 2, 3}
    assert {max(rgb) for rgb in dims[0].values()} == {floor}
    assert all(max(rgb) > floor for rgb in loud_payload.values())


def test_repeated_features_send_nothing_after_first():
    client = FakeClient()
    pipeline = Pipeline(_config(), FakeSource(), client)
    pipeline.start(dispatch_thread=False)
    for frame in _frames(_tone(0.1, 0.3), start_ts=0.0)[:4]:
        pipeline.process_frame(frame)

    assert pipeline.dispatch_once(now=1.0) == 3
    for i in range(10):
        assert pipeline.dispatch_once(now=2.0 + i) == 0
    assert len(client.sends) == 1


def test_nothing_dispatched_before_first_window():
    client = FakeClient()
    pipeline = Pipeline(_config(), FakeSource(), client)
    pipeline.start(dispatch_thread=False)
    pipeline.process_frame(_frames(_tone(0.05, 0.5), start_ts=0.0)[0])
    assert pipeline.dispatch_once(now=1.0) == 0
    assert client.sends == []


def test_dispatch_failure_does_not_stop_processing():
    client = FakeClient()
    client.fail_sends = True
    pipeline = Pipeline(_config(), FakeSource(), client)
    pipeline.start(dispatch_thread=False)
    for frame in _frames(_tone(0.2, 0.5), start_ts=0.0):
        pipeline.process_frame(frame)
    assert pipeline.dispatch_once(now=1.0) == 0
    assert pipeline.dispatcher.committed() == {}

    client.fail_sends = False
    assert pipeline.dispatch_once(now=2.0) == 3


def test_start_sequence():
    client = FakeClient()
    source = FakeSource()
    pipeline = Pipeline(_config(band_count=4), source, client)
    pipeline.start(dispatch_thread=False)
    assert client.streaming
    assert source.opened
    assert pipeline.analyzer.band_count == 4
    assert pipeline.mapper.segment_ids == (1, 2, 3)


def test_auth_failure_aborts_before_capture():
    client = FakeClient(auth_fail=True)
    source = FakeSource()
    pipeline = Pipeline(_config(), source, client)
    with pytest.raises(AuthError):
        pipeline.start(dispatch_thread=False)
    assert not source.opened
    pipeline.stop()
    assert client.power_calls == 0
    assert client.closed


def test_layout_without_panels_is_fatal():
    pipeline = Pipeline(_config(), FakeSource(), FakeClient(panel_ids=()))
    with pytest.raises(LeafpipeError):
        pipeline.start(dispatch_thread=False)


def test_capture_failure_propagates_after_safe_shutdown():
    client = FakeClient()
    source = FakeSource(_frames(_tone(0.2, 0.5), start_ts=0.0))
    pipeline = Pipeline(_config(), source, client)
    pipeline.start(dispatch_thread=False)

    with pytest.raises(CaptureError):
        pipeline.run()

    assert pipeline.frames == 13
    assert source.closed
    assert client.sends[-1] == {1: (0, 0, 0), 2: (0, 0, 0), 3: (0, 0, 0)}
    assert client.power is False
    assert client.closed


def test_run_returns_cleanly_after_stop():
    client = FakeClient()
    pipeline = Pipeline(_config(), FakeSource(), client)
    pipeline.start(dispatch_thread=False)
    pipeline.stop()
    pipeline.run()
    pipeline.stop()
    assert client.power_calls == 1


def test_shutdown_state_last_leaves_lights():
    client = FakeClient()
    pipeline = Pipeline(_config(shutdown_state="last"), FakeSource(), client)
    pipeline.start(dispatch_thread=False)
    pipeline.stop()
    assert client.sends == []
    assert client.power is None
    assert client.closed


def test_dispatch_thread_sends_latest_colors():
    client = FakeClient()
    pipeline = Pipeline(_config(update_interval_ms=10), FakeSource(), client)
    pipeline.start()
    try:
        for frame in _frames(_tone(0.1, 0.5), start_ts=0.0):
            pipeline.process_frame(frame)
        deadline = time.monotonic() + 2.0
        while not client.sends and time.monotonic() < deadline:
            time.sleep(0.01)
    finally:
        pipeline.stop()
    assert client.sends
    assert set(client.sends[0]) == {1, 2, 3}


def test_status_is_json_serializable():
    client = FakeClient()
    pipeline = Pipeline(_config(), FakeSource(), client)
    pipeline.start(dispatch_thread=False)
    for frame in _frames(_tone(0.2, 0.5), start_ts=0.0):
        pipeline.process_frame(frame)
    pipeline.dispatch_once(now=1.0)

    status = json.loads(json.dumps(pipeline.get_status()))
    assert status["running"] is True
    assert status["device"]["segments"] == [1, 2, 3]
    assert status["frames"] == 13
    assert status["steps"] > 0
    assert 0.0 <= status["features"]["loudness"] <= 1.0
    assert status["dispatch"]["sends"] == 1


def test_latest_value_overwrites():
    box = LatestValue()
    assert box.get() is None
    assert box.version == 0
    box.put("a")
    box.put("b")
    assert box.get() == "b"
    assert box.get() == "b"
    assert box.version == 2


def test_stop_during_startup_abandons_start(tmp_path):
    path = str(tmp_path / "fifo")
    os.mkfifo(path)
    client = FakeClient()
    source = PipeSource(path, sample_rate=SAMPLE_RATE)
    pipeline = Pipeline(_config(), source, client)
    errors = []

    def starter():
        try:
            pipeline.start()
        except Exception as exc:
            errors.append(exc)

    thread = threading.Thread(target=starter)
    thread.start()
    deadline = time.monotonic() + 2.0
    while not client.streaming and time.monotonic() < deadline:
        time.sleep(0.01)
    time.sleep(0.05)  # now parked waiting for a PCM writer
    pipeline.stop()
    thread.join(timeout=2.0)

    assert not thread.is_alive()
    assert errors == []
    assert pipeline._dispatch_thread is None
    assert pipeline.get_status()["running"] is False
    assert client.sends[-1] == {1: (0, 0, 0), 2: (0, 0, 0), 3: (0, 0, 0)}
    assert client.power is False
    pipeline.run()


def test_start_after_stop_does_nothing():
    client = FakeClient()
    source = FakeSource()
    pipeline = Pipeline(_config(), source, client)
    pipeline.stop()
    pipeline.start()
    assert not client.streaming
    assert not source.opened
    assert pipeline._dispatch_thread is None
    assert client.power_calls == 0
