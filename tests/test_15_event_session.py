# tests/test_15_event_session.py
import math

import pytest

from eventcam.config import OutputConfigError, OutputOptions
from eventcam.frames import Flag, PreEventBuffer
from eventcam.output import OutputController
from eventcam.sinks import Sink, SinkHandle, SinkOpenError, SinkRole, SinkWriteError

FRAME_US = 100_000


class RecordingSink(Sink):
    def __init__(self, name: str, fail_writes_after: int | None = None):
        self.name = name
        self.opened = []
        self.writes = []
        self.closed = []
        self.fail_writes_after = fail_writes_after

    def open(self, hint):
        path = hint.path or f"/events/{self.name}-{len(self.opened)}.mjpeg"
        self.opened.append(hint)
        return SinkHandle(role=hint.role, path=path, opened_at_us=hint.timestamp_us)

    def write(self, handle, data, timestamp_us, flags):
        if self.fail_writes_after is not None and len(self.writes) >= self.fail_writes_after:
            raise SinkWriteError("network share went away")
        self.writes.append((handle.path, bytes(data), timestamp_us, flags))

    def close(self, handle):
        handle.closed = True
        self.closed.append(handle.path)


class FakeNotifier:
    def __init__(self):
        self.sent = []
        self.closed = False

    def send(self, data, timestamp_us, sequence_id=None):
        self.sent.append((bytes(data), timestamp_us, sequence_id))
        return True

    def close(self):
        self.closed = True


class FakeTranscoder:
    def __init__(self):
        self.submitted = []
        self.closed = False

    def submit(self, raw_path, on_complete=None):
        self.submitted.append(raw_path)
        return True

    def close(self):
        self.closed = True
        return []


def make_frame(n: int) -> bytes:
    return f"frame-{n}".encode()


def ts(n: int) -> int:
    return n * FRAME_US


def _event_controller(**overrides):
    options = dict(
        framerate=10.0,
        pre_event_seconds=2.0,
        detection_enabled=True,
        detection_record_seconds=5.0,
    )
    options.update(overrides)
    primary = RecordingSink("primary")
    secondary = RecordingSink("event")
    still = RecordingSink("still")
    notifier = FakeNotifier()
    transcoder = FakeTranscoder()
    ctrl = OutputController(
        OutputOptions(**options),
        primary_sink=primary,
        secondary_sink=secondary,
        still_sink=still,
        notifier=notifier,
        transcoder=transcoder,
    )
    return ctrl, primary, secondary, still, notifier, transcoder


def _deliver_range(ctrl, first: int, last: int, keyframes=(1,)):
    for n in range(first, last + 1):
        ctrl.deliver(make_frame(n), ts(n), n in keyframes)


def test_pre_buffer_evicts_oldest_first():
    ring = PreEventBuffer(3)
    for n in range(5):
        ring.append(make_frame(n), ts(n), n == 0)
        assert len(ring) <= 3

    assert [frame.timestamp_us for frame in ring] == [ts(2), ts(3), ts(4)]
    assert ring.evicted == 2


def test_pre_buffer_drain_respects_cutoff_and_empties():
    ring = PreEventBuffer(10)
    for n in range(6):
        ring.append(make_frame(n), ts(n), False)

    drained = ring.drain(cutoff_us=ts(4))

    assert [frame.data for frame in drained] == [make_frame(n) for n in range(4)]
    assert len(ring) == 0


def test_pre_buffer_disabled_when_capacity_zero():
    ring = PreEventBuffer(0)
    ring.append(b"x", 0, True)
    assert len(ring) == 0
    assert not ring.enabled


def test_pre_buffer_copies_payload():
    ring = PreEventBuffer(2)
    payload = bytearray(b"abc")
    ring.append(payload, 0, True)
    payload[:] = b"zzz"
    assert next(iter(ring)).data == b"abc"


def test_capacity_follows_pre_event_window():
    assert OutputOptions(framerate=10.0, pre_event_seconds=2.0).pre_event_capacity == 20
    assert OutputOptions(framerate=30.0, pre_event_seconds=0.25).pre_event_capacity == math.ceil(7.5)
    assert OutputOptions(framerate=30.0, pre_event_seconds=0.0).pre_event_capacity == 0


def test_ring_never_exceeds_capacity_during_delivery():
    ctrl, *_ = _event_controller()
    for n in range(1, 60):
        ctrl.deliver(make_frame(n), ts(n), n % 12 == 1)
        assert len(ctrl.pre_buffer) <= 20


def test_detection_backfills_pre_event_frames_and_captures_thumbnail():
    ctrl, primary, secondary, still, notifier, _ = _event_controller()

    _deliver_range(ctrl, 1, 21)
    assert [frame.timestamp_us for frame in ctrl.pre_buffer] == [ts(n) for n in range(2, 22)]

    assert ctrl.notify_event(7, ts(22)) is True
    assert len(secondary.opened) == 1
    assert secondary.opened[0].role is SinkRole.SECONDARY

    ctrl.deliver(make_frame(22), ts(22), False)

    written = [data for _, data, _, _ in secondary.writes]
    assert written[:20] == [make_frame(n) for n in range(2, 22)]
    assert written[20] == make_frame(22)
    stamps = [stamp for _, _, stamp, _ in secondary.writes]
    assert stamps == sorted(stamps)
    # Renormalized by the primary offset (first keyframe at frame 1).
    assert stamps[0] == ts(2) - ts(1)
    assert [frame.timestamp_us for frame in ctrl.pre_buffer] == [ts(22)]

    assert [data for _, data, _, _ in still.writes] == [make_frame(22)]
    assert still.opened[0].path == "/events/event-0.jpg"
    assert still.closed == ["/events/event-0.jpg"]

    _deliver_range(ctrl, 23, 25)
    assert len(still.writes) == 1
    assert len(secondary.writes) == 24
    assert len(secondary.opened) == 1


def test_trigger_after_later_frames_flushes_only_frames_before_it():
    ctrl, _, secondary, still, _, _ = _event_controller()

    _deliver_range(ctrl, 1, 25)
    assert [frame.timestamp_us for frame in ctrl.pre_buffer] == [ts(n) for n in range(6, 26)]

    ctrl.notify_event(3, ts(22))
    ctrl.deliver(make_frame(26), ts(26), False)

    written = [data for _, data, _, _ in secondary.writes]
    assert written == [make_frame(n) for n in range(6, 22)] + [make_frame(26)]
    stamps = [stamp for _, _, stamp, _ in secondary.writes]
    assert stamps == sorted(stamps)
    assert [data for _, data, _, _ in still.writes] == [make_frame(26)]
    assert [frame.timestamp_us for frame in ctrl.pre_buffer] == [ts(26)]


def test_failing_primary_still_feeds_event_recording():
    class DeadPrimary(RecordingSink):
        def open(self, hint):
            raise SinkOpenError("connection refused")

    secondary = RecordingSink("event")
    still = RecordingSink("still")
    notifier = FakeNotifier()
    transcoder = FakeTranscoder()
    ctrl = OutputController(
        OutputOptions(framerate=10.0, detection_enabled=True, detection_record_seconds=0.5),
        primary_sink=DeadPrimary("primary"),
        secondary_sink=secondary,
        still_sink=still,
        notifier=notifier,
        transcoder=transcoder,
    )

    ctrl.notify_event(1, 0)
    for n in range(30):
        with pytest.raises(SinkOpenError):
            ctrl.deliver(make_frame(n), ts(n), True)

    assert [data for _, data, _, _ in secondary.writes] == [make_frame(n) for n in range(7)]
    assert ctrl.session is None
    assert transcoder.submitted == ["/events/event-0.mjpeg"]
    assert notifier.sent == [(make_frame(0), 0, 1)]
    assert len(still.writes) == 1
    assert ctrl.frames_forwarded == 0


def test_session_deadline_is_scheduled_from_trigger():
    ctrl, *_ = _event_controller(detection_record_seconds=1.0)
    _deliver_range(ctrl, 1, 21)

    ctrl.notify_event(1, ts(22))

    session = ctrl.session
    assert session is not None
    assert session.start_us == ts(22) - ctrl.time_offset
    assert session.end_us == session.start_us + 1_000_000


def test_second_detection_extends_but_never_shortens():
    ctrl, _, secondary, _, notifier, _ = _event_controller(detection_record_seconds=1.0)
    _deliver_range(ctrl, 1, 21)
    ctrl.notify_event(1, ts(22))
    first_deadline = ctrl.session.end_us

    _deliver_range(ctrl, 22, 24)
    assert ctrl.notify_event(2, ts(25)) is False
    assert ctrl.session.end_us == first_deadline + ts(3)

    extended = ctrl.session.end_us
    assert ctrl.notify_event(3, ts(23)) is False
    assert ctrl.session.end_us == extended
    assert len(secondary.opened) == 1
    _deliver_range(ctrl, 25, 26)
    assert len(notifier.sent) == 1


def test_session_closes_once_past_deadline_and_hands_off():
    ctrl, _, secondary, _, _, transcoder = _event_controller(detection_record_seconds=1.0)
    _deliver_range(ctrl, 1, 21)
    ctrl.notify_event(1, ts(22))
    end_us = ctrl.session.end_us

    n = 22
    while ctrl.session is not None:
        ctrl.deliver(make_frame(n), ts(n), False)
        n += 1

    last_written = secondary.writes[-1][2]
    assert last_written > end_us
    assert last_written - FRAME_US <= end_us
    assert secondary.closed == ["/events/event-0.mjpeg"]
    assert transcoder.submitted == ["/events/event-0.mjpeg"]
    assert ctrl.sessions_completed == 1

    count = len(secondary.writes)
    _deliver_range(ctrl, n, n + 5)
    assert len(secondary.writes) == count
    assert transcoder.submitted == ["/events/event-0.mjpeg"]


def test_new_detection_after_close_opens_fresh_session():
    ctrl, _, secondary, still, notifier, transcoder = _event_controller(detection_record_seconds=0.5)
    _deliver_range(ctrl, 1, 10)
    ctrl.notify_event(1)
    _deliver_range(ctrl, 11, 20)
    assert ctrl.session is None

    ctrl.notify_event(2)
    _deliver_range(ctrl, 21, 22)

    assert len(secondary.opened) == 2
    assert len(still.writes) == 2
    assert [seq for _, _, seq in notifier.sent] == [1, 2]
    assert transcoder.submitted == ["/events/event-0.mjpeg"]


def test_notification_carries_first_frame_after_event():
    ctrl, _, _, _, notifier, _ = _event_controller()
    _deliver_range(ctrl, 1, 5)

    ctrl.notify_event(42)
    assert notifier.sent == []
    ctrl.deliver(make_frame(6), ts(6), False)
    ctrl.deliver(make_frame(7), ts(7), False)

    assert notifier.sent == [(make_frame(6), ts(6), 42)]


def test_notification_without_event_recording():
    notifier = FakeNotifier()
    ctrl = OutputController(OutputOptions(), primary_sink=RecordingSink("primary"), notifier=notifier)
    ctrl.deliver(make_frame(0), 0, True)

    assert ctrl.notify_event(5) is False
    assert ctrl.session is None
    ctrl.deliver(make_frame(1), ts(1), False)
    ctrl.deliver(make_frame(2), ts(2), False)

    assert notifier.sent == [(make_frame(1), ts(1), 5)]


def test_default_trigger_flushes_entire_ring():
    ctrl, _, secondary, *_ = _event_controller()
    _deliver_range(ctrl, 1, 30)

    ctrl.notify_event(1)
    ctrl.deliver(make_frame(31), ts(31), False)

    written = [data for _, data, _, _ in secondary.writes]
    assert written == [make_frame(n) for n in range(11, 32)]


def test_cutoff_flush_skips_frames_after_trigger():
    ctrl, _, secondary, *_ = _event_controller()
    _deliver_range(ctrl, 1, 21)

    ctrl.notify_event(1, ts(15))
    ctrl.deliver(make_frame(22), ts(22), False)

    written = [data for _, data, _, _ in secondary.writes]
    assert written == [make_frame(n) for n in range(2, 15)] + [make_frame(22)]
    assert len(ctrl.pre_buffer) == 1


def test_unconditional_flush_variant_forwards_whole_ring():
    ctrl, _, secondary, *_ = _event_controller(flush_mode="all")
    _deliver_range(ctrl, 1, 21)

    ctrl.notify_event(1, ts(15))
    ctrl.deliver(make_frame(22), ts(22), False)

    written = [data for _, data, _, _ in secondary.writes]
    assert written == [make_frame(n) for n in range(2, 23)]


def test_flushed_frames_keep_keyframe_flags():
    ctrl, _, secondary, *_ = _event_controller()
    _deliver_range(ctrl, 1, 8, keyframes=(1, 5))

    ctrl.notify_event(1)
    ctrl.deliver(make_frame(9), ts(9), False)

    flags = {data: flag for _, data, _, flag in secondary.writes}
    assert flags[make_frame(1)] == Flag.KEYFRAME
    assert flags[make_frame(5)] == Flag.KEYFRAME
    assert flags[make_frame(6)] == Flag.NONE


def test_session_is_not_fed_while_paused():
    ctrl, _, secondary, *_ = _event_controller()
    _deliver_range(ctrl, 1, 5)
    ctrl.notify_event(1)
    ctrl.set_enabled(False)
    _deliver_range(ctrl, 6, 9)

    assert secondary.writes == []
    assert ctrl.session.pending_flush


def test_secondary_write_failure_ends_session_and_propagates():
    ctrl, primary, secondary, _, _, transcoder = _event_controller()
    secondary.fail_writes_after = 0
    _deliver_range(ctrl, 1, 5)
    ctrl.notify_event(1)

    with pytest.raises(SinkWriteError):
        ctrl.deliver(make_frame(6), ts(6), False)

    assert ctrl.session is None
    assert secondary.closed == ["/events/event-0.mjpeg"]
    assert transcoder.submitted == ["/events/event-0.mjpeg"]
    assert len(ctrl.pre_buffer) == 1

    secondary.fail_writes_after = None
    ctrl.deliver(make_frame(7), ts(7), False)
    assert primary.writes[-1][1] == make_frame(7)


def test_thumbnail_failure_does_not_stop_recording():
    ctrl, _, secondary, still, _, _ = _event_controller()

    def broken_open(hint):
        raise SinkOpenError("read-only filesystem")

    still.open = broken_open
    _deliver_range(ctrl, 1, 3)
    ctrl.notify_event(1)
    _deliver_range(ctrl, 4, 5)

    assert ctrl.session is not None
    assert ctrl.session.first_frame_pending is False
    assert [data for _, data, _, _ in secondary.writes][-2:] == [make_frame(4), make_frame(5)]


def test_close_retains_active_recording_without_handoff():
    ctrl, primary, secondary, _, notifier, transcoder = _event_controller()
    _deliver_range(ctrl, 1, 5)
    ctrl.notify_event(1)
    ctrl.deliver(make_frame(6), ts(6), False)

    ctrl.close()

    assert secondary.closed == ["/events/event-0.mjpeg"]
    assert transcoder.submitted == []
    assert transcoder.closed and notifier.closed
    assert len(primary.closed) == 1


def test_event_recording_requires_secondary_sink():
    with pytest.raises(OutputConfigError):
        OutputController(OutputOptions(detection_enabled=True), primary_sink=RecordingSink("primary"))
