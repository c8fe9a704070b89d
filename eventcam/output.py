#!/usr/bin/env python3
"""Streaming output controller.

Sits between the encoder and the sinks. Each delivered buffer passes
through a keyframe-gated state machine before it reaches the primary
destination, is retained in the pre-event ring, and feeds the event
recording session while one is active.
"""

from __future__ import annotations

import enum
import logging
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from eventcam.config import OutputConfigError, OutputOptions, get_cfg
from eventcam.frames import Buffer, Flag, PreEventBuffer
from eventcam.notifications import WebhookNotifier, build_notifier
from eventcam.sidecars import MetadataWriter, TimestampWriter, build_metadata_writer
from eventcam.sinks import (
    DestinationHint,
    EventPathNamer,
    FileSink,
    Sink,
    SinkError,
    SinkHandle,
    SinkRole,
    SinkWriteError,
    create_primary_sink,
    still_path_for,
)
from eventcam.transcode import TranscodeHandoff, build_handoff

_LOG = logging.getLogger("output_controller")


class PrimaryState(enum.Enum):
    DISABLED = 0
    WAITING_KEYFRAME = 1
    RUNNING = 2


class OutputContractError(RuntimeError):
    """The upstream pipeline broke the delivery contract."""


class TimestampOrderError(OutputContractError):
    pass


class MetadataStarvationError(OutputContractError):
    pass


@dataclass
class EventSession:
    """State of one detection-triggered recording.

    ``start_us`` and ``end_us`` live on the output timeline; ``cutoff_us``
    is the raw trigger timestamp bounding the pre-event flush, or None to
    use the raw timestamp of the first buffer fed to the session.
    """

    sequence_id: int
    start_us: int
    end_us: int
    cutoff_us: int | None
    handle: SinkHandle
    first_frame_pending: bool = True
    pending_flush: bool = True
    frames_written: int = 0
    frames_flushed: int = 0

    @property
    def artifact_path(self) -> str | None:
        return self.handle.path

    def extend(self, deadline_us: int) -> bool:
        if deadline_us > self.end_us:
            self.end_us = deadline_us
            return True
        return False


class OutputController:
    def __init__(
        self,
        options: OutputOptions,
        *,
        primary_sink: Sink | None = None,
        secondary_sink: Sink | None = None,
        still_sink: Sink | None = None,
        notifier: WebhookNotifier | None = None,
        transcoder: TranscodeHandoff | None = None,
        metadata_writer: MetadataWriter | None = None,
        timestamp_writer: TimestampWriter | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        if options.detection_enabled and secondary_sink is None:
            raise OutputConfigError("event recording enabled without a secondary sink")
        self.options = options
        self.primary_sink = primary_sink if primary_sink is not None else create_primary_sink(
            options.output,
            circular_bytes=options.circular_bytes,
            wrap=options.wrap,
            flush=options.flush,
        )
        self.secondary_sink = secondary_sink
        if still_sink is None and secondary_sink is not None:
            still_sink = FileSink()
        self.still_sink = still_sink
        self.notifier = notifier
        self.transcoder = transcoder
        self._clock = clock

        if metadata_writer is None:
            metadata_writer = build_metadata_writer(options.metadata_path, options.metadata_format)
        self._metadata = metadata_writer
        self._metadata_queue: deque[Mapping[str, Any]] = deque()
        if timestamp_writer is None and options.save_pts:
            timestamp_writer = TimestampWriter(options.save_pts, flush=options.flush)
        self._timestamps = timestamp_writer

        self._enabled = not options.pause
        self.state = PrimaryState.WAITING_KEYFRAME
        self.time_offset = 0
        self.last_timestamp = 0
        self._last_raw: int | None = None
        self._primary_handle: SinkHandle | None = None
        self._segment_start_ms = 0

        self.pre_buffer = PreEventBuffer(options.pre_event_capacity)
        self.session: EventSession | None = None
        self._pending_notification: int | None = None
        self._verbose = options.dev_mode
        self._closed = False

        self.frames_forwarded = 0
        self.frames_dropped = 0
        self.segments_opened = 0
        self.sessions_completed = 0

    # --- upstream controls ---
    @property
    def enabled(self) -> bool:
        return self._enabled

    def set_enabled(self, enabled: bool) -> None:
        self._enabled = bool(enabled)

    def signal(self) -> None:
        """Toggle pause/resume."""
        self._enabled = not self._enabled
        _LOG.info("output %s", "resumed" if self._enabled else "paused")

    def attach_metadata(self, record: Mapping[str, Any]) -> None:
        if self._metadata is None:
            return
        self._metadata_queue.append(record)

    # --- frame path ---
    def deliver(self, data: bytes, timestamp_us: int, keyframe: bool) -> bool:
        """Process one encoded buffer; returns True when it reached the primary sink."""
        if self._closed:
            raise RuntimeError("deliver() on a closed OutputController")
        timestamp_us = int(timestamp_us)
        if self._last_raw is not None and timestamp_us <= self._last_raw:
            raise TimestampOrderError(
                f"timestamp {timestamp_us} does not follow {self._last_raw}"
            )
        self._last_raw = timestamp_us
        try:
            flags = self._advance_state(keyframe)
            if self.state is not PrimaryState.RUNNING:
                self.frames_dropped += 1
                return False

            # Keep the output timeline continuous across a pause.
            if flags & Flag.RESTART:
                self.time_offset = timestamp_us - self.last_timestamp
            self.last_timestamp = timestamp_us - self.time_offset

            record = self._next_metadata()
            try:
                self._write_primary(data, self.last_timestamp, flags)
            except SinkError:
                # Event work still runs when the primary destination fails.
                self._dispatch_event_work(data, timestamp_us, keyframe)
                raise
            self.frames_forwarded += 1
            if self._timestamps is not None:
                self._timestamps.write(self.last_timestamp)
            if record is not None:
                self._metadata.write(record)
            if self._verbose:
                _LOG.debug(
                    "forwarded %d bytes raw=%d out=%d flags=%s",
                    len(data), timestamp_us, self.last_timestamp, flags,
                )

            self._dispatch_event_work(data, timestamp_us, keyframe)
            return True
        finally:
            self.pre_buffer.append(data, timestamp_us, keyframe)

    def _dispatch_event_work(self, data: bytes, timestamp_us: int, keyframe: bool) -> None:
        if self._pending_notification is not None:
            self._notify(data, timestamp_us)
        if self.session is not None:
            self._feed_session(data, timestamp_us, keyframe)

    def deliver_buffer(self, buffer: Buffer) -> bool:
        return self.deliver(buffer.data, buffer.timestamp_us, buffer.keyframe)

    def _advance_state(self, keyframe: bool) -> Flag:
        flags = Flag.KEYFRAME if keyframe else Flag.NONE
        if not self._enabled:
            self.state = PrimaryState.DISABLED
        elif self.state is PrimaryState.DISABLED:
            self.state = PrimaryState.WAITING_KEYFRAME
        if self.state is PrimaryState.WAITING_KEYFRAME and keyframe:
            self.state = PrimaryState.RUNNING
            flags |= Flag.RESTART
        return flags

    def _next_metadata(self) -> Mapping[str, Any] | None:
        if self._metadata is None:
            return None
        if not self._metadata_queue:
            raise MetadataStarvationError("no metadata queued for forwarded frame")
        return self._metadata_queue.popleft()

    def _write_primary(self, data: bytes, timestamp_us: int, flags: Flag) -> None:
        # Segment rotation waits for a keyframe; split rotation happens on
        # resume, which is always a keyframe.
        timestamp_ms = timestamp_us // 1000
        handle = self._primary_handle
        rotate = (
            handle is None
            or not handle.is_open
            or (
                self.options.segment_ms
                and flags & Flag.KEYFRAME
                and timestamp_ms - self._segment_start_ms > self.options.segment_ms
            )
            or (self.options.split and flags & Flag.RESTART)
        )
        if rotate:
            if handle is not None:
                self.primary_sink.close(handle)
                self._primary_handle = None
                _LOG.info("rotating primary output at %d ms", timestamp_ms)
            handle = self.primary_sink.open(
                DestinationHint(SinkRole.PRIMARY, timestamp_us, wall_time=self._clock())
            )
            self._primary_handle = handle
            self._segment_start_ms = timestamp_ms
            self.segments_opened += 1

        try:
            self.primary_sink.write(handle, data, timestamp_us, flags)
        except SinkWriteError:
            _LOG.error("primary output write failed; destination will be reopened")
            self.primary_sink.close(handle)
            self._primary_handle = None
            raise

    def _notify(self, data: bytes, timestamp_us: int) -> None:
        sequence_id = self._pending_notification
        self._pending_notification = None
        if self.notifier is None:
            return
        _LOG.info("sending detection notification for sequence %s", sequence_id)
        self.notifier.send(data, timestamp_us, sequence_id)

    # --- event session ---
    def notify_event(self, sequence_id: int, timestamp_us: int | None = None) -> bool:
        """Start or extend the event recording; returns True when a session opened."""
        if timestamp_us is None:
            now_us = self.last_timestamp
            cutoff_us = None
        else:
            now_us = int(timestamp_us) - self.time_offset
            cutoff_us = int(timestamp_us)
        deadline_us = now_us + self.options.detection_window_us

        if self.secondary_sink is None:
            self._pending_notification = sequence_id
            return False

        if self.session is not None:
            if self.session.extend(deadline_us):
                _LOG.info(
                    "extending event recording to %d us (sequence %s)", deadline_us, sequence_id
                )
            return False

        handle = self.secondary_sink.open(
            DestinationHint(SinkRole.SECONDARY, now_us, wall_time=self._clock())
        )
        self.session = EventSession(
            sequence_id=sequence_id,
            start_us=now_us,
            end_us=deadline_us,
            cutoff_us=cutoff_us,
            handle=handle,
        )
        self._pending_notification = sequence_id
        _LOG.info(
            "starting event recording at %s (sequence %s)", handle.path or "<unnamed>", sequence_id
        )
        return True

    def _feed_session(self, data: bytes, timestamp_us: int, keyframe: bool) -> None:
        session = self.session
        assert session is not None and self.secondary_sink is not None
        flags = Flag.KEYFRAME if keyframe else Flag.NONE
        try:
            if session.pending_flush:
                self._flush_pre_buffer(session, timestamp_us)
            self.secondary_sink.write(session.handle, data, self.last_timestamp, flags)
            session.frames_written += 1
        except SinkWriteError:
            _LOG.error("event recording write failed; ending session")
            self._end_session()
            raise

        if session.first_frame_pending:
            session.first_frame_pending = False
            self._capture_still(session, data, self.last_timestamp, flags)

        if self.last_timestamp > session.end_us:
            _LOG.info("event recording window has ended")
            self._end_session()

    def _flush_pre_buffer(self, session: EventSession, timestamp_us: int) -> None:
        if self.options.flush_mode == "all":
            frames = self.pre_buffer.drain()
        else:
            cutoff = session.cutoff_us if session.cutoff_us is not None else timestamp_us
            frames = self.pre_buffer.drain(cutoff)
        session.pending_flush = False
        for frame in frames:
            self.secondary_sink.write(
                session.handle,
                frame.data,
                frame.timestamp_us - self.time_offset,
                Flag.KEYFRAME if frame.keyframe else Flag.NONE,
            )
            session.frames_flushed += 1
        _LOG.debug("flushed %d pre-event frames into event recording", len(frames))

    def _capture_still(self, session: EventSession, data: bytes, timestamp_us: int, flags: Flag) -> None:
        if self.still_sink is None:
            return
        path = still_path_for(session.artifact_path) if session.artifact_path else None
        hint = DestinationHint(SinkRole.STILL, timestamp_us, wall_time=self._clock(), path=path)
        _LOG.info("creating thumbnail %s", path or "<unnamed>")
        try:
            handle = self.still_sink.open(hint)
            try:
                self.still_sink.write(handle, data, timestamp_us, flags)
            finally:
                self.still_sink.close(handle)
        except SinkError as exc:
            _LOG.error("thumbnail capture failed: %s", exc)

    def _end_session(self, *, handoff: bool = True) -> None:
        session = self.session
        if session is None:
            return
        self.session = None
        assert self.secondary_sink is not None
        self.secondary_sink.close(session.handle)
        _LOG.info(
            "stopping event recording, start %d us, end %d us", session.start_us, session.end_us
        )
        self.sessions_completed += 1
        path = session.artifact_path
        if not handoff:
            if path:
                _LOG.info("raw event recording retained at %s", path)
            return
        if path and self.transcoder is not None:
            self.transcoder.submit(path)

    # --- teardown ---
    def close(self) -> None:
        """Release sinks and sidecars; background conversions are detached."""
        if self._closed:
            return
        self._closed = True
        try:
            self._end_session(handoff=False)
            if self._primary_handle is not None:
                self.primary_sink.close(self._primary_handle)
                self._primary_handle = None
        finally:
            if self._metadata is not None:
                self._metadata.close()
            if self._timestamps is not None:
                self._timestamps.close()
            if self.notifier is not None:
                self.notifier.close()
            if self.transcoder is not None:
                self.transcoder.close()

    def __enter__(self) -> "OutputController":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def build_output_controller(
    cfg: dict[str, Any] | None = None,
    *,
    primary_sink: Sink | None = None,
) -> OutputController:
    """Wire an OutputController and its collaborators from configuration."""
    cfg = cfg if cfg is not None else get_cfg()
    options = OutputOptions.from_cfg(cfg)

    if primary_sink is None:
        try:
            primary_sink = create_primary_sink(
                options.output,
                circular_bytes=options.circular_bytes,
                wrap=options.wrap,
                flush=options.flush,
            )
        except SinkError as exc:
            raise OutputConfigError(str(exc)) from exc

    secondary_sink: Sink | None = None
    transcoder: TranscodeHandoff | None = None
    if options.detection_enabled:
        secondary_sink = FileSink(
            namer=EventPathNamer(options.detection_record_path, options.detection_extension),
            flush=options.flush,
        )
        transcoder = build_handoff(cfg.get("transcode"))

    return OutputController(
        options,
        primary_sink=primary_sink,
        secondary_sink=secondary_sink,
        notifier=build_notifier(cfg.get("notifications")),
        transcoder=transcoder,
    )
