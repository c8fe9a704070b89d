"""Destinations the output controller writes to.

Every sink exposes the same small surface: ``open(hint)`` returns a
``SinkHandle``, ``write(handle, data, timestamp_us, flags)`` consumes one
buffer and ``close(handle)`` releases it. Naming of destinations is left to
the sink (or the namer it is given); the controller only supplies a
``DestinationHint`` describing the role and time of the request.
"""

from __future__ import annotations

import enum
import logging
import os
import socket
import sys
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable
from urllib.parse import urlsplit

from eventcam.frames import Flag

_LOG = logging.getLogger("sinks")

MAX_UDP_SIZE = 65507


class SinkError(Exception):
    """Base class for sink failures."""


class SinkOpenError(SinkError):
    """Raised when a destination cannot be opened."""


class SinkWriteError(SinkError):
    """Raised when a write to an open destination fails."""


class SinkRole(str, enum.Enum):
    PRIMARY = "primary"
    SECONDARY = "secondary"
    STILL = "still"


@dataclass(frozen=True)
class DestinationHint:
    role: SinkRole
    timestamp_us: int = 0
    wall_time: datetime = field(default_factory=datetime.now)
    path: str | None = None


@dataclass
class SinkHandle:
    role: SinkRole
    path: str | None = None
    resource: Any = None
    opened_at_us: int = 0
    closed: bool = False

    @property
    def is_open(self) -> bool:
        return not self.closed


class Sink:
    """Minimal protocol for output destinations."""

    def open(self, hint: DestinationHint) -> SinkHandle:  # pragma: no cover - interface only
        raise NotImplementedError

    def write(self, handle: SinkHandle, data: bytes, timestamp_us: int, flags: Flag) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    def close(self, handle: SinkHandle) -> None:  # pragma: no cover - interface only
        raise NotImplementedError


class NullSink(Sink):
    """Accepts and discards every buffer."""

    def open(self, hint: DestinationHint) -> SinkHandle:
        return SinkHandle(role=hint.role, opened_at_us=hint.timestamp_us)

    def write(self, handle: SinkHandle, data: bytes, timestamp_us: int, flags: Flag) -> None:
        return None

    def close(self, handle: SinkHandle) -> None:
        handle.closed = True


def expand_home(path: str) -> str:
    """Resolve a leading ``~`` against $HOME (or the passwd entry)."""
    return os.path.expanduser(path) if path else path


class EventPathNamer:
    """Name event recordings ``<base>/<YYYY-MM-DD>/<YYYY-MM-DD-HH-MM-SS-mmm><ext>``."""

    def __init__(self, base_dir: str, extension: str = ".mjpeg") -> None:
        self.base_dir = expand_home(base_dir) or "."
        self.extension = extension if extension.startswith(".") else f".{extension}"

    def __call__(self, hint: DestinationHint) -> str:
        when = hint.wall_time
        day_dir = Path(self.base_dir) / when.strftime("%Y-%m-%d")
        day_dir.mkdir(parents=True, exist_ok=True)
        stamp = when.strftime("%Y-%m-%d-%H-%M-%S-") + f"{when.microsecond // 1000:03d}"
        return str(day_dir / f"{stamp}{self.extension}")


def still_path_for(artifact_path: str, extension: str = ".jpg") -> str:
    return str(Path(artifact_path).with_suffix(extension))


class FileSink(Sink):
    """Write buffers to files.

    The destination is, in order of precedence: an explicit path in the
    hint, the result of ``namer(hint)``, or ``path_template``. A template
    containing a printf-style field (``clip%04d.h264``) is expanded with a
    running counter that wraps at ``wrap`` when set. ``-`` writes to stdout.
    """

    def __init__(
        self,
        path_template: str = "",
        *,
        namer: Callable[[DestinationHint], str] | None = None,
        wrap: int = 0,
        flush: bool = False,
    ) -> None:
        self.path_template = path_template
        self.namer = namer
        self.wrap = max(0, int(wrap))
        self.flush = flush
        self.count = 0

    def _next_templated_path(self) -> str:
        template = self.path_template
        if "%" in template:
            try:
                filename = template % self.count
            except (TypeError, ValueError) as exc:
                raise SinkOpenError(f"failed to generate filename from {template!r}: {exc}") from exc
        else:
            filename = template
        self.count += 1
        if self.wrap:
            self.count %= self.wrap
        return filename

    def resolve_path(self, hint: DestinationHint) -> str:
        if hint.path:
            return hint.path
        if self.namer is not None:
            return self.namer(hint)
        if not self.path_template:
            raise SinkOpenError(f"no output path configured for {hint.role.value} sink")
        return self._next_templated_path()

    def open(self, hint: DestinationHint) -> SinkHandle:
        try:
            path = self.resolve_path(hint)
        except OSError as exc:
            raise SinkOpenError(f"failed to prepare {hint.role.value} output path: {exc}") from exc
        if path == "-":
            return SinkHandle(role=hint.role, path=None, resource=sys.stdout.buffer, opened_at_us=hint.timestamp_us)
        try:
            Path(path).parent.mkdir(parents=True, exist_ok=True)
            fh = open(path, "wb")
        except OSError as exc:
            raise SinkOpenError(f"failed to open output file {path}: {exc}") from exc
        _LOG.debug("opened %s output file %s", hint.role.value, path)
        return SinkHandle(role=hint.role, path=path, resource=fh, opened_at_us=hint.timestamp_us)

    def write(self, handle: SinkHandle, data: bytes, timestamp_us: int, flags: Flag) -> None:
        if handle.closed:
            raise SinkWriteError(f"write to closed {handle.role.value} sink")
        if not data:
            return
        try:
            handle.resource.write(data)
            if self.flush:
                handle.resource.flush()
        except (OSError, ValueError) as exc:
            raise SinkWriteError(f"failed to write output bytes to {handle.path or 'stdout'}: {exc}") from exc

    def close(self, handle: SinkHandle) -> None:
        if handle.closed:
            return
        handle.closed = True
        fh = handle.resource
        try:
            if self.flush or handle.path is None:
                fh.flush()
            if handle.path is not None:
                fh.close()
        except OSError as exc:
            _LOG.error("close error on %s: %s", handle.path, exc)


class NetSink(Sink):
    """Send buffers to ``udp://host:port`` or ``tcp://host:port``."""

    def __init__(self, url: str, *, connect_timeout: float = 5.0) -> None:
        parts = urlsplit(url)
        if parts.scheme not in {"udp", "tcp"} or not parts.hostname or not parts.port:
            raise SinkOpenError(f"unsupported network destination {url!r}")
        self.url = url
        self.protocol = parts.scheme
        self.address = (parts.hostname, parts.port)
        self.connect_timeout = connect_timeout

    def open(self, hint: DestinationHint) -> SinkHandle:
        try:
            if self.protocol == "udp":
                sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
            else:
                sock = socket.create_connection(self.address, timeout=self.connect_timeout)
        except OSError as exc:
            raise SinkOpenError(f"failed to open {self.url}: {exc}") from exc
        _LOG.debug("opened %s stream to %s", self.protocol, self.url)
        return SinkHandle(role=hint.role, path=None, resource=sock, opened_at_us=hint.timestamp_us)

    def write(self, handle: SinkHandle, data: bytes, timestamp_us: int, flags: Flag) -> None:
        sock: socket.socket = handle.resource
        try:
            if self.protocol == "udp":
                view = memoryview(data)
                for offset in range(0, len(view), MAX_UDP_SIZE):
                    sock.sendto(view[offset:offset + MAX_UDP_SIZE], self.address)
            else:
                sock.sendall(data)
        except OSError as exc:
            raise SinkWriteError(f"failed to send data to {self.url}: {exc}") from exc

    def close(self, handle: SinkHandle) -> None:
        if handle.closed:
            return
        handle.closed = True
        try:
            handle.resource.close()
        except OSError as exc:
            _LOG.error("close error on %s: %s", self.url, exc)


@dataclass
class _CircularState:
    path: str
    records: deque = field(default_factory=deque)
    size: int = 0


class CircularSink(Sink):
    """Keep the most recent ``buffer_bytes`` of output in memory.

    Nothing touches the disk until the handle is closed; the retained
    buffers are then written out starting from the oldest keyframe.
    """

    def __init__(self, path_template: str, buffer_bytes: int) -> None:
        if buffer_bytes <= 0:
            raise ValueError("buffer_bytes must be positive")
        self.files = FileSink(path_template)
        self.buffer_bytes = int(buffer_bytes)

    def open(self, hint: DestinationHint) -> SinkHandle:
        path = self.files.resolve_path(hint)
        return SinkHandle(role=hint.role, path=path, resource=_CircularState(path), opened_at_us=hint.timestamp_us)

    def write(self, handle: SinkHandle, data: bytes, timestamp_us: int, flags: Flag) -> None:
        state: _CircularState = handle.resource
        if len(data) > self.buffer_bytes:
            raise SinkWriteError("buffer larger than circular capacity")
        state.records.append((bytes(data), timestamp_us, flags))
        state.size += len(data)
        while state.size > self.buffer_bytes:
            dropped, _, _ = state.records.popleft()
            state.size -= len(dropped)

    def close(self, handle: SinkHandle) -> None:
        if handle.closed:
            return
        handle.closed = True
        state: _CircularState = handle.resource
        while state.records and not state.records[0][2] & Flag.KEYFRAME:
            dropped, _, _ = state.records.popleft()
            state.size -= len(dropped)
        if not state.records:
            _LOG.info("circular buffer empty on close; nothing written to %s", state.path)
            return
        try:
            Path(state.path).parent.mkdir(parents=True, exist_ok=True)
            with open(state.path, "wb") as fh:
                for data, _, _ in state.records:
                    fh.write(data)
        except OSError as exc:
            _LOG.error("failed to write circular buffer to %s: %s", state.path, exc)
            return
        _LOG.info("wrote %d buffered frames to %s", len(state.records), state.path)
        state.records.clear()
        state.size = 0


def create_primary_sink(output: str, *, circular_bytes: int = 0, wrap: int = 0, flush: bool = False) -> Sink:
    """Pick the primary sink implementation from the configured output."""
    if output.startswith(("udp://", "tcp://")):
        return NetSink(output)
    if circular_bytes > 0:
        if not output:
            raise SinkOpenError("circular output requires an output path")
        return CircularSink(output, circular_bytes)
    if output:
        return FileSink(output, wrap=wrap, flush=flush)
    return NullSink()
