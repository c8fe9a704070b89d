"""Per-frame sidecar files: metadata records and presentation timestamps."""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import IO, Any, Mapping

_LOG = logging.getLogger("sidecars")


def _open_text(path: str) -> tuple[IO[str], bool]:
    if path == "-":
        return sys.stdout, False
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    return target.open("w", encoding="utf-8"), True


class MetadataWriter:
    """Writes one metadata record per forwarded frame."""

    def __init__(self, path: str) -> None:
        self.path = path
        self._stream, self._owned = _open_text(path)
        self.records_written = 0
        self.start()

    def start(self) -> None:
        return None

    def write(self, record: Mapping[str, Any]) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    def stop(self) -> None:
        return None

    def close(self) -> None:
        if self._stream is None:
            return
        try:
            self.stop()
            self._stream.flush()
        finally:
            if self._owned:
                self._stream.close()
            self._stream = None


class TextMetadataWriter(MetadataWriter):
    """``key=value`` lines with a blank line after each record."""

    def write(self, record: Mapping[str, Any]) -> None:
        for key, value in record.items():
            self._stream.write(f"{key}={value}\n")
        self._stream.write("\n")
        self.records_written += 1


class JsonMetadataWriter(MetadataWriter):
    """A JSON array streamed one record at a time."""

    def start(self) -> None:
        self._stream.write("[\n")

    def write(self, record: Mapping[str, Any]) -> None:
        if self.records_written:
            self._stream.write(",\n")
        self._stream.write(json.dumps(dict(record), indent=4, default=str))
        self.records_written += 1

    def stop(self) -> None:
        self._stream.write("\n]\n")


METADATA_WRITERS: dict[str, type[MetadataWriter]] = {
    "txt": TextMetadataWriter,
    "json": JsonMetadataWriter,
}


def build_metadata_writer(path: str, fmt: str) -> MetadataWriter | None:
    if not path:
        return None
    try:
        writer_cls = METADATA_WRITERS[fmt]
    except KeyError:
        raise ValueError(f"unknown metadata format {fmt!r}") from None
    _LOG.debug("writing %s metadata to %s", fmt, path)
    return writer_cls(path)


class TimestampWriter:
    """Timecode v2 file: one ``ms.uuu`` line per forwarded frame."""

    HEADER = "# timecode format v2\n"

    def __init__(self, path: str, *, flush: bool = False) -> None:
        self.path = path
        self.flush = flush
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        self._fh: IO[str] | None = target.open("w", encoding="utf-8")
        self._fh.write(self.HEADER)

    def write(self, timestamp_us: int) -> None:
        if self._fh is None:
            return
        self._fh.write(f"{timestamp_us // 1000}.{timestamp_us % 1000:03d}\n")
        if self.flush:
            self._fh.flush()

    def close(self) -> None:
        if self._fh is not None:
            self._fh.close()
            self._fh = None
