#!/usr/bin/env python3
"""Background conversion of finished raw recordings."""

from __future__ import annotations

import logging
import os
import queue
import shlex
import subprocess
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

_LOG = logging.getLogger("transcode")

DEFAULT_COMMAND: tuple[str, ...] = (
    "ffmpeg", "-y", "-i", "{input}",
    "-c:v", "libx264", "-preset", "medium", "-crf", "23",
    "-pix_fmt", "yuv420p", "-c:a", "copy", "{output}",
)


@dataclass(frozen=True)
class TranscodeResult:
    raw_path: str
    output_path: str
    success: bool
    returncode: int | None
    stderr: str | None = None
    error: Exception | None = None


@dataclass(frozen=True)
class _Job:
    raw_path: str
    on_complete: Callable[[TranscodeResult], None] | None


def _lower_priority() -> None:
    """Run the converter niced so it does not compete with capture."""
    try:
        os.nice(5)
    except OSError:
        pass


class _TranscodeWorker(threading.Thread):
    def __init__(self, handoff: "TranscodeHandoff", job_queue: queue.Queue):
        super().__init__(daemon=True, name="transcode-worker")
        self.handoff = handoff
        self.q = job_queue

    def run(self):
        while True:
            job = self.q.get()
            try:
                if job is None:
                    return
                result = self.handoff.run_job(job.raw_path)
                if job.on_complete is not None:
                    try:
                        job.on_complete(result)
                    except Exception as exc:  # noqa: BLE001 - callback failures stay local
                        _LOG.error("transcode completion callback failed: %r", exc)
            finally:
                self.q.task_done()


class TranscodeHandoff:
    """Convert raw artifacts with an external command on worker threads.

    ``command`` is an argv template where ``{input}`` and ``{output}`` are
    replaced by the raw path and the derived output path. A zero exit
    status removes the raw artifact; anything else keeps it in place.
    """

    def __init__(
        self,
        command: Sequence[str] = DEFAULT_COMMAND,
        *,
        output_extension: str = ".mp4",
        max_workers: int = 1,
        timeout_sec: float | None = None,
        low_priority: bool = True,
    ) -> None:
        if not command:
            raise ValueError("transcode command must not be empty")
        self.command = [str(part) for part in command]
        self.output_extension = (
            output_extension if output_extension.startswith(".") else f".{output_extension}"
        )
        self.max_workers = max(1, int(max_workers))
        self.timeout_sec = timeout_sec
        self.low_priority = low_priority
        self._queue: queue.Queue[_Job | None] = queue.Queue()
        self._workers: list[_TranscodeWorker] = []
        self._lock = threading.Lock()
        self._closed = False

    def output_path_for(self, raw_path: str) -> str:
        candidate = Path(raw_path)
        if candidate.suffix:
            return str(candidate.with_suffix(self.output_extension))
        return f"{raw_path}{self.output_extension}"

    def build_command(self, raw_path: str, output_path: str) -> list[str]:
        return [
            part.replace("{input}", raw_path).replace("{output}", output_path)
            for part in self.command
        ]

    def _ensure_workers(self) -> None:
        with self._lock:
            self._workers = [worker for worker in self._workers if worker.is_alive()]
            for _ in range(self.max_workers - len(self._workers)):
                worker = _TranscodeWorker(self, self._queue)
                worker.start()
                self._workers.append(worker)

    def submit(
        self,
        raw_path: str,
        on_complete: Callable[[TranscodeResult], None] | None = None,
    ) -> bool:
        """Queue ``raw_path`` for conversion; never blocks on the conversion."""
        if self._closed:
            _LOG.warning("transcode handoff closed; raw artifact retained at %s", raw_path)
            return False
        self._ensure_workers()
        self._queue.put(_Job(str(raw_path), on_complete))
        _LOG.info("queued transcode job for %s", raw_path)
        return True

    def run_job(self, raw_path: str) -> TranscodeResult:
        output_path = self.output_path_for(raw_path)
        cmd = self.build_command(raw_path, output_path)
        preexec: Callable[[], None] | None = None
        if self.low_priority and os.name == "posix":
            preexec = _lower_priority
        _LOG.info("running transcode: %s", " ".join(cmd))
        try:
            completed = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                check=True,
                timeout=self.timeout_sec,
                preexec_fn=preexec,
            )
        except subprocess.CalledProcessError as exc:
            _LOG.error(
                "transcode failed with code %s, raw file retained at %s", exc.returncode, raw_path
            )
            if exc.stderr:
                _LOG.error("%s", exc.stderr.strip())
            return TranscodeResult(raw_path, output_path, False, exc.returncode, exc.stderr, exc)
        except subprocess.TimeoutExpired as exc:
            _LOG.error("transcode timed out after %ss, raw file retained at %s", exc.timeout, raw_path)
            return TranscodeResult(raw_path, output_path, False, None, None, exc)
        except OSError as exc:
            _LOG.error("unable to start transcode (%r), raw file retained at %s", exc, raw_path)
            return TranscodeResult(raw_path, output_path, False, None, None, exc)

        _LOG.info("created %s, removing raw file %s", output_path, raw_path)
        try:
            os.unlink(raw_path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            _LOG.warning("unable to remove raw file %s: %s", raw_path, exc)
        return TranscodeResult(raw_path, output_path, True, completed.returncode, completed.stderr)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def close(self) -> list[str]:
        """Cancel queued jobs and detach running ones without waiting.

        Returns the raw paths whose conversion was cancelled; those files
        are left untouched on disk.
        """
        with self._lock:
            if self._closed:
                return []
            self._closed = True
            workers = list(self._workers)
        cancelled: list[str] = []
        while True:
            try:
                job = self._queue.get_nowait()
            except queue.Empty:
                break
            if job is not None:
                cancelled.append(job.raw_path)
            self._queue.task_done()
        for raw_path in cancelled:
            _LOG.warning("transcode cancelled at shutdown, raw file retained at %s", raw_path)
        for _ in workers:
            self._queue.put(None)
        return cancelled


def build_handoff(cfg: dict[str, Any] | None) -> TranscodeHandoff | None:
    if not isinstance(cfg, dict) or not bool(cfg.get("enabled", True)):
        return None
    command = cfg.get("command") or DEFAULT_COMMAND
    if isinstance(command, str):
        command = shlex.split(command)
    timeout = cfg.get("timeout_sec")
    return TranscodeHandoff(
        command,
        output_extension=str(cfg.get("output_extension") or ".mp4"),
        max_workers=int(cfg.get("max_workers", 1) or 1),
        timeout_sec=float(timeout) if timeout else None,
    )
