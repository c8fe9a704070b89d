#!/usr/bin/env python3
"""Best-effort webhook notifications for detection events."""

from __future__ import annotations

import logging
import queue
import socket
import threading
from dataclasses import dataclass
from typing import Any
from urllib.request import Request, urlopen

_LOG = logging.getLogger("notifications")


@dataclass(frozen=True)
class Notification:
    data: bytes
    timestamp_us: int
    sequence_id: int | None = None


class WebhookNotifier:
    """POST the first frame after a detection to a configured endpoint.

    Sends happen on a daemon worker fed by a bounded queue so the frame
    path never waits on the network. A full queue drops the notification.
    """

    def __init__(
        self,
        *,
        webhook_cfg: dict[str, Any] | None,
        run_async: bool = True,
        queue_size: int = 8,
    ) -> None:
        self.webhook_cfg = webhook_cfg or {}
        self.hostname = socket.gethostname()
        self._run_async = run_async
        self._queue: queue.Queue[Notification | None] | None = None
        self._worker: threading.Thread | None = None
        self._queue_size = max(1, int(queue_size or 8))
        self.sent = 0
        self.failed = 0

        self.webhook_url = str(self.webhook_cfg.get("url") or "").strip()
        self.webhook_method = (
            str(self.webhook_cfg.get("method", "POST")) or "POST"
        ).upper()
        self.webhook_headers = self._normalise_headers(self.webhook_cfg.get("headers"))
        self.webhook_timeout = float(self.webhook_cfg.get("timeout_sec", 5.0) or 5.0)

        if self._run_async:
            self._queue = queue.Queue(maxsize=self._queue_size)
            self._worker = threading.Thread(
                target=self._dispatch_loop,
                name="notification-dispatcher",
                daemon=True,
            )
            self._worker.start()

    @staticmethod
    def _normalise_headers(headers: Any) -> dict[str, str]:
        if isinstance(headers, dict):
            return {
                str(key): str(value)
                for key, value in headers.items()
                if str(key).strip()
            }
        return {}

    def send(self, data: bytes, timestamp_us: int, sequence_id: int | None = None) -> bool:
        """Queue a notification; returns False when it had to be dropped."""
        notification = Notification(bytes(data), int(timestamp_us), sequence_id)

        if not self._run_async:
            self._dispatch(notification)
            return True

        assert self._queue is not None
        try:
            self._queue.put_nowait(notification)
        except queue.Full:
            _LOG.warning("dropping notification for frame %s (queue full)", timestamp_us)
            return False
        return True

    def _dispatch_loop(self) -> None:
        assert self._queue is not None
        while True:
            notification = self._queue.get()
            try:
                if notification is None:
                    break
                self._dispatch(notification)
            finally:
                self._queue.task_done()

    def _dispatch(self, notification: Notification) -> None:
        try:
            self._send_webhook(notification)
        except Exception as exc:  # noqa: BLE001 - log and continue
            self.failed += 1
            _LOG.warning("webhook dispatch raised unexpected error: %s", exc)

    def _send_webhook(self, notification: Notification) -> None:
        if not self.webhook_url:
            _LOG.error("webhook url is empty")
            self.failed += 1
            return

        headers = {
            "Content-Type": "application/octet-stream",
            "X-Frame-Timestamp": str(notification.timestamp_us),
            "X-Source-Host": self.hostname,
            **self.webhook_headers,
        }
        if notification.sequence_id is not None:
            headers["X-Detection-Sequence"] = str(notification.sequence_id)

        request = Request(
            self.webhook_url,
            data=notification.data,
            method=self.webhook_method,
            headers=headers,
        )

        _LOG.info("calling webhook %s", self.webhook_url)
        try:
            with urlopen(request, timeout=self.webhook_timeout) as response:
                response.read()
        except OSError as exc:
            self.failed += 1
            _LOG.warning("webhook delivery failed: %s", exc)
            return
        self.sent += 1

    def close(self) -> None:
        """Stop the worker after it finishes what is already queued."""
        if self._queue is None:
            return
        try:
            self._queue.put_nowait(None)
        except queue.Full:
            _LOG.warning("notification queue full at shutdown; worker left to drain")

    def join(self, timeout: float | None = None) -> None:
        if self._worker is not None:
            self._worker.join(timeout)


def build_notifier(cfg: dict[str, Any] | None) -> WebhookNotifier | None:
    if not isinstance(cfg, dict):
        return None

    if not bool(cfg.get("enabled")):
        return None

    webhook_cfg = cfg.get("webhook")
    if not isinstance(webhook_cfg, dict) or not str(webhook_cfg.get("url") or "").strip():
        return None

    return WebhookNotifier(
        webhook_cfg=webhook_cfg,
        queue_size=int(cfg.get("queue_size", 8) or 8),
    )
