#!/usr/bin/env python3
"""
Unified configuration loader for eventcam.

Load order (first found wins):
  1) EVENTCAM_CONFIG (env, absolute or relative to CWD)
  2) /etc/eventcam/config.yaml
  3) <project_root>/config.yaml (derived from this file's location)
  4) ./config.yaml (current working directory)

Environment variables override file values when present.
"""
from __future__ import annotations
import copy
import logging
import math
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping

import yaml

_LOG = logging.getLogger("config")

FLUSH_MODES = ("cutoff", "all")
METADATA_FORMATS = ("txt", "json")

_DEFAULTS: Dict[str, Any] = {
    "output": {
        "path": "",
        "framerate": 30.0,
        "pause": False,
        "flush": False,
        "wrap": 0,
        "circular_bytes": 0,
    },
    "segment": {
        "segment_ms": 0,
        "split": False,
    },
    "detection": {
        "enabled": False,
        "record_path": "~",
        "record_seconds": 10.0,
        "pre_event_seconds": 0.0,
        "extension": ".mjpeg",
        "flush_mode": "cutoff",
    },
    "sidecars": {
        "metadata_path": "",
        "metadata_format": "json",
        "save_pts": "",
    },
    "notifications": {
        "enabled": False,
        "webhook": {},
        "queue_size": 8,
    },
    "transcode": {
        "enabled": True,
        "output_extension": ".mp4",
        "command": [
            "ffmpeg", "-y", "-i", "{input}",
            "-c:v", "libx264", "-preset", "medium", "-crf", "23",
            "-pix_fmt", "yuv420p", "-c:a", "copy", "{output}",
        ],
        "max_workers": 1,
        "timeout_sec": None,
    },
    "logging": {
        "dev_mode": False  # if True or ENV DEV=1, enable verbose per-frame debug
    },
}

_cfg_cache: Dict[str, Any] | None = None
_search_paths: list[Path] = []
_active_config_path: Path | None = None


class OutputConfigError(Exception):
    """Raised when the output configuration cannot be used."""


def _load_yaml_if_exists(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("r") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        _LOG.warning("Ignoring unreadable config file %s: %s", path, exc)
        return {}
    if isinstance(data, dict):
        return data
    _LOG.warning("Ignoring config file %s: top level is not a mapping", path)
    return {}


def _candidate_search_paths(project_root: Path) -> list[Path]:
    search: list[Path] = []
    env_cfg = os.getenv("EVENTCAM_CONFIG")
    if env_cfg:
        search.append(Path(env_cfg).expanduser().resolve())
    search.extend(
        [
            Path("/etc/eventcam/config.yaml"),
            project_root / "config.yaml",
            Path.cwd() / "config.yaml",
        ]
    )
    seen: set[Path] = set()
    ordered: list[Path] = []
    for candidate in search:
        resolved = candidate.resolve()
        if resolved in seen:
            continue
        seen.add(resolved)
        ordered.append(resolved)
    return ordered


def _deep_merge(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(base)
    for k, v in extra.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _apply_env_overrides(cfg: Dict[str, Any]) -> None:
    def _parse_bool(value: str) -> bool:
        return value.strip().lower() in {"1", "true", "yes", "on"}

    # DEV mode
    if os.getenv("DEV") == "1":
        cfg.setdefault("logging", {})["dev_mode"] = True
    if "EVENTCAM_OUTPUT" in os.environ:
        cfg.setdefault("output", {})["path"] = os.environ["EVENTCAM_OUTPUT"]
    if "EVENTCAM_PAUSE" in os.environ:
        cfg.setdefault("output", {})["pause"] = _parse_bool(os.environ["EVENTCAM_PAUSE"])
    if "EVENTCAM_DETECTION_PATH" in os.environ:
        value = os.environ["EVENTCAM_DETECTION_PATH"].strip()
        if value:
            cfg.setdefault("detection", {})["record_path"] = value
    if "EVENTCAM_WEBHOOK_URL" in os.environ:
        value = os.environ["EVENTCAM_WEBHOOK_URL"].strip()
        if value:
            notifications = cfg.setdefault("notifications", {})
            notifications["enabled"] = True
            webhook = notifications.get("webhook")
            if not isinstance(webhook, dict):
                webhook = {}
            notifications["webhook"] = {**webhook, "url": value}

    env_map = {
        "EVENTCAM_FRAMERATE": ("output", "framerate", float),
        "EVENTCAM_SEGMENT_MS": ("segment", "segment_ms", int),
        "EVENTCAM_RECORD_SECONDS": ("detection", "record_seconds", float),
        "EVENTCAM_PRE_EVENT_SECONDS": ("detection", "pre_event_seconds", float),
    }
    for env_key, (section, key, cast) in env_map.items():
        if env_key in os.environ:
            try:
                cfg.setdefault(section, {})[key] = cast(os.environ[env_key])
            except ValueError:
                _LOG.warning("Ignoring invalid %s=%r", env_key, os.environ[env_key])


def get_cfg() -> Dict[str, Any]:
    global _cfg_cache, _search_paths, _active_config_path
    if _cfg_cache is not None:
        return _cfg_cache

    cfg = copy.deepcopy(_DEFAULTS)

    # eventcam/ -> project root
    project_root = Path(__file__).resolve().parent.parent

    search = _candidate_search_paths(project_root)
    _search_paths = list(search)

    active: Path | None = None
    for candidate in search:
        if candidate.exists():
            active = candidate
            break

    for candidate in reversed(search):
        cfg = _deep_merge(cfg, _load_yaml_if_exists(candidate))

    _active_config_path = active
    _apply_env_overrides(cfg)
    _cfg_cache = cfg
    return cfg


def reload_cfg() -> Dict[str, Any]:
    global _cfg_cache
    _cfg_cache = None
    return get_cfg()


def active_config_path() -> Path | None:
    if _active_config_path is None:
        get_cfg()
    return _active_config_path


def search_paths() -> list[Path]:
    if not _search_paths:
        get_cfg()
    return list(_search_paths)


def _section(cfg: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    value = cfg.get(name)
    return value if isinstance(value, Mapping) else {}


def _as_float(section: str, key: str, value: Any, *, minimum: float = 0.0) -> float:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        raise OutputConfigError(f"{section}.{key} must be a number, got {value!r}") from None
    if math.isnan(parsed) or parsed < minimum:
        raise OutputConfigError(f"{section}.{key} must be >= {minimum}, got {value!r}")
    return parsed


def _as_int(section: str, key: str, value: Any) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        raise OutputConfigError(f"{section}.{key} must be an integer, got {value!r}") from None
    if parsed < 0:
        raise OutputConfigError(f"{section}.{key} must be >= 0, got {value!r}")
    return parsed


@dataclass(frozen=True)
class OutputOptions:
    """Typed view of the settings the output controller reads."""

    output: str = ""
    framerate: float = 30.0
    pause: bool = False
    flush: bool = False
    wrap: int = 0
    circular_bytes: int = 0
    segment_ms: int = 0
    split: bool = False
    detection_enabled: bool = False
    detection_record_path: str = "~"
    detection_record_seconds: float = 10.0
    pre_event_seconds: float = 0.0
    detection_extension: str = ".mjpeg"
    flush_mode: str = "cutoff"
    metadata_path: str = ""
    metadata_format: str = "json"
    save_pts: str = ""
    dev_mode: bool = False

    @property
    def pre_event_capacity(self) -> int:
        if self.pre_event_seconds <= 0.0:
            return 0
        return int(math.ceil(self.pre_event_seconds * self.framerate))

    @property
    def detection_window_us(self) -> int:
        return int(self.detection_record_seconds * 1_000_000)

    @classmethod
    def from_cfg(cls, cfg: Mapping[str, Any] | None = None) -> "OutputOptions":
        cfg = cfg if cfg is not None else get_cfg()
        output = _section(cfg, "output")
        segment = _section(cfg, "segment")
        detection = _section(cfg, "detection")
        sidecars = _section(cfg, "sidecars")
        logging_cfg = _section(cfg, "logging")

        flush_mode = str(detection.get("flush_mode", "cutoff")).strip().lower()
        if flush_mode not in FLUSH_MODES:
            raise OutputConfigError(
                f"detection.flush_mode must be one of {FLUSH_MODES}, got {flush_mode!r}"
            )
        metadata_format = str(sidecars.get("metadata_format", "json")).strip().lower()
        if metadata_format not in METADATA_FORMATS:
            raise OutputConfigError(
                f"sidecars.metadata_format must be one of {METADATA_FORMATS}, "
                f"got {metadata_format!r}"
            )
        extension = str(detection.get("extension") or ".mjpeg").strip()
        if not extension.startswith("."):
            extension = f".{extension}"

        framerate = _as_float("output", "framerate", output.get("framerate", 30.0))
        if framerate <= 0.0:
            raise OutputConfigError("output.framerate must be positive")

        return cls(
            output=str(output.get("path") or ""),
            framerate=framerate,
            pause=bool(output.get("pause", False)),
            flush=bool(output.get("flush", False)),
            wrap=_as_int("output", "wrap", output.get("wrap", 0)),
            circular_bytes=_as_int("output", "circular_bytes", output.get("circular_bytes", 0)),
            segment_ms=_as_int("segment", "segment_ms", segment.get("segment_ms", 0)),
            split=bool(segment.get("split", False)),
            detection_enabled=bool(detection.get("enabled", False)),
            detection_record_path=str(detection.get("record_path") or "~"),
            detection_record_seconds=_as_float(
                "detection", "record_seconds", detection.get("record_seconds", 10.0)
            ),
            pre_event_seconds=_as_float(
                "detection", "pre_event_seconds", detection.get("pre_event_seconds", 0.0)
            ),
            detection_extension=extension,
            flush_mode=flush_mode,
            metadata_path=str(sidecars.get("metadata_path") or ""),
            metadata_format=metadata_format,
            save_pts=str(sidecars.get("save_pts") or ""),
            dev_mode=bool(logging_cfg.get("dev_mode", False)),
        )
