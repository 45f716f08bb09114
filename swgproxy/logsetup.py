"""Logging presets for the command line."""

from __future__ import annotations

import json
import logging
import sys
import threading
from datetime import datetime
from typing import Any

from swgproxy.config import load_json_strict

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
    "dpanic": logging.CRITICAL,
    "panic": logging.CRITICAL,
    "fatal": logging.CRITICAL,
}

_COLORS = {"DEBUG": 35, "INFO": 34, "WARN": 33, "ERROR": 31, "FATAL": 31}

SAMPLING_INITIAL = 100
SAMPLING_THEREAFTER = 100

_CONFIG_KEYS = frozenset(
    {
        "level",
        "development",
        "encoding",
        "sampling",
        "encoderConfig",
        "outputPaths",
        "errorOutputPaths",
        "disableCaller",
        "disableStacktrace",
        "initialFields",
    }
)


def _level_name(levelno: int) -> str:
    if levelno >= logging.CRITICAL:
        return "FATAL"
    if levelno >= logging.ERROR:
        return "ERROR"
    if levelno >= logging.WARNING:
        return "WARN"
    if levelno >= logging.INFO:
        return "INFO"
    return "DEBUG"


def _iso8601(created: float) -> str:
    moment = datetime.fromtimestamp(created).astimezone()
    offset = moment.strftime("%z")
    if offset in ("+0000", ""):
        offset = "Z"
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}" + offset


def _fields(record: logging.LogRecord) -> dict[str, Any]:
    fields = getattr(record, "fields", None)
    return dict(fields) if fields else {}


class _ConsoleFormatter(logging.Formatter):
    """Space separated console lines: time, level, logger, caller, message, fields."""

    def __init__(self, *, timestamps: bool, color: bool) -> None:
        super().__init__()
        self._timestamps = timestamps
        self._color = color

    def format(self, record: logging.LogRecord) -> str:
        parts = []
        if self._timestamps:
            parts.append(_iso8601(record.created))
        level = _level_name(record.levelno)
        if self._color:
            level = f"\x1b[{_COLORS[level]}m{level}\x1b[0m"
        parts.append(level)
        if record.name and record.name != "root":
            parts.append(record.name)
        parts.append(f"{record.filename}:{record.lineno}")
        parts.append(record.getMessage())
        fields = _fields(record)
        if fields:
            parts.append(json.dumps(fields, default=str))
        line = " ".join(parts)
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        if record.stack_info:
            line += "\n" + self.formatStack(record.stack_info)
        return line


class _JSONFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "level": _level_name(record.levelno).lower(),
            "ts": record.created,
        }
        if record.name and record.name != "root":
            entry["logger"] = record.name
        entry["caller"] = f"{record.filename}:{record.lineno}"
        entry["msg"] = record.getMessage()
        entry.update(_fields(record))
        if record.exc_info:
            entry["stacktrace"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class _SamplingFilter(logging.Filter):
    """Per second, pass the first messages of a kind, then every Nth one."""

    def __init__(self, initial: int, thereafter: int) -> None:
        super().__init__()
        self._initial = initial
        self._thereafter = thereafter
        self._tick = -1
        self._counts: dict[tuple[int, str], int] = {}
        self._lock = threading.Lock()

    def filter(self, record: logging.LogRecord) -> bool:
        tick = int(record.created)
        key = (record.levelno, str(record.msg))
        with self._lock:
            if tick != self._tick:
                self._tick = tick
                self._counts.clear()
            count = self._counts.get(key, 0) + 1
            self._counts[key] = count
        if count <= self._initial:
            return True
        return (count - self._initial) % self._thereafter == 0


def production_console_formatter(suppress_timestamps: bool) -> logging.Formatter:
    """Return the console formatter used in production.

    Levels are coloured; timestamps are left out when ``suppress_timestamps``
    is true, which suits journals that stamp lines themselves.
    """
    return _ConsoleFormatter(timestamps=not suppress_timestamps, color=True)


def _parse_level(text: str) -> int:
    try:
        return _LEVELS[text.lower()]
    except KeyError:
        raise ValueError(f'unrecognized level: "{text}"') from None


def _output_handler(path: str) -> logging.Handler:
    if path == "stderr":
        return logging.StreamHandler(sys.stderr)
    if path == "stdout":
        return logging.StreamHandler(sys.stdout)
    return logging.FileHandler(path, encoding="utf-8")


def _handlers_from_config(config: dict[str, Any], source: str) -> tuple[list[logging.Handler], int]:
    """Build handlers and a level from a JSON logger configuration document."""
    unknown = sorted(set(config) - _CONFIG_KEYS)
    if unknown:
        raise ValueError(f'unknown field "{unknown[0]}" in logging configuration {source}')

    level = _parse_level(str(config.get("level", "info")))
    development = bool(config.get("development", False))

    encoder = config.get("encoderConfig") or {}
    if not isinstance(encoder, dict):
        raise ValueError(f"encoderConfig in {source} is not a JSON object")

    encoding = config.get("encoding", "console")
    if encoding == "json":
        formatter: logging.Formatter = _JSONFormatter()
    elif encoding == "console":
        timestamps = encoder.get("timeKey", "T") != ""
        color = str(encoder.get("levelEncoder", "")).lower() in ("capitalcolor", "color")
        formatter = _ConsoleFormatter(timestamps=timestamps, color=color)
    else:
        raise ValueError(f"no encoder registered for name {encoding!r}")

    sampling = config.get("sampling")
    if sampling is not None and not isinstance(sampling, dict):
        raise ValueError(f"sampling in {source} is not a JSON object")

    paths = config.get("outputPaths") or ["stderr"]
    if not isinstance(paths, list):
        raise ValueError(f"outputPaths in {source} is not a JSON array")

    handlers = []
    for path in paths:
        handler = _output_handler(str(path))
        handler.setFormatter(formatter)
        if sampling and not development:
            handler.addFilter(
                _SamplingFilter(
                    int(sampling.get("initial", SAMPLING_INITIAL)),
                    int(sampling.get("thereafter", SAMPLING_THEREAFTER)),
                )
            )
        handlers.append(handler)
    return handlers, level


def setup_logging(preset: str | None, level: str | None) -> logging.Logger:
    """Configure the root logger from a preset name or a JSON config file.

    Presets: "console" (the default), "systemd", "production" and
    "development". Any other value is the path of a JSON logger
    configuration document. ``level`` overrides the level when given.
    """
    override = _parse_level(level) if level else None
    root = logging.getLogger()

    if preset in (None, "", "console", "systemd", "production", "development"):
        handler = logging.StreamHandler(sys.stderr)
        if preset == "production":
            handler.setFormatter(_JSONFormatter())
        elif preset == "development":
            handler.setFormatter(_ConsoleFormatter(timestamps=True, color=False))
        else:
            handler.setFormatter(production_console_formatter(preset == "systemd"))
        if preset != "development":
            handler.addFilter(_SamplingFilter(SAMPLING_INITIAL, SAMPLING_THEREAFTER))
        handlers = [handler]
        root_level = logging.DEBUG if preset == "development" else logging.INFO
    else:
        config = load_json_strict(preset)
        if not isinstance(config, dict):
            raise ValueError(f"logging configuration in {preset} is not a JSON object")
        handlers, root_level = _handlers_from_config(config, preset)

    for existing in list(root.handlers):
        root.removeHandler(existing)
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(root_level)

    if override is not None:
        root.setLevel(override)
    return root