"""Layered YAML configuration with change detection and reload callbacks."""

from __future__ import annotations

import logging
import os
import re
import signal
import threading
from datetime import timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable

import yaml

_log = logging.getLogger(__name__)

_TIMESTAMP_TAG = "tag:yaml.org,2002:timestamp"


class _YamlLoader(yaml.SafeLoader):
    """Safe loader that keeps timestamps as plain strings."""


_YamlLoader.yaml_implicit_resolvers = {
    first: [(tag, regexp) for tag, regexp in resolvers if tag != _TIMESTAMP_TAG]
    for first, resolvers in yaml.SafeLoader.yaml_implicit_resolvers.items()
}

_UNIT_NANOS = {
    "ns": 1,
    "us": 1_000,
    "µs": 1_000,
    "μs": 1_000,
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60 * 1_000_000_000,
    "h": 3600 * 1_000_000_000,
}
_NUMBER = r"(?:[0-9]+\.?[0-9]*|\.[0-9]+)"
_UNIT = r"(?:ns|us|µs|μs|ms|s|m|h)"
_COMPONENT = re.compile(rf"({_NUMBER})({_UNIT})")
_DURATION = re.compile(rf"[-+]?(?:{_NUMBER}{_UNIT})+")
_INTEGER = re.compile(r"[-+]?[0-9]+")
_TRUE_WORDS = {"1", "t", "true", "y", "yes"}
_FALSE_WORDS = {"0", "f", "false", "n", "no"}


class ConfigError(Exception):
    """Raised when configuration cannot be found or parsed."""


def parse_duration(text: str) -> timedelta:
    """Parse a duration such as ``"1h30m"`` or ``"300ms"``."""
    if text in ("0", "+0", "-0"):
        return timedelta(0)
    if not _DURATION.fullmatch(text):
        raise ValueError(f"invalid duration {text!r}")
    sign = -1 if text.startswith("-") else 1
    nanos = sum(Decimal(number) * _UNIT_NANOS[unit] for number, unit in _COMPONENT.findall(text))
    return timedelta(microseconds=float(sign * nanos / 1000))


def format_value(value: Any) -> str:
    """Render a configuration value as text, the way settings are compared and read."""
    if value is None:
        return "<nil>"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        text = repr(value)
        return text[:-2] if text.endswith(".0") else text
    if isinstance(value, (list, tuple)):
        return "[" + " ".join(format_value(item) for item in value) + "]"
    if isinstance(value, dict):
        items = sorted((format_value(k), format_value(v)) for k, v in value.items())
        return "map[" + " ".join(f"{k}:{v}" for k, v in items) + "]"
    return str(value)


def _load_mapping(data: str | bytes) -> dict:
    try:
        document = yaml.load(data, Loader=_YamlLoader)
    except yaml.YAMLError as exc:
        raise ConfigError(f"yaml: {exc}") from exc
    if document is None:
        return {}
    if not isinstance(document, dict):
        raise ConfigError(f"yaml: cannot unmarshal {type(document).__name__} {document!r} into a mapping")
    return document


def _merge(dst: dict, src: dict) -> dict:
    """Fill ``dst`` from ``src``; nested mappings merge and lists are appended."""
    for key, value in src.items():
        current = dst.get(key)
        if current is None:
            dst[key] = value
        elif isinstance(current, dict) and isinstance(value, dict):
            _merge(current, value)
        elif isinstance(current, list) and isinstance(value, list):
            dst[key] = current + value
    return dst


def _lookup(key: str, value: Any) -> Any:
    for part in key.split("."):
        if not isinstance(value, dict) or part not in value:
            return None
        value = value[part]
    return value


def _serialize(value: Any) -> str:
    try:
        return yaml.safe_dump(value, sort_keys=True)
    except (yaml.YAMLError, TypeError):
        return repr(value)


def _extension(name: str) -> str:
    _, dot, ext = name.rpartition(".")
    return "." + ext if dot else ""


class Config:
    """Settings loaded from one YAML file or a directory of them."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.settings: dict = {}
        self.old_settings: dict | None = None
        self._path: str = ""
        self._files: list[str] = []
        self._callbacks: list[Callable[[Config], None]] = []
        self._log = logger or _log
        self._reload_lock = threading.Lock()

    def load(self, path: str | os.PathLike) -> None:
        """Load every YAML file under ``path`` in lexical order, later files winning."""
        self._path = os.fspath(path)
        files: list[str] = []
        if self._path:
            self._resolve(Path(self._path), True, files)
        if not files:
            raise ConfigError(f"no config files found at {self._path}")
        files.sort()
        self._files = files

        merged: dict = {}
        for file in files:
            document = _load_mapping(Path(file).read_bytes())
            merged = _merge(document, merged)
        self.settings = merged

    def load_string(self, raw: str) -> None:
        """Replace the settings with the YAML document in ``raw``."""
        if raw == "":
            raise ConfigError("Empty configuration")
        self.settings = _load_mapping(raw)

    def register_reload_callback(self, callback: Callable[[Config], None]) -> None:
        """Call ``callback`` with this config after every successful reload."""
        self._callbacks.append(callback)

    def has_changed(self, key: str) -> bool:
        """Tell whether ``key`` (or everything, for an empty key) changed in the last reload."""
        if self.old_settings is None:
            return False
        if key == "":
            new, old = self.settings, self.old_settings
        else:
            new, old = _lookup(key, self.settings), _lookup(key, self.old_settings)
        return _serialize(new) != _serialize(old)

    def catch_hup(self) -> Callable[[], None]:
        """Reload on SIGHUP; returns a function that restores the previous handler."""
        previous = signal.signal(signal.SIGHUP, self._on_hup)

        def restore() -> None:
            signal.signal(signal.SIGHUP, previous)

        return restore

    def _on_hup(self, signum: int, frame: Any) -> None:
        self._log.info("Caught HUP, reloading config")
        self.reload_config()

    def reload_config(self) -> None:
        """Reload from the original path; errors are logged and the callbacks skipped."""
        with self._reload_lock:
            self.old_settings = dict(self.settings)
            try:
                self.load(self._path)
            except (ConfigError, OSError) as exc:
                self._log.error("Error occurred while reloading config %s: %s", self._path, exc)
                return
            for callback in self._callbacks:
                callback(self)

    def reload_config_string(self, raw: str) -> None:
        """Reload from ``raw`` and run the callbacks."""
        with self._reload_lock:
            self.old_settings = dict(self.settings)
            self.load_string(raw)
            for callback in self._callbacks:
                callback(self)

    def get(self, key: str) -> Any:
        """Return the value at dotted ``key`` or None."""
        return _lookup(key, self.settings)

    def is_set(self, key: str) -> bool:
        return self.get(key) is not None

    def get_string(self, key: str, default: str) -> str:
        value = self.get(key)
        if value is None:
            return default
        return format_value(value)

    def get_string_slice(self, key: str, default: list[str]) -> list[str]:
        value = self.get(key)
        if not isinstance(value, list):
            return default
        return [format_value(item) for item in value]

    def get_map(self, key: str, default: dict) -> dict:
        value = self.get(key)
        if not isinstance(value, dict):
            return default
        return value

    def get_int(self, key: str, default: int) -> int:
        text = self.get_string(key, str(default))
        if not _INTEGER.fullmatch(text):
            return default
        return int(text)

    def get_bool(self, key: str, default: bool) -> bool:
        text = self.get_string(key, format_value(default)).lower()
        if text in _TRUE_WORDS:
            return True
        if text in _FALSE_WORDS:
            return False
        return default

    def get_duration(self, key: str, default: timedelta) -> timedelta:
        try:
            return parse_duration(self.get_string(key, ""))
        except ValueError:
            return default

    def _resolve(self, path: Path, direct: bool, files: list[str]) -> None:
        if not path.exists():
            return
        if not path.is_dir():
            if direct or _extension(path.name) in (".yaml", ".yml"):
                files.append(os.path.abspath(path))
            return
        try:
            names = sorted(os.listdir(path))
        except OSError as exc:
            raise ConfigError(f"problem while reading directory {path}: {exc}") from exc
        for name in names:
            self._resolve(path / name, False, files)