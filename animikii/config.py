"""Runtime configuration and the loaders that normalise it."""

from dataclasses import dataclass, fields
import json
from pathlib import Path
import re

from .constants import LOGBOOK_FILE


def _capacity(name, value):
    if value is None or (isinstance(value, str) and value.strip().lower() in ("", "none", "unbounded")):
        return None
    if isinstance(value, bool):
        raise ValueError(f"{name} must be an integer or None, got {value!r}")
    value = int(value)
    if value < 0:
        raise ValueError(f"{name} must not be negative, got {value}")
    return value


def _flag(value):
    if isinstance(value, str):
        text = value.strip().lower()
        if text in ("1", "true", "yes", "on"):
            return True
        if text in ("0", "false", "no", "off"):
            return False
        raise ValueError(f"Invalid boolean setting: {value!r}")
    return bool(value)


@dataclass
class RuntimeConfig:
    """Settings a :class:`~animikii.runtime.system.Runtime` is built from."""

    shards: int = 1
    mailbox_capacity: int | None = None
    channel_capacity: int | None = None
    trace: bool = True
    logbook_path: str = LOGBOOK_FILE
    max_steps: int | None = None

    def __post_init__(self):
        if isinstance(self.shards, bool):
            raise ValueError("shards must be a positive integer")
        self.shards = int(self.shards)
        if self.shards < 1:
            raise ValueError(f"shards must be at least 1, got {self.shards}")
        self.mailbox_capacity = _capacity("mailbox_capacity", self.mailbox_capacity)
        self.channel_capacity = _capacity("channel_capacity", self.channel_capacity)
        self.trace = _flag(self.trace)
        self.logbook_path = str(self.logbook_path or LOGBOOK_FILE).strip()
        if self.max_steps is not None:
            self.max_steps = int(self.max_steps)
            if self.max_steps < 1:
                raise ValueError(f"max_steps must be positive, got {self.max_steps}")

    def to_dict(self):
        return {
            "shards": self.shards,
            "mailbox_capacity": self.mailbox_capacity,
            "channel_capacity": self.channel_capacity,
            "trace": self.trace,
            "logbook_path": self.logbook_path,
            "max_steps": self.max_steps,
        }

    @classmethod
    def from_dict(cls, data):
        if not isinstance(data, dict):
            raise TypeError("Runtime config must be built from a mapping")
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known - {"mailbox", "capacity", "threads"})
        if unknown:
            raise ValueError(f"Unknown runtime settings: {', '.join(unknown)}")
        values = {key: data[key] for key in known if key in data}
        if "shards" not in values and "threads" in data:
            values["shards"] = data["threads"]
        if "mailbox_capacity" not in values and "mailbox" in data:
            values["mailbox_capacity"] = data["mailbox"]
        if "channel_capacity" not in values and "capacity" in data:
            values["channel_capacity"] = data["capacity"]
        return cls(**values)


INLINE_SETTING_PATTERN = re.compile(r"^\s*(?P<key>[a-z_]+)\s*[=:]\s*(?P<value>.*?)\s*$")


def parse_inline_config(text):
    """Parse ``key = value`` lines (``#`` starts a comment) into a mapping."""

    settings = {}
    for line in text.splitlines():
        entry = line.strip()
        if not entry or entry.startswith("#"):
            continue
        match = INLINE_SETTING_PATTERN.match(entry)
        if not match:
            raise ValueError(f"Invalid runtime setting: {entry}")
        settings[match.group("key")] = match.group("value")
    return settings


def load_config(source=None):
    """Normalise any supported config source into a RuntimeConfig.

    Accepts a RuntimeConfig, a mapping, JSON text, inline ``key=value``
    text, or a path to a JSON file.
    """

    if source is None:
        return RuntimeConfig()
    if isinstance(source, RuntimeConfig):
        return source
    if isinstance(source, dict):
        # Either the settings themselves or a wrapper with a "runtime" key.
        if "runtime" in source and isinstance(source["runtime"], dict):
            return RuntimeConfig.from_dict(source["runtime"])
        return RuntimeConfig.from_dict(source)
    if isinstance(source, Path):
        return load_config(json.loads(source.read_text(encoding="utf-8")))
    if isinstance(source, str):
        trimmed = source.strip()
        if not trimmed:
            return RuntimeConfig()
        if trimmed[0] == "{":
            return load_config(json.loads(trimmed))
        if "\n" not in trimmed and Path(trimmed).is_file():
            return load_config(Path(trimmed))
        return RuntimeConfig.from_dict(parse_inline_config(trimmed))
    raise TypeError(f"Unsupported runtime config type: {type(source)!r}")


__all__ = [
    "RuntimeConfig",
    "load_config",
    "parse_inline_config",
]
