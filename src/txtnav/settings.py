from __future__ import annotations

import json
import math
import threading
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Mapping

SETTINGS_FILENAME = "settings.json"

DEFAULT_FONT_SIZE = 15.0
DEFAULT_FOREGROUND_COLOR = "#C8C8C8"
DEFAULT_BACKGROUND_COLOR = "#00000057"
DEFAULT_WINDOW_WIDTH = 300.0
DEFAULT_WINDOW_HEIGHT = 400.0
DEFAULT_LINE_HEIGHT = 0.1
DEFAULT_PARAGRAPH_SPACING = 0.0
DEFAULT_BACKGROUND_OPACITY = 0.6

_OPTIONAL_NUMBERS = frozenset({"window_x", "window_y"})


@dataclass
class ReaderSettings:
    font_size: float = DEFAULT_FONT_SIZE
    foreground_color: str = DEFAULT_FOREGROUND_COLOR
    background_color: str = DEFAULT_BACKGROUND_COLOR
    background_opacity: float = DEFAULT_BACKGROUND_OPACITY
    window_width: float = DEFAULT_WINDOW_WIDTH
    window_height: float = DEFAULT_WINDOW_HEIGHT
    window_x: float | None = None
    window_y: float | None = None
    line_height: float = DEFAULT_LINE_HEIGHT
    paragraph_spacing: float = DEFAULT_PARAGRAPH_SPACING
    font_family: str | None = None

    def as_payload(self) -> dict[str, object]:
        return asdict(self)

    @classmethod
    def from_payload(cls, payload: object) -> "ReaderSettings":
        """Build settings from decoded JSON, keeping defaults for bad fields."""
        settings = cls()
        if isinstance(payload, Mapping):
            settings._merge(payload)
        return settings

    def updated(self, payload: Mapping[str, object]) -> "ReaderSettings":
        """Copy with ``payload`` applied; invalid fields keep their current value."""
        settings = replace(self)
        settings._merge(payload)
        return settings

    def _merge(self, payload: Mapping[str, object]) -> None:
        for field in fields(self):
            if field.name not in payload:
                continue
            value = payload[field.name]
            current = getattr(self, field.name)
            if isinstance(current, str) or field.name == "font_family":
                if isinstance(value, str) or (value is None and field.name == "font_family"):
                    setattr(self, field.name, value)
                continue
            if value is None and field.name in _OPTIONAL_NUMBERS:
                setattr(self, field.name, None)
                continue
            number = _finite_number(value)
            if number is not None:
                setattr(self, field.name, number)


def _finite_number(value: object) -> float | None:
    # JSON allows NaN, Infinity and integers too large for a float.
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    try:
        number = float(value)
    except OverflowError:
        return None
    return number if math.isfinite(number) else None


class SettingsStore:
    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.Lock()

    def load(self) -> ReaderSettings:
        with self._lock:
            return self._read()

    def save(self, settings: ReaderSettings) -> None:
        with self._lock:
            self._write(settings)

    def ensure_valid(self) -> ReaderSettings:
        """Rewrite the file with defaults when it is missing or unreadable."""
        with self._lock:
            raw = self._read_raw()
            if not isinstance(raw, dict):
                settings = ReaderSettings()
                self._write(settings)
                return settings
            return ReaderSettings.from_payload(raw)

    def reset_to_default(self) -> ReaderSettings:
        settings = ReaderSettings()
        self.save(settings)
        return settings

    def _read_raw(self) -> object:
        try:
            return json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return None

    def _read(self) -> ReaderSettings:
        return ReaderSettings.from_payload(self._read_raw())

    def _write(self, settings: ReaderSettings) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(
            json.dumps(settings.as_payload(), ensure_ascii=False, indent=2),
            encoding="utf-8",
        )
