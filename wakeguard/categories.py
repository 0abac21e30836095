from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Literal

from wakeguard.platform.devices import Device


CategoryName = Literal["audio", "all"]


@dataclass(frozen=True)
class Category:
    name: CategoryName
    title: str
    name_tokens: tuple[str, ...]  # matched case-insensitively anywhere in the friendly name
    class_tags: tuple[str, ...]  # exact device class, case-insensitive

    def pattern(self) -> re.Pattern[str]:
        return re.compile("|".join(re.escape(t) for t in self.name_tokens), re.IGNORECASE)

    def matches(self, device: Device) -> bool:
        if device.friendly_name and self.pattern().search(device.friendly_name):
            return True
        return device.device_class.lower() in {c.lower() for c in self.class_tags}


_AUDIO_TOKENS = ("Audio", "Sound", "Headset", "Speaker", "Microphone")
_AUDIO_CLASSES = ("AudioEndpoint", "MEDIA")

CATEGORIES: dict[str, Category] = {
    "audio": Category(
        name="audio",
        title="USB audio devices",
        name_tokens=_AUDIO_TOKENS,
        class_tags=_AUDIO_CLASSES,
    ),
    "all": Category(
        name="all",
        title="USB audio and input devices",
        name_tokens=(*_AUDIO_TOKENS, "Mouse", "Keyboard"),
        class_tags=(*_AUDIO_CLASSES, "HIDClass"),
    ),
}


def get_category(name: str) -> Category:
    c = CATEGORIES.get(name.strip().lower())
    if c is None:
        raise ValueError(f"Unknown device category: {name!r} (expected one of {', '.join(CATEGORIES)})")
    return c


def eligible(device: Device) -> bool:
    return device.is_ok and device.is_usb


def classify_devices(devices: Iterable[Device], category: str) -> list[Device]:
    """Eligible devices matching the category, in enumeration order."""
    cat = get_category(category)
    return [d for d in devices if eligible(d) and cat.matches(d)]
