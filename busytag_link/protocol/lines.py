"""Incremental splitter and classifier for the device's line protocol."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from ..core.models import DeviceEvent

_LINE_BREAK = re.compile(rb"[\r\n]+")
_PROMPT = ">"
_EVENT_KEY = "evn"


class LineKind(str, Enum):
    STRUCTURED = "structured"
    EVENT = "event"
    OK = "ok"
    ERROR = "error"
    PROMPT = "prompt"
    FRAGMENT = "fragment"


@dataclass(slots=True, frozen=True)
class ClassifiedLine:
    kind: LineKind
    text: str
    key: Optional[str] = None
    value: Optional[str] = None
    event: Optional[DeviceEvent] = None

    @property
    def is_terminal(self) -> bool:
        return self.kind in (LineKind.OK, LineKind.ERROR)


def classify_line(text: str) -> Optional[ClassifiedLine]:
    """Classify one line of device output; blank lines yield ``None``.

    Event lines are recognised first so that an ``+evn`` notification is
    never mistaken for a reply. Any other line containing ``ERROR`` ends the
    current command.
    """
    line = text.strip()
    if not line:
        return None

    if line.startswith("+") and ":" in line:
        key, _, value = line[1:].partition(":")
        if key == _EVENT_KEY:
            event_type, *args = value.split(",")
            event = DeviceEvent(event_type.strip(), tuple(arg.strip() for arg in args))
            return ClassifiedLine(LineKind.EVENT, line, key, value, event)

    if line == "OK":
        return ClassifiedLine(LineKind.OK, line)
    if "ERROR" in line:
        return ClassifiedLine(LineKind.ERROR, line)
    if line == _PROMPT:
        return ClassifiedLine(LineKind.PROMPT, line)

    if line.startswith("+") and ":" in line:
        key, _, value = line[1:].partition(":")
        return ClassifiedLine(LineKind.STRUCTURED, line, key, value)

    return ClassifiedLine(LineKind.FRAGMENT, line)


class LineClassifier:
    """Turns arbitrarily chunked bytes into classified lines.

    Bytes after the last CR/LF are held until more data arrives, except a
    lone ``>`` which the device sends without a terminator.
    """

    def __init__(self) -> None:
        self._partial = bytearray()

    @property
    def pending(self) -> bytes:
        return bytes(self._partial)

    def reset(self) -> None:
        self._partial.clear()

    def feed(self, data: bytes) -> List[ClassifiedLine]:
        if not data:
            return []
        self._partial.extend(data)

        lines: List[ClassifiedLine] = []
        cut = max(self._partial.rfind(b"\r"), self._partial.rfind(b"\n"))
        if cut >= 0:
            complete = bytes(self._partial[: cut + 1])
            del self._partial[: cut + 1]
            for raw in _LINE_BREAK.split(complete):
                classified = classify_line(raw.decode("utf-8", errors="replace"))
                if classified is not None:
                    lines.append(classified)

        if self._partial.strip() == b">":
            self._partial.clear()
            lines.append(ClassifiedLine(LineKind.PROMPT, _PROMPT))

        return lines
