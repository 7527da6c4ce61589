"""Canned LED animations understood by every firmware revision."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Tuple

from .models import PatternLine


@dataclass(slots=True, frozen=True)
class PatternPreset:
    title: str
    lines: Tuple[PatternLine, ...]


_COLORS: Tuple[Tuple[str, str, str], ...] = (
    # name, full colour, dimmed colour used by pulses
    ("red", "FF0000", "110000"),
    ("green", "00FF00", "001100"),
    ("blue", "0000FF", "000011"),
    ("yellow", "FFFF00", "111100"),
    ("cyan", "00FFFF", "001111"),
    ("magenta", "FF00FF", "110011"),
    ("white", "FFFFFF", "111111"),
)

# Single lit LED walking across the strip, with bit 7 set on every frame.
_RUNNING_BITS = (129, 130, 132, 136, 144, 160, 192)


def _build() -> Dict[str, PatternPreset]:
    presets: Dict[str, PatternPreset] = {
        "default": PatternPreset(
            "Default",
            (PatternLine(127, "1291AF", 100, 0), PatternLine(127, "FF0000", 100, 0)),
        ),
        "police1": PatternPreset(
            "Police1",
            (
                PatternLine(120, "FF0000", 5, 50),
                PatternLine(120, "000000", 5, 50),
                PatternLine(15, "0000FF", 5, 50),
                PatternLine(15, "000000", 5, 50),
            ),
        ),
        "police2": PatternPreset(
            "Police2",
            tuple(
                PatternLine(bits, color, 3, 20)
                for bits, lit in ((120, "FF0000"), (15, "0000FF"))
                for color in (lit, "000000", lit, "000000")
            ),
        ),
    }

    for name, full, dim in _COLORS:
        label = name.capitalize()
        presets[f"{name}-flashes"] = PatternPreset(
            f"{label} flashes",
            (PatternLine(127, full, 5, 10), PatternLine(127, "000000", 5, 10)),
        )
        presets[f"{name}-running"] = PatternPreset(
            f"{label} running",
            tuple(PatternLine(bits, full, 10, 0) for bits in _RUNNING_BITS),
        )
        presets[f"{name}-pulses"] = PatternPreset(
            f"{label} pulses",
            (PatternLine(127, full, 150, 10), PatternLine(127, dim, 150, 10)),
        )

    return presets


PATTERNS: Dict[str, PatternPreset] = _build()


def get_pattern(name: str) -> List[PatternLine]:
    """Return the frames of a named preset.

    Raises ``KeyError`` for unknown names.
    """
    key = name.strip().lower().replace(" ", "-").replace("_", "-")
    return list(PATTERNS[key].lines)


def pattern_names() -> List[str]:
    return sorted(PATTERNS)
