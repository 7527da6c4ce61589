"""Wire-level helpers for the BusyTag AT command grammar."""

from .lines import ClassifiedLine, LineClassifier, LineKind, classify_line

__all__ = ["ClassifiedLine", "LineClassifier", "LineKind", "classify_line"]
