"""
Severity levels and normalization of the many ways sources encode them.
"""

from enum import Enum
from typing import Any, Optional


class Severity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _ORDER.index(self)

    def __lt__(self, other):
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other):
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other):
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other):
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank >= other.rank

    def bump(self) -> "Severity":
        """Next level up; critical stays critical."""
        return _ORDER[min(self.rank + 1, len(_ORDER) - 1)]


_ORDER = [Severity.LOW, Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL]


SEVERITY_ALIASES = {
    "info": Severity.LOW,
    "informational": Severity.LOW,
    "low": Severity.LOW,
    "sev4": Severity.LOW,
    "p4": Severity.LOW,
    "moderate": Severity.MEDIUM,
    "medium": Severity.MEDIUM,
    "med": Severity.MEDIUM,
    "warning": Severity.MEDIUM,
    "warn": Severity.MEDIUM,
    "sev3": Severity.MEDIUM,
    "p3": Severity.MEDIUM,
    "high": Severity.HIGH,
    "severe": Severity.HIGH,
    "major": Severity.HIGH,
    "error": Severity.HIGH,
    "sev2": Severity.HIGH,
    "p2": Severity.HIGH,
    "critical": Severity.CRITICAL,
    "crit": Severity.CRITICAL,
    "emergency": Severity.CRITICAL,
    "fatal": Severity.CRITICAL,
    "sev1": Severity.CRITICAL,
    "p1": Severity.CRITICAL,
}


def _from_number(value: float) -> Optional[Severity]:
    if value < 0 or value > 100:
        return None

    if value <= 10:
        # CVSS-style 0-10
        if value < 4:
            return Severity.LOW
        if value < 7:
            return Severity.MEDIUM
        if value < 9:
            return Severity.HIGH
        return Severity.CRITICAL

    # Percentage risk score
    if value < 40:
        return Severity.LOW
    if value < 70:
        return Severity.MEDIUM
    if value < 90:
        return Severity.HIGH
    return Severity.CRITICAL


def normalize_severity(value: Any) -> Optional[Severity]:
    """
    Map a source-specific severity to a Severity.

    Accepts Severity members, symbolic strings ("warn", "sev1", "Critical"),
    CVSS-style numbers (0-10) and percentage scores (10-100), including
    numeric strings. Returns None for anything unrecognized.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, Severity):
        return value

    if isinstance(value, (int, float)):
        return _from_number(float(value))

    if isinstance(value, str):
        text = value.strip().lower().replace(" ", "").replace("-", "")
        if not text:
            return None
        if text in SEVERITY_ALIASES:
            return SEVERITY_ALIASES[text]
        try:
            return _from_number(float(text))
        except ValueError:
            return None

    return None


def max_severity(*values: Optional[Severity]) -> Optional[Severity]:
    """Highest of the given severities, ignoring None."""
    present = [v for v in values if v is not None]
    return max(present) if present else None
