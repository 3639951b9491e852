"""Pre-dispatch content safety filter.

Rejects operation input that asks for destructive commands or malware
before anything is enriched, charged or sent to the model.  The filter
is stateless and does not depend on the caller's scope.
"""

import re
from dataclasses import dataclass
from enum import Enum

# ---------------------------------------------------------------------------
# Pattern registry
# ---------------------------------------------------------------------------


class PatternCategory(Enum):
    DESTRUCTIVE_COMMAND = "destructive_command"
    MALWARE = "malware"


@dataclass(frozen=True)
class SafetyPattern:
    name: str
    regex: re.Pattern[str]
    category: PatternCategory


_CORE_PATTERNS: tuple[SafetyPattern, ...] = (
    SafetyPattern(
        name="recursive_root_delete",
        regex=re.compile(r"rm\s+-rf\s+/", re.IGNORECASE),
        category=PatternCategory.DESTRUCTIVE_COMMAND,
    ),
    SafetyPattern(
        name="windows_system_drive_delete",
        regex=re.compile(r"del\s+/s\s+/q\s+c:\\", re.IGNORECASE),
        category=PatternCategory.DESTRUCTIVE_COMMAND,
    ),
    SafetyPattern(
        name="format_system_drive",
        regex=re.compile(r"format\s+c:", re.IGNORECASE),
        category=PatternCategory.DESTRUCTIVE_COMMAND,
    ),
    SafetyPattern(
        name="malware_keyword",
        regex=re.compile(r"malware|virus|backdoor", re.IGNORECASE),
        category=PatternCategory.MALWARE,
    ),
)


class ContentRejectedError(Exception):
    """Raised when input matches a safety pattern."""

    def __init__(self, pattern_name: str, category: PatternCategory):
        self.pattern_name = pattern_name
        self.category = category
        super().__init__("Content contains potentially harmful instructions")


# ---------------------------------------------------------------------------
# Filter
# ---------------------------------------------------------------------------


class ContentSafetyFilter:
    """Regex-based rejection of unsafe operation input.

    Parameters
    ----------
    extra_patterns : tuple of ``SafetyPattern``, optional
        Additional patterns checked after the core set.
    """

    def __init__(self, extra_patterns: tuple[SafetyPattern, ...] = ()) -> None:
        self._patterns = _CORE_PATTERNS + extra_patterns

    @property
    def pattern_count(self) -> int:
        return len(self._patterns)

    def matches(self, text: str) -> list[str]:
        """Return the names of every pattern found in *text*."""
        return [pattern.name for pattern in self._patterns if pattern.regex.search(text)]

    def scan(self, text: str) -> None:
        """Raise ``ContentRejectedError`` on the first matching pattern."""
        for pattern in self._patterns:
            if pattern.regex.search(text):
                raise ContentRejectedError(pattern.name, pattern.category)
