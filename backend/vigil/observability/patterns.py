"""
Generic pattern detectors run by the structured logger on every append.

Both detectors are pure: they inspect an entry (and, for the gap
detector, recent history) and return a Finding, never a log entry.
The logger turns findings into new entries.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .models import Highlight, LogCategory, LogEntry, LogLevel

PATTERN_COMPONENT = "PATTERN_DETECTOR"


@dataclass
class Finding:
    level: LogLevel
    action: str
    data: Dict[str, Any] = field(default_factory=dict)


def find_duplicate_highlights(highlights: Sequence[Highlight]) -> List[Highlight]:
    """
    Return every highlight whose (start, end, text) key was already seen.

    The first occurrence of a key is not included; each repeat is.
    """
    seen = set()
    duplicates: List[Highlight] = []
    for highlight in highlights:
        if highlight.key in seen:
            duplicates.append(highlight)
        else:
            seen.add(highlight.key)
    return duplicates


class DuplicateEffectDetector:
    """Flags UI entries that list the same region more than once."""

    def inspect(self, entry: LogEntry) -> Optional[Finding]:
        if entry.category != LogCategory.UI:
            return None
        highlights = getattr(entry.data, "highlights", None) or []
        duplicates = find_duplicate_highlights(highlights)
        if not duplicates:
            return None
        return Finding(
            level=LogLevel.WARN,
            action="DUPLICATE_PROCESSING",
            data={
                "source_sequence": entry.sequence,
                "source_action": entry.action,
                "duplicates": [d.model_dump() for d in duplicates],
                "keys": sorted({list_key(d) for d in duplicates}),
                "pattern": "Same region rendered more than once - needs review",
            },
        )


def list_key(highlight: Highlight) -> str:
    start, end, text = highlight.key
    return f"{start}-{end}-{text}"


class SuccessFailureGapDetector:
    """
    Flags INFO entries claiming success shortly after a visible UI error.

    Heuristic: the keyword list and window are configuration, not a
    principled derivation.
    """

    def __init__(self, window_seconds: float = 5.0, success_keywords: Iterable[str] = ("success",)):
        self.window_seconds = window_seconds
        self.success_keywords = [k.lower() for k in success_keywords]

    def claims_success(self, entry: LogEntry) -> bool:
        if entry.level != LogLevel.INFO or entry.component == PATTERN_COMPONENT:
            return False
        text = entry.data.text()
        return any(keyword in text for keyword in self.success_keywords)

    def inspect(self, entry: LogEntry, history: Sequence[LogEntry]) -> Optional[Finding]:
        if not self.claims_success(entry):
            return None

        cutoff = entry.timestamp - self.window_seconds
        visual_failures: List[LogEntry] = []
        for previous in reversed(history):
            if previous.sequence >= entry.sequence:
                continue
            if previous.timestamp < cutoff:
                break
            if previous.category == LogCategory.UI and previous.level == LogLevel.ERROR:
                visual_failures.append(previous)

        if not visual_failures:
            return None
        return Finding(
            level=LogLevel.ERROR,
            action="VISUAL_CONSOLE_GAP",
            data={
                "success_sequence": entry.sequence,
                "success_action": entry.action,
                "visual_failure_sequences": [e.sequence for e in reversed(visual_failures)],
                "window_seconds": self.window_seconds,
                "pattern": "Reported success despite visible failure",
            },
        )
