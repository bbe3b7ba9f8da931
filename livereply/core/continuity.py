"""Decide whether new reply text extends what was already shown or starts over."""

from __future__ import annotations

# prev must be at least this long to be matched away from the start of next
MIN_DRIFT_MATCH = 16
MAX_DRIFT_OFFSET = 32
MIN_DRIFT_RATIO = 0.3


def is_continuation(prev: str, next_text: str) -> bool:
    if not prev:
        return True
    if next_text.startswith(prev) or prev.startswith(next_text):
        return True
    if len(prev) >= MIN_DRIFT_MATCH and len(prev) > len(next_text) * MIN_DRIFT_RATIO:
        idx = next_text.find(prev)
        if 0 <= idx <= MAX_DRIFT_OFFSET:
            return True
    return False
