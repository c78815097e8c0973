"""
Common utility functions.
"""

from typing import Any, Optional


def format_time(seconds: Optional[int]) -> str:
    """
    Format a remaining-time value for display.

    Args:
        seconds: Seconds remaining, or None for untimed sessions

    Returns:
        "M:SS", "H:MM:SS", or "--:--" when untimed
    """
    if seconds is None:
        return "--:--"

    seconds = max(0, int(seconds))
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)

    if hours > 0:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def is_empty_answer(value: Any) -> bool:
    """
    Check whether an answer payload carries no answer.

    Payloads follow the backend shapes, e.g. {"selected_option_id": ...},
    {"selected_option_ids": [...]} or {"text_answer": "..."}.

    Args:
        value: Answer payload

    Returns:
        True if nothing is selected or typed
    """
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, dict):
        return all(is_empty_answer(v) for v in value.values())
    if isinstance(value, (list, tuple, set)):
        return len(value) == 0
    return False


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """
    Exponential backoff delay before retry number `attempt` (1-based).

    Args:
        attempt: Attempt that just failed
        base: Delay after the first failure
        cap: Upper bound

    Returns:
        Seconds to wait
    """
    return min(cap, base * (2 ** (attempt - 1)))
