"""Fixed backoff ladder lookups."""

from typing import Sequence


def ladder_delay_seconds(ladder: Sequence[int], attempt_count: int) -> int:
    """Delay before the next try after ``attempt_count`` failed attempts.

    Attempts past the end of the ladder reuse its last entry.
    """
    if not ladder:
        raise ValueError("backoff ladder is empty")
    index = min(max(int(attempt_count) - 1, 0), len(ladder) - 1)
    return int(ladder[index])
