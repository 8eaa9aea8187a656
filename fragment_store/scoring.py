"""
Pure scoring functions: decay curve and cosine similarity.

Kept free of storage so maintenance and retrieval math can be tested alone.
"""

import math
from datetime import datetime
from typing import Optional, Sequence

DECAY_FLOOR = 0.04
DECAY_CEILING = 1.0
GC_THRESHOLD = 0.05
ACCESS_BOOST = 0.1
DEFAULT_HALF_LIFE_DAYS = 30.0
# Bumped scores are rounded so repeated +0.1 steps land on exact tenths.
SCORE_PRECISION = 6


def decay_score(age_days: float, half_life_days: float) -> float:
    """
    Geometric decay with a hard floor.

    score = max(0.5 ** (age_days / half_life_days), DECAY_FLOOR)
    Negative ages count as zero; half_life_days <= 0 uses the default.
    """
    if half_life_days <= 0:
        half_life_days = DEFAULT_HALF_LIFE_DAYS
    age = max(0.0, float(age_days))
    return min(DECAY_CEILING, max(math.pow(0.5, age / half_life_days), DECAY_FLOOR))


def last_active(updated_at: datetime, accessed_at: Optional[datetime]) -> datetime:
    if accessed_at is not None and accessed_at > updated_at:
        return accessed_at
    return updated_at


def age_in_days(now: datetime, then: datetime) -> float:
    return max(0.0, (now - then).total_seconds() / 86400.0)


def bumped_score(current: float) -> float:
    return round(min(DECAY_CEILING, float(current) + ACCESS_BOOST), SCORE_PRECISION)


def is_valid_decay_score(value: float) -> bool:
    return DECAY_FLOOR <= value <= DECAY_CEILING


def cosine_similarity(v1: Sequence[float], v2: Sequence[float]) -> float:
    # Empty, mismatched or zero-norm inputs score 0 rather than raising.
    if not v1 or not v2 or len(v1) != len(v2):
        return 0.0

    dot = 0.0
    norm1 = 0.0
    norm2 = 0.0
    for a, b in zip(v1, v2):
        dot += a * b
        norm1 += a * a
        norm2 += b * b

    denom = math.sqrt(norm1) * math.sqrt(norm2)
    if denom == 0:
        return 0.0
    return dot / denom
