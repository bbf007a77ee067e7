"""
Player progress: experience, coins and the RPG-style level curve.
"""

import math
from dataclasses import dataclass, field
from typing import Any, Dict, Set

MAX_LEVEL = 100
BASE_EXPERIENCE = 100
LEVEL_EXPONENT = 1.8


def experience_for_level(level: int) -> int:
    """Total experience needed to reach a level: floor(100 * (level - 1) ^ 1.8)."""
    if level <= 1:
        return 0
    return math.floor(BASE_EXPERIENCE * math.pow(level - 1, LEVEL_EXPONENT))


def level_for_experience(experience: int) -> int:
    """Highest level whose threshold the experience has reached (capped at MAX_LEVEL)."""
    if experience <= 0:
        return 1
    low, high = 1, MAX_LEVEL
    while low < high:
        mid = (low + high + 1) // 2
        if experience_for_level(mid) <= experience:
            low = mid
        else:
            high = mid - 1
    return low


def level_progress(experience: int) -> int:
    """Percent (0-100) of the way from the current level to the next."""
    level = level_for_experience(experience)
    current = experience_for_level(level)
    following = experience_for_level(level + 1)
    return min(100, math.floor((experience - current) / (following - current) * 100))


@dataclass
class PlayerStats:
    """Accumulated rewards of one user."""
    user_id: str
    experience: int = 0
    coins: int = 0
    completed_challenges: Set[str] = field(default_factory=set)

    @property
    def level(self) -> int:
        return level_for_experience(self.experience)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "experience": self.experience,
            "coins": self.coins,
            "level": self.level,
            "level_progress": level_progress(self.experience),
            "completed_challenges": sorted(self.completed_challenges),
        }
