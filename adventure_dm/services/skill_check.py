# Copyright 2025 John Brosnihan
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Skill-check dice mechanic.

A check rolls 1d12, adds the relevant stat and compares the total to a
difficulty derived from the category:

    difficulty = BASE_DIFFICULTY + DIFFICULTY_OFFSETS[category]
    success    = stat_value + roll >= difficulty
    degree     = stat_value + roll - difficulty

resolve_skill_check is pure; SkillCheckResolver supplies the roll.
"""

import random
from typing import Optional

from adventure_dm.logging import StructuredLogger
from adventure_dm.models import SkillCheckResult

logger = StructuredLogger(__name__)

BASE_DIFFICULTY = 8
DIE_SIDES = 12

DIFFICULTY_OFFSETS = {
    "easy": -3,
    "somewhat easy": -1,
    "medium": 0,
    "hard": 2,
    "very hard": 4,
    "extremely hard": 6,
}


def difficulty_for(category: str) -> int:
    """Target number for a difficulty category.

    Raises:
        ValueError: If the category is unknown
    """
    if category not in DIFFICULTY_OFFSETS:
        raise ValueError(f"Unknown difficulty category: {category}")
    return BASE_DIFFICULTY + DIFFICULTY_OFFSETS[category]


def resolve_skill_check(
    stat: str,
    category: str,
    stat_value: int,
    roll: int,
    reason: Optional[str] = None,
) -> SkillCheckResult:
    """Resolve a skill check for a given roll.

    Args:
        stat: Stat being tested
        category: Difficulty category
        stat_value: Player's current value for the stat
        roll: Die result in [1, 12]
        reason: Optional planner explanation carried into the result

    Returns:
        SkillCheckResult (same inputs always give the same result)
    """
    if not 1 <= roll <= DIE_SIDES:
        raise ValueError(f"Roll must be between 1 and {DIE_SIDES}, got {roll}")

    difficulty = difficulty_for(category)
    total = stat_value + roll
    return SkillCheckResult(
        performed=True,
        stat=stat,
        roll=roll,
        stat_value=stat_value,
        difficulty=difficulty,
        total=total,
        success=total >= difficulty,
        degree=total - difficulty,
        reason=reason,
    )


class SkillCheckResolver:
    """Rolls dice for skill checks.

    Uses a non-cryptographic random.Random instance. Pass a seed for
    reproducible rolls in tests and replays.
    """

    def __init__(self, seed: Optional[int] = None):
        self.rng = random.Random(seed)
        if seed is not None:
            logger.info("SkillCheckResolver initialized with seed", seed=seed)

    def roll(self) -> int:
        return self.rng.randint(1, DIE_SIDES)

    def resolve(
        self,
        stat: str,
        category: str,
        stat_value: int,
        reason: Optional[str] = None,
    ) -> SkillCheckResult:
        """Roll the die and resolve the check."""
        result = resolve_skill_check(stat, category, stat_value, self.roll(), reason=reason)
        logger.info(
            "Skill check resolved",
            stat=stat,
            category=category,
            roll=result.roll,
            total=result.total,
            difficulty=result.difficulty,
            success=result.success
        )
        return result
