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
"""Tests for the skill-check dice mechanic."""

import pytest
from pydantic import ValidationError

from adventure_dm.services.skill_check import (
    BASE_DIFFICULTY,
    DIFFICULTY_OFFSETS,
    SkillCheckResolver,
    difficulty_for,
    resolve_skill_check,
)


def test_difficulty_table():
    """Test that every category maps to base difficulty plus its offset."""
    assert difficulty_for("easy") == 5
    assert difficulty_for("somewhat easy") == 7
    assert difficulty_for("medium") == BASE_DIFFICULTY == 8
    assert difficulty_for("hard") == 10
    assert difficulty_for("very hard") == 12
    assert difficulty_for("extremely hard") == 14


def test_unknown_category_rejected():
    with pytest.raises(ValueError, match="Unknown difficulty category"):
        difficulty_for("impossible")


def test_search_the_chest_example():
    """Dexterity 5, roll 7, medium: total 12 beats 8 by 4."""
    result = resolve_skill_check("dexterity", "medium", stat_value=5, roll=7)

    assert result.performed is True
    assert result.stat == "dexterity"
    assert result.roll == 7
    assert result.stat_value == 5
    assert result.difficulty == 8
    assert result.total == 12
    assert result.success is True
    assert result.degree == 4


def test_tie_is_success():
    result = resolve_skill_check("strength", "hard", stat_value=4, roll=6)

    assert result.total == result.difficulty
    assert result.success is True
    assert result.degree == 0


def test_failure_has_negative_degree():
    result = resolve_skill_check("luck", "very hard", stat_value=1, roll=3)

    assert result.success is False
    assert result.degree == 4 - 12


def test_resolution_is_pure():
    """Same inputs always give the same result."""
    first = resolve_skill_check("intelligence", "hard", stat_value=6, roll=5, reason="Old runes")
    second = resolve_skill_check("intelligence", "hard", stat_value=6, roll=5, reason="Old runes")

    assert first == second
    assert first.reason == "Old runes"


@pytest.mark.parametrize("category", list(DIFFICULTY_OFFSETS))
def test_every_category_can_succeed_and_fail(category):
    """With a modest stat, each category has both outcomes on a d12."""
    outcomes = {
        resolve_skill_check("strength", category, stat_value=2, roll=roll).success
        for roll in range(1, 13)
    }
    assert outcomes == {True, False}


@pytest.mark.parametrize("roll", [0, 13, -1])
def test_roll_out_of_range_rejected(roll):
    with pytest.raises(ValueError, match="Roll must be between"):
        resolve_skill_check("dexterity", "medium", stat_value=5, roll=roll)


def test_result_is_frozen():
    result = resolve_skill_check("dexterity", "medium", stat_value=5, roll=7)

    with pytest.raises(ValidationError):
        result.roll = 12


def test_describe_summarizes_outcome():
    result = resolve_skill_check("dexterity", "medium", stat_value=5, roll=7)

    assert result.describe() == (
        "Skill check performed: dexterity (value: 5) + d12 roll (7) vs difficulty 8. "
        "Result: Success (degree: 4)."
    )


class TestSkillCheckResolver:
    """Tests for SkillCheckResolver."""

    def test_rolls_stay_on_the_die(self):
        resolver = SkillCheckResolver(seed=123)
        rolls = [resolver.roll() for _ in range(500)]

        assert min(rolls) >= 1
        assert max(rolls) <= 12
        assert set(rolls) == set(range(1, 13))

    def test_seed_makes_rolls_reproducible(self):
        first = SkillCheckResolver(seed=42)
        second = SkillCheckResolver(seed=42)

        assert [first.roll() for _ in range(20)] == [second.roll() for _ in range(20)]

    def test_resolve_uses_the_rolled_value(self, fixed_resolver):
        result = fixed_resolver.resolve("dexterity", "medium", 5, reason="Stiff lock")

        assert result.roll == 7
        assert result.total == 12
        assert result.reason == "Stiff lock"
