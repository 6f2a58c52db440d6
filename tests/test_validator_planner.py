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
"""Tests for the action validator and the skill-check planner."""

import pytest

from adventure_dm.models import SkillCheckAnswer, ValidityAnswer
from adventure_dm.services.errors import (
    STRUCTURED_OUTPUT_POLICY,
    MalformedOutputPolicy,
    MalformedStructuredOutputError,
    StageTimeoutError,
    ValidationUnavailableError,
    handle_malformed_output,
)
from adventure_dm.services.gateway import GatewayError, GatewayTimeoutError
from adventure_dm.services.planner import SkillCheckPlanner
from adventure_dm.services.validator import ActionValidator


class TestActionValidator:
    """Tests for ActionValidator."""

    @pytest.mark.asyncio
    async def test_valid_action(self, fake_gateway, sample_game):
        validity = await ActionValidator(fake_gateway).validate("I search the chest", sample_game)

        assert validity.valid is True
        assert fake_gateway.structured_calls == ["action_validity"]

    @pytest.mark.asyncio
    async def test_invalid_action_keeps_reason(self, fake_gateway, sample_game):
        fake_gateway.answers["action_validity"] = ValidityAnswer(
            valid=False, reason="You cannot fly without wings."
        )

        validity = await ActionValidator(fake_gateway).validate("I fly to the moon", sample_game)

        assert validity.valid is False
        assert validity.reason == "You cannot fly without wings."

    @pytest.mark.asyncio
    async def test_malformed_output_is_invalid(self, fake_gateway, sample_game):
        """Unparsable output never lets an action through."""
        fake_gateway.answers["action_validity"] = None

        validity = await ActionValidator(fake_gateway).validate("I search", sample_game)

        assert validity.valid is False
        assert validity.reason is None

    @pytest.mark.asyncio
    async def test_gateway_failure_is_unavailable(self, fake_gateway, sample_game):
        fake_gateway.answers["action_validity"] = GatewayTimeoutError("timed out")

        with pytest.raises(ValidationUnavailableError) as exc_info:
            await ActionValidator(fake_gateway).validate("I search", sample_game)

        assert exc_info.value.stage == "validating"

    @pytest.mark.asyncio
    async def test_deadline_exceeded(self, fake_gateway, sample_game):
        fake_gateway.delays["action_validity"] = 1.0

        with pytest.raises(StageTimeoutError):
            await ActionValidator(fake_gateway, timeout_seconds=0.05).validate("I search", sample_game)

    @pytest.mark.asyncio
    async def test_prompt_embeds_action_and_state(self, sample_game):
        captured = {}

        class RecordingGateway:
            async def complete_structured(self, messages, response_model, name, temperature=None):
                captured["messages"] = messages
                captured["temperature"] = temperature
                return ValidityAnswer(valid=True, reason=None)

        await ActionValidator(RecordingGateway(), temperature=0.0).validate(
            "I search the chest", sample_game
        )

        prompt = captured["messages"][-1]["content"]
        assert "I search the chest" in prompt
        assert "Rope" in prompt
        assert captured["temperature"] == 0.0


class TestSkillCheckPlanner:
    """Tests for SkillCheckPlanner."""

    @pytest.mark.asyncio
    async def test_check_required(self, fake_gateway, sample_game):
        fake_gateway.answers["skill_check_plan"] = SkillCheckAnswer(
            required=True, stat="dexterity", difficulty_category="medium", reason="Stiff lock"
        )

        request = await SkillCheckPlanner(fake_gateway).plan("I pick the lock", sample_game)

        assert request.is_actionable
        assert request.stat == "dexterity"
        assert request.difficulty_category == "medium"
        assert request.reason == "Stiff lock"

    @pytest.mark.asyncio
    async def test_no_check_required(self, fake_gateway, sample_game):
        request = await SkillCheckPlanner(fake_gateway).plan("I look around", sample_game)

        assert request.required is False
        assert not request.is_actionable

    @pytest.mark.asyncio
    async def test_malformed_output_means_no_check(self, fake_gateway, sample_game):
        fake_gateway.answers["skill_check_plan"] = None

        request = await SkillCheckPlanner(fake_gateway).plan("I pick the lock", sample_game)

        assert request is None

    @pytest.mark.asyncio
    async def test_required_without_stat_is_not_actionable(self, fake_gateway, sample_game):
        fake_gateway.answers["skill_check_plan"] = SkillCheckAnswer(
            required=True, stat=None, difficulty_category="hard", reason=None
        )

        request = await SkillCheckPlanner(fake_gateway).plan("I pick the lock", sample_game)

        assert request.required is True
        assert not request.is_actionable

    @pytest.mark.asyncio
    async def test_gateway_failure_is_unavailable(self, fake_gateway, sample_game):
        fake_gateway.answers["skill_check_plan"] = GatewayError("boom")

        with pytest.raises(ValidationUnavailableError) as exc_info:
            await SkillCheckPlanner(fake_gateway).plan("I pick the lock", sample_game)

        assert exc_info.value.stage == "planning"


class TestMalformedOutputPolicy:
    """Tests for the per-stage structured-output policy."""

    def test_policy_table(self):
        assert STRUCTURED_OUTPUT_POLICY["validating"] is MalformedOutputPolicy.CONSERVATIVE_DEFAULT
        assert STRUCTURED_OUTPUT_POLICY["planning"] is MalformedOutputPolicy.CONSERVATIVE_DEFAULT
        assert STRUCTURED_OUTPUT_POLICY["extracting"] is MalformedOutputPolicy.FAIL

    def test_conservative_default_returns_default(self):
        assert handle_malformed_output("planning", "skill_check_plan", None) is None

    def test_fail_policy_raises(self):
        with pytest.raises(MalformedStructuredOutputError, match="health_value"):
            handle_malformed_output("extracting", "health_value", None)
