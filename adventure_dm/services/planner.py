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
"""Skill-check planner: decides whether an action warrants a dice roll."""

from typing import Optional

from adventure_dm.logging import StructuredLogger
from adventure_dm.models import GameState, SkillCheckAnswer, SkillCheckRequest
from adventure_dm.prompting.prompt_builder import PromptBuilder
from adventure_dm.resilience import call_with_timeout
from adventure_dm.services.errors import ValidationUnavailableError, handle_malformed_output
from adventure_dm.services.gateway import GatewayError, LLMGateway

logger = StructuredLogger(__name__)

STAGE = "planning"


class SkillCheckPlanner:
    """Asks the model which stat and difficulty, if any, an action tests.

    Returns None ("no check") when the output cannot be parsed. A verdict
    with required=True but a missing stat or category is returned as-is;
    callers use SkillCheckRequest.is_actionable to decide whether to roll.
    """

    def __init__(
        self,
        gateway: LLMGateway,
        prompt_builder: Optional[PromptBuilder] = None,
        temperature: float = 0.0,
        timeout_seconds: float = 60.0,
    ):
        self.gateway = gateway
        self.prompt_builder = prompt_builder or PromptBuilder()
        self.temperature = temperature
        self.timeout_seconds = timeout_seconds

    async def plan(self, action: str, state: GameState) -> Optional[SkillCheckRequest]:
        messages = self.prompt_builder.build_skill_check_messages(action, state)
        try:
            answer = await call_with_timeout(
                self.gateway.complete_structured(
                    messages, SkillCheckAnswer, "skill_check_plan", temperature=self.temperature
                ),
                STAGE,
                self.timeout_seconds,
            )
        except GatewayError as e:
            raise ValidationUnavailableError(
                f"Skill-check planning unavailable: {e}", stage=STAGE
            ) from e

        if answer is None:
            return handle_malformed_output(STAGE, "skill_check_plan", None)

        request = SkillCheckRequest(
            required=answer.required,
            stat=answer.stat,
            difficulty_category=answer.difficulty_category,
            reason=answer.reason,
        )
        if request.required and not request.is_actionable:
            logger.warning(
                "Planner required a check without stat or category",
                stat=request.stat,
                difficulty_category=request.difficulty_category
            )
        else:
            logger.info(
                "Skill check planned",
                required=request.required,
                stat=request.stat,
                difficulty_category=request.difficulty_category
            )
        return request
