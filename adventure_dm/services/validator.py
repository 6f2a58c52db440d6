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
"""Action validator: decides whether a player action is legal in-world."""

from typing import Optional

from adventure_dm.logging import StructuredLogger, sanitize_for_log
from adventure_dm.models import ActionValidity, GameState, ValidityAnswer
from adventure_dm.prompting.prompt_builder import PromptBuilder
from adventure_dm.resilience import call_with_timeout
from adventure_dm.services.errors import ValidationUnavailableError, handle_malformed_output
from adventure_dm.services.gateway import GatewayError, LLMGateway

logger = StructuredLogger(__name__)

STAGE = "validating"


class ActionValidator:
    """Asks the model to judge a player action against the game state.

    Missing or malformed output is treated as invalid, never as valid.
    Gateway failures surface as ValidationUnavailableError.
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

    async def validate(self, action: str, state: GameState) -> ActionValidity:
        messages = self.prompt_builder.build_validity_messages(action, state)
        try:
            answer = await call_with_timeout(
                self.gateway.complete_structured(
                    messages, ValidityAnswer, "action_validity", temperature=self.temperature
                ),
                STAGE,
                self.timeout_seconds,
            )
        except GatewayError as e:
            raise ValidationUnavailableError(
                f"Action validation unavailable: {e}", stage=STAGE
            ) from e

        if answer is None:
            return handle_malformed_output(
                STAGE, "action_validity", ActionValidity(valid=False, reason=None)
            )

        logger.info(
            "Action validated",
            valid=answer.valid,
            action=sanitize_for_log(action, max_length=80)
        )
        return ActionValidity(valid=answer.valid, reason=answer.reason)
