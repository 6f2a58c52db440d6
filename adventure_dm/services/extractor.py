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
"""State-change extractor: recovers a state diff from narrative text.

Extraction fans out into independent branches that run concurrently:

- one branch per stat: a yes/no query, then (on yes) a value query whose
  absolute answer is converted to a signed delta
- one inventory branch: a yes/no query, then (on yes) an ordered list of
  add/remove entries
- optionally one quest branch with the same yes/no then list shape

The branches are joined. If any branch fails, including a structured
query with no parsable answer, the remaining branches are cancelled and
the whole extraction fails. A partial diff is never returned.
"""

import asyncio
from typing import List, Optional, Type, TypeVar

from pydantic import BaseModel

from adventure_dm.logging import StructuredLogger
from adventure_dm.models import (
    STAT_NAMES,
    ChangeDecision,
    DMNotes,
    GameState,
    InventoryAddition,
    InventoryChangeList,
    InventoryChanges,
    InventoryRemoval,
    QuestUpdate,
    QuestUpdateList,
    StatChanges,
    StateChanges,
    StatValueAnswer,
)
from adventure_dm.prompting.prompt_builder import PromptBuilder
from adventure_dm.resilience import call_with_timeout
from adventure_dm.services.errors import handle_malformed_output
from adventure_dm.services.gateway import ChatMessage, LLMGateway

logger = StructuredLogger(__name__)

STAGE = "extracting"

ModelT = TypeVar("ModelT", bound=BaseModel)


class StateChangeExtractor:
    """Asks the model which state changes a narrative implies."""

    def __init__(
        self,
        gateway: LLMGateway,
        prompt_builder: Optional[PromptBuilder] = None,
        temperature: float = 0.0,
        timeout_seconds: float = 60.0,
        extract_quests: bool = False,
    ):
        self.gateway = gateway
        self.prompt_builder = prompt_builder or PromptBuilder()
        self.temperature = temperature
        self.timeout_seconds = timeout_seconds
        self.extract_quests = extract_quests

    async def extract(
        self,
        narrative: str,
        state: GameState,
        notes: Optional[DMNotes] = None,
    ) -> StateChanges:
        """Extract a sparse diff from the narrative.

        Args:
            narrative: Full narrative text produced for this action
            state: Snapshot the deltas are computed against
            notes: DM notes, used only by the quest branch

        Returns:
            StateChanges with only the fields that changed

        Raises:
            MalformedStructuredOutputError: If any sub-query had no parsable answer
        """
        tasks = [
            asyncio.ensure_future(
                self._extract_stat_delta(narrative, stat, getattr(state.stats, stat))
            )
            for stat in STAT_NAMES
        ]
        tasks.append(asyncio.ensure_future(self._extract_inventory(narrative, state)))
        run_quests = self.extract_quests and notes is not None and bool(notes.active_quests)
        if run_quests:
            tasks.append(asyncio.ensure_future(self._extract_quest_updates(narrative, notes)))

        try:
            results = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            raise

        deltas = dict(zip(STAT_NAMES, results[:len(STAT_NAMES)]))
        inventory_changes = results[len(STAT_NAMES)]
        quest_updates = results[len(STAT_NAMES) + 1] if run_quests else None

        stat_changes = None
        if any(delta is not None for delta in deltas.values()):
            stat_changes = StatChanges(**{k: v for k, v in deltas.items() if v is not None})

        changes = StateChanges(
            inventory_changes=inventory_changes,
            stat_changes=stat_changes,
            quest_updates=quest_updates,
        )
        logger.info(
            "State changes extracted",
            changed_stats=",".join(k for k, v in deltas.items() if v is not None) or None,
            inventory_changed=inventory_changes is not None,
            quest_updates=len(quest_updates) if quest_updates else 0
        )
        return changes

    async def _ask(
        self, messages: List[ChatMessage], response_model: Type[ModelT], name: str
    ) -> ModelT:
        answer = await call_with_timeout(
            self.gateway.complete_structured(
                messages, response_model, name, temperature=self.temperature
            ),
            STAGE,
            self.timeout_seconds,
        )
        if answer is None:
            handle_malformed_output(STAGE, name, None)
        return answer

    async def _extract_stat_delta(
        self, narrative: str, stat: str, current_value: int
    ) -> Optional[int]:
        """Signed delta for one stat, or None when it did not change."""
        decision = await self._ask(
            self.prompt_builder.build_stat_change_messages(narrative, stat, current_value),
            ChangeDecision,
            f"{stat}_changed",
        )
        if not decision.change:
            return None

        answer = await self._ask(
            self.prompt_builder.build_stat_value_messages(narrative, stat, current_value),
            StatValueAnswer,
            f"{stat}_value",
        )
        delta = answer.value - current_value
        return delta or None

    async def _extract_inventory(
        self, narrative: str, state: GameState
    ) -> Optional[InventoryChanges]:
        decision = await self._ask(
            self.prompt_builder.build_inventory_change_messages(narrative, state),
            ChangeDecision,
            "inventory_changed",
        )
        if not decision.change:
            return None

        answer = await self._ask(
            self.prompt_builder.build_inventory_list_messages(narrative, state),
            InventoryChangeList,
            "inventory_changes",
        )
        additions = [
            InventoryAddition(name=entry.name, quantity=entry.quantity, description=entry.description)
            for entry in answer.items if entry.action == "add"
        ]
        removals = [
            InventoryRemoval(name=entry.name, quantity=entry.quantity)
            for entry in answer.items if entry.action == "remove"
        ]
        if not additions and not removals:
            return None
        return InventoryChanges(add=additions or None, remove=removals or None)

    async def _extract_quest_updates(
        self, narrative: str, notes: DMNotes
    ) -> Optional[List[QuestUpdate]]:
        decision = await self._ask(
            self.prompt_builder.build_quest_change_messages(narrative, notes),
            ChangeDecision,
            "quests_changed",
        )
        if not decision.change:
            return None

        answer = await self._ask(
            self.prompt_builder.build_quest_update_messages(narrative, notes),
            QuestUpdateList,
            "quest_updates",
        )
        return answer.updates or None
