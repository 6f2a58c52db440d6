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
"""Prompt builder for constructing LLM messages from game context."""

import json
from typing import Dict, List, Optional

from adventure_dm.models import DMNotes, GameState, SkillCheckResult

ChatMessage = Dict[str, str]


class PromptBuilder:
    """Builds the message lists sent to the language model.

    This class composes:
    - The judging prompt used by the action validator
    - The planning prompt used to decide on skill checks
    - The DM system prompt (state summary plus hidden DM notes)
    - Narrative history for streamed generation
    - The yes/no and value prompts used by state extraction
    - The scenario description prompt used when setting up a game

    Judging and extraction prompts embed the serialized game state so the
    model answers against the same snapshot the pipeline will merge into.
    """

    JUDGE_ROLE = "You are an expert RPG game master."
    EXTRACTOR_ROLE = "You are a precise RPG game master who tracks game state changes."
    SCENARIO_ROLE = (
        "You are a creative game master. Create a rich, detailed description for a game "
        "scenario. The description should be engaging, immersive, and provide enough detail "
        "for players to understand the setting and potential adventures. "
        "Keep it between 2-3 paragraphs."
    )

    DM_INSTRUCTIONS = """INSTRUCTIONS:
1. You are a DM with your own agenda and goals for the player.
2. Make the game challenging but fair.
3. Push back against players who try to break the game or act unrealistically.
4. Maintain a consistent world and narrative.
5. Actions should have consequences.

When responding to the player:
- Respond directly to the player's latest action and move the story forward.
- If a skill check result is provided, the outcome of the action must follow it.
- Describe what the player sees and hears in vivid prose.
- Never reveal the DM notes to the player.
- Respond with narrative text only. Do not output JSON or list state changes."""

    def build_scenario_messages(self, scenario: str) -> List[ChatMessage]:
        return [
            {"role": "system", "content": self.SCENARIO_ROLE},
            {"role": "user", "content": f"Create a detailed description for the scenario: {scenario}"},
        ]

    @staticmethod
    def serialize_state(state: GameState) -> str:
        """Serialize a game state snapshot for embedding in a prompt."""
        return json.dumps(state.model_dump(mode="json"), ensure_ascii=False)

    def build_validity_messages(self, action: str, state: GameState) -> List[ChatMessage]:
        prompt = (
            f'Given the following player action: "{action}", and the current RPG game state: '
            f"{self.serialize_state(state)}, judge if this is a valid in-character action for a "
            "text adventure RPG. Do not allow meta-questions, out-of-character, or game-breaking "
            "actions. When the action is invalid, give a short reason addressed to the player."
        )
        return [
            {"role": "system", "content": self.JUDGE_ROLE},
            {"role": "user", "content": prompt},
        ]

    def build_skill_check_messages(self, action: str, state: GameState) -> List[ChatMessage]:
        stats = state.stats
        prompt = (
            f'Given the following player action: "{action}", and the available stats: '
            f"strength ({stats.strength}), dexterity ({stats.dexterity}), "
            f"intelligence ({stats.intelligence}), luck ({stats.luck}), decide if a skill check "
            "is required. Only require a skill check if the outcome of the action is genuinely "
            "uncertain in context. If so, pick the most appropriate stat and one difficulty "
            "category: easy, somewhat easy, medium, hard, very hard or extremely hard. "
            "Otherwise set stat and difficulty_category to null."
        )
        return [
            {"role": "system", "content": self.JUDGE_ROLE},
            {"role": "user", "content": prompt},
        ]

    def build_system_prompt(self, state: GameState, notes: DMNotes) -> str:
        """Build the DM system prompt from the game state and DM notes."""
        stats = state.stats
        inventory = ", ".join(
            f"{item.name} ({item.quantity})" for item in state.inventory
        ) or "Empty"
        quests = "\n".join(
            f"- {quest.name}: {quest.objective} ({quest.status})"
            for quest in notes.active_quests
        ) or "None"
        objectives = "\n".join(notes.hidden_objectives) or "None"

        sections = [
            f"You are a game master (DM) in a text adventure RPG. The game is set in: "
            f"{state.effective_scenario}. The player's name is {state.name}.",
            "GAME STATE:\n"
            f"- Player Health: {stats.health}/100\n"
            f"- Player Mana: {stats.mana}/100\n"
            f"- Player Experience: {stats.experience}/100\n"
            f"- Player Stats: Str {stats.strength}, Dex {stats.dexterity}, "
            f"Int {stats.intelligence}, Luck {stats.luck}\n"
            f"- Inventory: {inventory}",
            f"DM NOTES (HIDDEN FROM PLAYER):\n{notes.world_state}",
            f"Active Quests:\n{quests}",
            f"Hidden Objectives:\n{objectives}",
            f"Player Assessment:\n{notes.player_assessment}",
        ]
        if notes.key_locations:
            sections.append("Key Locations:\n" + "\n".join(
                f"- {name}: {description}" for name, description in notes.key_locations.items()
            ))
        if notes.key_characters:
            sections.append("Key Characters:\n" + "\n".join(
                f"- {name}: {description}" for name, description in notes.key_characters.items()
            ))
        if notes.plot_hooks:
            sections.append("Plot Hooks:\n" + "\n".join(f"- {hook}" for hook in notes.plot_hooks))
        if state.player_notes:
            sections.append(f"Player's Own Notes:\n{state.player_notes}")
        sections.append(self.DM_INSTRUCTIONS)
        return "\n\n".join(sections)

    def build_narrative_messages(
        self,
        state: GameState,
        notes: DMNotes,
        action: str,
        skill_check_result: Optional[SkillCheckResult] = None,
    ) -> List[ChatMessage]:
        """Build the message history for streamed narrative generation.

        Order: DM system prompt, surviving history, the current action, then a
        system note with the skill-check outcome when a check was performed.
        Empty messages and system messages are left out of the history.
        """
        messages: List[ChatMessage] = [
            {"role": "system", "content": self.build_system_prompt(state, notes)}
        ]
        for message in state.messages:
            if message.role == "system" or not message.content.strip():
                continue
            messages.append({
                "role": "user" if message.role == "user" else "assistant",
                "content": message.content,
            })
        messages.append({"role": "user", "content": action})
        if skill_check_result is not None:
            messages.append({"role": "system", "content": skill_check_result.describe()})
        return messages

    def _extractor_messages(self, prompt: str) -> List[ChatMessage]:
        return [
            {"role": "system", "content": self.EXTRACTOR_ROLE},
            {"role": "user", "content": prompt},
        ]

    def build_stat_change_messages(
        self, narrative: str, stat: str, current_value: int
    ) -> List[ChatMessage]:
        prompt = (
            f"Given the following DM narrative:\n{narrative}\n\n"
            f"The player's {stat} is currently {current_value}. Did the events of the "
            f"narrative change the player's {stat}? Answer change=true only if the narrative "
            "clearly implies it."
        )
        return self._extractor_messages(prompt)

    def build_stat_value_messages(
        self, narrative: str, stat: str, current_value: int
    ) -> List[ChatMessage]:
        prompt = (
            f"Given the following DM narrative:\n{narrative}\n\n"
            f"The player's {stat} was {current_value} before these events. What is the "
            f"player's new {stat} value? Answer with an integer between 0 and 100."
        )
        return self._extractor_messages(prompt)

    def build_inventory_change_messages(
        self, narrative: str, state: GameState
    ) -> List[ChatMessage]:
        prompt = (
            f"Given the following DM narrative:\n{narrative}\n\n"
            f"The player's inventory is: {self._inventory_json(state)}. Did the player gain "
            "or lose any items during these events?"
        )
        return self._extractor_messages(prompt)

    def build_inventory_list_messages(
        self, narrative: str, state: GameState
    ) -> List[ChatMessage]:
        prompt = (
            f"Given the following DM narrative:\n{narrative}\n\n"
            f"The player's inventory is: {self._inventory_json(state)}. List every item the "
            "player gained (action \"add\") or lost (action \"remove\"), in the order they "
            "happened. Use the existing item name when an item is already in the inventory. "
            "Every quantity must be an integer greater than or equal to 1."
        )
        return self._extractor_messages(prompt)

    def build_quest_change_messages(self, narrative: str, notes: DMNotes) -> List[ChatMessage]:
        prompt = (
            f"Given the following DM narrative:\n{narrative}\n\n"
            f"The tracked quests are: {self._quests_json(notes)}. Did the status of any of "
            "these quests change during these events?"
        )
        return self._extractor_messages(prompt)

    def build_quest_update_messages(self, narrative: str, notes: DMNotes) -> List[ChatMessage]:
        prompt = (
            f"Given the following DM narrative:\n{narrative}\n\n"
            f"The tracked quests are: {self._quests_json(notes)}. List each quest whose "
            "status changed with its quest_id and new status (active, completed or failed)."
        )
        return self._extractor_messages(prompt)

    @staticmethod
    def _inventory_json(state: GameState) -> str:
        return json.dumps(
            [item.model_dump(mode="json") for item in state.inventory], ensure_ascii=False
        )

    @staticmethod
    def _quests_json(notes: DMNotes) -> str:
        return json.dumps(
            [quest.model_dump(mode="json") for quest in notes.active_quests], ensure_ascii=False
        )
