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
"""Pydantic models for the Adventure DM service.

This module defines:
- Game state snapshots (messages, stats, inventory) owned by the caller
- DM notes, the private orchestration memory of one pipeline run
- Skill-check request/result models
- State diffs and the consolidated pipeline result
- Structured answer models used as JSON contracts for LLM sub-queries
- Request/response schemas for the HTTP layer
"""

from datetime import datetime, timezone
from typing import Dict, List, Literal, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, model_validator

MessageRole = Literal["user", "assistant", "system"]
MessageType = Literal[
    "normal", "error", "skill-check", "action-invalid", "inventory-change", "stat-change"
]
SkillStat = Literal["strength", "dexterity", "intelligence", "luck"]
StatName = Literal[
    "health", "mana", "experience", "strength", "dexterity", "intelligence", "luck"
]
DifficultyCategory = Literal[
    "easy", "somewhat easy", "medium", "hard", "very hard", "extremely hard"
]
QuestStatus = Literal["active", "completed", "failed"]

# Order matters: extraction fans out over the stats in this order
STAT_NAMES: tuple = (
    "health", "mana", "experience", "strength", "dexterity", "intelligence", "luck"
)
SKILL_STATS: tuple = ("strength", "dexterity", "intelligence", "luck")


def utc_now() -> str:
    """Current UTC time as an ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat()


# ============================================================================
# Game State
# ============================================================================


class GameMessage(BaseModel):
    """One entry of the visible game log.

    Attributes:
        role: Who produced the message (user/assistant/system)
        content: Message text
        type: Optional tag used by clients to style the entry
        timestamp: Optional ISO 8601 timestamp
    """
    role: MessageRole
    content: str
    type: Optional[MessageType] = None
    timestamp: Optional[str] = None


class StatBlock(BaseModel):
    """Player statistics. Defaults match a freshly created character."""
    health: int = 100
    mana: int = 100
    experience: int = 0
    strength: int = 5
    dexterity: int = 5
    intelligence: int = 5
    luck: int = 1


class InventoryItem(BaseModel):
    """A stackable inventory entry. Identity is the case-insensitive name."""
    name: str = Field(..., min_length=1)
    quantity: int = Field(1, ge=1)
    description: Optional[str] = None


class GameState(BaseModel):
    """Snapshot of one game.

    The pipeline receives a snapshot and returns a new one; it never
    mutates the object it was given.
    """
    id: str
    name: str = ""
    scenario: str = ""
    custom_scenario: Optional[str] = None
    messages: List[GameMessage] = Field(default_factory=list)
    stats: StatBlock = Field(default_factory=StatBlock)
    inventory: List[InventoryItem] = Field(default_factory=list)
    player_notes: str = ""
    created_at: str = Field(default_factory=utc_now)
    last_updated_at: str = Field(default_factory=utc_now)

    @property
    def effective_scenario(self) -> str:
        """Custom scenario text when set, otherwise the base scenario."""
        return self.custom_scenario or self.scenario


# ============================================================================
# DM Notes
# ============================================================================


class Quest(BaseModel):
    """A quest tracked in the DM notes."""
    id: str
    name: str
    description: str = ""
    objective: str = ""
    status: QuestStatus = "active"


class DMNotes(BaseModel):
    """Private orchestration memory for one pipeline run.

    Never shown to the player. Seeded from the scenario when the caller
    does not provide notes and returned alongside the pipeline result.
    """
    world_state: str = ""
    hidden_objectives: List[str] = Field(default_factory=list)
    active_quests: List[Quest] = Field(default_factory=list)
    player_assessment: str = ""
    key_locations: Dict[str, str] = Field(default_factory=dict)
    key_characters: Dict[str, str] = Field(default_factory=dict)
    plot_hooks: List[str] = Field(default_factory=list)


def initialize_notes(game: GameState) -> DMNotes:
    """Create the initial DM notes for a game from its scenario."""
    return DMNotes(
        world_state=f"World based on scenario: {game.effective_scenario}",
        hidden_objectives=[
            "Guide player to discover the main quest",
            "Create challenging but fair encounters",
            "Adapt the world based on player choices",
        ],
        active_quests=[
            Quest(
                id="main-quest",
                name="The Beginning",
                description="Start your adventure and discover your purpose",
                objective="Explore the surroundings and find a lead",
                status="active",
            )
        ],
        player_assessment="New player, assessing play style",
    )


# ============================================================================
# Skill Checks
# ============================================================================


class SkillCheckRequest(BaseModel):
    """Planner verdict on whether the action needs a skill check."""
    required: bool = False
    stat: Optional[SkillStat] = None
    difficulty_category: Optional[DifficultyCategory] = None
    reason: Optional[str] = None

    @property
    def is_actionable(self) -> bool:
        """True only when a check is required and fully specified."""
        return (
            self.required
            and self.stat is not None
            and self.difficulty_category is not None
        )


class SkillCheckResult(BaseModel):
    """Outcome of one dice roll. Immutable once computed."""
    model_config = ConfigDict(frozen=True)

    performed: bool = True
    stat: SkillStat
    roll: int = Field(..., ge=1, le=12)
    stat_value: int
    difficulty: int
    total: int
    success: bool
    degree: int
    reason: Optional[str] = None

    @model_validator(mode="after")
    def check_arithmetic(self) -> "SkillCheckResult":
        """Reject results whose totals do not follow from the roll.

        Results can arrive from clients (the resolve endpoint), so the
        derived fields must agree with stat_value, roll and difficulty.
        """
        if self.total != self.stat_value + self.roll:
            raise ValueError("total must equal stat_value + roll")
        if self.degree != self.total - self.difficulty:
            raise ValueError("degree must equal total - difficulty")
        if self.success != (self.total >= self.difficulty):
            raise ValueError("success must equal total >= difficulty")
        return self

    def describe(self) -> str:
        """One-line summary used in the message log and the narrative prompt."""
        outcome = "Success" if self.success else "Failure"
        return (
            f"Skill check performed: {self.stat} (value: {self.stat_value}) + d12 roll "
            f"({self.roll}) vs difficulty {self.difficulty}. "
            f"Result: {outcome} (degree: {self.degree})."
        )


class ActionValidity(BaseModel):
    """Validator verdict on a player action."""
    valid: bool
    reason: Optional[str] = None


# ============================================================================
# State Diff
# ============================================================================


class InventoryAddition(BaseModel):
    name: str = Field(..., min_length=1)
    quantity: int = Field(..., ge=1)
    description: Optional[str] = None


class InventoryRemoval(BaseModel):
    name: str = Field(..., min_length=1)
    quantity: int = Field(..., ge=1)


class InventoryChanges(BaseModel):
    add: Optional[List[InventoryAddition]] = None
    remove: Optional[List[InventoryRemoval]] = None


class StatChanges(BaseModel):
    """Signed per-stat deltas. None means the stat is untouched."""
    health: Optional[int] = None
    mana: Optional[int] = None
    experience: Optional[int] = None
    strength: Optional[int] = None
    dexterity: Optional[int] = None
    intelligence: Optional[int] = None
    luck: Optional[int] = None


class QuestUpdate(BaseModel):
    quest_id: str
    status: QuestStatus


class DMNotesUpdate(BaseModel):
    """Partial overwrite of DM notes. Only provided fields are replaced."""
    world_state: Optional[str] = None
    hidden_objectives: Optional[List[str]] = None
    player_assessment: Optional[str] = None
    key_locations: Optional[Dict[str, str]] = None
    key_characters: Optional[Dict[str, str]] = None
    plot_hooks: Optional[List[str]] = None


class StateChanges(BaseModel):
    """Sparse diff against a game state snapshot.

    Absent fields mean "no change", never "zero".
    """
    inventory_changes: Optional[InventoryChanges] = None
    stat_changes: Optional[StatChanges] = None
    quest_updates: Optional[List[QuestUpdate]] = None
    dm_notes_updates: Optional[DMNotesUpdate] = None

    def is_empty(self) -> bool:
        return (
            self.inventory_changes is None
            and self.stat_changes is None
            and self.quest_updates is None
            and self.dm_notes_updates is None
        )


class DMResponse(BaseModel):
    message: str
    state_changes: StateChanges = Field(default_factory=StateChanges)


# ============================================================================
# Pipeline Results
# ============================================================================


class PipelineResult(BaseModel):
    """Consolidated result of one pipeline run.

    Attributes:
        skill_check_request: Planner verdict (None when rejected or errored)
        skill_check_result: Dice outcome when a check was performed
        dm_response: Player-facing message and applied diff
        action_validity: Validator verdict (None when validation itself failed)
        updated_game: New game snapshot for the caller to persist
        dm_notes: DM notes after the run
        stage: Terminal pipeline stage ("done", "rejected" or "error")
    """
    skill_check_request: Optional[SkillCheckRequest] = None
    skill_check_result: Optional[SkillCheckResult] = None
    dm_response: DMResponse
    action_validity: Optional[ActionValidity] = None
    updated_game: GameState
    dm_notes: DMNotes
    stage: str


class PrecheckResult(BaseModel):
    """Result of the validate-and-plan precheck entry point."""
    valid: bool
    reason: Optional[str] = None
    skill_check: Optional[SkillCheckRequest] = None


# ============================================================================
# Structured LLM Answers
# ============================================================================
# JSON contracts for structured completions. Every field is required (nullable
# where optional) so the schemas can be used in strict mode.


class ValidityAnswer(BaseModel):
    valid: bool
    reason: Optional[str]


class SkillCheckAnswer(BaseModel):
    required: bool
    stat: Optional[SkillStat]
    difficulty_category: Optional[DifficultyCategory]
    reason: Optional[str]


class ChangeDecision(BaseModel):
    change: bool


class StatValueAnswer(BaseModel):
    # Bounds are advertised to the model but not enforced; the applier clamps
    value: int = Field(..., json_schema_extra={"minimum": 0, "maximum": 100})


class InventoryChangeEntry(BaseModel):
    action: Literal["add", "remove"]
    name: str = Field(..., min_length=1)
    quantity: int = Field(..., ge=1)
    description: Optional[str]


class InventoryChangeList(BaseModel):
    items: List[InventoryChangeEntry]


class QuestUpdateList(BaseModel):
    updates: List[QuestUpdate]


def get_strict_json_schema(model: Type[BaseModel]) -> dict:
    """Get a JSON Schema for a structured answer model.

    The schema is configured with strict validation to prevent additional
    properties, suitable for the OpenAI Responses API text.format parameter.

    Args:
        model: Pydantic model describing the expected answer

    Returns:
        Dictionary containing the JSON Schema
    """
    schema = model.model_json_schema()

    def set_strict_mode(obj):
        if isinstance(obj, dict):
            if obj.get("type") == "object" and "properties" in obj:
                obj["additionalProperties"] = False
            for value in obj.values():
                set_strict_mode(value)
        elif isinstance(obj, list):
            for item in obj:
                set_strict_mode(item)

    set_strict_mode(schema)
    return schema


# ============================================================================
# HTTP Request/Response Models
# ============================================================================


class CreateGameRequest(BaseModel):
    """Request model for creating a new game."""
    name: str = Field(..., min_length=1, max_length=200)
    scenario: str = Field(..., min_length=1, max_length=8000)
    custom_scenario: Optional[str] = Field(None, max_length=8000)
    stats: Optional[StatBlock] = None
    inventory: List[InventoryItem] = Field(default_factory=list)


class ActionRequest(BaseModel):
    """Request model for a player action.

    Attributes:
        action: The player's action text
        trace_id: Optional trace ID for request correlation
    """
    action: str = Field(
        ...,
        min_length=1,
        max_length=8000,
        description="Player's action for this turn",
        examples=["I search the chest"]
    )
    trace_id: Optional[str] = Field(
        None,
        description="Optional trace ID for request correlation"
    )


class ResolveActionRequest(ActionRequest):
    """Request model for finishing a prechecked action.

    Attributes:
        skill_check_result: The roll returned by /skillcheck, or None when
            the precheck said no check was needed
    """
    skill_check_result: Optional[SkillCheckResult] = Field(
        None,
        description="Skill check rolled after the precheck, narrated as-is"
    )


class ScenarioDescriptionRequest(BaseModel):
    """Request model for expanding a scenario title into a description."""
    scenario: str = Field(..., min_length=1, max_length=500, examples=["A haunted keep"])


class ScenarioDescription(BaseModel):
    scenario: str
    description: str


class SkillCheckRollRequest(BaseModel):
    """Request model for a stand-alone skill-check roll."""
    stat: SkillStat
    difficulty_category: DifficultyCategory


class GameSummary(BaseModel):
    id: str
    name: str
    scenario: str
    last_updated_at: str


class HealthResponse(BaseModel):
    """Response model for health check endpoint."""
    status: str = Field(
        ...,
        description="Service health status",
        examples=["healthy"]
    )
    service: str = Field(
        default="adventure-dm",
        description="Service name"
    )


class ErrorDetail(BaseModel):
    """Structured error response model.

    Attributes:
        type: Machine-readable error type
        message: Human-readable error message
        request_id: Request correlation ID (if available)
    """
    type: str = Field(
        ...,
        description="Machine-readable error type",
        examples=["game_not_found", "rate_limited"]
    )
    message: str = Field(
        ...,
        description="Human-readable error message"
    )
    request_id: Optional[str] = Field(
        None,
        description="Request correlation ID for tracking"
    )


class ErrorResponse(BaseModel):
    error: ErrorDetail
