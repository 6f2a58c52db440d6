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
"""Game persistence boundary.

The pipeline never touches storage. The HTTP layer loads a snapshot,
runs the pipeline and saves the returned snapshot. This module provides:
- The GameStore protocol the HTTP layer depends on
- InMemoryGameStore, a thread-safe in-process implementation
- normalize_game_state for filling defaults into stored or posted games
"""

import threading
import uuid
from collections import OrderedDict
from typing import Any, Dict, List, Optional, Protocol

from pydantic import BaseModel, Field, TypeAdapter

from adventure_dm.logging import StructuredLogger
from adventure_dm.models import (
    DMNotes,
    GameState,
    InventoryItem,
    StatBlock,
    utc_now,
)

logger = StructuredLogger(__name__)


class GameStore(Protocol):
    def load_game(self, game_id: str) -> Optional[GameState]:
        ...

    def save_game(self, game_id: str, state: GameState) -> GameState:
        ...

    def create_game(
        self,
        name: str,
        scenario: str,
        custom_scenario: Optional[str] = None,
        stats: Optional[StatBlock] = None,
        inventory: Optional[List[InventoryItem]] = None,
    ) -> GameState:
        ...

    def list_games(self) -> List[GameState]:
        ...

    def load_notes(self, game_id: str) -> Optional[DMNotes]:
        ...

    def save_notes(self, game_id: str, notes: DMNotes) -> None:
        ...


class _StoredInventoryEntry(BaseModel):
    """Inventory entry as posted or stored, before empty stacks are dropped."""
    name: str = Field(..., min_length=1)
    quantity: Optional[int] = 1
    description: Optional[str] = None


_STAT_OVERRIDES = TypeAdapter(Optional[Dict[str, Optional[int]]])
_INVENTORY_ENTRIES = TypeAdapter(Optional[List[_StoredInventoryEntry]])


def normalize_game_state(data: Dict[str, Any]) -> GameState:
    """Build a GameState from loosely shaped data, filling defaults.

    Missing or null stats take their default values, a missing inventory
    or message log becomes empty, and inventory entries with a
    non-positive quantity are dropped. Values are validated before they
    are inspected, so any malformed field raises ValidationError.
    """
    data = dict(data)
    provided_stats = data.get("stats")
    if isinstance(provided_stats, StatBlock):
        provided_stats = provided_stats.model_dump()
    overrides = _STAT_OVERRIDES.validate_python(provided_stats) or {}
    data["stats"] = {
        **StatBlock().model_dump(),
        **{k: v for k, v in overrides.items() if v is not None},
    }

    entries = _INVENTORY_ENTRIES.validate_python(
        data.get("inventory"), from_attributes=True
    ) or []
    data["inventory"] = [
        entry.model_dump() for entry in entries if (entry.quantity or 0) >= 1
    ]

    data["messages"] = data.get("messages") or []
    data["player_notes"] = data.get("player_notes") or ""
    return GameState.model_validate(data)


class InMemoryGameStore:
    """In-memory game storage with LRU eviction.

    Features:
    - Thread-safe access with locks
    - Snapshots are copied on the way in and out, so callers can never
      mutate stored state in place
    - DM notes kept per game so quests carry over between actions
    - Oldest-updated game evicted when max_games is reached

    Example:
        >>> store = InMemoryGameStore()
        >>> game = store.create_game(name="Aria", scenario="A haunted keep")
        >>> store.load_game(game.id).name
        'Aria'
    """

    def __init__(self, max_games: int = 10000):
        self.max_games = max_games
        self._games: "OrderedDict[str, GameState]" = OrderedDict()
        self._notes: Dict[str, DMNotes] = {}
        self._lock = threading.Lock()

        logger.info("Initialized InMemoryGameStore", max_games=max_games)

    def create_game(
        self,
        name: str,
        scenario: str,
        custom_scenario: Optional[str] = None,
        stats: Optional[StatBlock] = None,
        inventory: Optional[List[InventoryItem]] = None,
    ) -> GameState:
        now = utc_now()
        game = normalize_game_state({
            "id": str(uuid.uuid4()),
            "name": name,
            "scenario": scenario,
            "custom_scenario": custom_scenario,
            "stats": stats,
            "inventory": inventory,
            "created_at": now,
            "last_updated_at": now,
        })
        self.save_game(game.id, game)
        logger.info("Created game", game_id=game.id)
        return game.model_copy(deep=True)

    def load_game(self, game_id: str) -> Optional[GameState]:
        with self._lock:
            game = self._games.get(game_id)
            return game.model_copy(deep=True) if game is not None else None

    def save_game(self, game_id: str, state: GameState) -> GameState:
        """Store a snapshot under game_id, replacing any previous one."""
        if state.id != game_id:
            state = state.model_copy(update={"id": game_id})
        with self._lock:
            if game_id in self._games:
                self._games.move_to_end(game_id)
            elif len(self._games) >= self.max_games:
                evicted_id, _ = self._games.popitem(last=False)
                self._notes.pop(evicted_id, None)
                logger.debug("Evicted game due to size limit", evicted_game_id=evicted_id)
            self._games[game_id] = state.model_copy(deep=True)
        return state

    def list_games(self) -> List[GameState]:
        """All games, most recently updated first."""
        with self._lock:
            games = [game.model_copy(deep=True) for game in self._games.values()]
        return sorted(games, key=lambda game: game.last_updated_at, reverse=True)

    def load_notes(self, game_id: str) -> Optional[DMNotes]:
        with self._lock:
            notes = self._notes.get(game_id)
            return notes.model_copy(deep=True) if notes is not None else None

    def save_notes(self, game_id: str, notes: DMNotes) -> None:
        with self._lock:
            self._notes[game_id] = notes.model_copy(deep=True)

    def __len__(self) -> int:
        with self._lock:
            return len(self._games)
