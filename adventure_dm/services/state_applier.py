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
"""Deterministic merge of a state diff into a game-state snapshot.

Steps run in a fixed order: inventory, stats, quests, DM notes. Inputs are
deep-copied, so callers keep their original objects untouched.

Invariants after every merge:
- health and mana in [0, 100]
- experience >= 0
- strength, dexterity, intelligence and luck >= 1
- no inventory entry with quantity <= 0
- item identity is case-insensitive name equality
"""

from typing import Dict, List, Optional, Tuple

from adventure_dm.logging import StructuredLogger
from adventure_dm.models import (
    STAT_NAMES,
    DMNotes,
    GameState,
    InventoryChanges,
    InventoryItem,
    QuestUpdate,
    StatBlock,
    StatChanges,
    StateChanges,
    DMNotesUpdate,
)

logger = StructuredLogger(__name__)

# (lower bound, upper bound); None means unbounded
STAT_BOUNDS: Dict[str, Tuple[int, Optional[int]]] = {
    "health": (0, 100),
    "mana": (0, 100),
    "experience": (0, None),
    "strength": (1, None),
    "dexterity": (1, None),
    "intelligence": (1, None),
    "luck": (1, None),
}


def clamp_stat(stat: str, value: int) -> int:
    lower, upper = STAT_BOUNDS[stat]
    value = max(lower, value)
    if upper is not None:
        value = min(upper, value)
    return value


def _find_item(inventory: List[InventoryItem], name: str) -> Optional[int]:
    target = name.lower()
    for index, item in enumerate(inventory):
        if item.name.lower() == target:
            return index
    return None


def apply_inventory_changes(
    inventory: List[InventoryItem], changes: InventoryChanges
) -> List[InventoryItem]:
    """Merge additions, then subtract removals.

    Additions stack onto an existing entry with the same name (ignoring
    case) or are appended. Removals of unknown names are ignored; entries
    whose quantity drops to zero or below are deleted.
    """
    items = [item.model_copy() for item in inventory]

    for addition in changes.add or []:
        index = _find_item(items, addition.name)
        if index is None:
            items.append(InventoryItem(
                name=addition.name,
                quantity=addition.quantity,
                description=addition.description,
            ))
        else:
            existing = items[index]
            items[index] = existing.model_copy(
                update={"quantity": existing.quantity + addition.quantity}
            )

    for removal in changes.remove or []:
        index = _find_item(items, removal.name)
        if index is None:
            logger.debug("Ignoring removal of unknown item", item=removal.name)
            continue
        remaining = items[index].quantity - removal.quantity
        if remaining <= 0:
            del items[index]
        else:
            items[index] = items[index].model_copy(update={"quantity": remaining})

    return items


def apply_stat_changes(stats: StatBlock, changes: StatChanges) -> StatBlock:
    """Add deltas to stats, then clamp each touched stat to its bounds."""
    updated = stats.model_dump()
    for stat in STAT_NAMES:
        delta = getattr(changes, stat)
        if delta is not None:
            updated[stat] = clamp_stat(stat, updated[stat] + delta)
    return StatBlock(**updated)


def apply_quest_updates(notes: DMNotes, updates: List[QuestUpdate]) -> DMNotes:
    """Overwrite the status of targeted quests. Unknown ids are ignored."""
    statuses = {update.quest_id: update.status for update in updates}
    known = {quest.id for quest in notes.active_quests}
    for quest_id in statuses.keys() - known:
        logger.debug("Ignoring update for unknown quest", quest_id=quest_id)

    quests = [
        quest.model_copy(update={"status": statuses[quest.id]}) if quest.id in statuses else quest
        for quest in notes.active_quests
    ]
    return notes.model_copy(update={"active_quests": quests})


def apply_notes_updates(notes: DMNotes, updates: DMNotesUpdate) -> DMNotes:
    """Overwrite only the DM-note fields present in the update."""
    provided = updates.model_dump(exclude_none=True)
    return notes.model_copy(update=provided)


def apply_state_changes(
    state: GameState,
    changes: StateChanges,
    notes: Optional[DMNotes] = None,
) -> Tuple[GameState, DMNotes]:
    """Merge a diff into a snapshot.

    Args:
        state: Current game state (not modified)
        changes: Sparse diff; absent fields mean no change
        notes: Current DM notes (not modified); empty notes when None

    Returns:
        Tuple of (new game state, new DM notes)
    """
    updated = state.model_copy(deep=True)
    updated_notes = notes.model_copy(deep=True) if notes is not None else DMNotes()

    if changes.inventory_changes is not None:
        updated.inventory = apply_inventory_changes(updated.inventory, changes.inventory_changes)

    if changes.stat_changes is not None:
        updated.stats = apply_stat_changes(updated.stats, changes.stat_changes)

    if changes.quest_updates:
        updated_notes = apply_quest_updates(updated_notes, changes.quest_updates)

    if changes.dm_notes_updates is not None:
        updated_notes = apply_notes_updates(updated_notes, changes.dm_notes_updates)

    return updated, updated_notes
