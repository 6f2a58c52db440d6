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
"""Tests for the in-memory game store."""

import pytest
from pydantic import ValidationError

from adventure_dm.game_store import InMemoryGameStore, normalize_game_state
from adventure_dm.models import DMNotes, GameMessage, InventoryItem, StatBlock


def test_create_and_load():
    store = InMemoryGameStore()

    game = store.create_game(name="Aria", scenario="A haunted keep")

    loaded = store.load_game(game.id)
    assert loaded == game
    assert loaded.stats == StatBlock()
    assert loaded.created_at == loaded.last_updated_at


def test_load_missing_returns_none():
    assert InMemoryGameStore().load_game("nope") is None


def test_loaded_snapshots_are_copies():
    store = InMemoryGameStore()
    game = store.create_game(name="Aria", scenario="A haunted keep")

    loaded = store.load_game(game.id)
    loaded.messages.append(GameMessage(role="user", content="I shout"))
    loaded.stats.health = 1

    fresh = store.load_game(game.id)
    assert fresh.messages == []
    assert fresh.stats.health == 100


def test_save_forces_id():
    store = InMemoryGameStore()
    game = store.create_game(name="Aria", scenario="A haunted keep")

    saved = store.save_game(game.id, game.model_copy(update={"id": "other", "name": "Renamed"}))

    assert saved.id == game.id
    assert store.load_game(game.id).name == "Renamed"
    assert store.load_game("other") is None


def test_list_orders_by_last_update():
    store = InMemoryGameStore()
    first = store.create_game(name="First", scenario="s")
    second = store.create_game(name="Second", scenario="s")
    store.save_game(first.id, first.model_copy(update={"last_updated_at": "2999-01-01T00:00:00+00:00"}))

    assert [game.name for game in store.list_games()] == ["First", "Second"]
    assert second.id in {game.id for game in store.list_games()}


def test_notes_round_trip_per_game():
    store = InMemoryGameStore()
    game = store.create_game(name="Aria", scenario="A haunted keep")

    assert store.load_notes(game.id) is None
    store.save_notes(game.id, DMNotes(world_state="Foggy"))

    assert store.load_notes(game.id).world_state == "Foggy"


def test_evicts_least_recently_saved():
    store = InMemoryGameStore(max_games=2)
    first = store.create_game(name="First", scenario="s")
    store.save_notes(first.id, DMNotes(world_state="Old"))
    second = store.create_game(name="Second", scenario="s")
    third = store.create_game(name="Third", scenario="s")

    assert len(store) == 2
    assert store.load_game(first.id) is None
    assert store.load_notes(first.id) is None
    assert store.load_game(second.id) is not None
    assert store.load_game(third.id) is not None


class TestNormalizeGameState:
    """Tests for normalize_game_state."""

    def test_fills_missing_stats(self):
        game = normalize_game_state({"id": "g1", "stats": {"health": 30, "luck": None}})

        assert game.stats.health == 30
        assert game.stats.luck == 1
        assert game.stats.strength == 5

    def test_missing_collections_become_empty(self):
        game = normalize_game_state({"id": "g1", "messages": None, "inventory": None})

        assert game.messages == []
        assert game.inventory == []
        assert game.player_notes == ""

    def test_drops_non_positive_quantities(self):
        game = normalize_game_state({
            "id": "g1",
            "inventory": [
                {"name": "Rope", "quantity": 2},
                {"name": "Ash", "quantity": 0},
                InventoryItem(name="Key", quantity=1),
            ],
        })

        assert [item.name for item in game.inventory] == ["Rope", "Key"]

    def test_invalid_values_raise(self):
        with pytest.raises(ValidationError):
            normalize_game_state({"id": "g1", "stats": {"mana": "plenty"}})

    def test_numeric_strings_are_coerced_before_filtering(self):
        game = normalize_game_state({
            "id": "g1",
            "inventory": [{"name": "Torch", "quantity": "2"}, {"name": "Ash", "quantity": "0"}],
        })

        assert [(item.name, item.quantity) for item in game.inventory] == [("Torch", 2)]

    def test_missing_quantity_means_one(self):
        game = normalize_game_state({"id": "g1", "inventory": [{"name": "Torch"}]})

        assert game.inventory[0].quantity == 1

    @pytest.mark.parametrize(
        "field,value",
        [
            ("inventory", ["Torch"]),
            ("inventory", "Torch"),
            ("inventory", [{"quantity": 2}]),
            ("stats", ["health", 10]),
            ("stats", "strong"),
        ],
    )
    def test_wrong_shapes_raise_validation_error(self, field, value):
        with pytest.raises(ValidationError):
            normalize_game_state({"id": "g1", field: value})
