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
"""Shared test fixtures for the Adventure DM service.

This module provides pytest fixtures for testing the service:
- fake_gateway: Deterministic LLM gateway driven by schema name
- fixed_resolver: Skill-check resolver with a fixed die roll
- dungeon_master: Orchestrator wired to the fake gateway
- sample_game: A small game snapshot
- client: FastAPI TestClient with the fake gateway injected

Usage:
    Configure the fake gateway before exercising the pipeline:
        def test_example(client, fake_gateway):
            fake_gateway.answers["action_validity"] = ValidityAnswer(valid=False, reason="No")
            response = client.post(f"/games/{game_id}/actions", json={"action": "fly"})
"""

import asyncio
import os
from typing import Any, Dict, List, Optional
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from adventure_dm.models import (
    ChangeDecision,
    GameState,
    InventoryItem,
    SkillCheckAnswer,
    StatBlock,
    ValidityAnswer,
)
from adventure_dm.services.gateway import GatewayError
from adventure_dm.services.skill_check import SkillCheckResolver


class FakeGateway:
    """In-memory LLMGateway double.

    Structured answers are looked up by schema name in ``answers``. A value
    that is an exception instance is raised; anything else (including None)
    is returned as-is. Unconfigured names fall back to a harmless default:
    the action is valid, no check is needed and nothing changed.
    """

    def __init__(self, fragments: Optional[List[str]] = None):
        self.answers: Dict[str, Any] = {}
        self.delays: Dict[str, float] = {}
        self.fragments = fragments if fragments is not None else ["The lid ", "creaks open."]
        self.stream_error: Exception = GatewayError("stream dropped")
        self.fail_after: Optional[int] = None
        self.stream_delay = 0.0
        self.completion_error: Optional[Exception] = None
        self.completion_delay = 0.0

        self.structured_calls: List[str] = []
        self.temperatures: Dict[str, Optional[float]] = {}
        self.cancelled: List[str] = []
        self.stream_calls: List[List[Dict[str, str]]] = []
        self.complete_calls: List[List[Dict[str, str]]] = []

    async def complete(self, messages, temperature=None) -> str:
        self.complete_calls.append(messages)
        self.temperatures["complete"] = temperature
        if self.completion_delay:
            await asyncio.sleep(self.completion_delay)
        if self.completion_error is not None:
            raise self.completion_error
        return "".join(self.fragments)

    async def complete_structured(self, messages, response_model, name, temperature=None):
        self.structured_calls.append(name)
        self.temperatures[name] = temperature

        delay = self.delays.get(name)
        if delay:
            try:
                await asyncio.sleep(delay)
            except asyncio.CancelledError:
                self.cancelled.append(name)
                raise

        if name in self.answers:
            answer = self.answers[name]
            if isinstance(answer, Exception):
                raise answer
            return answer

        if response_model is ValidityAnswer:
            return ValidityAnswer(valid=True, reason=None)
        if response_model is SkillCheckAnswer:
            return SkillCheckAnswer(
                required=False, stat=None, difficulty_category=None, reason=None
            )
        if response_model is ChangeDecision:
            return ChangeDecision(change=False)
        return None

    async def complete_streaming(self, messages, temperature=None):
        self.stream_calls.append(messages)
        for index, fragment in enumerate(self.fragments):
            if self.fail_after is not None and index == self.fail_after:
                raise self.stream_error
            if self.stream_delay:
                await asyncio.sleep(self.stream_delay)
            yield fragment
        if self.fail_after is not None and self.fail_after >= len(self.fragments):
            raise self.stream_error


class FixedRollResolver(SkillCheckResolver):
    """Resolver whose die always lands on the same face."""

    def __init__(self, value: int = 7):
        super().__init__(seed=0)
        self.value = value

    def roll(self) -> int:
        return self.value


@pytest.fixture
def fake_gateway():
    """Fixture providing a fresh FakeGateway."""
    return FakeGateway()


@pytest.fixture
def fixed_resolver():
    """Fixture providing a resolver that always rolls 7."""
    return FixedRollResolver(7)


@pytest.fixture
def dungeon_master(fake_gateway, fixed_resolver):
    """Fixture providing an orchestrator wired to the fake gateway."""
    from adventure_dm.services.dungeon_master import DungeonMaster

    return DungeonMaster(
        fake_gateway,
        resolver=fixed_resolver,
        stage_timeout_seconds=2.0,
    )


@pytest.fixture
def sample_game():
    """Fixture providing a game snapshot with default stats and one rope."""
    return GameState(
        id="game-1",
        name="Aria",
        scenario="A haunted keep on a foggy moor",
        stats=StatBlock(),
        inventory=[InventoryItem(name="Rope", quantity=1)],
    )


@pytest.fixture
def test_env():
    """Fixture providing test environment variables.

    Returns a dictionary of environment variables configured for testing:
    - OPENAI_API_KEY: Test API key (never used, the gateway is faked)
    - OPENAI_STUB_MODE: Enabled so the lifespan gateway makes no calls
    - ENABLE_METRICS: Disabled unless a test turns it on
    """
    return {
        "OPENAI_API_KEY": "sk-test-key-12345",
        "OPENAI_MODEL": "gpt-4o",
        "OPENAI_STUB_MODE": "true",
        "STAGE_TIMEOUT_SECONDS": "5",
        "SERVICE_NAME": "adventure-dm-test",
        "LOG_LEVEL": "INFO",
        "ENABLE_METRICS": "false"
    }


@pytest.fixture
def game_store():
    from adventure_dm.game_store import InMemoryGameStore

    return InMemoryGameStore()


@pytest.fixture
def rate_limiter():
    from adventure_dm.resilience import RateLimiter

    return RateLimiter(max_rate=100.0)


@pytest.fixture
def game_locks():
    from adventure_dm.resilience import GameLocks

    return GameLocks()


@pytest.fixture
def client(test_env, dungeon_master, game_store, rate_limiter, game_locks):
    """Fixture providing FastAPI test client with the fake gateway injected.

    The fixture overrides FastAPI dependency injection so every request
    uses the dungeon_master, game_store, game_locks and rate_limiter
    fixtures. Tests can reach into those fixtures to seed games or
    configure answers.
    The application's own overrides are restored afterwards.
    """
    with patch.dict(os.environ, test_env, clear=True):
        from adventure_dm.config import get_settings
        get_settings.cache_clear()

        from adventure_dm.api.routes import (
            get_dungeon_master,
            get_game_locks,
            get_game_store,
            get_rate_limiter,
        )
        from adventure_dm.main import app

        original_overrides = dict(app.dependency_overrides)

        app.dependency_overrides[get_dungeon_master] = lambda: dungeon_master
        app.dependency_overrides[get_game_store] = lambda: game_store
        app.dependency_overrides[get_game_locks] = lambda: game_locks
        app.dependency_overrides[get_rate_limiter] = lambda: rate_limiter

        try:
            with TestClient(app) as test_client:
                yield test_client
        finally:
            app.dependency_overrides.clear()
            app.dependency_overrides.update(original_overrides)
            get_settings.cache_clear()
