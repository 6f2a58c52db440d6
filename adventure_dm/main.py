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
"""FastAPI application entry point for the Adventure DM service.

This module creates and configures the FastAPI application with:
- Route registration
- CORS middleware (for web client access)
- Lifespan management for the shared HTTP client and pipeline services
- OpenAPI/Swagger documentation
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from httpx import AsyncClient
import logging

from adventure_dm.api.routes import router
from adventure_dm.config import get_settings
from adventure_dm.game_store import InMemoryGameStore
from adventure_dm.middleware import RequestCorrelationMiddleware
from adventure_dm.logging import configure_logging
from adventure_dm.metrics import init_metrics_collector, disable_metrics_collector
from adventure_dm.resilience import GameLocks, RateLimiter
from adventure_dm.services.dungeon_master import DungeonMaster
from adventure_dm.services.gateway import OpenAIGateway

# Will be configured in lifespan
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager.

    Handles startup and shutdown logic:
    - Startup: Validate config, configure logging/metrics, create the gateway,
      orchestrator, game store, locks and rate limiter
    - Shutdown: Close the HTTP client gracefully

    Args:
        app: FastAPI application instance
    """
    logger.info("Starting Adventure DM service...")

    try:
        settings = get_settings()

        configure_logging(
            level=settings.log_level,
            json_format=settings.log_json_format,
            service_name=settings.service_name
        )

        logger.info("Configuration loaded successfully")
        logger.info(f"OpenAI model: {settings.openai_model}")
        logger.info(f"Stage timeout: {settings.stage_timeout_seconds}s")
        logger.info(f"Metrics enabled: {settings.enable_metrics}")

        if settings.enable_metrics:
            init_metrics_collector()
            logger.info("Metrics collector initialized")
        else:
            disable_metrics_collector()
            logger.info("Metrics collection disabled")
    except Exception as e:
        logger.error(f"Configuration validation failed: {e}")
        raise

    # Shared connection pool for the OpenAI SDK
    app.state.http_client = AsyncClient(timeout=settings.openai_timeout)
    logger.info("HTTP client initialized")

    app.state.gateway = OpenAIGateway(
        api_key=settings.openai_api_key,
        model=settings.openai_model,
        timeout=settings.openai_timeout,
        stub_mode=settings.openai_stub_mode,
        max_retries=settings.openai_max_retries,
        http_client=app.state.http_client
    )
    logger.info(
        f"Gateway initialized (model={settings.openai_model}, stub_mode={settings.openai_stub_mode})"
    )

    app.state.dungeon_master = DungeonMaster.from_settings(app.state.gateway, settings)
    logger.info("Dungeon master initialized")

    app.state.game_store = InMemoryGameStore()
    app.state.game_locks = GameLocks()
    app.state.rate_limiter = RateLimiter(max_rate=settings.action_rate_limit)
    logger.info(f"Game store initialized (action_rate_limit={settings.action_rate_limit}/s)")

    yield

    logger.info("Shutting down Adventure DM service...")
    if hasattr(app.state, 'http_client'):
        await app.state.http_client.aclose()
        logger.info("HTTP client closed")


app = FastAPI(
    title="Adventure DM API",
    description=(
        "AI game master for text adventures. Validates player actions, rolls skill "
        "checks, streams narrative and applies the resulting game-state changes."
    ),
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json"
)

# NOTE: Unrestricted CORS is acceptable for this service as it's designed
# to be accessed by web clients. In production, configure allow_origins
# to match your specific domain(s).
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(RequestCorrelationMiddleware)

app.include_router(router, tags=["game"])

logger.info("FastAPI application configured")


def _from_app_state(attribute: str, label: str):
    """Build a dependency override that reads a service from app.state."""
    def dependency():
        if not hasattr(app.state, attribute):
            raise RuntimeError(
                f"{label} not initialized. "
                "Ensure the application lifespan has started."
            )
        return getattr(app.state, attribute)
    return dependency


# Use FastAPI's dependency_overrides instead of monkey-patching
from adventure_dm.api.routes import (  # noqa: E402
    get_dungeon_master,
    get_game_locks,
    get_game_store,
    get_rate_limiter,
)
app.dependency_overrides[get_dungeon_master] = _from_app_state("dungeon_master", "Dungeon master")
app.dependency_overrides[get_game_store] = _from_app_state("game_store", "Game store")
app.dependency_overrides[get_game_locks] = _from_app_state("game_locks", "Game locks")
app.dependency_overrides[get_rate_limiter] = _from_app_state("rate_limiter", "Rate limiter")


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()

    logging.getLogger().setLevel(settings.log_level)

    uvicorn.run(
        "adventure_dm.main:app",
        host="0.0.0.0",
        port=8080,
        reload=True,
        log_level=settings.log_level.lower()
    )
