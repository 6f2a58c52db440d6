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
"""API route handlers for the Adventure DM service.

This module defines the HTTP endpoints:
- POST /games, GET /games: Create and list games
- GET /games/{id}, PUT /games/{id}: Read and replace one game
- POST /games/{id}/actions: Resolve a player action (synchronous)
- POST /games/{id}/actions/stream: Resolve a player action with SSE progress events
- POST /games/{id}/precheck: Validate and plan an action without narrating it
- POST /games/{id}/skillcheck: Roll a stand-alone skill check
- POST /games/{id}/resolve: Finish a prechecked action with a client-held roll
- GET /games/{id}/quests: Quests tracked in the game's DM notes
- POST /scenarios/describe: Expand a scenario title into a description
- GET /health: Service health check
- GET /metrics: Service metrics (optional, requires ENABLE_METRICS=true)

Actions on one game are serialized with a per-game lock held from load to
save, and throttled by a per-game rate limiter.
"""

import asyncio
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, status
from fastapi.responses import StreamingResponse
from pydantic import ValidationError

from adventure_dm.config import Settings, get_settings
from adventure_dm.game_store import GameStore, normalize_game_state
from adventure_dm.logging import StructuredLogger, get_request_id, sanitize_for_log
from adventure_dm.metrics import get_metrics_collector
from adventure_dm.models import (
    ActionRequest,
    CreateGameRequest,
    GameState,
    GameSummary,
    HealthResponse,
    PipelineResult,
    PrecheckResult,
    Quest,
    ResolveActionRequest,
    ScenarioDescription,
    ScenarioDescriptionRequest,
    SkillCheckResult,
    SkillCheckRollRequest,
    initialize_notes,
)
from adventure_dm.resilience import GameLocks, RateLimiter
from adventure_dm.services.dungeon_master import DungeonMaster
from adventure_dm.services.errors import StageTimeoutError, ValidationUnavailableError
from adventure_dm.services.gateway import GatewayError
from adventure_dm.streaming.transport import (
    SSETransport,
    StreamEvent,
    TransportError,
    build_stream_listener,
)

logger = StructuredLogger(__name__)

router = APIRouter()


def create_error_response(
    error_type: str,
    message: str,
    status_code: int,
    headers: Optional[Dict[str, str]] = None
) -> HTTPException:
    """Create a structured error response.

    Args:
        error_type: Machine-readable error type
        message: Human-readable error message
        status_code: HTTP status code
        headers: Optional response headers

    Returns:
        HTTPException with structured error detail
    """
    request_id = get_request_id()

    error_detail = {
        "error": {
            "type": error_type,
            "message": message,
            "request_id": request_id if request_id else None
        }
    }

    return HTTPException(
        status_code=status_code,
        detail=error_detail,
        headers=headers
    )


def get_dungeon_master() -> DungeonMaster:
    """Dependency that provides the pipeline orchestrator.

    This is a placeholder that must be overridden by the application.
    The application lifespan in main.py provides the actual implementation.

    Raises:
        NotImplementedError: If not overridden by the application
    """
    raise NotImplementedError(
        "get_dungeon_master dependency must be overridden. "
        "This should be configured in adventure_dm.main module."
    )


def get_game_store() -> GameStore:
    """Dependency that provides the game store (overridden in main.py)."""
    raise NotImplementedError(
        "get_game_store dependency must be overridden. "
        "This should be configured in adventure_dm.main module."
    )


def get_game_locks() -> GameLocks:
    """Dependency that provides per-game locks (overridden in main.py)."""
    raise NotImplementedError(
        "get_game_locks dependency must be overridden. "
        "This should be configured in adventure_dm.main module."
    )


def get_rate_limiter() -> RateLimiter:
    """Dependency that provides the per-game rate limiter (overridden in main.py)."""
    raise NotImplementedError(
        "get_rate_limiter dependency must be overridden. "
        "This should be configured in adventure_dm.main module."
    )


def load_game_or_404(store: GameStore, game_id: str) -> GameState:
    game = store.load_game(game_id)
    if game is None:
        logger.warning("Game not found", requested_game_id=game_id)
        if (collector := get_metrics_collector()):
            collector.record_error("game_not_found")
        raise create_error_response(
            error_type="game_not_found",
            message=f"Game {game_id} not found",
            status_code=status.HTTP_404_NOT_FOUND
        )
    return game


async def enforce_rate_limit(limiter: RateLimiter, game_id: str) -> None:
    if not await limiter.acquire(game_id):
        retry_after = limiter.get_retry_after(game_id)
        logger.warning("Action rate limit exceeded", retry_after_seconds=f"{retry_after:.2f}")
        if (collector := get_metrics_collector()):
            collector.record_error("rate_limited")
        raise create_error_response(
            error_type="rate_limited",
            message=f"Too many actions for this game. Retry after {retry_after:.1f}s.",
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            headers={"Retry-After": str(max(1, round(retry_after)))}
        )


def save_result(store: GameStore, game_id: str, result: PipelineResult) -> None:
    store.save_game(game_id, result.updated_game)
    store.save_notes(game_id, result.dm_notes)


@router.post(
    "/games",
    response_model=GameState,
    status_code=status.HTTP_201_CREATED,
    summary="Create a new game"
)
async def create_game(
    request: CreateGameRequest,
    store: GameStore = Depends(get_game_store)
) -> GameState:
    """Create a game with default stats unless stats are provided."""
    return store.create_game(
        name=request.name,
        scenario=request.scenario,
        custom_scenario=request.custom_scenario,
        stats=request.stats,
        inventory=request.inventory,
    )


@router.get(
    "/games",
    response_model=List[GameSummary],
    summary="List games"
)
async def list_games(store: GameStore = Depends(get_game_store)) -> List[GameSummary]:
    return [
        GameSummary(
            id=game.id,
            name=game.name,
            scenario=game.scenario,
            last_updated_at=game.last_updated_at,
        )
        for game in store.list_games()
    ]


@router.get(
    "/games/{game_id}",
    response_model=GameState,
    summary="Get a game",
    responses={404: {"description": "Game not found"}}
)
async def get_game(game_id: str, store: GameStore = Depends(get_game_store)) -> GameState:
    return load_game_or_404(store, game_id)


@router.put(
    "/games/{game_id}",
    response_model=GameState,
    summary="Replace a game",
    responses={
        404: {"description": "Game not found"},
        422: {"description": "Invalid game state"},
    }
)
async def update_game(
    game_id: str,
    payload: Dict[str, Any] = Body(...),
    store: GameStore = Depends(get_game_store),
    locks: GameLocks = Depends(get_game_locks)
) -> GameState:
    """Replace a stored game. Missing stats and inventory are filled with defaults."""
    async with locks.hold(game_id):
        existing = load_game_or_404(store, game_id)
        try:
            game = normalize_game_state({
                **payload,
                "id": game_id,
                "created_at": payload.get("created_at") or existing.created_at,
            })
        except ValidationError as e:
            raise create_error_response(
                error_type="invalid_game_state",
                message=f"Invalid game state: {e.error_count()} validation error(s)",
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY
            )
        return store.save_game(game_id, game)


@router.post(
    "/games/{game_id}/actions",
    response_model=PipelineResult,
    summary="Resolve a player action",
    description=(
        "Validate the action, roll a skill check when warranted, generate the DM "
        "narrative, extract state changes and persist the updated game. Pipeline "
        "failures still return 200 with stage='error' and the game updated with "
        "an error annotation."
    ),
    responses={
        404: {"description": "Game not found"},
        429: {"description": "Too many actions for this game"},
    }
)
async def process_action(
    game_id: str,
    request: ActionRequest,
    dm: DungeonMaster = Depends(get_dungeon_master),
    store: GameStore = Depends(get_game_store),
    locks: GameLocks = Depends(get_game_locks),
    limiter: RateLimiter = Depends(get_rate_limiter)
) -> PipelineResult:
    load_game_or_404(store, game_id)
    await enforce_rate_limit(limiter, game_id)

    async with locks.hold(game_id):
        # Reload under the lock so a queued action sees the previous result
        game = load_game_or_404(store, game_id)
        result = await dm.process_action(
            request.action, game, notes=store.load_notes(game_id)
        )
        save_result(store, game_id, result)

    logger.info(
        "Action processed",
        stage=result.stage,
        action=sanitize_for_log(request.action, max_length=80)
    )
    return result


@router.post(
    "/games/{game_id}/actions/stream",
    status_code=status.HTTP_200_OK,
    summary="Resolve a player action with streamed progress",
    description=(
        "Same pipeline as /actions, delivered as Server-Sent Events: action_validity, "
        "skill_check_notification, skill_check_result, stream_start, chunk, stream_end, "
        "error and a final complete event carrying the pipeline result."
    ),
    responses={
        200: {
            "description": "Pipeline progress as SSE",
            "content": {
                "text/event-stream": {
                    "example": (
                        'data: {"type":"action_validity","valid":true,"reason":null,...}\n\n'
                        'data: {"type":"stream_start",...}\n\n'
                        'data: {"type":"chunk","content":"The lid creaks ",...}\n\n'
                        'data: {"type":"stream_end",...}\n\n'
                        'data: {"type":"complete","result":{...},...}\n\n'
                        'data: [DONE]\n\n'
                    )
                }
            }
        },
        404: {"description": "Game not found"},
        429: {"description": "Too many actions for this game"},
    }
)
async def process_action_stream(
    game_id: str,
    request: ActionRequest,
    dm: DungeonMaster = Depends(get_dungeon_master),
    store: GameStore = Depends(get_game_store),
    locks: GameLocks = Depends(get_game_locks),
    limiter: RateLimiter = Depends(get_rate_limiter)
) -> StreamingResponse:
    """Resolve an action and stream pipeline events as they happen.

    The pipeline runs in a background task that writes SSE frames into a
    queue; the response generator drains the queue until the sentinel.
    """
    load_game_or_404(store, game_id)
    await enforce_rate_limit(limiter, game_id)

    async def event_stream():
        event_queue: asyncio.Queue = asyncio.Queue()
        transport = SSETransport(event_queue.put)

        async def run_pipeline():
            try:
                async with locks.hold(game_id):
                    game = load_game_or_404(store, game_id)
                    result = await dm.process_action(
                        request.action,
                        game,
                        notes=store.load_notes(game_id),
                        listener=build_stream_listener(transport)
                    )
                    save_result(store, game_id, result)
                await transport.send_event(StreamEvent(
                    type="complete",
                    data={"result": result.model_dump(mode="json")}
                ))
            except TransportError:
                logger.info("Transport closed before completion event")
            except Exception as e:
                logger.error(
                    "Streaming action failed outside the pipeline",
                    error_type=type(e).__name__,
                    exc_info=True
                )
                try:
                    await transport.send_event(StreamEvent(
                        type="error",
                        data={"message": "An unexpected error occurred."}
                    ))
                except TransportError:
                    pass
            finally:
                await transport.close()
                await event_queue.put(None)

        pipeline_task = asyncio.create_task(run_pipeline())

        try:
            while True:
                frame = await event_queue.get()
                if frame is None:
                    break
                yield frame.encode("utf-8")
        except asyncio.CancelledError:
            logger.info("Client disconnected during streaming action")
            if (collector := get_metrics_collector()):
                collector.record_stream_client_disconnect()
            pipeline_task.cancel()
            try:
                await pipeline_task
            except asyncio.CancelledError:
                pass
            raise

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        }
    )


@router.post(
    "/games/{game_id}/resolve",
    response_model=PipelineResult,
    summary="Finish a prechecked action",
    description=(
        "Second half of the precheck -> skillcheck -> resolve flow. Validation and "
        "planning are skipped; the supplied skill check result (if any) is narrated, "
        "recorded in the game log and followed by extraction and persistence."
    ),
    responses={
        404: {"description": "Game not found"},
        422: {"description": "Inconsistent skill check result"},
        429: {"description": "Too many actions for this game"},
    }
)
async def resolve_action(
    game_id: str,
    request: ResolveActionRequest,
    dm: DungeonMaster = Depends(get_dungeon_master),
    store: GameStore = Depends(get_game_store),
    locks: GameLocks = Depends(get_game_locks),
    limiter: RateLimiter = Depends(get_rate_limiter)
) -> PipelineResult:
    load_game_or_404(store, game_id)
    await enforce_rate_limit(limiter, game_id)

    async with locks.hold(game_id):
        game = load_game_or_404(store, game_id)
        result = await dm.resolve_action(
            request.action,
            game,
            skill_check_result=request.skill_check_result,
            notes=store.load_notes(game_id)
        )
        save_result(store, game_id, result)

    logger.info(
        "Prechecked action resolved",
        stage=result.stage,
        skill_check=result.skill_check_result is not None
    )
    return result


@router.post(
    "/games/{game_id}/precheck",
    response_model=PrecheckResult,
    summary="Validate and plan an action",
    responses={
        404: {"description": "Game not found"},
        503: {"description": "Language model unavailable"},
        504: {"description": "Language model timed out"},
    }
)
async def precheck_action(
    game_id: str,
    request: ActionRequest,
    dm: DungeonMaster = Depends(get_dungeon_master),
    store: GameStore = Depends(get_game_store)
) -> PrecheckResult:
    """Run validation and skill-check planning concurrently, without narrating."""
    game = load_game_or_404(store, game_id)
    try:
        return await dm.precheck_action(request.action, game)
    except ValidationUnavailableError as e:
        logger.error("Precheck failed: model unavailable", error_type=type(e).__name__)
        raise create_error_response(
            error_type="validation_unavailable",
            message="The game master is unavailable. Please try again.",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE
        )
    except StageTimeoutError:
        raise create_error_response(
            error_type="stage_timeout",
            message="The game master took too long to respond. Please try again.",
            status_code=status.HTTP_504_GATEWAY_TIMEOUT
        )


@router.post(
    "/games/{game_id}/skillcheck",
    response_model=SkillCheckResult,
    summary="Roll a skill check",
    responses={404: {"description": "Game not found"}}
)
async def roll_skill_check(
    game_id: str,
    request: SkillCheckRollRequest,
    dm: DungeonMaster = Depends(get_dungeon_master),
    store: GameStore = Depends(get_game_store)
) -> SkillCheckResult:
    """Roll a check for the given stat and difficulty using the game's current stats."""
    game = load_game_or_404(store, game_id)
    return dm.resolver.resolve(
        request.stat,
        request.difficulty_category,
        getattr(game.stats, request.stat),
    )


@router.get(
    "/games/{game_id}/quests",
    response_model=List[Quest],
    summary="List quests from the DM notes",
    responses={404: {"description": "Game not found"}}
)
async def list_quests(
    game_id: str,
    store: GameStore = Depends(get_game_store)
) -> List[Quest]:
    game = load_game_or_404(store, game_id)
    notes = store.load_notes(game_id) or initialize_notes(game)
    return notes.active_quests


@router.post(
    "/scenarios/describe",
    response_model=ScenarioDescription,
    summary="Describe a scenario",
    description="Expand a short scenario title into a 2-3 paragraph setting description.",
    responses={
        503: {"description": "Language model unavailable"},
        504: {"description": "Language model timed out"},
    }
)
async def describe_scenario(
    request: ScenarioDescriptionRequest,
    dm: DungeonMaster = Depends(get_dungeon_master)
) -> ScenarioDescription:
    try:
        description = await dm.describe_scenario(request.scenario)
    except GatewayError as e:
        logger.error("Scenario description failed", error_type=type(e).__name__)
        if (collector := get_metrics_collector()):
            collector.record_error("scenario_description_failed")
        raise create_error_response(
            error_type="llm_unavailable",
            message="Failed to generate scenario description. Please try again.",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE
        )
    except StageTimeoutError:
        raise create_error_response(
            error_type="stage_timeout",
            message="The game master took too long to respond. Please try again.",
            status_code=status.HTTP_504_GATEWAY_TIMEOUT
        )
    return ScenarioDescription(scenario=request.scenario, description=description)


@router.get(
    "/health",
    response_model=HealthResponse,
    status_code=status.HTTP_200_OK,
    summary="Health check endpoint"
)
async def health_check(settings: Settings = Depends(get_settings)) -> HealthResponse:
    logger.debug("Health check requested")
    return HealthResponse(status="healthy", service=settings.service_name)


@router.get(
    "/metrics",
    status_code=status.HTTP_200_OK,
    summary="Metrics endpoint",
    description=(
        "Get service metrics including request counts, pipeline outcomes, stage "
        "latencies and streaming statistics. Only available when ENABLE_METRICS is true."
    ),
    responses={404: {"description": "Metrics disabled"}}
)
async def get_metrics(settings: Settings = Depends(get_settings)):
    """Get service metrics.

    Raises:
        HTTPException: If metrics are disabled
    """
    if not settings.enable_metrics:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Metrics endpoint is disabled. Set ENABLE_METRICS=true to enable."
        )

    collector = get_metrics_collector()
    if not collector:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Metrics collector not initialized"
        )

    return collector.get_metrics()
