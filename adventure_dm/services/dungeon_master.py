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
"""Pipeline orchestrator for resolving one player action.

This module provides the DungeonMaster class that drives an action through
a fixed state machine:

    IDLE -> VALIDATING -> REJECTED
                       -> PLANNING -> NO_CHECK | CHECK_PENDING
                          -> NARRATING -> EXTRACTING -> APPLYING -> DONE

with ERROR reachable from every non-terminal stage. Validation and
planning start together; the plan is only awaited once the action is
known to be valid and is cancelled otherwise.

The orchestrator ensures:
- The caller's GameState and DMNotes are never mutated
- Listener failures never affect the returned result
- Every failure still returns a game that records the attempted action
- Fatal errors are logged with context and reduced to a generic message
"""

import asyncio
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from adventure_dm.logging import (
    PhaseTimer,
    StructuredLogger,
    redact_secrets,
    sanitize_for_log,
    set_action_id,
)
from adventure_dm.metrics import get_metrics_collector
from adventure_dm.models import (
    ActionValidity,
    DMNotes,
    DMResponse,
    GameMessage,
    GameState,
    PipelineResult,
    PrecheckResult,
    SkillCheckRequest,
    SkillCheckResult,
    StateChanges,
    initialize_notes,
    utc_now,
)
from adventure_dm.prompting.prompt_builder import PromptBuilder
from adventure_dm.resilience import call_with_timeout
from adventure_dm.services.errors import GENERIC_ERROR_MESSAGE
from adventure_dm.services.extractor import StateChangeExtractor
from adventure_dm.services.gateway import LLMGateway
from adventure_dm.services.narrator import Chunk, NarrativeGenerator
from adventure_dm.services.planner import SkillCheckPlanner
from adventure_dm.services.skill_check import SkillCheckResolver
from adventure_dm.services.state_applier import apply_state_changes
from adventure_dm.services.validator import ActionValidator

logger = StructuredLogger(__name__)

DEFAULT_REJECTION_REASON = "Invalid action"


class PipelineStage(str, Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    REJECTED = "rejected"
    PLANNING = "planning"
    NO_CHECK = "no_check"
    CHECK_PENDING = "check_pending"
    NARRATING = "narrating"
    EXTRACTING = "extracting"
    APPLYING = "applying"
    DONE = "done"
    ERROR = "error"


Callback = Callable[[Any], Awaitable[None]]


@dataclass
class PipelineListener:
    """Optional async callbacks notified as the pipeline progresses.

    All callbacks are notifications only. A callback that raises is logged
    and ignored; the value returned by process_action is authoritative.

    Attributes:
        on_action_validity: Receives the ActionValidity verdict
        on_skill_check_notification: Receives the SkillCheckRequest before the roll
        on_skill_check_result: Receives the SkillCheckResult after the roll
        on_stream_chunk: Receives sentinels and narrative fragments in order
        on_error: Receives the generic player-facing error message
    """
    on_action_validity: Optional[Callback] = None
    on_skill_check_notification: Optional[Callback] = None
    on_skill_check_result: Optional[Callback] = None
    on_stream_chunk: Optional[Callback] = None
    on_error: Optional[Callback] = None

    async def notify(self, event: str, payload: Any) -> None:
        callback = getattr(self, event)
        if callback is None:
            return
        try:
            await callback(payload)
        except Exception as e:
            logger.warning(
                "Pipeline listener raised, ignoring",
                listener_event=event,
                error_type=type(e).__name__,
                error=redact_secrets(str(e))
            )


@dataclass
class _Run:
    """Mutable bookkeeping for one pipeline invocation."""
    action: str
    game: GameState
    notes: DMNotes
    listener: PipelineListener
    stage: PipelineStage = PipelineStage.IDLE
    validity: Optional[ActionValidity] = None
    request: Optional[SkillCheckRequest] = None
    result: Optional[SkillCheckResult] = None


def _discard_task(task: "asyncio.Future") -> None:
    """Cancel a task whose result is no longer needed."""
    task.cancel()
    # Retrieve any exception so it is not reported as never retrieved
    task.add_done_callback(lambda t: t.cancelled() or t.exception())


class DungeonMaster:
    """Orchestrator for the action-resolution pipeline.

    Key Responsibilities:
    - Run validation and planning concurrently, gate everything on validity
    - Resolve skill checks and report them to listeners
    - Stream the narrative and forward every chunk
    - Extract a state diff and merge it into a new snapshot
    - Turn any stage failure into an error-terminal result

    The orchestrator performs no persistence and no locking; the caller
    saves the returned game and serializes actions per game.
    """

    def __init__(
        self,
        gateway: LLMGateway,
        resolver: Optional[SkillCheckResolver] = None,
        prompt_builder: Optional[PromptBuilder] = None,
        validator_temperature: float = 0.0,
        narrative_temperature: float = 0.8,
        stage_timeout_seconds: float = 60.0,
        extract_quest_updates: bool = False,
    ):
        """Initialize the orchestrator.

        Args:
            gateway: Language model gateway shared by every stage
            resolver: Dice resolver (a fresh unseeded one when None)
            prompt_builder: PromptBuilder for all prompts
            validator_temperature: Temperature for validation, planning and extraction
            narrative_temperature: Temperature for narrative streaming
            stage_timeout_seconds: Deadline for each gateway call
            extract_quest_updates: Also extract quest status changes
        """
        self.gateway = gateway
        self.resolver = resolver or SkillCheckResolver()
        self.prompt_builder = prompt_builder or PromptBuilder()
        self.stage_timeout_seconds = stage_timeout_seconds

        self.validator = ActionValidator(
            gateway, self.prompt_builder,
            temperature=validator_temperature, timeout_seconds=stage_timeout_seconds
        )
        self.planner = SkillCheckPlanner(
            gateway, self.prompt_builder,
            temperature=validator_temperature, timeout_seconds=stage_timeout_seconds
        )
        self.narrative_temperature = narrative_temperature
        self.narrator = NarrativeGenerator(gateway, temperature=narrative_temperature)
        self.extractor = StateChangeExtractor(
            gateway, self.prompt_builder,
            temperature=validator_temperature,
            timeout_seconds=stage_timeout_seconds,
            extract_quests=extract_quest_updates
        )

    @classmethod
    def from_settings(cls, gateway: LLMGateway, settings) -> "DungeonMaster":
        return cls(
            gateway,
            resolver=SkillCheckResolver(seed=settings.rng_seed),
            validator_temperature=settings.validator_temperature,
            narrative_temperature=settings.narrative_temperature,
            stage_timeout_seconds=settings.stage_timeout_seconds,
            extract_quest_updates=settings.extract_quest_updates,
        )

    async def precheck_action(self, action: str, game: GameState) -> PrecheckResult:
        """Validate and plan an action without narrating it.

        Both queries run concurrently. The plan is only returned when the
        action is valid.

        Raises:
            ValidationUnavailableError: If the gateway fails
            StageTimeoutError: If a query exceeds the stage deadline
        """
        plan_task = asyncio.ensure_future(self.planner.plan(action, game))
        try:
            validity = await self.validator.validate(action, game)
        except BaseException:
            _discard_task(plan_task)
            raise

        if not validity.valid:
            _discard_task(plan_task)
            return PrecheckResult(valid=False, reason=validity.reason or DEFAULT_REJECTION_REASON)

        request = await plan_task
        return PrecheckResult(valid=True, reason=validity.reason, skill_check=request)

    async def describe_scenario(self, scenario: str) -> str:
        """Expand a scenario title into a short setting description.

        Raises:
            GatewayError: If the gateway fails or returns no text
            StageTimeoutError: If the call exceeds the stage deadline
        """
        messages = self.prompt_builder.build_scenario_messages(scenario)
        with PhaseTimer("describing_scenario", logger):
            description = await call_with_timeout(
                self.gateway.complete(messages, temperature=self.narrative_temperature),
                "describing_scenario",
                self.stage_timeout_seconds,
            )
        return description.strip()

    async def process_action(
        self,
        action: str,
        game: GameState,
        notes: Optional[DMNotes] = None,
        listener: Optional[PipelineListener] = None,
    ) -> PipelineResult:
        """Resolve one player action.

        Args:
            action: Player's action text
            game: Current game snapshot (not modified)
            notes: DM notes for this run; seeded from the scenario when None
            listener: Optional progress callbacks

        Returns:
            PipelineResult whose stage is "done", "rejected" or "error"
        """
        run = self._start(action, game, notes, listener)
        return await self._finish(run, self._run(run))

    async def resolve_action(
        self,
        action: str,
        game: GameState,
        skill_check_result: Optional[SkillCheckResult] = None,
        notes: Optional[DMNotes] = None,
        listener: Optional[PipelineListener] = None,
    ) -> PipelineResult:
        """Finish an action that was prechecked and rolled by the caller.

        Validation and planning are skipped; the run starts at NARRATING
        with the supplied roll, which is narrated and logged exactly like
        one rolled here. A result with performed=False counts as no check.

        Returns:
            PipelineResult whose stage is "done" or "error"
        """
        if skill_check_result is not None and not skill_check_result.performed:
            skill_check_result = None

        run = self._start(action, game, notes, listener)
        run.result = skill_check_result
        run.stage = (
            PipelineStage.CHECK_PENDING if skill_check_result is not None
            else PipelineStage.NO_CHECK
        )
        return await self._finish(run, self._narrate_and_apply(run))

    def _start(
        self,
        action: str,
        game: GameState,
        notes: Optional[DMNotes],
        listener: Optional[PipelineListener],
    ) -> _Run:
        set_action_id(str(uuid.uuid4()))
        logger.info(
            "Processing player action",
            game_id=game.id,
            action=sanitize_for_log(action, max_length=80)
        )
        return _Run(
            action=action,
            game=game,
            notes=notes.model_copy(deep=True) if notes is not None else initialize_notes(game),
            listener=listener or PipelineListener(),
        )

    async def _finish(self, run: _Run, pipeline: Awaitable[PipelineResult]) -> PipelineResult:
        try:
            result = await pipeline
        except Exception as e:
            result = await self._error_terminal(run, e)

        if (collector := get_metrics_collector()):
            collector.record_pipeline_outcome(result.stage)
        return result

    async def _run(self, run: _Run) -> PipelineResult:
        plan_task = asyncio.ensure_future(self.planner.plan(run.action, run.game))
        try:
            with self._stage(run, PipelineStage.VALIDATING):
                run.validity = await self.validator.validate(run.action, run.game)
        except BaseException:
            _discard_task(plan_task)
            raise
        await run.listener.notify("on_action_validity", run.validity)

        if not run.validity.valid:
            _discard_task(plan_task)
            return self._rejected(run)

        with self._stage(run, PipelineStage.PLANNING):
            run.request = await plan_task

        if run.request is not None and run.request.is_actionable:
            run.stage = PipelineStage.CHECK_PENDING
            await run.listener.notify("on_skill_check_notification", run.request)
            run.result = self.resolver.resolve(
                run.request.stat,
                run.request.difficulty_category,
                getattr(run.game.stats, run.request.stat),
                reason=run.request.reason,
            )
            await run.listener.notify("on_skill_check_result", run.result)
        else:
            run.stage = PipelineStage.NO_CHECK

        return await self._narrate_and_apply(run)

    async def _narrate_and_apply(self, run: _Run) -> PipelineResult:
        with self._stage(run, PipelineStage.NARRATING):
            messages = self.prompt_builder.build_narrative_messages(
                run.game, run.notes, run.action, run.result
            )

            async def forward_chunk(chunk: Chunk) -> None:
                await run.listener.notify("on_stream_chunk", chunk)

            narrative = await call_with_timeout(
                self.narrator.stream(messages, on_chunk=forward_chunk),
                PipelineStage.NARRATING.value,
                self.stage_timeout_seconds,
            )

        with self._stage(run, PipelineStage.EXTRACTING):
            changes = await self.extractor.extract(narrative, run.game, run.notes)

        with self._stage(run, PipelineStage.APPLYING):
            updated_game, updated_notes = self._apply(run, narrative, changes)

        run.stage = PipelineStage.DONE
        logger.info(
            "Player action resolved",
            skill_check=run.result is not None,
            narrative_length=len(narrative),
            state_changed=not changes.is_empty()
        )
        return PipelineResult(
            skill_check_request=run.request,
            skill_check_result=run.result,
            dm_response=DMResponse(message=narrative, state_changes=changes),
            action_validity=run.validity,
            updated_game=updated_game,
            dm_notes=updated_notes,
            stage=PipelineStage.DONE.value,
        )

    @contextmanager
    def _stage(self, run: _Run, stage: PipelineStage):
        """Enter a stage, timing and logging it."""
        run.stage = stage
        timer = PhaseTimer(stage.value, logger)
        try:
            with timer:
                yield
        finally:
            collector = get_metrics_collector()
            if collector and timer.duration_ms is not None:
                collector.record_pipeline_stage(stage.value, timer.duration_ms)

    def _apply(self, run: _Run, narrative: str, changes: StateChanges):
        now = utc_now()
        messages = list(run.game.messages)
        messages.append(GameMessage(role="user", content=run.action, type="normal", timestamp=now))
        if run.result is not None:
            messages.append(GameMessage(
                role="system", content=run.result.describe(), type="skill-check", timestamp=now
            ))
        messages.append(GameMessage(role="assistant", content=narrative, type="normal", timestamp=now))

        base = run.game.model_copy(update={"messages": messages, "last_updated_at": now})
        return apply_state_changes(base, changes, run.notes)

    def _rejected(self, run: _Run) -> PipelineResult:
        run.stage = PipelineStage.REJECTED
        reason = run.validity.reason or DEFAULT_REJECTION_REASON
        logger.info("Action rejected", reason=sanitize_for_log(reason))
        updated_game = self._annotate(run, reason, "action-invalid")
        return PipelineResult(
            dm_response=DMResponse(message=reason),
            action_validity=run.validity,
            updated_game=updated_game,
            dm_notes=run.notes,
            stage=PipelineStage.REJECTED.value,
        )

    async def _error_terminal(self, run: _Run, error: Exception) -> PipelineResult:
        failed_stage = run.stage
        run.stage = PipelineStage.ERROR
        logger.error(
            "Pipeline failed",
            exc_info=True,
            failed_stage=failed_stage.value,
            error_type=type(error).__name__,
            error=redact_secrets(str(error)),
            game_id=run.game.id
        )
        if (collector := get_metrics_collector()):
            collector.record_error(f"pipeline_{failed_stage.value}_{type(error).__name__}")

        await run.listener.notify("on_error", GENERIC_ERROR_MESSAGE)
        updated_game = self._annotate(run, GENERIC_ERROR_MESSAGE, "error")
        return PipelineResult(
            skill_check_request=run.request,
            skill_check_result=run.result,
            dm_response=DMResponse(message=GENERIC_ERROR_MESSAGE),
            action_validity=run.validity,
            updated_game=updated_game,
            dm_notes=run.notes,
            stage=PipelineStage.ERROR.value,
        )

    @staticmethod
    def _annotate(run: _Run, content: str, message_type: str) -> GameState:
        """Copy the game with the user action and a system annotation appended."""
        now = utc_now()
        updated = run.game.model_copy(deep=True)
        updated.messages.extend([
            GameMessage(role="user", content=run.action, type="normal", timestamp=now),
            GameMessage(role="system", content=content, type=message_type, timestamp=now),
        ])
        updated.last_updated_at = now
        return updated
