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
"""Pipeline error taxonomy.

Every class here is fatal for the run that raised it: the orchestrator
logs it with context and reduces it to GENERIC_ERROR_MESSAGE for the player.

STRUCTURED_OUTPUT_POLICY decides, per stage, what a structured completion
that produced no parsable object means. Validation and planning fall back
to a conservative default (invalid action, no check); extraction fails.
"""

from enum import Enum
from typing import TypeVar

from adventure_dm.logging import StructuredLogger

logger = StructuredLogger(__name__)

T = TypeVar("T")

GENERIC_ERROR_MESSAGE = "Sorry, there was an error processing your action. Please try again."


class MalformedOutputPolicy(str, Enum):
    CONSERVATIVE_DEFAULT = "conservative_default"
    FAIL = "fail"


STRUCTURED_OUTPUT_POLICY = {
    "validating": MalformedOutputPolicy.CONSERVATIVE_DEFAULT,
    "planning": MalformedOutputPolicy.CONSERVATIVE_DEFAULT,
    "extracting": MalformedOutputPolicy.FAIL,
}


class PipelineError(Exception):
    """Base exception for action-resolution pipeline failures."""

    def __init__(self, message: str, stage: str = "unknown"):
        super().__init__(message)
        self.stage = stage


class ValidationUnavailableError(PipelineError):
    """The validator or planner could not reach the model."""
    pass


class MalformedStructuredOutputError(PipelineError):
    """An extraction sub-query returned no parsable object."""
    pass


class StreamingFailureError(PipelineError):
    """The narrative stream failed after it was opened."""
    pass


class StageTimeoutError(PipelineError):
    """A gateway call exceeded the configured stage deadline."""

    def __init__(self, stage: str, timeout_seconds: float):
        super().__init__(
            f"Stage '{stage}' exceeded {timeout_seconds}s deadline", stage=stage
        )
        self.timeout_seconds = timeout_seconds


def handle_malformed_output(stage: str, query: str, default: T) -> T:
    """Apply the structured-output policy for a stage.

    Args:
        stage: Pipeline stage that issued the query
        query: Schema name of the failed query (for logs and errors)
        default: Value returned under the conservative-default policy

    Raises:
        MalformedStructuredOutputError: If the stage policy is FAIL
    """
    policy = STRUCTURED_OUTPUT_POLICY[stage]
    if policy is MalformedOutputPolicy.FAIL:
        raise MalformedStructuredOutputError(
            f"Structured query '{query}' returned no parsable object", stage=stage
        )
    logger.warning(
        "Structured query returned no parsable object, using default",
        stage=stage,
        query=query,
        default=default
    )
    return default
