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
"""Narrative generator: streams DM prose fragment by fragment.

The stream handed to on_chunk is framed by two sentinels:

    STREAM_START, fragment, fragment, ..., STREAM_END

The sentinels are StreamMarker members, never strings, so no model
fragment can be mistaken for one. Concatenating every non-sentinel
chunk in delivery order gives the text returned by stream(). If the gateway fails mid-stream, STREAM_END is never
delivered and StreamingFailureError is raised.
"""

from enum import Enum
from typing import Awaitable, Callable, List, Optional, Union

from adventure_dm.logging import StreamLifecycleLogger, StructuredLogger
from adventure_dm.metrics import get_metrics_collector
from adventure_dm.services.errors import StreamingFailureError
from adventure_dm.services.gateway import ChatMessage, GatewayError, LLMGateway

logger = StructuredLogger(__name__)


class StreamMarker(Enum):
    START = "stream_start"
    END = "stream_end"


STREAM_START = StreamMarker.START
STREAM_END = StreamMarker.END

Chunk = Union[str, StreamMarker]
ChunkCallback = Callable[[Chunk], Awaitable[None]]

# Progress is logged every N fragments
PROGRESS_LOG_INTERVAL = 50


def is_sentinel(chunk: Chunk) -> bool:
    return isinstance(chunk, StreamMarker)


class NarrativeGenerator:
    """Drives a streaming completion and assembles the full narrative."""

    def __init__(self, gateway: LLMGateway, temperature: float = 0.8):
        self.gateway = gateway
        self.temperature = temperature

    async def stream(
        self,
        messages: List[ChatMessage],
        on_chunk: Optional[ChunkCallback] = None,
    ) -> str:
        """Stream a narrative, forwarding every fragment to on_chunk.

        Args:
            messages: Full message history (system prompt first)
            on_chunk: Async callback receiving sentinels and fragments in order

        Returns:
            The concatenated narrative text

        Raises:
            StreamingFailureError: If the gateway fails while streaming
        """
        stream_logger = StreamLifecycleLogger(logger)
        collector = get_metrics_collector()

        async def emit(chunk: Chunk) -> None:
            if on_chunk is not None:
                await on_chunk(chunk)

        stream_logger.log_stream_start()
        if collector:
            collector.record_stream_start()
        await emit(STREAM_START)

        parts: List[str] = []
        try:
            async for fragment in self.gateway.complete_streaming(
                messages, temperature=self.temperature
            ):
                if not fragment:
                    continue
                await emit(fragment)
                parts.append(fragment)
                if len(parts) % PROGRESS_LOG_INTERVAL == 0:
                    stream_logger.log_chunk_streamed(len(parts))
        except GatewayError as e:
            stream_logger.log_stream_error(type(e).__name__, str(e))
            if collector:
                collector.record_stream_failure()
            raise StreamingFailureError(
                f"Narrative stream failed after {len(parts)} fragments: {e}",
                stage="narrating"
            ) from e

        await emit(STREAM_END)

        narrative = "".join(parts)
        stream_logger.log_stream_complete(
            narrative_length=len(narrative), total_chunks=len(parts)
        )
        if collector:
            collector.record_stream_complete(
                chunk_count=len(parts),
                duration_ms=stream_logger.duration_ms()
            )
        return narrative
