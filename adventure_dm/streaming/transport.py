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
"""Server-Sent Events transport for pipeline progress.

Pipeline listener callbacks are translated into stream events:

    on_action_validity          -> action_validity
    on_skill_check_notification -> skill_check_notification
    on_skill_check_result       -> skill_check_result
    on_stream_chunk             -> stream_start | chunk | stream_end
    on_error                    -> error

The route sends a final "complete" event with the pipeline result, then
closes the transport with a [DONE] marker.
"""

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from adventure_dm.logging import StructuredLogger
from adventure_dm.services.dungeon_master import PipelineListener
from adventure_dm.services.narrator import STREAM_END, STREAM_START, Chunk

logger = StructuredLogger(__name__)

DONE_MARKER = "data: [DONE]\n\n"


class TransportError(Exception):
    """Raised when transport operations fail."""
    pass


@dataclass
class StreamEvent:
    """Represents a streaming event sent to the client.

    Attributes:
        type: Event type (chunk, skill_check_result, complete, error, ...)
        data: Event payload
        timestamp: Event timestamp (ISO 8601 format)
    """
    type: str
    data: Dict[str, Any]
    timestamp: Optional[str] = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = datetime.now(timezone.utc).isoformat()


def format_sse_event(event: StreamEvent) -> str:
    """Frame an event as an SSE data line: data: {json}\\n\\n"""
    payload = {"type": event.type, "timestamp": event.timestamp}
    payload.update(event.data)
    return f"data: {json.dumps(payload, default=str)}\n\n"


class SSETransport:
    """Server-Sent Events transport.

    SSE Format:
        data: {"type":"chunk","content":"The lid creaks"}\\n\\n
        data: {"type":"complete","result":{...}}\\n\\n
        data: [DONE]\\n\\n

    Each formatted frame is handed to the writer callback, usually the
    put method of the queue the response generator drains.
    """

    def __init__(self, writer: Callable[[str], Awaitable[None]]):
        self._writer = writer
        self._connected = True

    async def send_event(self, event: StreamEvent) -> None:
        """Send one event.

        Raises:
            TransportError: If transport is not connected or the write fails
        """
        if not self._connected:
            raise TransportError("Transport not connected")

        try:
            await self._writer(format_sse_event(event))
        except Exception as e:
            self._connected = False
            logger.warning(
                "Failed to send SSE event - client may have disconnected",
                error_type=type(e).__name__,
                error=str(e)
            )
            raise TransportError(f"Failed to send SSE event: {e}") from e

    async def close(self) -> None:
        """Send the [DONE] marker and close the stream."""
        if self._connected:
            try:
                await self._writer(DONE_MARKER)
            except Exception as e:
                logger.warning("Failed to send SSE done marker", error=str(e))
            finally:
                self._connected = False

    def is_connected(self) -> bool:
        return self._connected


def build_stream_listener(transport: SSETransport) -> PipelineListener:
    """Create a PipelineListener that forwards every event to the transport."""

    async def on_action_validity(validity) -> None:
        await transport.send_event(StreamEvent("action_validity", validity.model_dump()))

    async def on_skill_check_notification(request) -> None:
        await transport.send_event(StreamEvent("skill_check_notification", request.model_dump()))

    async def on_skill_check_result(result) -> None:
        await transport.send_event(StreamEvent("skill_check_result", result.model_dump()))

    async def on_stream_chunk(chunk: Chunk) -> None:
        if chunk is STREAM_START:
            await transport.send_event(StreamEvent("stream_start", {}))
        elif chunk is STREAM_END:
            await transport.send_event(StreamEvent("stream_end", {}))
        else:
            await transport.send_event(StreamEvent("chunk", {"content": chunk}))

    async def on_error(message: str) -> None:
        await transport.send_event(StreamEvent("error", {"message": message}))

    return PipelineListener(
        on_action_validity=on_action_validity,
        on_skill_check_notification=on_skill_check_notification,
        on_skill_check_result=on_skill_check_result,
        on_stream_chunk=on_stream_chunk,
        on_error=on_error,
    )
