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
"""Tests for the SSE transport and the pipeline-to-SSE listener."""

import json
from datetime import datetime

import pytest

from adventure_dm.models import ActionValidity, SkillCheckRequest
from adventure_dm.services.narrator import STREAM_END, STREAM_START
from adventure_dm.services.skill_check import resolve_skill_check
from adventure_dm.streaming.transport import (
    DONE_MARKER,
    SSETransport,
    StreamEvent,
    TransportError,
    build_stream_listener,
    format_sse_event,
)


def decode(frame):
    assert frame.startswith("data: ") and frame.endswith("\n\n")
    return json.loads(frame[len("data: "):])


def test_stream_event_creation():
    """Test StreamEvent creation with explicit timestamp."""
    event = StreamEvent(
        type="chunk",
        data={"content": "Hello"},
        timestamp="2025-01-17T10:00:00.000Z"
    )

    assert event.type == "chunk"
    assert event.data == {"content": "Hello"}
    assert event.timestamp == "2025-01-17T10:00:00.000Z"


def test_stream_event_auto_timestamp():
    """Test StreamEvent auto-generates timestamp if not provided."""
    event = StreamEvent(type="chunk", data={"content": "Hello"})

    parsed = datetime.fromisoformat(event.timestamp)
    assert parsed.tzinfo is not None


def test_format_sse_event():
    frame = format_sse_event(StreamEvent("chunk", {"content": "Hi"}, timestamp="t"))

    assert decode(frame) == {"type": "chunk", "timestamp": "t", "content": "Hi"}


@pytest.mark.asyncio
async def test_transport_close_sends_done_once():
    frames = []

    async def writer(frame):
        frames.append(frame)

    transport = SSETransport(writer)
    await transport.send_event(StreamEvent("stream_start", {}))
    await transport.close()
    await transport.close()

    assert frames[-1] == DONE_MARKER
    assert frames.count(DONE_MARKER) == 1
    assert not transport.is_connected()

    with pytest.raises(TransportError):
        await transport.send_event(StreamEvent("chunk", {"content": "late"}))


@pytest.mark.asyncio
async def test_writer_failure_disconnects():
    async def writer(frame):
        raise ConnectionResetError("client gone")

    transport = SSETransport(writer)

    with pytest.raises(TransportError):
        await transport.send_event(StreamEvent("chunk", {"content": "Hi"}))
    assert not transport.is_connected()


@pytest.mark.asyncio
async def test_listener_maps_pipeline_events():
    frames = []

    async def writer(frame):
        frames.append(frame)

    listener = build_stream_listener(SSETransport(writer))

    await listener.notify("on_action_validity", ActionValidity(valid=True, reason=None))
    await listener.notify(
        "on_skill_check_notification",
        SkillCheckRequest(required=True, stat="dexterity", difficulty_category="medium"),
    )
    await listener.notify(
        "on_skill_check_result", resolve_skill_check("dexterity", "medium", 5, 7)
    )
    for chunk in (STREAM_START, "The lid ", "creaks.", STREAM_END):
        await listener.notify("on_stream_chunk", chunk)
    await listener.notify("on_error", "Sorry")

    events = [decode(frame) for frame in frames]
    assert [e["type"] for e in events] == [
        "action_validity",
        "skill_check_notification",
        "skill_check_result",
        "stream_start",
        "chunk",
        "chunk",
        "stream_end",
        "error",
    ]
    assert events[0]["valid"] is True
    assert events[1]["stat"] == "dexterity"
    assert events[2]["total"] == 12
    assert [e["content"] for e in events if e["type"] == "chunk"] == ["The lid ", "creaks."]
    assert events[-1]["message"] == "Sorry"


@pytest.mark.asyncio
async def test_marker_lookalike_text_is_sent_as_chunk():
    frames = []

    async def writer(frame):
        frames.append(frame)

    listener = build_stream_listener(SSETransport(writer))

    for chunk in (STREAM_START, "[STREAM_END]", "[STREAM_START]", STREAM_END):
        await listener.notify("on_stream_chunk", chunk)

    events = [decode(frame) for frame in frames]
    assert [e["type"] for e in events] == ["stream_start", "chunk", "chunk", "stream_end"]
    assert [e.get("content") for e in events[1:3]] == ["[STREAM_END]", "[STREAM_START]"]
