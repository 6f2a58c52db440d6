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
"""Tests for request correlation middleware helpers."""

import pytest

from adventure_dm.middleware import game_id_from_path, operation_for_path


@pytest.mark.parametrize(
    "path,game_id",
    [
        ("/games/abc-123", "abc-123"),
        ("/games/abc-123/actions/stream", "abc-123"),
        ("/games", None),
        ("/games/", None),
        ("/health", None),
        ("/scenarios/describe", None),
    ],
)
def test_game_id_from_path(path, game_id):
    assert game_id_from_path(path) == game_id


@pytest.mark.parametrize(
    "path,operation",
    [
        ("/games/g1/actions", "action"),
        ("/games/g1/actions/stream", "action_stream"),
        ("/games/g1/resolve", "action"),
        ("/games/g1/precheck", "precheck"),
        ("/scenarios/describe", "scenario_description"),
        ("/games/g1", "request"),
        ("/health", "request"),
    ],
)
def test_operation_for_path(path, operation):
    assert operation_for_path(path) == operation


def test_request_id_is_echoed(client):
    response = client.get("/health", headers={"X-Request-Id": "req-42"})

    assert response.headers["X-Request-Id"] == "req-42"


def test_request_id_is_generated(client):
    response = client.get("/health")

    assert len(response.headers["X-Request-Id"]) == 36
