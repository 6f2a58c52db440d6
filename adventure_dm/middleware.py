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
"""Request correlation middleware.

Every request gets a request id (taken from X-Trace-Id or X-Request-Id
when the client sends one) and, on /games/{id}/... paths, a game id.
Both are bound to the logging context for the lifetime of the request,
so pipeline logs can be joined back to the HTTP call that caused them.
"""

import time
import uuid
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from adventure_dm.logging import (
    StructuredLogger,
    clear_context,
    redact_secrets,
    set_game_id,
    set_request_id,
)
from adventure_dm.metrics import MetricsTimer, get_metrics_collector

logger = StructuredLogger(__name__)

# Path suffix -> latency bucket; anything else is timed as "request"
_OPERATIONS = (
    ("/actions/stream", "action_stream"),
    ("/actions", "action"),
    ("/resolve", "action"),
    ("/precheck", "precheck"),
    ("/scenarios/describe", "scenario_description"),
)


def game_id_from_path(path: str) -> Optional[str]:
    """The {id} segment of a /games/{id}/... path, if any."""
    parts = path.strip("/").split("/")
    if len(parts) >= 2 and parts[0] == "games" and parts[1]:
        return parts[1]
    return None


def operation_for_path(path: str) -> str:
    for suffix, operation in _OPERATIONS:
        if path.endswith(suffix):
            return operation
    return "request"


class RequestCorrelationMiddleware(BaseHTTPMiddleware):
    """Binds correlation ids, times the request and echoes X-Request-Id."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = (
            request.headers.get("X-Trace-Id")
            or request.headers.get("X-Request-Id")
            or str(uuid.uuid4())
        )
        set_request_id(request_id)
        path = request.url.path
        if (game_id := game_id_from_path(path)):
            set_game_id(game_id)

        start_time = time.time()
        logger.info(
            "Request started",
            method=request.method,
            path=path,
            client_ip=request.client.host if request.client else None
        )

        try:
            with MetricsTimer(operation_for_path(path)):
                response = await call_next(request)

            if (collector := get_metrics_collector()):
                collector.record_request(response.status_code)

            logger.info(
                "Request completed",
                method=request.method,
                path=path,
                status_code=response.status_code,
                duration_ms=f"{(time.time() - start_time) * 1000:.2f}"
            )
            response.headers["X-Request-Id"] = request_id
            return response

        except Exception as e:
            if (collector := get_metrics_collector()):
                collector.record_error(f"unhandled_{type(e).__name__}")
            logger.error(
                "Request failed",
                exc_info=True,
                method=request.method,
                path=path,
                error_type=type(e).__name__,
                error_message=redact_secrets(str(e)),
                duration_ms=f"{(time.time() - start_time) * 1000:.2f}"
            )
            raise

        finally:
            clear_context()
