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
"""Structured logging utilities for the Adventure DM service.

Every log line emitted while a request is in flight carries the request_id,
and once known the game_id and action_id, held in context variables so the
pipeline never has to pass them around. Player text and provider error
messages go through redact_secrets and sanitize_for_log before they are
logged, since both can echo keys or contain newlines.
"""

import logging
import re
import time
from contextvars import ContextVar
from typing import Optional, Dict, Any
import json

# Context variables for request correlation
request_id_ctx: ContextVar[Optional[str]] = ContextVar('request_id', default=None)
game_id_ctx: ContextVar[Optional[str]] = ContextVar('game_id', default=None)
action_id_ctx: ContextVar[Optional[str]] = ContextVar('action_id', default=None)


def set_request_id(request_id: str) -> None:
    """Set the request ID in context for correlation.

    Args:
        request_id: Unique identifier for the request
    """
    request_id_ctx.set(request_id)


def get_request_id() -> Optional[str]:
    """Get the current request ID from context.

    Returns:
        Current request ID or None if not set
    """
    return request_id_ctx.get()


def set_game_id(game_id: str) -> None:
    """Set the game ID in context for correlation.

    Args:
        game_id: Game identifier
    """
    game_id_ctx.set(game_id)


def get_game_id() -> Optional[str]:
    """Get the current game ID from context."""
    return game_id_ctx.get()


def set_action_id(action_id: str) -> None:
    """Set the ID of the player action currently flowing through the pipeline."""
    action_id_ctx.set(action_id)


def get_action_id() -> Optional[str]:
    """Get the current action ID from context."""
    return action_id_ctx.get()


def clear_context() -> None:
    """Clear all context variables.

    Should be called at the end of request processing to avoid leaks.
    """
    request_id_ctx.set(None)
    game_id_ctx.set(None)
    action_id_ctx.set(None)


def redact_secrets(text: str) -> str:
    """Mask provider keys, api_key=... pairs and bearer tokens in text."""
    text = re.sub(r'sk-[a-zA-Z0-9]{32,}', 'sk-***REDACTED***', text)

    text = re.sub(r'api[_-]?key["\']?\s*[:=]\s*["\']?([a-zA-Z0-9_\-]{16,})',
                  'api_key=***REDACTED***', text, flags=re.IGNORECASE)

    text = re.sub(r'Bearer\s+[a-zA-Z0-9\-._~+/]+', 'Bearer ***REDACTED***', text, flags=re.IGNORECASE)

    return text


def sanitize_for_log(text: str, max_length: int = 200) -> str:
    """Strip control characters and cap the length of untrusted text.

    Player actions are logged with every request and may contain newlines that
    would otherwise forge extra log lines.
    """
    sanitized = re.sub(r'[\r\n\t\x00-\x1f\x7f-\x9f]', '', str(text))
    if len(sanitized) > max_length:
        sanitized = sanitized[:max_length] + "..."
    return sanitized


def get_structured_extras() -> Dict[str, Any]:
    """Get structured logging extras with correlation IDs.

    Returns:
        Dictionary with request_id, game_id and action_id if available
    """
    extras: Dict[str, Any] = {}

    request_id = get_request_id()
    if request_id:
        extras['request_id'] = request_id

    game_id = get_game_id()
    if game_id:
        extras['game_id'] = game_id

    action_id = get_action_id()
    if action_id:
        extras['action_id'] = action_id

    return extras


class StructuredLogger:
    """Structured logger with correlation IDs and stage tracking.

    Automatically includes request_id, game_id and action_id from context
    in all log messages.
    """

    def __init__(self, name: str):
        """Initialize structured logger.

        Args:
            name: Logger name (usually __name__)
        """
        self.logger = logging.getLogger(name)

    def _log(self, level: int, message: str, exc_info: bool = False, **kwargs) -> None:
        """Internal logging method that adds correlation IDs.

        Args:
            level: Logging level (e.g., logging.INFO)
            message: Log message
            exc_info: Attach the active exception traceback
            **kwargs: Additional fields to include in log
        """
        extras = get_structured_extras()
        extras.update(kwargs)

        if extras:
            extra_str = ' '.join(f'{k}={v}' for k, v in extras.items() if v is not None)
            if extra_str:
                message = f"{message} | {extra_str}"

        self.logger.log(level, message, extra=extras, exc_info=exc_info)

    def debug(self, message: str, **kwargs) -> None:
        """Log debug message with correlation IDs."""
        self._log(logging.DEBUG, message, **kwargs)

    def info(self, message: str, **kwargs) -> None:
        """Log info message with correlation IDs."""
        self._log(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs) -> None:
        """Log warning message with correlation IDs."""
        self._log(logging.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs) -> None:
        """Log error message with correlation IDs."""
        self._log(logging.ERROR, message, **kwargs)

    def critical(self, message: str, **kwargs) -> None:
        """Log critical message with correlation IDs."""
        self._log(logging.CRITICAL, message, **kwargs)


class PhaseTimer:
    """Context manager for timing and logging pipeline stages.

    Usage:
        with PhaseTimer("narrating", logger):
            # do work
            pass
    """

    def __init__(self, phase: str, logger: StructuredLogger):
        """Initialize phase timer.

        Args:
            phase: Name of the phase (e.g., "validating", "extracting")
            logger: Structured logger instance
        """
        self.phase = phase
        self.logger = logger
        self.start_time = 0.0
        self.duration_ms: Optional[float] = None

    def __enter__(self):
        """Start the phase timer."""
        self.start_time = time.time()
        self.logger.debug(f"Phase started: {self.phase}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """End the phase timer and log duration."""
        self.duration_ms = (time.time() - self.start_time) * 1000

        if exc_type:
            self.logger.error(
                f"Phase failed: {self.phase}",
                duration_ms=f"{self.duration_ms:.2f}",
                error_type=exc_type.__name__
            )
        else:
            self.logger.info(
                f"Phase completed: {self.phase}",
                duration_ms=f"{self.duration_ms:.2f}"
            )


class StreamLifecycleLogger:
    """Logger for tracking narrative stream lifecycle events.

    Usage:
        stream_logger = StreamLifecycleLogger(logger)
        stream_logger.log_stream_start()
        stream_logger.log_chunk_streamed(chunk_count=10)
        stream_logger.log_stream_complete(narrative_length=500, total_chunks=42)
    """

    def __init__(self, logger: StructuredLogger):
        self.logger = logger
        self.start_time = time.time()
        self.chunk_count = 0

    def log_stream_start(self) -> None:
        """Log the opening of a narrative stream."""
        self.start_time = time.time()
        self.chunk_count = 0
        self.logger.info("Narrative stream started", stream_phase="start")

    def log_chunk_streamed(self, chunk_count: int) -> None:
        """Log streaming progress.

        Args:
            chunk_count: Total number of chunks streamed so far
        """
        self.chunk_count = chunk_count
        self.logger.debug(
            "Chunks streamed",
            stream_phase="chunk_streaming",
            chunk_count=chunk_count
        )

    def duration_ms(self) -> float:
        """Milliseconds elapsed since the stream started."""
        return (time.time() - self.start_time) * 1000

    def log_stream_complete(self, narrative_length: int, total_chunks: int) -> None:
        """Log successful stream completion.

        Args:
            narrative_length: Final narrative length in characters
            total_chunks: Total chunks streamed
        """
        duration_ms = self.duration_ms()
        self.logger.info(
            "Narrative stream completed",
            stream_phase="complete",
            narrative_length=narrative_length,
            total_chunks=total_chunks,
            duration_ms=f"{duration_ms:.2f}"
        )

    def log_stream_error(self, error_type: str, error_message: str) -> None:
        """Log streaming error.

        Args:
            error_type: Type of error
            error_message: Error message (sanitized before logging)
        """
        duration_ms = self.duration_ms()
        self.logger.error(
            "Narrative stream failed",
            stream_phase="error",
            error_type=error_type,
            error_message=sanitize_for_log(redact_secrets(error_message)),
            chunk_count=self.chunk_count,
            duration_ms=f"{duration_ms:.2f}"
        )


class JsonFormatter(logging.Formatter):
    """One JSON object per record.

    Correlation ids and StructuredLogger keyword fields arrive as record
    attributes and are copied next to timestamp, level, logger and message.
    """

    # LogRecord internals, never copied into the payload
    RESERVED_ATTRS = {
        'name', 'msg', 'args', 'levelname', 'levelno', 'pathname', 'filename',
        'module', 'exc_info', 'exc_text', 'stack_info', 'lineno', 'funcName',
        'created', 'msecs', 'relativeCreated', 'thread', 'threadName',
        'processName', 'process', 'message', 'taskName'
    }

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON.

        Args:
            record: Log record to format

        Returns:
            JSON-formatted log string
        """
        log_data = {
            'timestamp': self.formatTime(record),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage()
        }

        for key, value in record.__dict__.items():
            if key not in self.RESERVED_ATTRS and key not in log_data:
                log_data[key] = value

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def configure_logging(
    level: str = "INFO",
    json_format: bool = False,
    service_name: str = "adventure-dm"
) -> None:
    """Configure application logging.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: If True, use JSON formatter; otherwise use standard formatter
        service_name: Service name to include in logs
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)

    if json_format:
        formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    root_logger.info(
        f"Logging configured: level={level}, json_format={json_format}, service={service_name}"
    )
