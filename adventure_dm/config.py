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
"""Configuration module for the Adventure DM service.

This module loads and validates configuration from environment variables.
All settings are validated at startup to fail fast if configuration is invalid.
"""

from functools import lru_cache
from typing import Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be overridden via environment variables.
    See .env.example for detailed documentation of each setting.
    """

    # OpenAI Configuration
    openai_api_key: str = Field(
        ...,
        description="OpenAI API key for LLM requests"
    )
    openai_model: str = Field(
        default="gpt-4o",
        description="OpenAI model used for every pipeline stage"
    )
    openai_timeout: int = Field(
        default=60,
        ge=1,
        le=600,
        description="HTTP timeout for OpenAI requests in seconds"
    )
    openai_stub_mode: bool = Field(
        default=False,
        description="Enable stub mode for offline development (no actual API calls)"
    )
    openai_max_retries: int = Field(
        default=0,
        ge=0,
        le=10,
        description="Retries for transient gateway errors (0 keeps the pipeline retry-free)"
    )

    # Pipeline Configuration
    validator_temperature: float = Field(
        default=0.0,
        ge=0.0,
        le=2.0,
        description="Sampling temperature for validation, planning and extraction queries"
    )
    narrative_temperature: float = Field(
        default=0.8,
        ge=0.0,
        le=2.0,
        description="Sampling temperature for streamed narrative generation"
    )
    stage_timeout_seconds: float = Field(
        default=60.0,
        gt=0.0,
        le=600.0,
        description="Deadline applied to every gateway call made by the pipeline"
    )
    rng_seed: Optional[int] = Field(
        default=None,
        description="Optional RNG seed for deterministic dice rolls (leave unset for normal play)"
    )
    extract_quest_updates: bool = Field(
        default=False,
        description="Also ask the model for quest status changes during state extraction"
    )
    action_rate_limit: float = Field(
        default=2.0,
        gt=0.0,
        le=100.0,
        description="Maximum player actions per second per game"
    )

    # Service Configuration
    service_name: str = Field(
        default="adventure-dm",
        description="Service name for logging and identification"
    )
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )
    log_json_format: bool = Field(
        default=False,
        description="Enable JSON structured logging output"
    )

    # Metrics Configuration
    enable_metrics: bool = Field(
        default=False,
        description="Enable metrics collection and /metrics endpoint"
    )

    @field_validator('openai_api_key')
    @classmethod
    def validate_openai_key(cls, v: str) -> str:
        """Validate OpenAI API key is not empty."""
        if not v or v.strip() == "":
            raise ValueError(
                "openai_api_key cannot be empty. Set OPENAI_API_KEY environment variable."
            )
        return v

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is a recognized value."""
        valid_levels = {'DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'}
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(
                f"log_level must be one of {valid_levels}, got: {v}"
            )
        return v_upper

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False
    )


@lru_cache
def get_settings() -> Settings:
    """Get the settings instance with LRU caching.

    Uses functools.lru_cache for thread-safe singleton pattern.
    The cache can be cleared for testing using get_settings.cache_clear().

    Returns:
        Settings instance with validated configuration

    Raises:
        ValueError: If required configuration is missing or invalid
    """
    try:
        return Settings()
    except Exception as e:
        raise ValueError(
            f"Configuration error: {e}. "
            "Ensure all required environment variables are set. "
            "See .env.example for required configuration."
        ) from e
