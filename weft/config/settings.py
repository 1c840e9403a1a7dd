# Copyright 2025 Vijaykumar Singh <singhvjd@gmail.com>
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

"""Configuration management for weft.

Settings are read from ``WEFT_*`` environment variables (and a ``.env`` file
unless ``WEFT_SKIP_ENV_FILE`` is set). Nothing is cached at module level:
callers build a settings object with :func:`load_settings` and pass it to the
graph compiler or checkpointers that need it.
"""

import os
from pathlib import Path
from typing import Any, Optional

from pydantic import Field, ValidationError as PydanticValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from weft.core.errors import ConfigurationError

# Step ceiling for graphs compiled without max_steps
DEFAULT_MAX_STEPS = 25

WEFT_DIR_NAME = os.getenv("WEFT_DIR_NAME", ".weft")


class GraphSettings(BaseSettings):
    """Runtime defaults for graph execution and checkpoint storage."""

    model_config = SettingsConfigDict(
        env_prefix="WEFT_",
        env_file=".env" if not os.getenv("WEFT_SKIP_ENV_FILE") else None,
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Execution
    default_max_steps: int = Field(default=DEFAULT_MAX_STEPS, ge=1)
    batch_max_concurrency: Optional[int] = Field(default=None, ge=1)

    # Checkpoint storage
    checkpoint_dir: Path = Path.home() / WEFT_DIR_NAME / "checkpoints"
    sqlite_path: Path = Path.home() / WEFT_DIR_NAME / "checkpoints.db"
    lease_ttl_seconds: float = Field(default=300.0, gt=0)
    fsync_checkpoints: bool = True

    # Logging
    log_level: str = "INFO"

    @field_validator("checkpoint_dir", "sqlite_path", mode="after")
    @classmethod
    def expand_user(cls, v: Path) -> Path:
        return v.expanduser()

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"TRACE", "DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return level


def load_settings(**overrides: Any) -> GraphSettings:
    """Build a settings object from the environment plus explicit overrides.

    Raises:
        ConfigurationError: If a value fails validation
    """
    try:
        return GraphSettings(**overrides)
    except PydanticValidationError as e:
        first = e.errors()[0] if e.errors() else {}
        key = ".".join(str(p) for p in first.get("loc", ())) or None
        raise ConfigurationError(f"Invalid weft settings: {e}", config_key=key, cause=e) from e
