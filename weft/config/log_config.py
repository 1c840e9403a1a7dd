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

"""Logging setup helpers."""

from __future__ import annotations

import logging
from typing import Optional

from weft.config.settings import GraphSettings, load_settings

# Custom TRACE level for per-step state dumps
TRACE = 5
logging.addLevelName(TRACE, "TRACE")

NOISY_LOGGERS = [
    "asyncio",
    "urllib3",
    "httpx",
]

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


def resolve_level(log_level: str) -> int:
    """Translate a level name (including TRACE) to its numeric value."""
    level_upper = log_level.upper()
    if level_upper == "TRACE":
        return TRACE
    return getattr(logging, level_upper, logging.INFO)


def configure_logging(
    log_level: Optional[str] = None,
    *,
    settings: Optional[GraphSettings] = None,
    add_handler: bool = False,
    fmt: Optional[str] = None,
) -> logging.Logger:
    """Configure the ``weft`` logger hierarchy.

    Args:
        log_level: Level for weft loggers. Supported: TRACE, DEBUG, INFO,
            WARNING, ERROR, CRITICAL. Defaults to ``settings.log_level``
        settings: Settings to read the level from (loaded from the
            environment when neither argument is given)
        add_handler: Attach a stream handler to the ``weft`` logger if it has none
        fmt: Format string for that handler

    Returns:
        The ``weft`` package logger
    """
    if log_level is None:
        if settings is None:
            settings = load_settings()
        log_level = settings.log_level

    level = resolve_level(log_level)
    weft_logger = logging.getLogger("weft")
    weft_logger.setLevel(level)

    if add_handler and not weft_logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(fmt or LOG_FORMAT))
        weft_logger.addHandler(handler)

    for logger_name in NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(logging.WARNING)

    return weft_logger
