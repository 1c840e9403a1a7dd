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
"""Tests for settings and logging configuration."""

import logging

import pytest

from weft.config import DEFAULT_MAX_STEPS, TRACE, configure_logging, load_settings
from weft.config.log_config import resolve_level
from weft.core.errors import ConfigurationError


class TestGraphSettings:
    def test_defaults(self, tmp_path):
        settings = load_settings()

        assert settings.default_max_steps == DEFAULT_MAX_STEPS == 25
        assert settings.fsync_checkpoints is True
        assert settings.lease_ttl_seconds == 300.0
        assert settings.checkpoint_dir == tmp_path / "weft-checkpoints"

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("WEFT_DEFAULT_MAX_STEPS", "7")
        monkeypatch.setenv("WEFT_FSYNC_CHECKPOINTS", "false")

        settings = load_settings()

        assert settings.default_max_steps == 7
        assert settings.fsync_checkpoints is False

    def test_explicit_overrides_win(self, monkeypatch):
        monkeypatch.setenv("WEFT_DEFAULT_MAX_STEPS", "7")

        assert load_settings(default_max_steps=3).default_max_steps == 3

    def test_invalid_value_raises_configuration_error(self):
        with pytest.raises(ConfigurationError) as exc_info:
            load_settings(default_max_steps=0)

        assert exc_info.value.details["config_key"] == "default_max_steps"

    def test_log_level_is_normalised(self):
        assert load_settings(log_level="debug").log_level == "DEBUG"
        with pytest.raises(ConfigurationError):
            load_settings(log_level="loud")


class TestConfigureLogging:
    @pytest.fixture(autouse=True)
    def restore_weft_level(self):
        weft_logger = logging.getLogger("weft")
        saved = weft_logger.level
        yield
        weft_logger.setLevel(saved)

    def test_sets_weft_level_without_touching_root(self):
        root_handlers = list(logging.getLogger().handlers)

        weft_logger = configure_logging("DEBUG")

        assert weft_logger.name == "weft"
        assert weft_logger.level == logging.DEBUG
        assert logging.getLogger().handlers == root_handlers

    def test_level_comes_from_settings(self, monkeypatch):
        assert configure_logging(settings=load_settings(log_level="warning")).level == (
            logging.WARNING
        )

        monkeypatch.setenv("WEFT_LOG_LEVEL", "ERROR")
        assert configure_logging().level == logging.ERROR

        assert configure_logging("DEBUG", settings=load_settings()).level == logging.DEBUG

    def test_trace_level(self):
        assert resolve_level("trace") == TRACE
        assert logging.getLevelName(TRACE) == "TRACE"
        assert configure_logging("TRACE").level == TRACE

    def test_add_handler_once(self):
        weft_logger = logging.getLogger("weft")
        saved = list(weft_logger.handlers)
        for handler in saved:
            weft_logger.removeHandler(handler)
        try:
            configure_logging("INFO", add_handler=True)
            configure_logging("INFO", add_handler=True)
            assert len(weft_logger.handlers) == 1
        finally:
            for handler in list(weft_logger.handlers):
                weft_logger.removeHandler(handler)
            for handler in saved:
                weft_logger.addHandler(handler)
