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

"""Shared pytest fixtures and configuration."""

import os

# Must be set before weft.config.settings is imported
os.environ.setdefault("WEFT_SKIP_ENV_FILE", "1")

import pytest  # noqa: E402

from weft.framework import MemoryCheckpointer  # noqa: E402
from weft.runnables import BaseCallback  # noqa: E402


@pytest.fixture(autouse=True)
def isolate_environment_variables(monkeypatch, tmp_path):
    """Keep tests away from the user's environment and home directory."""
    for key in list(os.environ):
        if key.startswith("WEFT_") and key != "WEFT_SKIP_ENV_FILE":
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("WEFT_CHECKPOINT_DIR", str(tmp_path / "weft-checkpoints"))
    monkeypatch.setenv("WEFT_SQLITE_PATH", str(tmp_path / "weft-checkpoints.db"))
    yield


class RecordingCallback(BaseCallback):
    """Records every hook call as a tuple."""

    def __init__(self):
        self.events = []

    def on_start(self, runnable, input, config):
        self.events.append(("start", runnable.name, input))

    def on_end(self, runnable, output, config):
        self.events.append(("end", runnable.name, output))

    def on_error(self, runnable, error, config):
        self.events.append(("error", runnable.name, type(error).__name__))

    def on_token(self, token, config):
        self.events.append(("token", token))

    def on_step(self, step_name, output, config):
        self.events.append(("step", step_name, output))

    def of(self, kind):
        return [event for event in self.events if event[0] == kind]


@pytest.fixture
def recorder():
    return RecordingCallback()


@pytest.fixture
def memory_checkpointer():
    return MemoryCheckpointer()
