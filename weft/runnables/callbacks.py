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

"""Lifecycle callbacks and the dispatcher that drives them.

Handlers subclass :class:`BaseCallback` and override any of the hooks.
Hooks may be plain methods or coroutines. :class:`CallbackManager` calls
every handler in registration order and swallows (but logs) anything a hook
raises, so a broken observer can never change the outcome of the call it is
observing.

Example:
    metrics = MetricsCallback()
    result = await chain.invoke("hello", {"callbacks": [metrics]})
    print(metrics.get_report())
"""

from __future__ import annotations

import inspect
import json
import logging
import os
import tempfile
import time
from collections.abc import Iterable
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Union

if TYPE_CHECKING:
    from weft.runnables.config import RunnableConfig

logger = logging.getLogger(__name__)


def _unit_name(runnable: Any) -> str:
    return getattr(runnable, "name", None) or type(runnable).__name__


class BaseCallback:
    """Base callback handler. Every hook is optional."""

    def on_start(self, runnable: Any, input: Any, config: "RunnableConfig") -> Any:
        """Called when a unit starts."""

    def on_end(self, runnable: Any, output: Any, config: "RunnableConfig") -> Any:
        """Called when a unit completes successfully."""

    def on_error(self, runnable: Any, error: BaseException, config: "RunnableConfig") -> Any:
        """Called when a unit fails."""

    def on_token(self, token: str, config: "RunnableConfig") -> Any:
        """Called by streaming leaves for every incremental token."""

    def on_step(self, step_name: str, output: Any, config: "RunnableConfig") -> Any:
        """Called when a sequence step or graph node completes."""


class CallbackManager:
    """Dispatches lifecycle events to an ordered list of handlers."""

    def __init__(self, callbacks: Iterable[BaseCallback] = ()):
        self.callbacks: tuple[BaseCallback, ...] = tuple(callbacks)

    @classmethod
    def from_config(cls, config: "RunnableConfig") -> "CallbackManager":
        return cls(config.callbacks)

    def __bool__(self) -> bool:
        return bool(self.callbacks)

    async def on_start(self, runnable: Any, input: Any, config: "RunnableConfig") -> None:
        await self._dispatch("on_start", runnable, input, config)

    async def on_end(self, runnable: Any, output: Any, config: "RunnableConfig") -> None:
        await self._dispatch("on_end", runnable, output, config)

    async def on_error(self, runnable: Any, error: BaseException, config: "RunnableConfig") -> None:
        await self._dispatch("on_error", runnable, error, config)

    async def on_token(self, token: str, config: "RunnableConfig") -> None:
        await self._dispatch("on_token", token, config)

    async def on_step(self, step_name: str, output: Any, config: "RunnableConfig") -> None:
        await self._dispatch("on_step", step_name, output, config)

    async def _dispatch(self, hook: str, *args: Any) -> None:
        for callback in self.callbacks:
            method = getattr(callback, hook, None)
            if method is None:
                continue
            try:
                result = method(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                # Observability must never break the observed call
                logger.warning(
                    f"Callback {type(callback).__name__}.{hook} raised; ignoring",
                    exc_info=True,
                )


class LoggingCallback(BaseCallback):
    """Writes lifecycle events through the ``logging`` module."""

    def __init__(
        self,
        logger_name: str = "weft.trace",
        level: int = logging.INFO,
        verbose: bool = True,
        max_chars: int = 100,
    ):
        self.log = logging.getLogger(logger_name)
        self.level = level
        self.verbose = verbose
        self.max_chars = max_chars

    def _format(self, value: Any) -> str:
        if isinstance(value, str):
            text = value
        else:
            try:
                text = json.dumps(value, default=str)
            except (TypeError, ValueError):
                text = repr(value)
        if len(text) > self.max_chars:
            text = text[: self.max_chars - 3] + "..."
        return text

    def on_start(self, runnable: Any, input: Any, config: "RunnableConfig") -> None:
        if self.verbose:
            self.log.log(
                self.level, f"Starting: {_unit_name(runnable)} input={self._format(input)}"
            )

    def on_end(self, runnable: Any, output: Any, config: "RunnableConfig") -> None:
        if self.verbose:
            self.log.log(
                self.level, f"Completed: {_unit_name(runnable)} output={self._format(output)}"
            )

    def on_error(self, runnable: Any, error: BaseException, config: "RunnableConfig") -> None:
        self.log.error(f"Error in {_unit_name(runnable)}: {error}")

    def on_step(self, step_name: str, output: Any, config: "RunnableConfig") -> None:
        if self.verbose:
            self.log.log(self.level, f"Step {step_name}: {self._format(output)}")


class MetricsCallback(BaseCallback):
    """Tracks call counts, errors and durations per unit name.

    Start times are keyed by ``config.run_id`` so concurrent calls of the
    same unit (for example inside ``batch``) are timed independently.
    """

    def __init__(self) -> None:
        self.calls: dict[str, int] = {}
        self.errors: dict[str, int] = {}
        self.total_time: dict[str, float] = {}
        self._start_times: dict[str, float] = {}

    def _key(self, runnable: Any, config: "RunnableConfig") -> str:
        return config.run_id or f"{_unit_name(runnable)}:{id(runnable)}"

    def on_start(self, runnable: Any, input: Any, config: "RunnableConfig") -> None:
        name = _unit_name(runnable)
        self.calls[name] = self.calls.get(name, 0) + 1
        self._start_times[self._key(runnable, config)] = time.perf_counter()

    def _stop(self, runnable: Any, config: "RunnableConfig") -> None:
        started = self._start_times.pop(self._key(runnable, config), None)
        if started is not None:
            name = _unit_name(runnable)
            self.total_time[name] = self.total_time.get(name, 0.0) + (
                time.perf_counter() - started
            )

    def on_end(self, runnable: Any, output: Any, config: "RunnableConfig") -> None:
        self._stop(runnable, config)

    def on_error(self, runnable: Any, error: BaseException, config: "RunnableConfig") -> None:
        name = _unit_name(runnable)
        self.errors[name] = self.errors.get(name, 0) + 1
        self._stop(runnable, config)

    def get_report(self) -> list[dict[str, Any]]:
        """Summarise the collected metrics, one row per unit name."""
        report = []
        for name, calls in self.calls.items():
            total_ms = self.total_time.get(name, 0.0) * 1000
            report.append(
                {
                    "runnable": name,
                    "calls": calls,
                    "errors": self.errors.get(name, 0),
                    "total_ms": round(total_ms, 3),
                    "avg_ms": round(total_ms / calls, 3) if calls else 0.0,
                }
            )
        return report

    def reset(self) -> None:
        self.calls.clear()
        self.errors.clear()
        self.total_time.clear()
        self._start_times.clear()


class FileCallback(BaseCallback):
    """Buffers lifecycle events and writes them to a JSON-lines file on flush."""

    def __init__(self, filename: Union[str, Path]):
        self.filename = Path(filename).expanduser()
        self.events: list[dict[str, Any]] = []

    def _record(self, event: str, runnable: Any, config: "RunnableConfig", **data: Any) -> None:
        self.events.append(
            {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "event": event,
                "runnable": _unit_name(runnable),
                "run_id": config.run_id,
                "tags": list(config.tags),
                **data,
            }
        )

    @staticmethod
    def _serialize(value: Any) -> Any:
        if isinstance(value, str):
            return value
        content = getattr(value, "content", None)
        if isinstance(content, str):
            return content
        try:
            json.dumps(value)
            return value
        except (TypeError, ValueError):
            return repr(value)

    def on_start(self, runnable: Any, input: Any, config: "RunnableConfig") -> None:
        self._record("start", runnable, config, input=self._serialize(input))

    def on_end(self, runnable: Any, output: Any, config: "RunnableConfig") -> None:
        self._record("end", runnable, config, output=self._serialize(output))

    def on_error(self, runnable: Any, error: BaseException, config: "RunnableConfig") -> None:
        self._record("error", runnable, config, error=str(error), error_type=type(error).__name__)

    def flush(self) -> int:
        """Append buffered events to the file and clear the buffer.

        The existing file content plus the new events are written to a temp
        file that then replaces the target, so readers never see a partial
        line.

        Returns:
            Number of events written
        """
        if not self.events:
            return 0

        self.filename.parent.mkdir(parents=True, exist_ok=True)
        existing = self.filename.read_text(encoding="utf-8") if self.filename.exists() else ""
        lines = "".join(json.dumps(event, default=str) + "\n" for event in self.events)

        fd, temp_path = tempfile.mkstemp(dir=self.filename.parent, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(existing)
                f.write(lines)
            os.replace(temp_path, self.filename)
        except BaseException:
            Path(temp_path).unlink(missing_ok=True)
            raise

        written = len(self.events)
        self.events.clear()
        logger.debug(f"FileCallback wrote {written} events to {self.filename}")
        return written


__all__ = [
    "BaseCallback",
    "CallbackManager",
    "LoggingCallback",
    "MetricsCallback",
    "FileCallback",
]
