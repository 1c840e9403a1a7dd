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

"""Composite units: pipelines and parallel maps."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Mapping
from typing import Any, Optional

from weft.runnables.base import Runnable, coerce_to_runnable
from weft.runnables.callbacks import CallbackManager
from weft.runnables.config import RunnableConfig

logger = logging.getLogger(__name__)


class RunnableSequence(Runnable[Any, Any]):
    """Feeds the output of each step into the next.

    Nested sequences are flattened, so ``a | b | c`` is a single sequence of
    three steps. Step ``n`` (1-based) runs under a child context tagged
    ``seq:step:<n>`` and ``on_step`` fires after each step completes.
    Call-time keyword arguments go to the first step only.
    """

    def __init__(self, *steps: Any, name: Optional[str] = None):
        flat: list[Runnable[Any, Any]] = []
        for step in steps:
            runnable = coerce_to_runnable(step)
            if isinstance(runnable, RunnableSequence):
                flat.extend(runnable.steps)
            else:
                flat.append(runnable)
        if len(flat) < 2:
            raise ValueError(f"RunnableSequence needs at least 2 steps, got {len(flat)}")

        super().__init__(name=name)
        self.steps: tuple[Runnable[Any, Any], ...] = tuple(flat)

    @property
    def first(self) -> Runnable[Any, Any]:
        return self.steps[0]

    @property
    def last(self) -> Runnable[Any, Any]:
        return self.steps[-1]

    def _step_config(self, config: RunnableConfig, index: int) -> RunnableConfig:
        return config.child(tags=[f"seq:step:{index + 1}"])

    async def _call(self, input: Any, config: RunnableConfig, **kwargs: Any) -> Any:
        callbacks = CallbackManager.from_config(config)
        value = input
        for index, step in enumerate(self.steps):
            step_kwargs = kwargs if index == 0 else {}
            value = await step.invoke(value, self._step_config(config, index), **step_kwargs)
            await callbacks.on_step(f"{index + 1}:{step.name}", value, config)
        return value

    async def _stream(
        self, input: Any, config: RunnableConfig, **kwargs: Any
    ) -> AsyncIterator[Any]:
        callbacks = CallbackManager.from_config(config)
        value = input
        for index, step in enumerate(self.steps[:-1]):
            step_kwargs = kwargs if index == 0 else {}
            value = await step.invoke(value, self._step_config(config, index), **step_kwargs)
            await callbacks.on_step(f"{index + 1}:{step.name}", value, config)

        last_index = len(self.steps) - 1
        async for chunk in self.last.stream(value, self._step_config(config, last_index)):
            yield chunk

    def pipe(self, *others: Any, name: Optional[str] = None) -> "RunnableSequence":
        return RunnableSequence(*self.steps, *others, name=name)

    def __repr__(self) -> str:
        return " | ".join(step.name for step in self.steps)


class RunnableParallel(Runnable[Any, dict[str, Any]]):
    """Runs every branch on the same input concurrently.

    Returns ``{branch_key: output}``. Like ``batch``, a failing branch
    cancels the others and its error is raised.
    """

    def __init__(
        self,
        steps: Optional[Mapping[str, Any]] = None,
        name: Optional[str] = None,
        **kwargs: Any,
    ):
        branches = {**(steps or {}), **kwargs}
        if not branches:
            raise ValueError("RunnableParallel needs at least one branch")
        super().__init__(name=name)
        self.steps: dict[str, Runnable[Any, Any]] = {
            key: coerce_to_runnable(value) for key, value in branches.items()
        }

    async def _call(self, input: Any, config: RunnableConfig, **kwargs: Any) -> dict[str, Any]:
        keys = list(self.steps)
        tasks = [
            asyncio.ensure_future(
                self.steps[key].invoke(input, config.child(tags=[f"map:key:{key}"]))
            )
            for key in keys
        ]
        try:
            results = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        return dict(zip(keys, results))


__all__ = ["RunnableSequence", "RunnableParallel"]
