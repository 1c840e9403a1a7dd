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

"""Wrappers that own bound parameters, a bound context, or a retry policy."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Mapping
from typing import Any, Optional

from weft.core.retry import BaseRetryStrategy, retry_async
from weft.runnables.base import ConfigLike, Runnable
from weft.runnables.config import RunnableConfig, ensure_config

logger = logging.getLogger(__name__)


class RunnableBinding(Runnable[Any, Any]):
    """Delegates to ``bound`` with fixed kwargs and a bound context.

    The bound context is nested under the caller's: the caller's callbacks
    run first, tags are unioned and bound metadata shadows the caller's.
    Call-time kwargs win over bound kwargs.
    """

    def __init__(
        self,
        bound: Runnable[Any, Any],
        *,
        kwargs: Optional[Mapping[str, Any]] = None,
        config: Optional[RunnableConfig] = None,
    ):
        super().__init__(name=bound.name, defaults=bound.defaults)
        self.bound = bound
        self.kwargs = dict(kwargs or {})
        self.config = config

    def _merge(
        self, config: ConfigLike, kwargs: Mapping[str, Any]
    ) -> tuple[RunnableConfig, dict[str, Any]]:
        merged = ensure_config(config)
        if self.config is not None:
            merged = merged.child(self.config)
        return merged, {**self.kwargs, **kwargs}

    async def invoke(self, input: Any, config: ConfigLike = None, **kwargs: Any) -> Any:
        merged, call_kwargs = self._merge(config, kwargs)
        return await self.bound.invoke(input, merged, **call_kwargs)

    async def stream(
        self, input: Any, config: ConfigLike = None, **kwargs: Any
    ) -> AsyncIterator[Any]:
        merged, call_kwargs = self._merge(config, kwargs)
        async for chunk in self.bound.stream(input, merged, **call_kwargs):
            yield chunk

    async def _call(self, input: Any, config: RunnableConfig, **kwargs: Any) -> Any:
        return await self.bound._call(input, config, **{**self.kwargs, **kwargs})

    def bind(self, **kwargs: Any) -> "RunnableBinding":
        return RunnableBinding(self.bound, kwargs={**self.kwargs, **kwargs}, config=self.config)

    def with_config(self, config: ConfigLike = None, **fields: Any) -> "RunnableBinding":
        extra = ensure_config(config).child(**fields)
        combined = self.config.child(extra) if self.config is not None else extra
        return RunnableBinding(self.bound, kwargs=self.kwargs, config=combined)

    def __repr__(self) -> str:
        return f"RunnableBinding(bound={self.bound!r}, kwargs={self.kwargs!r})"


class RunnableRetry(Runnable[Any, Any]):
    """Retries the wrapped unit according to a retry strategy.

    Each attempt is a full ``invoke`` of the wrapped unit, so callbacks see
    every attempt. The context's cancellation token is checked before each
    attempt.
    """

    def __init__(self, bound: Runnable[Any, Any], strategy: BaseRetryStrategy):
        super().__init__(name=f"{bound.name}WithRetry", defaults=bound.defaults)
        self.bound = bound
        self.strategy = strategy

    async def _call(self, input: Any, config: RunnableConfig, **kwargs: Any) -> Any:
        async def attempt() -> Any:
            return await self.bound.invoke(input, config, **kwargs)

        return await retry_async(
            attempt,
            self.strategy,
            label=self.bound.name,
            cancellation=config.cancellation,
        )


__all__ = ["RunnableBinding", "RunnableRetry"]
