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

"""The Runnable contract.

A Runnable is the unit every pipeline, graph node and leaf integration is
built from. Subclasses implement ``_call`` (and optionally ``_stream``); the
public ``invoke``/``batch``/``stream``/``pipe`` surface is uniform:

    double = RunnableLambda(lambda x: x * 2)
    inc = RunnableLambda(lambda x: x + 1)

    chain = double | inc
    await chain.invoke(3)            # 7
    await chain.batch([1, 2, 3])     # [3, 5, 7]
    async for chunk in chain.stream(3):
        ...

Each call derives its own child context from the one it is given, so
callbacks see a fresh ``run_id`` per call and the caller's id as
``parent_run_id``.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import uuid
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable, Iterable, Mapping, Sequence
from contextlib import aclosing
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Generic, Optional, TypeVar, Union

from weft.config.settings import load_settings
from weft.runnables.callbacks import CallbackManager
from weft.runnables.config import RunnableConfig, ensure_config

if TYPE_CHECKING:
    from weft.core.retry import BaseRetryStrategy
    from weft.runnables.binding import RunnableBinding, RunnableRetry
    from weft.runnables.sequence import RunnableSequence

logger = logging.getLogger(__name__)

Input = TypeVar("Input")
Output = TypeVar("Output")

ConfigLike = Union[RunnableConfig, Mapping[str, Any], None]


class Runnable(ABC, Generic[Input, Output]):
    """Abstract execution unit.

    Attributes:
        name: Display name used by callbacks and logs (defaults to the class name)
        defaults: Constructor-time defaults consulted by :meth:`resolve_param`
    """

    def __init__(self, name: Optional[str] = None, defaults: Optional[Mapping[str, Any]] = None):
        self.name = name or type(self).__name__
        self.defaults: Mapping[str, Any] = MappingProxyType(dict(defaults or {}))

    @abstractmethod
    async def _call(self, input: Input, config: RunnableConfig, **kwargs: Any) -> Output:
        """Unit logic. ``config`` is the per-call context."""

    async def _stream(
        self, input: Input, config: RunnableConfig, **kwargs: Any
    ) -> AsyncIterator[Output]:
        """Default streaming: a single chunk holding the full result."""
        yield await self._call(input, config, **kwargs)

    def _prepare_config(self, config: ConfigLike) -> RunnableConfig:
        parent = ensure_config(config)
        return parent.child(
            run_id=uuid.uuid4().hex,
            parent_run_id=parent.run_id,
            run_name=self.name,
        )

    async def invoke(self, input: Input, config: ConfigLike = None, **kwargs: Any) -> Output:
        """Run the unit once.

        Args:
            input: Unit input
            config: Calling context (RunnableConfig, mapping or None)
            **kwargs: Call-time parameters, forwarded to ``_call``

        Returns:
            The unit's output

        Raises:
            RunCancelledError: If the context's cancellation token has fired
            Exception: Whatever the unit's own logic raised, unchanged
        """
        run_config = self._prepare_config(config)
        run_config.raise_if_cancelled()
        callbacks = CallbackManager.from_config(run_config)

        await callbacks.on_start(self, input, run_config)
        try:
            output = await self._call(input, run_config, **kwargs)
        except Exception as e:
            await callbacks.on_error(self, e, run_config)
            raise
        await callbacks.on_end(self, output, run_config)
        return output

    async def batch(
        self,
        inputs: Iterable[Input],
        config: Union[ConfigLike, Sequence[ConfigLike]] = None,
        *,
        max_concurrency: Optional[int] = None,
        **kwargs: Any,
    ) -> list[Output]:
        """Invoke the unit on every input concurrently.

        All-or-nothing: when any invocation fails, the invocations still
        running are cancelled and the first failure is raised. No partial
        result list is ever returned.

        Args:
            inputs: Inputs to process
            config: One context for every input, or a list with one per input
            max_concurrency: Bound on simultaneous invocations (falls back to
                ``config.max_concurrency``, then to the
                ``batch_max_concurrency`` setting; None means unbounded)

        Returns:
            Outputs in input order
        """
        items = list(inputs)
        if not items:
            return []

        configs = _batch_configs(config, len(items))
        limit = max_concurrency or configs[0].max_concurrency
        if limit is None:
            limit = load_settings().batch_max_concurrency
        semaphore = asyncio.Semaphore(limit) if limit else None

        async def run_one(item: Input, item_config: RunnableConfig) -> Output:
            if semaphore is None:
                return await self.invoke(item, item_config, **kwargs)
            async with semaphore:
                return await self.invoke(item, item_config, **kwargs)

        tasks = [
            asyncio.ensure_future(run_one(item, item_config))
            for item, item_config in zip(items, configs)
        ]
        try:
            return list(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def stream(
        self, input: Input, config: ConfigLike = None, **kwargs: Any
    ) -> AsyncIterator[Output]:
        """Yield incremental outputs.

        The iterator is finite and pull-based: nothing runs until the
        consumer asks for the next chunk. ``on_end`` receives the last chunk.
        """
        run_config = self._prepare_config(config)
        run_config.raise_if_cancelled()
        callbacks = CallbackManager.from_config(run_config)

        await callbacks.on_start(self, input, run_config)
        last: Any = None
        try:
            async with aclosing(self._stream(input, run_config, **kwargs)) as chunks:
                async for chunk in chunks:
                    last = chunk
                    yield chunk
        except Exception as e:
            await callbacks.on_error(self, e, run_config)
            raise
        await callbacks.on_end(self, last, run_config)

    def pipe(self, *others: Any, name: Optional[str] = None) -> "RunnableSequence":
        """Chain this unit with ``others``; the result is itself a Runnable."""
        from weft.runnables.sequence import RunnableSequence

        return RunnableSequence(self, *others, name=name)

    def __or__(self, other: Any) -> "RunnableSequence":
        return self.pipe(other)

    def __ror__(self, other: Any) -> "RunnableSequence":
        return coerce_to_runnable(other).pipe(self)

    def resolve_param(self, key: str, explicit: Any = None, config: ConfigLike = None) -> Any:
        """Look up a parameter: call-time value > configurable > constructor default."""
        if explicit is not None:
            return explicit
        if config is not None:
            configurable = ensure_config(config).configurable
            if key in configurable:
                return configurable[key]
        return self.defaults.get(key)

    def bind(self, **kwargs: Any) -> "RunnableBinding":
        """Return a unit that always calls this one with ``kwargs``."""
        from weft.runnables.binding import RunnableBinding

        return RunnableBinding(self, kwargs=kwargs)

    def with_config(self, config: ConfigLike = None, **fields: Any) -> "RunnableBinding":
        """Return a unit that runs this one under an extra bound context."""
        from weft.runnables.binding import RunnableBinding

        return RunnableBinding(self, config=ensure_config(config).child(**fields))

    def with_retry(
        self,
        strategy: Optional["BaseRetryStrategy"] = None,
        *,
        max_attempts: int = 3,
        retry_on: Optional[tuple[type[BaseException], ...]] = None,
    ) -> "RunnableRetry":
        """Return a unit that retries this one on failure.

        Args:
            strategy: Retry strategy; defaults to exponential backoff with
                ``max_attempts`` attempts
            max_attempts: Attempts for the default strategy
            retry_on: Exception types worth retrying for the default strategy
        """
        from weft.core.retry import ExponentialBackoffStrategy
        from weft.runnables.binding import RunnableRetry

        if strategy is None:
            strategy = ExponentialBackoffStrategy(
                max_attempts=max_attempts, retryable_exceptions=retry_on
            )
        return RunnableRetry(self, strategy)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"


def _batch_configs(
    config: Union[ConfigLike, Sequence[ConfigLike]], count: int
) -> list[RunnableConfig]:
    if isinstance(config, Sequence) and not isinstance(config, (str, bytes)):
        if len(config) != count:
            raise ValueError(
                f"batch() got {len(config)} configs for {count} inputs; pass one config "
                f"or exactly one per input"
            )
        return [ensure_config(c) for c in config]
    shared = ensure_config(config)
    return [shared] * count


def config_mode(func: Callable[..., Any]) -> Optional[str]:
    """How ``func`` takes the call context: ``"positional"``, ``"keyword"`` or None.

    A keyword-only ``config`` parameter takes it by keyword. Otherwise the
    second positional parameter takes it when it is named ``config`` or has
    no default, so ``def f(x, extra=None)`` is called with ``x`` only.
    """
    try:
        params = list(inspect.signature(func).parameters.values())
    except (TypeError, ValueError):
        return None
    if any(p.name == "config" and p.kind == inspect.Parameter.KEYWORD_ONLY for p in params):
        return "keyword"
    positional = [
        p
        for p in params
        if p.kind in (inspect.Parameter.POSITIONAL_ONLY, inspect.Parameter.POSITIONAL_OR_KEYWORD)
    ]
    if len(positional) >= 2:
        second = positional[1]
        if second.name == "config" or second.default is inspect.Parameter.empty:
            return "positional"
    return None


def _apply(
    func: Callable[..., Any],
    mode: Optional[str],
    input: Any,
    config: RunnableConfig,
    kwargs: dict[str, Any],
) -> Any:
    if mode == "positional":
        return func(input, config, **kwargs)
    if mode == "keyword":
        return func(input, config=config, **kwargs)
    return func(input, **kwargs)


def call_with_config(
    func: Callable[..., Any], input: Any, config: RunnableConfig, **kwargs: Any
) -> Any:
    """Call ``func`` with ``input``, adding ``config`` the way ``func`` accepts it."""
    return _apply(func, config_mode(func), input, config, kwargs)


class RunnableLambda(Runnable[Input, Output]):
    """Wrap a plain callable as a Runnable.

    ``func`` may be sync or async, and receives the call context as its
    second argument when it declares one. An async generator function makes
    a streaming unit: ``stream`` yields its chunks (string chunks are also
    reported through ``on_token``) and ``invoke`` returns the concatenated
    string when every chunk is a string, otherwise the last chunk.
    """

    def __init__(self, func: Callable[..., Any], name: Optional[str] = None, **kwargs: Any):
        if not callable(func):
            raise TypeError(f"RunnableLambda expects a callable, got {type(func).__name__}")
        func_name = getattr(func, "__name__", None)
        if func_name == "<lambda>":
            func_name = None
        super().__init__(name=name or func_name or "RunnableLambda", **kwargs)
        self.func = func
        self._config_mode = config_mode(func)
        self._is_generator = inspect.isasyncgenfunction(func)

    async def _call(self, input: Input, config: RunnableConfig, **kwargs: Any) -> Output:
        if self._is_generator:
            chunks = [chunk async for chunk in self._stream(input, config, **kwargs)]
            if chunks and all(isinstance(c, str) for c in chunks):
                return "".join(chunks)  # type: ignore[return-value]
            return chunks[-1] if chunks else None  # type: ignore[return-value]

        result = _apply(self.func, self._config_mode, input, config, kwargs)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def _stream(
        self, input: Input, config: RunnableConfig, **kwargs: Any
    ) -> AsyncIterator[Output]:
        if not self._is_generator:
            yield await self._call(input, config, **kwargs)
            return

        callbacks = CallbackManager.from_config(config)
        async for chunk in _apply(self.func, self._config_mode, input, config, kwargs):
            config.raise_if_cancelled()
            if isinstance(chunk, str):
                await callbacks.on_token(chunk, config)
            yield chunk


class RunnablePassthrough(Runnable[Input, Input]):
    """Identity unit, optionally running a side-effect on the input."""

    def __init__(self, func: Optional[Callable[..., Any]] = None, name: Optional[str] = None):
        super().__init__(name=name)
        self.func = func

    async def _call(self, input: Input, config: RunnableConfig, **kwargs: Any) -> Input:
        if self.func is not None:
            result = call_with_config(self.func, input, config)
            if inspect.isawaitable(result):
                await result
        return input


def coerce_to_runnable(thing: Any) -> Runnable[Any, Any]:
    """Turn a Runnable, callable or mapping of branches into a Runnable."""
    if isinstance(thing, Runnable):
        return thing
    if isinstance(thing, Mapping):
        from weft.runnables.sequence import RunnableParallel

        return RunnableParallel(thing)
    if callable(thing):
        return RunnableLambda(thing)
    raise TypeError(
        f"Expected a Runnable, callable or mapping of branches, got {type(thing).__name__}"
    )


__all__ = [
    "Runnable",
    "RunnableLambda",
    "RunnablePassthrough",
    "coerce_to_runnable",
    "call_with_config",
    "config_mode",
]
