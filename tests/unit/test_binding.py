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
"""Tests for bind, with_config and with_retry."""

import pytest

from weft.core.errors import RunCancelledError
from weft.core.retry import FixedDelayStrategy
from weft.runnables import CancellationToken, RunnableBinding, RunnableLambda, RunnableRetry


def greet(name, *, greeting="Hello", punctuation="."):
    return f"{greeting}, {name}{punctuation}"


class TestBind:
    @pytest.mark.asyncio
    async def test_bound_kwargs_are_applied(self):
        bound = RunnableLambda(greet).bind(greeting="Hi")

        assert isinstance(bound, RunnableBinding)
        assert bound.name == "greet"
        assert await bound.invoke("Ada") == "Hi, Ada."

    @pytest.mark.asyncio
    async def test_call_time_kwargs_win(self):
        bound = RunnableLambda(greet).bind(greeting="Hi")

        assert await bound.invoke("Ada", greeting="Yo") == "Yo, Ada."

    @pytest.mark.asyncio
    async def test_bind_accumulates(self):
        bound = RunnableLambda(greet).bind(greeting="Hi").bind(punctuation="!")

        assert await bound.invoke("Ada") == "Hi, Ada!"
        assert isinstance(bound.bound, RunnableLambda)

    @pytest.mark.asyncio
    async def test_binding_inside_sequence(self):
        chain = RunnableLambda(str.strip) | RunnableLambda(greet).bind(punctuation="?")

        assert await chain.invoke("  Ada ") == "Hello, Ada?"


class TestWithConfig:
    @pytest.mark.asyncio
    async def test_bound_context_nests_under_caller(self, recorder):
        seen = []

        def capture(x, config):
            seen.append(config)
            return x

        unit = RunnableLambda(capture).with_config(tags=["bound"], metadata={"who": "bound"})
        await unit.invoke(1, {"tags": ["caller"], "metadata": {"who": "caller", "keep": 1}})

        config = seen[0]
        assert "caller" in config.tags and "bound" in config.tags
        assert config.metadata["who"] == "bound"
        assert config.metadata["keep"] == 1

    @pytest.mark.asyncio
    async def test_bound_callbacks_run_after_callers(self, recorder):
        order = []

        class Tagged(type(recorder)):
            def __init__(self, label):
                super().__init__()
                self.label = label

            def on_start(self, runnable, input, config):
                order.append(self.label)

        unit = RunnableLambda(lambda x: x).with_config(callbacks=[Tagged("bound")])
        await unit.invoke(1, {"callbacks": [Tagged("caller")]})

        assert order == ["caller", "bound"]

    @pytest.mark.asyncio
    async def test_with_config_then_bind_keeps_both(self):
        seen = []

        def capture(name, config, greeting="Hello"):
            seen.append(config.tags)
            return f"{greeting}, {name}"

        unit = RunnableLambda(capture).with_config(tags=["t"]).bind(greeting="Hey")

        assert await unit.invoke("Ada") == "Hey, Ada"
        assert "t" in seen[0]


class TestWithRetry:
    @pytest.mark.asyncio
    async def test_retries_until_success(self, recorder):
        attempts = []

        def flaky(x):
            attempts.append(x)
            if len(attempts) < 3:
                raise ConnectionError("transient")
            return "ok"

        unit = RunnableLambda(flaky).with_retry(FixedDelayStrategy(max_attempts=3))

        assert isinstance(unit, RunnableRetry)
        assert unit.name == "flakyWithRetry"
        assert await unit.invoke(1, {"callbacks": [recorder]}) == "ok"
        assert len(attempts) == 3
        assert recorder.of("error").count(("error", "flaky", "ConnectionError")) == 2

    @pytest.mark.asyncio
    async def test_gives_up_with_last_error(self):
        def always_fails(x):
            raise ConnectionError("down")

        unit = RunnableLambda(always_fails).with_retry(FixedDelayStrategy(max_attempts=2))

        with pytest.raises(ConnectionError, match="down"):
            await unit.invoke(1)

    @pytest.mark.asyncio
    async def test_default_strategy_filters_exception_types(self):
        attempts = []

        def fails(x):
            attempts.append(x)
            raise ValueError("permanent")

        unit = RunnableLambda(fails).with_retry(max_attempts=5, retry_on=(ConnectionError,))

        with pytest.raises(ValueError):
            await unit.invoke(1)
        assert attempts == [1]

    @pytest.mark.asyncio
    async def test_cancellation_is_not_retried(self):
        token = CancellationToken()
        attempts = []

        def cancel_then_fail(x):
            attempts.append(x)
            token.cancel("user")
            raise ConnectionError("transient")

        unit = RunnableLambda(cancel_then_fail).with_retry(FixedDelayStrategy(max_attempts=5))

        with pytest.raises(RunCancelledError):
            await unit.invoke(1, {"cancellation": token})
        assert attempts == [1]
