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
"""Tests for the Runnable contract and the leaf units."""

import asyncio

import pytest

from weft.core.errors import RunCancelledError
from weft.runnables import (
    CancellationToken,
    Runnable,
    RunnableConfig,
    RunnableLambda,
    RunnableParallel,
    RunnablePassthrough,
    coerce_to_runnable,
)
from weft.runnables.base import config_mode


class Greeter(Runnable[str, str]):
    """Runnable with a constructor default resolved through configurable."""

    def __init__(self):
        super().__init__(defaults={"greeting": "Hello"})

    async def _call(self, input, config, greeting=None, **kwargs):
        greeting = self.resolve_param("greeting", greeting, config)
        return f"{greeting}, {input}"


class TestInvoke:
    @pytest.mark.asyncio
    async def test_sync_and_async_functions(self):
        async def double(x):
            return x * 2

        assert await RunnableLambda(lambda x: x + 1).invoke(1) == 2
        assert await RunnableLambda(double).invoke(4) == 8

    @pytest.mark.asyncio
    async def test_each_call_gets_its_own_run_id(self):
        seen = []

        def capture(x, config):
            seen.append(config)
            return x

        unit = RunnableLambda(capture)
        caller = RunnableConfig(run_id="caller")
        await unit.invoke(1, caller)
        await unit.invoke(2, caller)

        first, second = seen
        assert first.run_id and second.run_id and first.run_id != second.run_id
        assert first.parent_run_id == "caller"
        assert first.run_name == "capture"

    @pytest.mark.asyncio
    async def test_kwargs_forwarded(self):
        def shout(x, *, suffix=""):
            return f"{x}{suffix}"

        unit = RunnableLambda(shout)
        assert await unit.invoke("a", suffix="!") == "a!"

    @pytest.mark.asyncio
    async def test_cancelled_token_stops_before_running(self):
        calls = []
        token = CancellationToken()
        token.cancel("stop")

        with pytest.raises(RunCancelledError):
            await RunnableLambda(calls.append).invoke(1, {"cancellation": token})

        assert calls == []

    @pytest.mark.asyncio
    async def test_resolve_param_precedence(self):
        greeter = Greeter()

        assert await greeter.invoke("Ada") == "Hello, Ada"
        assert await greeter.invoke("Ada", {"configurable": {"greeting": "Hi"}}) == "Hi, Ada"
        assert (
            await greeter.invoke("Ada", {"configurable": {"greeting": "Hi"}}, greeting="Yo")
            == "Yo, Ada"
        )
        assert greeter.resolve_param("missing") is None

    def test_rejects_non_callable(self):
        with pytest.raises(TypeError):
            RunnableLambda(42)  # type: ignore[arg-type]


class TestBatch:
    @pytest.mark.asyncio
    async def test_results_in_input_order(self):
        async def slow_square(x):
            await asyncio.sleep(0.01 * (5 - x))
            return x * x

        assert await RunnableLambda(slow_square).batch([1, 2, 3, 4]) == [1, 4, 9, 16]

    @pytest.mark.asyncio
    async def test_empty_input(self):
        assert await RunnableLambda(lambda x: x).batch([]) == []

    @pytest.mark.asyncio
    async def test_first_failure_cancels_the_rest(self):
        cancelled = []
        never = asyncio.Event()

        async def work(x):
            if x == "bad":
                raise ValueError("bad item")
            try:
                await never.wait()
            except asyncio.CancelledError:
                cancelled.append(x)
                raise
            return x

        with pytest.raises(ValueError, match="bad item"):
            await RunnableLambda(work).batch(["a", "bad", "c"])

        assert sorted(cancelled) == ["a", "c"]

    @pytest.mark.asyncio
    async def test_max_concurrency_bounds_fan_out(self):
        active = 0
        peak = 0

        async def track(x):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return x

        unit = RunnableLambda(track)
        assert await unit.batch(range(6), max_concurrency=2) == list(range(6))
        assert peak == 2

        peak = 0
        await unit.batch(range(6), {"max_concurrency": 3})
        assert peak == 3

    @pytest.mark.asyncio
    async def test_concurrency_setting_is_the_last_fallback(self, monkeypatch):
        monkeypatch.setenv("WEFT_BATCH_MAX_CONCURRENCY", "2")
        active = 0
        peak = 0

        async def track(x):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return x

        unit = RunnableLambda(track)
        assert await unit.batch(range(5)) == list(range(5))
        assert peak == 2

        peak = 0
        await unit.batch(range(5), max_concurrency=4)
        assert peak == 4

    @pytest.mark.asyncio
    async def test_one_config_per_input(self):
        unit = RunnableLambda(lambda x, config: (x, config.tags))

        results = await unit.batch([1, 2], [{"tags": ["one"]}, {"tags": ["two"]}])

        assert results == [(1, ("one",)), (2, ("two",))]

    @pytest.mark.asyncio
    async def test_config_count_mismatch(self):
        with pytest.raises(ValueError):
            await RunnableLambda(lambda x: x).batch([1, 2, 3], [None, None])


class TestStream:
    @pytest.mark.asyncio
    async def test_default_stream_yields_single_result(self, recorder):
        chunks = [
            c async for c in RunnableLambda(lambda x: x * 2).stream(2, {"callbacks": [recorder]})
        ]

        assert chunks == [4]
        assert recorder.of("end") == [("end", "RunnableLambda", 4)]

    @pytest.mark.asyncio
    async def test_async_generator_streams_tokens(self, recorder):
        async def words(text):
            for word in text.split():
                yield word + " "

        unit = RunnableLambda(words)
        chunks = [c async for c in unit.stream("a b c", {"callbacks": [recorder]})]

        assert chunks == ["a ", "b ", "c "]
        assert [e[1] for e in recorder.of("token")] == ["a ", "b ", "c "]
        assert recorder.of("end") == [("end", "words", "c ")]
        assert await unit.invoke("a b c") == "a b c "

    @pytest.mark.asyncio
    async def test_non_string_generator_invoke_returns_last_chunk(self):
        async def count(n):
            for i in range(n):
                yield i

        assert await RunnableLambda(count).invoke(3) == 2
        assert await RunnableLambda(count).invoke(0) is None

    @pytest.mark.asyncio
    async def test_stream_is_pull_based(self):
        produced = []

        async def numbers(n):
            for i in range(n):
                produced.append(i)
                yield i

        stream = RunnableLambda(numbers).stream(5)
        first = await stream.__anext__()

        assert first == 0
        assert produced == [0]
        await stream.aclose()

    @pytest.mark.asyncio
    async def test_stream_error_reaches_callbacks(self, recorder):
        async def broken(x):
            yield 1
            raise RuntimeError("mid-stream")

        with pytest.raises(RuntimeError):
            async for _ in RunnableLambda(broken).stream(0, {"callbacks": [recorder]}):
                pass

        assert recorder.of("error") == [("error", "broken", "RuntimeError")]


class TestLeafUnits:
    @pytest.mark.asyncio
    async def test_passthrough_runs_side_effect(self):
        seen = []

        async def remember(x):
            seen.append(x)

        assert await RunnablePassthrough(remember).invoke({"a": 1}) == {"a": 1}
        assert seen == [{"a": 1}]
        assert await RunnablePassthrough().invoke(5) == 5

    def test_coerce(self):
        unit = RunnableLambda(lambda x: x)

        assert coerce_to_runnable(unit) is unit
        assert isinstance(coerce_to_runnable(len), RunnableLambda)
        assert isinstance(coerce_to_runnable({"a": unit}), RunnableParallel)
        with pytest.raises(TypeError):
            coerce_to_runnable(3)

    def test_config_mode(self):
        def one(x):
            return x

        def two(x, y):
            return x

        def optional_extra(x, extra=None):
            return x

        def optional_config(x, config=None):
            return x

        def keyword(x, *, config=None):
            return x

        def star(*args):
            return args

        assert config_mode(one) is None
        assert config_mode(two) == "positional"
        assert config_mode(optional_extra) is None
        assert config_mode(optional_config) == "positional"
        assert config_mode(keyword) == "keyword"
        assert config_mode(star) is None
        assert config_mode(str.strip) is None

    @pytest.mark.asyncio
    async def test_optional_second_parameter_keeps_its_default(self):
        def tag(x, suffix="!"):
            return f"{x}{suffix}"

        assert await RunnableLambda(tag).invoke("hi") == "hi!"
        assert await RunnableLambda(str.strip).invoke("  hi ") == "hi"

    @pytest.mark.asyncio
    async def test_keyword_only_config_is_passed_by_keyword(self):
        def scoped(x, *, config):
            return (x, config.get_configurable("mode"))

        result = await RunnableLambda(scoped).invoke("in", {"configurable": {"mode": "fast"}})

        assert result == ("in", "fast")

    def test_repr_and_names(self):
        assert RunnableLambda(len).name == "len"
        assert RunnableLambda(lambda x: x).name == "RunnableLambda"
        assert RunnableLambda(lambda x: x, name="custom").name == "custom"
        assert "Greeter" in repr(Greeter())
