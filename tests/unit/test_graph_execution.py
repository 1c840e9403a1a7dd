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
"""Tests for CompiledGraph execution."""

import asyncio
from contextlib import aclosing
from typing import Annotated, TypedDict

import pytest

from weft.core.errors import (
    CheckpointError,
    ExecutionError,
    RoutingError,
    RunCancelledError,
    StateConflictError,
    StepLimitExceededError,
    ThreadBusyError,
)
from weft.core.retry import FixedDelayStrategy
from weft.framework import END, GraphExecutionResult, GraphStep, MessageGraph, StateGraph
from weft.framework.state import append
from weft.runnables import CancellationToken, RunnableLambda


class CounterState(TypedDict):
    n: int
    log: Annotated[list[str], append]


def add_one(state):
    return {"x": state["x"] + 1}


def double(state):
    return {"x": state["x"] * 2}


def linear_app(checkpointer=None, **compile_kwargs):
    graph = StateGraph()
    graph.add_node("a", add_one)
    graph.add_node("b", double)
    graph.add_edge("a", "b")
    graph.add_edge("b", END)
    graph.set_entry_point("a")
    return graph.compile(checkpointer, **compile_kwargs)


def countdown_app(checkpointer=None, **compile_kwargs):
    def tick(state):
        return {"n": state["n"] - 1, "log": [f"tick {state['n']}"]}

    graph = StateGraph(CounterState)
    graph.add_node("tick", tick)
    graph.add_conditional_edge(
        "tick",
        lambda state: "again" if state["n"] > 0 else "done",
        {"again": "tick", "done": END},
    )
    graph.set_entry_point("tick")
    return graph.compile(checkpointer, **compile_kwargs)


def forever_app(checkpointer=None, **compile_kwargs):
    graph = StateGraph()
    graph.add_node("spin", lambda state: {"i": state.get("i", 0) + 1})
    graph.add_edge("spin", "spin")
    graph.set_entry_point("spin")
    return graph.compile(checkpointer, **compile_kwargs)


class TestBasicExecution:
    @pytest.mark.asyncio
    async def test_linear_graph(self):
        result = await linear_app().run({"x": 2})

        assert isinstance(result, GraphExecutionResult)
        assert result.state == {"x": 6}
        assert result.steps == 2
        assert result.node_history == ["a", "b"]
        assert result.thread_id
        assert result.last_checkpoint is None
        assert result.duration >= 0

    @pytest.mark.asyncio
    async def test_cycle_until_router_picks_end(self):
        result = await countdown_app().run({"n": 3, "log": []})

        assert result.state == {"n": 0, "log": ["tick 3", "tick 2", "tick 1"]}
        assert result.steps == 3
        assert result.node_history == ["tick", "tick", "tick"]

    @pytest.mark.asyncio
    async def test_invoke_returns_state(self):
        app = linear_app()

        assert await app.invoke({"x": 0}) == {"x": 2}
        assert await app.batch([{"x": 1}, {"x": 2}]) == [{"x": 4}, {"x": 6}]

    @pytest.mark.asyncio
    async def test_absent_keys_persist(self):
        result = await linear_app().run({"x": 1, "untouched": "yes"})

        assert result.state == {"x": 4, "untouched": "yes"}

    @pytest.mark.asyncio
    async def test_input_is_not_mutated(self):
        def mutate(state):
            state["items"].append("node")
            return {"items": state["items"]}

        graph = StateGraph().add_node("m", mutate).add_edge("m", END).set_entry_point("m")
        initial = {"items": ["input"]}

        result = await graph.compile().run(initial)

        assert initial == {"items": ["input"]}
        assert result.state == {"items": ["input", "node"]}

    @pytest.mark.asyncio
    async def test_snapshot_mutation_without_update_is_discarded(self):
        def sneaky(state):
            state["x"] = 100

        graph = StateGraph().add_node("s", sneaky).add_edge("s", END).set_entry_point("s")

        assert (await graph.compile().run({"x": 1})).state == {"x": 1}

    @pytest.mark.asyncio
    async def test_none_input_starts_empty(self):
        graph = StateGraph().add_node("s", lambda s: {"seen": dict(s)})
        graph.add_edge("s", END).set_entry_point("s")

        assert (await graph.compile().run(None)).state == {"seen": {}}

    @pytest.mark.asyncio
    async def test_non_mapping_input_rejected(self):
        with pytest.raises(TypeError):
            await linear_app().run([1, 2])

    @pytest.mark.asyncio
    async def test_async_nodes_and_routers(self):
        async def fetch(state):
            await asyncio.sleep(0)
            return {"fetched": True}

        async def router(state, config):
            return "finish" if state["fetched"] else "fetch"

        graph = StateGraph().add_node("fetch", fetch).add_node("finish", lambda s: None)
        graph.add_conditional_edge("fetch", router, ["fetch", "finish"])
        graph.add_edge("finish", END).set_entry_point("fetch")

        result = await graph.compile().run({})

        assert result.node_history == ["fetch", "finish"]

    @pytest.mark.asyncio
    async def test_runnable_node(self):
        graph = StateGraph().add_node("r", RunnableLambda(add_one) | RunnableLambda(double))
        graph.add_edge("r", END).set_entry_point("r")

        assert (await graph.compile().run({"x": 1})).state == {"x": 4}

    @pytest.mark.asyncio
    async def test_node_receives_scoped_config(self):
        seen = []

        def inspect(state, config):
            seen.append(config)

        graph = StateGraph().add_node("look", inspect).add_edge("look", END)
        graph.set_entry_point("look")

        await graph.compile().run({}, {"tags": ["outer"]}, thread_id="t-9")

        config = seen[0]
        assert "outer" in config.tags and "graph:node:look" in config.tags
        assert config.metadata["thread_id"] == "t-9"
        assert config.metadata["node_id"] == "look"
        assert config.metadata["step"] == 0
        assert config.get_configurable("thread_id") == "t-9:look"
        assert config.run_name == "look"

    @pytest.mark.asyncio
    async def test_optional_second_parameter_is_not_given_the_config(self):
        def bump(state, amount=10):
            return {"x": state["x"] + amount}

        def route(state, limit=5):
            return "done" if state["x"] > limit else "again"

        graph = StateGraph().add_node("bump", bump)
        graph.add_conditional_edge("bump", route, {"again": "bump", "done": END})
        graph.set_entry_point("bump")

        result = await graph.compile().run({"x": 0})

        assert result.state == {"x": 10}
        assert result.node_history == ["bump"]

    @pytest.mark.asyncio
    async def test_keyword_only_config_reaches_nodes_and_routers(self):
        seen = []

        def look(state, *, config):
            seen.append(config.metadata["node_id"])

        def route(state, *, config):
            seen.append(type(config).__name__)
            return END

        graph = StateGraph().add_node("look", look)
        graph.add_conditional_edge("look", route, [END]).set_entry_point("look")

        await graph.compile().run({})

        assert seen == ["look", "RunnableConfig"]

    @pytest.mark.asyncio
    async def test_thread_id_from_configurable(self):
        result = await linear_app().run({"x": 0}, {"configurable": {"thread_id": "from-config"}})

        assert result.thread_id == "from-config"

    @pytest.mark.asyncio
    async def test_nested_graph_as_node(self):
        inner = linear_app()
        graph = StateGraph().add_node("inner", inner).add_node("after", add_one)
        graph.add_edge("inner", "after").add_edge("after", END).set_entry_point("inner")

        result = await graph.compile().run({"x": 1})

        assert result.state == {"x": 5}
        assert result.node_history == ["inner", "after"]

    @pytest.mark.asyncio
    async def test_node_retry(self):
        attempts = []

        def flaky(state):
            attempts.append(1)
            if len(attempts) < 3:
                raise ConnectionError("try again")
            return {"ok": True}

        graph = StateGraph().add_node("flaky", flaky, retry=FixedDelayStrategy(max_attempts=3))
        graph.add_edge("flaky", END).set_entry_point("flaky")

        result = await graph.compile().run({})

        assert result.state == {"ok": True}
        assert len(attempts) == 3


class TestStepLimit:
    @pytest.mark.asyncio
    async def test_runaway_cycle_stops(self, memory_checkpointer):
        app = forever_app(memory_checkpointer, max_steps=5)

        with pytest.raises(StepLimitExceededError) as exc_info:
            await app.run({}, thread_id="loop")

        error = exc_info.value
        assert error.max_steps == 5
        assert error.step == 5
        assert error.node_id == "spin"
        assert error.thread_id == "loop"
        history = await app.history("loop")
        assert [c.step for c in history] == [0, 1, 2, 3, 4]
        assert history[-1].state == {"i": 5}

    @pytest.mark.asyncio
    async def test_recursion_limit_overrides_compiled_ceiling(self):
        app = forever_app(max_steps=50)

        with pytest.raises(StepLimitExceededError) as exc_info:
            await app.run({}, {"recursion_limit": 2})

        assert exc_info.value.max_steps == 2

    @pytest.mark.asyncio
    async def test_ceiling_counts_steps_of_this_run(self, memory_checkpointer):
        app = linear_app(memory_checkpointer, max_steps=2)

        await app.run({"x": 0}, thread_id="t")
        second = await app.run({"x": 0}, thread_id="t")

        assert second.steps == 2
        assert [c.step for c in await app.history("t")] == [0, 1, 2, 3]


class TestFailures:
    @pytest.mark.asyncio
    async def test_node_error_is_wrapped(self, recorder):
        def broken(state):
            raise KeyError("missing")

        graph = StateGraph().add_node("ok", add_one).add_node("broken", broken)
        graph.add_edge("ok", "broken").add_edge("broken", END).set_entry_point("ok")

        with pytest.raises(ExecutionError) as exc_info:
            await graph.compile().run({"x": 0}, {"callbacks": [recorder]}, thread_id="t")

        error = exc_info.value
        assert type(error) is ExecutionError
        assert error.node_id == "broken"
        assert error.step == 1
        assert error.thread_id == "t"
        assert isinstance(error.__cause__, KeyError)
        assert recorder.of("error") == [
            ("error", "broken", "ExecutionError"),
            ("error", "CompiledGraph", "ExecutionError"),
        ]

    @pytest.mark.asyncio
    async def test_non_mapping_update(self):
        graph = StateGraph().add_node("bad", lambda s: ["not", "a", "dict"])
        graph.add_edge("bad", END).set_entry_point("bad")

        with pytest.raises(ExecutionError, match="expected a mapping"):
            await graph.compile().run({})

    @pytest.mark.asyncio
    async def test_undeclared_route_writes_no_checkpoint(self, memory_checkpointer):
        graph = StateGraph().add_node("a", add_one).add_node("b", double)
        graph.add_conditional_edge("a", lambda s: "nowhere", ["b", END])
        graph.add_edge("b", END).set_entry_point("a")
        app = graph.compile(memory_checkpointer)

        with pytest.raises(RoutingError) as exc_info:
            await app.run({"x": 0}, thread_id="t")

        error = exc_info.value
        assert error.target == "nowhere"
        assert error.declared == ["b", END]
        assert error.node_id == "a"
        assert await app.get_state("t") is None

    @pytest.mark.asyncio
    async def test_router_exception(self):
        def router(state):
            raise ValueError("cannot decide")

        graph = StateGraph().add_node("a", add_one)
        graph.add_conditional_edge("a", router, {"end": END}).set_entry_point("a")

        with pytest.raises(RoutingError) as exc_info:
            await graph.compile().run({"x": 0})

        assert isinstance(exc_info.value.__cause__, ValueError)

    @pytest.mark.asyncio
    async def test_unhashable_router_choice(self):
        graph = StateGraph().add_node("a", add_one)
        graph.add_conditional_edge("a", lambda s: ["list"], {"end": END}).set_entry_point("a")

        with pytest.raises(RoutingError):
            await graph.compile().run({"x": 0})

    @pytest.mark.asyncio
    async def test_failing_reducer_is_an_execution_error(self):
        def explode(old, new):
            raise ArithmeticError("no")

        graph = StateGraph(reducers={"x": explode}).add_node("a", add_one)
        graph.add_edge("a", END).set_entry_point("a")

        with pytest.raises(ExecutionError, match="Merging the update"):
            await graph.compile().run({"x": 0})

    @pytest.mark.asyncio
    async def test_state_history_needs_checkpointer(self):
        app = linear_app()

        with pytest.raises(CheckpointError):
            await app.get_state("t")
        with pytest.raises(CheckpointError):
            await app.history("t")
        with pytest.raises(CheckpointError):
            await app.resume("t")


class TestCallbacks:
    @pytest.mark.asyncio
    async def test_lifecycle_order(self, recorder):
        await linear_app().run({"x": 2}, {"callbacks": [recorder]})

        assert recorder.events == [
            ("start", "CompiledGraph", {"x": 2}),
            ("start", "a", {"x": 2}),
            ("end", "a", {"x": 3}),
            ("step", "0:a", {"x": 3}),
            ("start", "b", {"x": 3}),
            ("end", "b", {"x": 6}),
            ("step", "1:b", {"x": 6}),
            ("end", "CompiledGraph", {"x": 6}),
        ]

    @pytest.mark.asyncio
    async def test_compiled_name_is_used(self, recorder):
        await linear_app(name="pipeline").run({"x": 0}, {"callbacks": [recorder]})

        assert recorder.events[0] == ("start", "pipeline", {"x": 0})


class TestParallelNodes:
    def fan_app(self, left, right, **reducers):
        graph = StateGraph(reducers=reducers or None)
        graph.add_parallel_node("fan", {"left": left, "right": right})
        graph.add_edge("fan", END).set_entry_point("fan")
        return graph.compile()

    @pytest.mark.asyncio
    async def test_disjoint_updates_are_merged(self):
        app = self.fan_app(lambda s: {"l": s["x"]}, lambda s: {"r": s["x"] + 1})

        result = await app.run({"x": 1})

        assert result.state == {"x": 1, "l": 1, "r": 2}
        assert result.steps == 1

    @pytest.mark.asyncio
    async def test_branches_see_the_same_snapshot(self):
        def left(state):
            state["x"] = 99
            return {"l": state["x"]}

        async def right(state):
            await asyncio.sleep(0)
            return {"r": state["x"]}

        result = await self.fan_app(left, right).run({"x": 1})

        assert result.state["r"] == 1

    @pytest.mark.asyncio
    async def test_overlap_without_reducer_conflicts(self):
        app = self.fan_app(lambda s: {"x": 1}, lambda s: {"x": 2})

        with pytest.raises(StateConflictError) as exc_info:
            await app.run({}, thread_id="t")

        assert exc_info.value.keys == ["x"]
        assert exc_info.value.thread_id == "t"

    @pytest.mark.asyncio
    async def test_overlap_with_reducer_folds_in_branch_order(self):
        app = self.fan_app(lambda s: {"log": ["left"]}, lambda s: {"log": ["right"]}, log=append)

        result = await app.run({"log": ["start"]})

        assert result.state["log"] == ["start", "left", "right"]

    @pytest.mark.asyncio
    async def test_branch_configs_are_tagged(self):
        tags = {}

        def capture(key):
            def branch(state, config):
                tags[key] = [t for t in config.tags if t.startswith("graph:")]

            return branch

        await self.fan_app(capture("left"), capture("right")).run({})

        assert tags["left"] == ["graph:node:fan", "graph:branch:left"]
        assert tags["right"] == ["graph:node:fan", "graph:branch:right"]


class TestMessageGraph:
    @pytest.mark.asyncio
    async def test_messages_accumulate_and_other_keys_replace(self, memory_checkpointer):
        def agent(state):
            return {"messages": [f"echo: {state['messages'][-1]}"], "turn": 1}

        def tool(state):
            return {"messages": "tool done", "turn": 2}

        graph = MessageGraph().add_node("agent", agent).add_node("tool", tool)
        graph.add_edge("agent", "tool").set_finish_point("tool").set_entry_point("agent")

        result = await graph.compile(memory_checkpointer).run(
            {"messages": ["hello"]}, thread_id="chat"
        )

        assert result.state == {"messages": ["hello", "echo: hello", "tool done"], "turn": 2}
        assert (await memory_checkpointer.get("chat", 0)).state["messages"] == [
            "hello",
            "echo: hello",
        ]

    @pytest.mark.asyncio
    async def test_own_schema_keeps_message_reducer(self):
        class ChatState(TypedDict):
            messages: list[str]
            topic: str

        graph = MessageGraph(ChatState, name="support")
        graph.add_node("reply", lambda state: {"messages": ["ok"], "topic": "billing"})
        graph.set_entry_point("reply").set_finish_point("reply")
        app = graph.compile()

        state = await app.invoke({"messages": ["help"], "topic": "?"})

        assert state == {"messages": ["help", "ok"], "topic": "billing"}
        assert app.name == "support"

    @pytest.mark.asyncio
    async def test_from_schema_builds_a_message_graph(self):
        graph = MessageGraph.from_schema(
            {
                "nodes": [{"id": "reply", "type": "function", "func": "reply"}],
                "edges": [{"source": "reply", "target": END}],
                "entry_point": "reply",
            },
            node_registry={"reply": lambda state: {"messages": ["pong"]}},
        )

        assert isinstance(graph, MessageGraph)
        assert await graph.compile().invoke({"messages": ["ping"]}) == {
            "messages": ["ping", "pong"]
        }


class TestStreaming:
    @pytest.mark.asyncio
    async def test_stream_yields_steps(self):
        steps = [s async for s in countdown_app().stream({"n": 2, "log": []})]

        assert all(isinstance(s, GraphStep) for s in steps)
        assert [s.step for s in steps] == [0, 1]
        assert [s.update for s in steps] == [
            {"n": 1, "log": ["tick 2"]},
            {"n": 0, "log": ["tick 1"]},
        ]
        assert [s.next_node_id for s in steps] == ["tick", END]
        assert steps[-1].state == {"n": 0, "log": ["tick 2", "tick 1"]}

    @pytest.mark.asyncio
    async def test_stream_carries_checkpoints(self, memory_checkpointer):
        app = linear_app(memory_checkpointer)

        steps = [s async for s in app.stream({"x": 1}, thread_id="s")]

        assert [s.checkpoint.step for s in steps] == [0, 1]
        assert steps[1].checkpoint.parent_step == 0

    @pytest.mark.asyncio
    async def test_closing_a_stream_early_frees_the_thread(self, memory_checkpointer):
        app = countdown_app(memory_checkpointer)

        async with aclosing(app.stream({"n": 3, "log": []}, thread_id="t")) as steps:
            async for step in steps:
                assert step.step == 0
                break

        result = await app.run({"n": 1, "log": []}, thread_id="t")

        assert result.node_history == ["tick"]
        assert result.last_checkpoint.step == 1
        assert result.last_checkpoint.parent_step == 0


class TestConcurrencyControl:
    @pytest.mark.asyncio
    async def test_same_thread_cannot_run_twice(self):
        release = asyncio.Event()
        entered = asyncio.Event()

        async def wait(state):
            entered.set()
            await release.wait()

        graph = StateGraph().add_node("wait", wait).add_edge("wait", END)
        app = graph.set_entry_point("wait").compile()

        first = asyncio.ensure_future(app.run({}, thread_id="busy"))
        await entered.wait()
        with pytest.raises(ThreadBusyError):
            await app.run({}, thread_id="busy")
        other = await asyncio.wait_for(_release_then(release, app.run({}, thread_id="free")), 1)

        await first
        assert other.thread_id == "free"

    @pytest.mark.asyncio
    async def test_cancellation_stops_between_steps(self, memory_checkpointer):
        token = CancellationToken()
        ran = []

        def first(state):
            ran.append("first")
            token.cancel("user stop")

        def second(state):
            ran.append("second")

        graph = StateGraph().add_node("first", first).add_node("second", second)
        graph.add_edge("first", "second").add_edge("second", END).set_entry_point("first")
        app = graph.compile(memory_checkpointer)

        with pytest.raises(RunCancelledError) as exc_info:
            await app.run({}, {"cancellation": token}, thread_id="c")

        assert exc_info.value.reason == "user stop"
        assert ran == ["first"]
        latest = await app.get_state("c")
        assert latest.step == 0
        assert latest.next_node_id == "second"


async def _release_then(event, coro):
    event.set()
    return await coro
