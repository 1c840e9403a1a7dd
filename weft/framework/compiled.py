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

"""Executable graphs.

A :class:`CompiledGraph` runs as a step-indexed state machine. Each step
executes one node:

    1. check cancellation and the step ceiling
    2. ``on_start`` for the node
    3. run the node on a snapshot of the state, obtaining a partial update
    4. fold the update into the state through the graph's reducers
    5. pick the next node (static edge or router)
    6. persist ``Checkpoint(step, state, next_node_id)`` when a checkpointer
       is attached
    7. ``on_end`` and ``on_step`` for the node, then stop at END or continue

A failure in 3-6 aborts the run before anything is persisted for that step,
so the last stored checkpoint is always a consistent point to resume from.
"""

from __future__ import annotations

import builtins
import copy
import logging
import time
import uuid
from collections.abc import AsyncIterator, Mapping
from contextlib import aclosing, asynccontextmanager
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Optional

from weft.config.log_config import TRACE
from weft.core.errors import (
    CheckpointError,
    ExecutionError,
    RunCancelledError,
    StepLimitExceededError,
    ThreadBusyError,
)
from weft.framework.checkpoint import BaseCheckpointer, Checkpoint
from weft.framework.graph import END, AnyEdge, ConditionalEdge, Edge, Node
from weft.framework.state import StateReducer
from weft.runnables.base import ConfigLike, Runnable
from weft.runnables.callbacks import CallbackManager
from weft.runnables.config import RunnableConfig

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)


@dataclass
class GraphExecutionResult:
    """Result from graph execution.

    Attributes:
        state: Final state
        thread_id: Thread the run was recorded under
        steps: Number of steps executed by this call
        node_history: Nodes executed by this call, in order
        duration: Wall-clock execution time in seconds
        last_checkpoint: Latest checkpoint of the thread, if checkpointing
    """

    state: dict[str, Any]
    thread_id: str
    steps: int = 0
    node_history: list[str] = field(default_factory=list)
    duration: float = 0.0
    last_checkpoint: Optional[Checkpoint] = None


@dataclass(frozen=True)
class GraphStep:
    """One executed step, as yielded by :meth:`CompiledGraph.stream`."""

    step: int
    node_id: str
    update: dict[str, Any]
    state: dict[str, Any]
    next_node_id: str
    checkpoint: Optional[Checkpoint] = None


@dataclass
class _StartPoint:
    state: dict[str, Any]
    node_id: str
    step: int
    run_start: int
    checkpoint: Optional[Checkpoint] = None


@dataclass
class _RunContext:
    thread_id: str
    state: dict[str, Any] = field(default_factory=dict)
    node_history: list[str] = field(default_factory=list)
    steps: int = 0
    last_checkpoint: Optional[Checkpoint] = None


class GraphCheckpointManager:
    """Loads start points from, and saves step results to, a checkpointer.

    Any failure of the underlying store surfaces as CheckpointError.
    """

    def __init__(self, checkpointer: Optional[BaseCheckpointer]):
        """Initialize checkpoint manager.

        Args:
            checkpointer: Checkpointer for persistence (None = no checkpointing)
        """
        self.checkpointer = checkpointer

    def _require(self, thread_id: str) -> BaseCheckpointer:
        if self.checkpointer is None:
            raise CheckpointError("No checkpointer attached to this graph", thread_id=thread_id)
        return self.checkpointer

    async def latest(self, thread_id: str) -> Optional[Checkpoint]:
        return await self.get(thread_id)

    async def get(self, thread_id: str, step: Optional[int] = None) -> Optional[Checkpoint]:
        checkpointer = self._require(thread_id)
        try:
            return await checkpointer.get(thread_id, step)
        except CheckpointError:
            raise
        except Exception as e:
            raise CheckpointError(
                f"Failed to read checkpoint for thread {thread_id!r}: {e}",
                thread_id=thread_id,
                step=step,
                cause=e,
            ) from e

    async def history(self, thread_id: str) -> builtins.list[Checkpoint]:
        checkpointer = self._require(thread_id)
        try:
            return [checkpoint async for checkpoint in checkpointer.list(thread_id)]
        except CheckpointError:
            raise
        except Exception as e:
            raise CheckpointError(
                f"Failed to list checkpoints for thread {thread_id!r}: {e}",
                thread_id=thread_id,
                cause=e,
            ) from e

    async def start_point(
        self, thread_id: str, input_state: Mapping[str, Any], entry_point: str
    ) -> _StartPoint:
        """Start a new run from ``input_state`` at the entry point.

        On a thread that already has history the step numbering continues
        after the latest stored step, keeping the chain linear.
        """
        step = 0
        if self.checkpointer is not None:
            latest = await self.latest(thread_id)
            if latest is not None:
                step = latest.step + 1
                logger.info(
                    f"Thread {thread_id!r} has history up to step {latest.step}; "
                    f"new run starts at step {step}"
                )
        return _StartPoint(
            state=copy.deepcopy(dict(input_state)),
            node_id=entry_point,
            step=step,
            run_start=step,
        )

    async def resume_point(self, thread_id: str, nodes: Mapping[str, Node]) -> _StartPoint:
        """Continue a thread from its latest checkpoint.

        The step ceiling restarts at the resume point, so a thread aborted by
        the limit can be resumed once its routing is fixed.

        Raises:
            CheckpointError: If there is no checkpoint to resume from, or it
                names a node this graph does not have
        """
        self._require(thread_id)
        checkpoint = await self.latest(thread_id)
        if checkpoint is None:
            raise CheckpointError(
                f"No checkpoint found for thread {thread_id!r}", thread_id=thread_id
            )
        if checkpoint.next_node_id != END and checkpoint.next_node_id not in nodes:
            raise CheckpointError(
                f"Checkpoint {thread_id}@{checkpoint.step} continues at unknown node "
                f"'{checkpoint.next_node_id}'",
                thread_id=thread_id,
                step=checkpoint.step,
            )

        logger.info(
            f"Resuming thread {thread_id!r} from step {checkpoint.step} "
            f"at node '{checkpoint.next_node_id}'"
        )
        return _StartPoint(
            state=copy.deepcopy(dict(checkpoint.state)),
            node_id=checkpoint.next_node_id,
            step=checkpoint.step + 1,
            run_start=checkpoint.step + 1,
            checkpoint=checkpoint,
        )

    async def save(
        self,
        thread_id: str,
        step: int,
        state: Mapping[str, Any],
        next_node_id: str,
        metadata: dict[str, Any],
    ) -> Optional[Checkpoint]:
        """Persist a step. Returns None when no checkpointer is attached."""
        if self.checkpointer is None:
            return None

        checkpoint = Checkpoint(
            thread_id=thread_id,
            step=step,
            state=dict(state),
            next_node_id=next_node_id,
            parent_step=step - 1 if step > 0 else None,
            metadata=metadata,
        )
        try:
            await self.checkpointer.put(thread_id, checkpoint)
        except CheckpointError:
            raise
        except Exception as e:
            raise CheckpointError(
                f"Failed to persist checkpoint {thread_id}@{step}: {e}",
                thread_id=thread_id,
                step=step,
                cause=e,
            ) from e
        return checkpoint


class CompiledGraph(Runnable[dict[str, Any], dict[str, Any]]):
    """Compiled graph ready for execution.

    Produced only by :meth:`StateGraph.compile`. The node, edge and reducer
    tables are read-only. Being a Runnable, a compiled graph can be piped,
    batched, or used as a node of another graph.

    Example:
        app = graph.compile(checkpointer=FileCheckpointer("./checkpoints"))
        result = await app.run({"n": 3}, thread_id="job-1")
        print(result.state, result.node_history)

        async for step in app.stream({"n": 3}, thread_id="job-2"):
            print(step.step, step.node_id, step.update)
    """

    def __init__(
        self,
        *,
        nodes: Mapping[str, Node],
        edges: Mapping[str, AnyEdge],
        entry_point: str,
        reducer: StateReducer,
        checkpointer: Optional[BaseCheckpointer],
        max_steps: int,
        state_schema: Optional[type] = None,
        name: Optional[str] = None,
    ):
        super().__init__(name=name)
        self._nodes: Mapping[str, Node] = MappingProxyType(dict(nodes))
        self._edges: Mapping[str, AnyEdge] = MappingProxyType(dict(edges))
        self._entry_point = entry_point
        self._reducer = reducer
        self._checkpointer = checkpointer
        self._checkpoints = GraphCheckpointManager(checkpointer)
        self._max_steps = max_steps
        self._state_schema = state_schema
        self._active_threads: set[str] = set()

    @property
    def nodes(self) -> Mapping[str, Node]:
        return self._nodes

    @property
    def edges(self) -> Mapping[str, AnyEdge]:
        return self._edges

    @property
    def entry_point(self) -> str:
        return self._entry_point

    @property
    def checkpointer(self) -> Optional[BaseCheckpointer]:
        return self._checkpointer

    @property
    def max_steps(self) -> int:
        return self._max_steps

    @property
    def reducers(self) -> Mapping[str, Any]:
        return self._reducer.reducers

    # Public API

    async def run(
        self,
        input: Mapping[str, Any],
        config: ConfigLike = None,
        *,
        thread_id: Optional[str] = None,
    ) -> GraphExecutionResult:
        """Execute the graph from its entry point.

        Args:
            input: Initial state
            config: Execution context; ``recursion_limit`` overrides the
                compiled step ceiling
            thread_id: Thread to record the run under (default:
                ``config.configurable["thread_id"]``, else a new id)

        Returns:
            GraphExecutionResult with the final state

        Raises:
            ExecutionError: A node failed (RoutingError / StateConflictError
                for routing and merge failures)
            StepLimitExceededError: The step ceiling was reached
            CheckpointError: Persisting a step failed
            ThreadBusyError: The thread is already being executed
            RunCancelledError: The cancellation token fired
        """
        return await self._observed(
            input, config, lambda run_config: self._run(input, run_config, thread_id)
        )

    async def resume_run(self, thread_id: str, config: ConfigLike = None) -> GraphExecutionResult:
        """Continue a thread from its latest checkpoint.

        A checkpoint whose next node is END returns its state without
        executing anything.

        Raises:
            CheckpointError: No checkpointer, or no checkpoint for the thread
        """
        return await self._observed(
            thread_id, config, lambda run_config: self._resume(thread_id, run_config)
        )

    async def resume(self, thread_id: str, config: ConfigLike = None) -> dict[str, Any]:
        """Like :meth:`resume_run` but returns only the final state."""
        return (await self.resume_run(thread_id, config)).state

    async def get_state(self, thread_id: str, step: Optional[int] = None) -> Optional[Checkpoint]:
        """Return the checkpoint at ``step`` (default: latest) of a thread."""
        return await self._checkpoints.get(thread_id, step)

    async def history(self, thread_id: str) -> builtins.list[Checkpoint]:
        """Return every checkpoint of a thread, oldest first."""
        return await self._checkpoints.history(thread_id)

    def get_graph_schema(self) -> dict[str, Any]:
        """Get graph structure as dictionary.

        The layout matches what :meth:`StateGraph.from_schema` accepts, with
        function names in place of registry keys.
        """
        nodes = []
        for node in self._nodes.values():
            if node.is_parallel:
                nodes.append(
                    {"id": node.id, "type": "parallel", "branches": list(node.branches)}
                )
            else:
                nodes.append({"id": node.id, "type": "function", "func": _func_name(node.func)})

        edges = []
        for edge in self._edges.values():
            if isinstance(edge, Edge):
                edges.append({"source": edge.source, "target": edge.target, "type": "normal"})
            else:
                targets = edge.targets
                edges.append(
                    {
                        "source": edge.source,
                        "target": dict(targets) if isinstance(targets, Mapping) else list(targets),
                        "type": "conditional",
                        "condition": _func_name(edge.router),
                    }
                )

        return {
            "name": self.name,
            "nodes": nodes,
            "edges": edges,
            "entry_point": self._entry_point,
            "reducers": {key: _func_name(r) for key, r in self._reducer.reducers.items()},
            "max_steps": self._max_steps,
        }

    # Runnable contract

    async def _call(
        self,
        input: dict[str, Any],
        config: RunnableConfig,
        *,
        thread_id: Optional[str] = None,
    ) -> dict[str, Any]:
        return (await self._run(input, config, thread_id)).state

    async def _stream(
        self,
        input: dict[str, Any],
        config: RunnableConfig,
        *,
        thread_id: Optional[str] = None,
    ) -> AsyncIterator[GraphStep]:
        ctx = _RunContext(thread_id=self._resolve_thread_id(thread_id, config))
        async with aclosing(self._execute(ctx, config, input=_check_input(input))) as steps:
            async for step in steps:
                yield step

    # Execution

    async def _observed(
        self,
        input: Any,
        config: ConfigLike,
        runner: "Callable[[RunnableConfig], Awaitable[GraphExecutionResult]]",
    ) -> GraphExecutionResult:
        run_config = self._prepare_config(config)
        run_config.raise_if_cancelled()
        callbacks = CallbackManager.from_config(run_config)

        await callbacks.on_start(self, input, run_config)
        try:
            result = await runner(run_config)
        except Exception as e:
            await callbacks.on_error(self, e, run_config)
            raise
        await callbacks.on_end(self, result.state, run_config)
        return result

    def _resolve_thread_id(self, thread_id: Optional[str], config: RunnableConfig) -> str:
        if thread_id:
            return thread_id
        configured = config.get_configurable("thread_id")
        if configured:
            return str(configured)
        return uuid.uuid4().hex

    async def _run(
        self, input: Mapping[str, Any], config: RunnableConfig, thread_id: Optional[str]
    ) -> GraphExecutionResult:
        ctx = _RunContext(thread_id=self._resolve_thread_id(thread_id, config))
        started = time.perf_counter()
        async with aclosing(self._execute(ctx, config, input=_check_input(input))) as steps:
            async for _ in steps:
                pass
        return self._result(ctx, started)

    async def _resume(self, thread_id: str, config: RunnableConfig) -> GraphExecutionResult:
        if not thread_id:
            raise CheckpointError("resume needs a thread id")
        ctx = _RunContext(thread_id=thread_id)
        started = time.perf_counter()
        async with aclosing(self._execute(ctx, config, resume=True)) as steps:
            async for _ in steps:
                pass
        return self._result(ctx, started)

    @staticmethod
    def _result(ctx: _RunContext, started: float) -> GraphExecutionResult:
        return GraphExecutionResult(
            state=ctx.state,
            thread_id=ctx.thread_id,
            steps=ctx.steps,
            node_history=ctx.node_history,
            duration=time.perf_counter() - started,
            last_checkpoint=ctx.last_checkpoint,
        )

    @asynccontextmanager
    async def _thread_scope(self, thread_id: str) -> AsyncIterator[None]:
        """Single writer per thread: in this graph, and through the checkpointer lease."""
        if thread_id in self._active_threads:
            raise ThreadBusyError(thread_id)
        self._active_threads.add(thread_id)
        try:
            if self._checkpointer is None:
                yield
            else:
                async with self._checkpointer.lease(thread_id):
                    yield
        finally:
            self._active_threads.discard(thread_id)

    async def _execute(
        self,
        ctx: _RunContext,
        config: RunnableConfig,
        *,
        input: Optional[Mapping[str, Any]] = None,
        resume: bool = False,
    ) -> AsyncIterator[GraphStep]:
        async with self._thread_scope(ctx.thread_id):
            if resume:
                start = await self._checkpoints.resume_point(ctx.thread_id, self._nodes)
            else:
                start = await self._checkpoints.start_point(
                    ctx.thread_id, input or {}, self._entry_point
                )
            ctx.state = start.state
            ctx.last_checkpoint = start.checkpoint

            if start.node_id == END:
                logger.info(f"Thread {ctx.thread_id!r} already finished; nothing to resume")
                return

            max_steps = config.recursion_limit or self._max_steps
            node_id, step = start.node_id, start.step
            logger.debug(
                f"Running graph {self.name!r} on thread {ctx.thread_id!r} "
                f"from '{node_id}' at step {step}"
            )

            while True:
                config.raise_if_cancelled()
                if step - start.run_start >= max_steps:
                    raise StepLimitExceededError(
                        max_steps, node_id=node_id, step=step, thread_id=ctx.thread_id
                    )

                graph_step = await self._run_step(ctx, node_id, step, start.run_start, config)
                yield graph_step

                if graph_step.next_node_id == END:
                    logger.debug(
                        f"Graph {self.name!r} reached END on thread {ctx.thread_id!r} "
                        f"after {ctx.steps} steps"
                    )
                    return
                node_id = graph_step.next_node_id
                step += 1

    async def _run_step(
        self,
        ctx: _RunContext,
        node_id: str,
        step: int,
        run_start: int,
        config: RunnableConfig,
    ) -> GraphStep:
        node = self._nodes[node_id]
        node_config = config.child(
            tags=[f"graph:node:{node_id}"],
            metadata={"thread_id": ctx.thread_id, "node_id": node_id, "step": step},
            configurable={"thread_id": f"{ctx.thread_id}:{node_id}"},
            run_id=uuid.uuid4().hex,
            parent_run_id=config.run_id,
            run_name=node_id,
        )
        callbacks = CallbackManager.from_config(node_config)

        await callbacks.on_start(node, ctx.state, node_config)
        try:
            update, state = await self._apply_node(node, ctx.state, step, node_config)
            next_node = await self._route(node_id, state, step, node_config)
            checkpoint = await self._checkpoints.save(
                ctx.thread_id,
                step,
                state,
                next_node,
                {"node_id": node_id, "run_id": config.run_id, "run_start": run_start},
            )
        except Exception as e:
            if isinstance(e, (ExecutionError, CheckpointError)) and e.thread_id is None:
                e.thread_id = ctx.thread_id
                e.details["thread_id"] = ctx.thread_id
            await callbacks.on_error(node, e, node_config)
            raise

        logger.debug(f"Step {step}: '{node_id}' -> '{next_node}'")
        if logger.isEnabledFor(TRACE):
            logger.log(TRACE, f"State after step {step}: {state}")
        ctx.state = state
        ctx.node_history.append(node_id)
        ctx.steps += 1
        if checkpoint is not None:
            ctx.last_checkpoint = checkpoint

        await callbacks.on_end(node, update, node_config)
        await callbacks.on_step(f"{step}:{node_id}", update, config)
        return GraphStep(
            step=step,
            node_id=node_id,
            update=update,
            state=dict(state),
            next_node_id=next_node,
            checkpoint=checkpoint,
        )

    async def _apply_node(
        self,
        node: Node,
        state: dict[str, Any],
        step: int,
        config: RunnableConfig,
    ) -> tuple[dict[str, Any], dict[str, Any]]:
        """Run ``node`` on a snapshot and fold its update into ``state``.

        Returns:
            (update, merged state)
        """
        snapshot = copy.deepcopy(state)
        try:
            if node.is_parallel:
                raw = await node.execute_branches(snapshot, config)
            else:
                raw = await node.execute(snapshot, config)
        except RunCancelledError:
            raise
        except Exception as e:
            raise ExecutionError(
                f"Node '{node.id}' failed at step {step}: {e}",
                node_id=node.id,
                step=step,
                cause=e,
            ) from e

        try:
            if node.is_parallel:
                update = self._reducer.combine(
                    [_as_update(result, node.id, step) for result in raw],
                    node_id=node.id,
                    step=step,
                )
            else:
                update = _as_update(raw, node.id, step)
            return update, self._reducer.apply(state, update)
        except ExecutionError:
            raise
        except Exception as e:
            raise ExecutionError(
                f"Merging the update of node '{node.id}' failed at step {step}: {e}",
                node_id=node.id,
                step=step,
                cause=e,
            ) from e

    async def _route(
        self, node_id: str, state: dict[str, Any], step: int, config: RunnableConfig
    ) -> str:
        edge = self._edges[node_id]
        if isinstance(edge, ConditionalEdge):
            return await edge.resolve(copy.deepcopy(state), config, step)
        return edge.target


def _check_input(input: Any) -> Mapping[str, Any]:
    if input is None:
        return {}
    if not isinstance(input, Mapping):
        raise TypeError(f"Graph input must be a mapping, got {type(input).__name__}")
    return input


def _as_update(result: Any, node_id: str, step: int) -> dict[str, Any]:
    if result is None:
        return {}
    if isinstance(result, Mapping):
        return dict(result)
    raise ExecutionError(
        f"Node '{node_id}' returned {type(result).__name__}; expected a mapping "
        f"of state updates or None",
        node_id=node_id,
        step=step,
    )


def _func_name(func: Any) -> str:
    if isinstance(func, Runnable):
        return func.name
    return getattr(func, "__name__", None) or type(func).__name__


__all__ = [
    "CompiledGraph",
    "GraphExecutionResult",
    "GraphStep",
    "GraphCheckpointManager",
]
