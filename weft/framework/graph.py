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

"""StateGraph: build and compile stateful workflows.

A graph is a set of named nodes, each a ``state -> partial update``
function, wired by edges. Every node has exactly one outgoing edge: either a
static edge to a fixed target, or a conditional edge whose router picks one
of a declared set of targets at runtime. Cycles are allowed; runaway cycles
are stopped by the executor's step ceiling.

Example:
    from weft.framework import END, StateGraph

    class CounterState(TypedDict):
        n: int

    def check(state: CounterState) -> dict:
        return {"n": state["n"] - 1}

    graph = StateGraph(CounterState)
    graph.add_node("check", check)
    graph.add_conditional_edge(
        "check",
        lambda state: "again" if state["n"] > 0 else "done",
        {"again": "check", "done": END},
    )
    graph.set_entry_point("check")

    app = graph.compile()
    result = await app.run({"n": 3})   # result.state == {"n": 0}, result.steps == 3
"""

from __future__ import annotations

import asyncio
import copy
import inspect
import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Optional, Union

from weft.config.settings import GraphSettings, load_settings
from weft.core.errors import ConfigurationError, RoutingError, ValidationError
from weft.core.retry import BaseRetryStrategy, ExponentialBackoffStrategy, retry_async
from weft.framework.state import (
    MessagesState,
    Reducer,
    StateReducer,
    append,
    extract_reducers,
    get_reducer,
    non_serializable_fields,
)
from weft.runnables.base import Runnable, call_with_config
from weft.runnables.config import RunnableConfig

if TYPE_CHECKING:
    from weft.framework.checkpoint import BaseCheckpointer
    from weft.framework.compiled import CompiledGraph

logger = logging.getLogger(__name__)

END = "__end__"

NodeFunc = Union[Callable[..., Any], Runnable[Any, Any]]
Router = Callable[..., Any]


async def _call_with_state(func: NodeFunc, state: Any, config: RunnableConfig) -> Any:
    if isinstance(func, Runnable):
        return await func.invoke(state, config)
    result = call_with_config(func, state, config)
    if inspect.isawaitable(result):
        result = await result
    return result


@dataclass
class Node:
    """A node in the graph.

    Attributes:
        id: Unique node identifier
        func: Transformation function (sync/async callable or Runnable)
        retry: Optional retry strategy applied to ``func``
        metadata: Additional node metadata
        branches: For parallel nodes, the branch functions keyed by name
    """

    id: str
    func: Optional[NodeFunc] = None
    retry: Optional[BaseRetryStrategy] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    branches: dict[str, NodeFunc] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.id

    @property
    def is_parallel(self) -> bool:
        return bool(self.branches)

    async def _with_retry(self, func: NodeFunc, state: Any, config: RunnableConfig, label: str):
        async def attempt() -> Any:
            return await _call_with_state(func, state, config)

        if self.retry is None:
            return await attempt()
        return await retry_async(
            attempt, self.retry, label=label, cancellation=config.cancellation
        )

    async def execute(self, state: Any, config: RunnableConfig) -> Any:
        """Run the node function on ``state`` and return its raw result."""
        if self.func is None:
            raise ValidationError(f"Node '{self.id}' has no function", node=self.id)
        return await self._with_retry(self.func, state, config, label=f"node '{self.id}'")

    async def execute_branches(self, state: Any, config: RunnableConfig) -> list[Any]:
        """Run every branch concurrently, each on its own copy of ``state``.

        Results come back in branch declaration order. A failing branch
        cancels the others and its error is raised.
        """
        tasks = [
            asyncio.ensure_future(
                self._with_retry(
                    func,
                    copy.deepcopy(state),
                    config.child(tags=[f"graph:branch:{key}"]),
                    label=f"node '{self.id}' branch '{key}'",
                )
            )
            for key, func in self.branches.items()
        ]
        try:
            return list(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise


@dataclass(frozen=True)
class Edge:
    """Static transition from ``source`` to ``target`` (a node id or END)."""

    source: str
    target: str


@dataclass(frozen=True)
class ConditionalEdge:
    """Runtime transition chosen by ``router``.

    ``targets`` is either a sequence of possible node ids (the router
    returns one of them) or a mapping from branch label to node id (the
    router returns a label).
    """

    source: str
    router: Router
    targets: Union[tuple[str, ...], Mapping[str, str]]

    @property
    def declared(self) -> list[str]:
        values = self.targets.values() if isinstance(self.targets, Mapping) else self.targets
        return list(dict.fromkeys(values))

    async def resolve(self, state: Any, config: RunnableConfig, step: int) -> str:
        """Call the router and return the chosen target.

        Raises:
            RoutingError: If the router fails or picks an undeclared target
        """
        try:
            choice = call_with_config(self.router, state, config)
            if inspect.isawaitable(choice):
                choice = await choice
        except Exception as e:
            raise RoutingError(
                f"Router of node '{self.source}' failed: {e}",
                node_id=self.source,
                step=step,
                declared=self.declared,
                cause=e,
            ) from e

        if isinstance(self.targets, Mapping):
            try:
                target = self.targets.get(choice)
            except TypeError:
                target = None
        else:
            target = choice if choice in self.targets else None
        if target is None:
            raise RoutingError(
                f"Router of node '{self.source}' returned undeclared target {choice!r}; "
                f"declared: {self.declared}",
                node_id=self.source,
                step=step,
                target=choice,
                declared=self.declared,
            )
        return target


AnyEdge = Union[Edge, ConditionalEdge]


class StateGraph:
    """StateGraph builder for creating stateful workflows.

    Reducers for individual state keys are declared here, at build time,
    either through ``reducers=`` / :meth:`add_reducer` or as
    ``Annotated[T, reducer]`` fields of a TypedDict ``state_schema``.

    Example:
        graph = StateGraph(AgentState, reducers={"log": "append"})
        graph.add_node("analyze", analyze_func)
        graph.add_node("execute", execute_func)
        graph.add_edge("analyze", "execute")
        graph.add_conditional_edge(
            "execute",
            should_retry,
            {"retry": "analyze", "done": END}
        )
        graph.set_entry_point("analyze")

        app = graph.compile(checkpointer=MemoryCheckpointer())
        result = await app.invoke(initial_state, thread_id="t-1")
    """

    def __init__(
        self,
        state_schema: Optional[type] = None,
        *,
        reducers: Optional[Mapping[str, Union[str, Reducer]]] = None,
        name: Optional[str] = None,
    ):
        """Initialize StateGraph.

        Args:
            state_schema: Optional TypedDict describing the state shape
            reducers: Per-key reducers, by name or as callables
            name: Name of the compiled graph (defaults to ``StateGraph``)
        """
        self._state_schema = state_schema
        self.name = name
        self._nodes: dict[str, Node] = {}
        self._edges: list[AnyEdge] = []
        self._entry_point: Optional[str] = None
        self._reducers: dict[str, Reducer] = extract_reducers(state_schema)
        for key, reducer in (reducers or {}).items():
            self._reducers[key] = get_reducer(reducer)

    def _check_new_node(self, node_id: str) -> None:
        if not isinstance(node_id, str) or not node_id:
            raise ValidationError(f"Node id must be a non-empty string, got {node_id!r}")
        if node_id == END:
            raise ValidationError(f"'{END}' is reserved for the END sentinel", node=node_id)
        if node_id in self._nodes:
            raise ValidationError(f"Node '{node_id}' already exists", node=node_id)

    @staticmethod
    def _check_func(node_id: str, func: Any) -> None:
        if not (isinstance(func, Runnable) or callable(func)):
            raise ValidationError(
                f"Node '{node_id}' needs a callable or Runnable, got {type(func).__name__}",
                node=node_id,
            )

    def add_node(
        self,
        node_id: str,
        func: NodeFunc,
        *,
        retry: Optional[BaseRetryStrategy] = None,
        **metadata: Any,
    ) -> "StateGraph":
        """Add a node to the graph.

        Args:
            node_id: Unique node identifier
            func: ``(state)`` or ``(state, config)`` callable, sync or async,
                or a Runnable; returns a partial update or None
            retry: Optional retry strategy for the node function
            **metadata: Additional metadata

        Returns:
            Self for chaining

        Raises:
            ValidationError: If the id is taken, reserved or ``func`` is unusable
        """
        self._check_new_node(node_id)
        self._check_func(node_id, func)
        self._nodes[node_id] = Node(id=node_id, func=func, retry=retry, metadata=metadata)
        logger.debug(f"Added node: {node_id}")
        return self

    def add_parallel_node(
        self,
        node_id: str,
        branches: Union[Mapping[str, NodeFunc], Sequence[NodeFunc]],
        *,
        retry: Optional[BaseRetryStrategy] = None,
        **metadata: Any,
    ) -> "StateGraph":
        """Add a node that runs several branch functions concurrently.

        Every branch sees the same state snapshot. Their updates are merged
        into a single update for the step: keys written by one branch only
        are taken as is; a key written by several branches must have a
        reducer, otherwise the step fails with StateConflictError.

        Args:
            node_id: Unique node identifier
            branches: Branch functions, as a mapping or a sequence
            retry: Optional retry strategy applied to each branch

        Returns:
            Self for chaining
        """
        self._check_new_node(node_id)
        if isinstance(branches, Mapping):
            named = dict(branches)
        else:
            named = {}
            for index, func in enumerate(branches):
                key = getattr(func, "name", None) or getattr(func, "__name__", None)
                if not key or key == "<lambda>" or key in named:
                    key = str(index)
                named[key] = func
        if len(named) < 2:
            raise ValidationError(
                f"Parallel node '{node_id}' needs at least 2 branches", node=node_id
            )
        for func in named.values():
            self._check_func(node_id, func)

        self._nodes[node_id] = Node(
            id=node_id, retry=retry, metadata=metadata, branches=named
        )
        logger.debug(f"Added parallel node: {node_id} ({list(named)})")
        return self

    def add_edge(self, source: str, target: str) -> "StateGraph":
        """Add a static edge.

        Args:
            source: Source node ID
            target: Target node ID (or END)

        Returns:
            Self for chaining
        """
        self._edges.append(Edge(source=source, target=target))
        logger.debug(f"Added edge: {source} -> {target}")
        return self

    def add_conditional_edge(
        self,
        source: str,
        condition: Router,
        branches: Union[Mapping[str, str], Sequence[str], None],
    ) -> "StateGraph":
        """Add a conditional edge.

        Args:
            source: Source node ID
            condition: Router called with the merged state (and optionally
                the config); may be async
            branches: Mapping from router labels to target ids, or the
                sequence of target ids the router may return. END must be
                listed when the router can finish the run.

        Returns:
            Self for chaining
        """
        if isinstance(branches, Mapping):
            targets: Union[tuple[str, ...], Mapping[str, str]] = MappingProxyType(dict(branches))
        else:
            targets = tuple(branches or ())
        edge = ConditionalEdge(source=source, router=condition, targets=targets)
        self._edges.append(edge)
        logger.debug(f"Added conditional edge: {source} -> {edge.declared}")
        return self

    def set_entry_point(self, node_id: str) -> "StateGraph":
        """Set the entry point node. Checked when the graph is compiled."""
        self._entry_point = node_id
        return self

    def set_finish_point(self, node_id: str) -> "StateGraph":
        """Set a node as finish point (adds edge to END)."""
        return self.add_edge(node_id, END)

    def add_reducer(self, key: str, reducer: Union[str, Reducer]) -> "StateGraph":
        """Declare how updates to ``key`` are combined with its current value."""
        self._reducers[key] = get_reducer(reducer)
        return self

    def compile(
        self,
        checkpointer: Optional["BaseCheckpointer"] = None,
        *,
        max_steps: Optional[int] = None,
        settings: Optional[GraphSettings] = None,
        name: Optional[str] = None,
    ) -> "CompiledGraph":
        """Validate the graph and produce an executable CompiledGraph.

        Args:
            checkpointer: Optional checkpointer for persistence and resume
            max_steps: Step ceiling per run (default: settings.default_max_steps)
            settings: Settings used for defaults (loaded from the environment
                when omitted)
            name: Name of the compiled graph

        Raises:
            ValidationError: On the first structural problem found
            ConfigurationError: If ``max_steps`` is not positive
        """
        from weft.framework.compiled import CompiledGraph

        edge_table = self._validate(checkpointer)

        if max_steps is None:
            max_steps = (settings or load_settings()).default_max_steps
        if max_steps < 1:
            raise ConfigurationError(f"max_steps must be >= 1, got {max_steps}", "max_steps")

        for node_id in sorted(set(self._nodes) - self._find_reachable(edge_table)):
            logger.warning(f"Node '{node_id}' is unreachable from '{self._entry_point}'")

        return CompiledGraph(
            nodes=self._nodes,
            edges=edge_table,
            entry_point=self._entry_point or "",
            reducer=StateReducer(self._reducers),
            checkpointer=checkpointer,
            max_steps=max_steps,
            state_schema=self._state_schema,
            name=name or self.name,
        )

    def _validate(self, checkpointer: Optional["BaseCheckpointer"]) -> dict[str, AnyEdge]:
        """Check the graph structure and build the per-source edge table.

        Raises:
            ValidationError: On the first problem found
        """
        if not self._entry_point:
            raise ValidationError("No entry point set")
        if self._entry_point not in self._nodes:
            raise ValidationError(
                f"Entry point '{self._entry_point}' not found", node=self._entry_point
            )

        for edge in self._edges:
            if edge.source not in self._nodes:
                raise ValidationError(
                    f"Edge source '{edge.source}' not found",
                    node=edge.source,
                    edge=(edge.source, _describe_target(edge)),
                )

        for edge in self._edges:
            if isinstance(edge, Edge) and edge.target != END and edge.target not in self._nodes:
                raise ValidationError(
                    f"Edge target '{edge.target}' not found (from '{edge.source}')",
                    node=edge.source,
                    edge=(edge.source, edge.target),
                )

        for edge in self._edges:
            if not isinstance(edge, ConditionalEdge):
                continue
            if not edge.declared:
                raise ValidationError(
                    f"Conditional edge from '{edge.source}' declares no targets",
                    node=edge.source,
                )
            for target in edge.declared:
                if target != END and target not in self._nodes:
                    raise ValidationError(
                        f"Conditional target '{target}' not found (from '{edge.source}')",
                        node=edge.source,
                        edge=(edge.source, target),
                    )

        table: dict[str, AnyEdge] = {}
        for edge in self._edges:
            existing = table.get(edge.source)
            if existing is None:
                table[edge.source] = edge
            elif type(existing) is not type(edge):
                raise ValidationError(
                    f"Node '{edge.source}' has both a static and a conditional edge",
                    node=edge.source,
                )
            else:
                kind = "static" if isinstance(edge, Edge) else "conditional"
                raise ValidationError(
                    f"Node '{edge.source}' has more than one {kind} edge",
                    node=edge.source,
                )

        for node_id in self._nodes:
            if node_id not in table:
                raise ValidationError(
                    f"Node '{node_id}' has no outgoing edge; route it to END explicitly",
                    node=node_id,
                )

        if checkpointer is not None and self._state_schema is not None:
            bad = non_serializable_fields(self._state_schema)
            if bad:
                raise ValidationError(
                    f"State fields {bad} of {self._state_schema.__name__} are not "
                    f"JSON-serialisable and cannot be checkpointed"
                )

        return table

    def _find_reachable(self, table: Mapping[str, AnyEdge]) -> set[str]:
        """Find all reachable nodes from entry point."""
        reachable: set[str] = set()
        to_visit = [self._entry_point] if self._entry_point else []

        while to_visit:
            node_id = to_visit.pop()
            if node_id in reachable or node_id == END:
                continue
            reachable.add(node_id)

            edge = table.get(node_id)
            if isinstance(edge, Edge):
                to_visit.append(edge.target)
            elif isinstance(edge, ConditionalEdge):
                to_visit.extend(edge.declared)

        return reachable

    @classmethod
    def from_schema(
        cls,
        schema: Union[dict[str, Any], str],
        state_schema: Optional[type] = None,
        node_registry: Optional[Mapping[str, NodeFunc]] = None,
        condition_registry: Optional[Mapping[str, Router]] = None,
    ) -> "StateGraph":
        """Create a StateGraph from a schema dictionary or YAML string.

        Args:
            schema: Dictionary or YAML string containing:
                - nodes: node definitions with ``id`` and ``type``
                  (``function``, ``passthrough`` or ``parallel``)
                - edges: edge definitions with ``source``, ``target`` and
                  ``type`` (``normal`` or ``conditional``)
                - entry_point: Starting node ID
                - Optional: ``finish_point``, ``reducers`` (key -> reducer
                  name), ``name``
            state_schema: Optional TypedDict type for the state
            node_registry: Maps ``func`` names to node functions
            condition_registry: Maps ``condition`` names to routers

        Returns:
            StateGraph instance ready for compilation

        Raises:
            ValidationError: If the schema is malformed or refers to unknown
                functions

        Example:
            yaml_schema = \"""
            nodes:
              - id: analyze
                type: function
                func: analyze_task
              - id: execute
                type: function
                func: execute_task
                retry: {max_attempts: 3, base_delay: 0.1}
            edges:
              - source: analyze
                target: execute
              - source: execute
                target:
                  retry: analyze
                  done: __end__
                type: conditional
                condition: should_retry
            entry_point: analyze
            \"""

            graph = StateGraph.from_schema(
                yaml_schema,
                node_registry={"analyze_task": analyze, "execute_task": execute},
                condition_registry={"should_retry": should_retry},
            )
        """
        import yaml

        if isinstance(schema, str):
            try:
                schema_dict = yaml.safe_load(schema)
            except yaml.YAMLError as e:
                raise ValidationError(f"Invalid YAML schema: {e}", cause=e) from e
        else:
            schema_dict = schema

        if not isinstance(schema_dict, dict):
            raise ValidationError(f"Schema must be a mapping, got {type(schema_dict).__name__}")

        required_fields = ["nodes", "edges", "entry_point"]
        missing_fields = [f for f in required_fields if f not in schema_dict]
        if missing_fields:
            raise ValidationError(f"Schema missing required fields: {missing_fields}")

        node_registry = node_registry or {}
        condition_registry = condition_registry or {}

        def lookup(registry: Mapping[str, Any], key: Any, kind: str) -> Any:
            if key not in registry:
                raise ValidationError(
                    f"{kind} '{key}' not found in registry. Available: {sorted(registry)}"
                )
            return registry[key]

        graph = cls(
            state_schema=state_schema,
            reducers=schema_dict.get("reducers") or None,
            name=schema_dict.get("name"),
        )

        for node_def in schema_dict["nodes"]:
            if not isinstance(node_def, dict):
                raise ValidationError(f"Invalid node definition: {node_def!r}")

            node_id = node_def.get("id")
            if not node_id:
                raise ValidationError("Node definition must have 'id' field")

            node_type = node_def.get("type", "function")
            retry = _retry_from_schema(node_id, node_def.get("retry"))
            metadata = {
                k: v
                for k, v in node_def.items()
                if k not in ("id", "type", "func", "branches", "retry")
            }

            if node_type == "function":
                func_name = node_def.get("func")
                if not func_name:
                    raise ValidationError(
                        f"Function node '{node_id}' must specify 'func'", node=node_id
                    )
                func = lookup(node_registry, func_name, "Node function")
                graph.add_node(node_id, func, retry=retry, **metadata)

            elif node_type == "passthrough":
                graph.add_node(node_id, _passthrough, retry=retry, **metadata)

            elif node_type == "parallel":
                names = node_def.get("branches") or []
                branches = {
                    name: lookup(node_registry, name, "Node function") for name in names
                }
                graph.add_parallel_node(node_id, branches, retry=retry, **metadata)

            else:
                raise ValidationError(f"Unsupported node type: {node_type}", node=node_id)

        for edge_def in schema_dict["edges"]:
            if not isinstance(edge_def, dict):
                raise ValidationError(f"Invalid edge definition: {edge_def!r}")

            source = edge_def.get("source")
            if not source:
                raise ValidationError("Edge definition must have 'source' field")

            target = edge_def.get("target")
            if target is None:
                raise ValidationError(
                    f"Edge from '{source}' must have 'target' field", node=source
                )

            edge_type = edge_def.get("type", "normal")

            if edge_type == "normal":
                if not isinstance(target, str):
                    raise ValidationError(
                        f"Normal edge from '{source}' needs a single target, got {target!r}",
                        node=source,
                    )
                graph.add_edge(source, target)

            elif edge_type == "conditional":
                condition_name = edge_def.get("condition")
                if not condition_name:
                    raise ValidationError(
                        f"Conditional edge from '{source}' must specify 'condition'",
                        node=source,
                    )
                if not isinstance(target, (dict, list)):
                    raise ValidationError(
                        f"Conditional edge target must be a mapping or a list, "
                        f"got: {type(target).__name__}",
                        node=source,
                    )
                router = lookup(condition_registry, condition_name, "Condition function")
                graph.add_conditional_edge(source, router, target)

            else:
                raise ValidationError(f"Unsupported edge type: {edge_type}", node=source)

        graph.set_entry_point(schema_dict["entry_point"])
        finish_point = schema_dict.get("finish_point")
        if finish_point:
            graph.set_finish_point(finish_point)

        return graph


def _passthrough(state: Any) -> None:
    return None


class MessageGraph(StateGraph):
    """StateGraph preset for conversations.

    ``messages`` always accumulates: a node returning ``{"messages": [reply]}``
    (or a single message) appends to the history instead of replacing it.
    Other keys behave as in :class:`StateGraph`.

    Example:
        graph = MessageGraph()
        graph.add_node("agent", lambda state: {"messages": ["hi there"]})
        graph.set_entry_point("agent").set_finish_point("agent")

        state = await graph.compile().invoke({"messages": ["hello"]})
        # {"messages": ["hello", "hi there"]}
    """

    def __init__(
        self,
        state_schema: Optional[type] = MessagesState,
        *,
        reducers: Optional[Mapping[str, Union[str, Reducer]]] = None,
        name: Optional[str] = None,
    ):
        super().__init__(state_schema, reducers=reducers, name=name or "MessageGraph")
        self._reducers.setdefault("messages", append)


def _retry_from_schema(node_id: str, spec: Any) -> Optional[BaseRetryStrategy]:
    if spec is None:
        return None
    if isinstance(spec, int) and not isinstance(spec, bool):
        spec = {"max_attempts": spec}
    if not isinstance(spec, dict):
        raise ValidationError(
            f"Retry of node '{node_id}' must be a mapping or an attempt count", node=node_id
        )
    try:
        return ExponentialBackoffStrategy(**spec)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Invalid retry for node '{node_id}': {e}", node=node_id) from e


def _describe_target(edge: AnyEdge) -> str:
    if isinstance(edge, Edge):
        return edge.target
    return ",".join(edge.declared)


__all__ = [
    "END",
    "Node",
    "Edge",
    "ConditionalEdge",
    "StateGraph",
    "MessageGraph",
]
