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

"""State reducers for graph execution.

A node returns a partial update. The update is folded into the running state
key by key: keys absent from the update persist, keys present overwrite the
old value unless the graph declared a reducer for that key at build time.

Reducers are declared explicitly, never inferred from values:

    graph = StateGraph(reducers={"messages": append})

or through ``Annotated`` fields of a ``TypedDict`` state schema:

    class AgentState(TypedDict):
        messages: Annotated[list[str], append]
        attempts: int

Stock reducers:
    - replace: new value wins (the default behaviour)
    - append: list concatenation
    - merge_dicts: shallow dict merge, new keys win
    - add: ``operator.add``
    - union: order-preserving de-duplicated list
"""

from __future__ import annotations

import logging
import operator
import types
import typing
from collections.abc import Callable, Mapping, Sequence
from typing import Any, Optional, Union

from pydantic import JsonValue

from weft.core.errors import StateConflictError, ValidationError

logger = logging.getLogger(__name__)

Reducer = Callable[[Any, Any], Any]


def replace(old: Any, new: Any) -> Any:
    return new


def append(old: Any, new: Any) -> list[Any]:
    """Concatenate lists. A non-list update is appended as one item."""
    base = list(old) if old is not None else []
    if isinstance(new, (list, tuple)):
        return base + list(new)
    return base + [new]


def merge_dicts(old: Any, new: Any) -> dict[str, Any]:
    return {**(old or {}), **(new or {})}


def add(old: Any, new: Any) -> Any:
    if old is None:
        return new
    return operator.add(old, new)


def union(old: Any, new: Any) -> list[Any]:
    """Order-preserving union of two collections, returned as a list."""
    merged: list[Any] = []
    for item in list(old or []) + list(new or []):
        if item not in merged:
            merged.append(item)
    return merged


REDUCERS: dict[str, Reducer] = {
    "replace": replace,
    "append": append,
    "merge_dicts": merge_dicts,
    "add": add,
    "union": union,
}


class MessagesState(typing.TypedDict):
    """State of a chat-style graph: ``messages`` accumulates across nodes."""

    messages: typing.Annotated[list[Any], append]


def get_reducer(spec: Union[str, Reducer]) -> Reducer:
    """Resolve a reducer given by name or as a callable."""
    if callable(spec):
        return spec
    try:
        return REDUCERS[spec]
    except KeyError:
        raise ValidationError(
            f"Unknown reducer {spec!r}. Available: {sorted(REDUCERS)}"
        ) from None


def _schema_hints(schema: Any) -> dict[str, Any]:
    try:
        return typing.get_type_hints(schema, include_extras=True)
    except (TypeError, NameError) as e:
        raise ValidationError(f"Cannot read state schema {schema!r}: {e}") from e


def extract_reducers(schema: Optional[type]) -> dict[str, Reducer]:
    """Collect reducers declared as ``Annotated[T, reducer]`` schema fields."""
    if schema is None:
        return {}

    reducers: dict[str, Reducer] = {}
    for key, hint in _schema_hints(schema).items():
        hint = _strip_qualifiers(hint)
        if typing.get_origin(hint) is not typing.Annotated:
            continue
        for meta in hint.__metadata__:
            if callable(meta) or (isinstance(meta, str) and meta in REDUCERS):
                reducers[key] = get_reducer(meta)
                break
    return reducers


_QUALIFIERS = tuple(
    q
    for q in (
        getattr(typing, "Required", None),
        getattr(typing, "NotRequired", None),
        getattr(typing, "ReadOnly", None),
    )
    if q is not None
)


def _strip_qualifiers(hint: Any) -> Any:
    while typing.get_origin(hint) in _QUALIFIERS:
        hint = typing.get_args(hint)[0]
    return hint


_JSON_SCALARS = (str, int, float, bool, type(None))


def _is_json_type(hint: Any, seen: set[int]) -> bool:
    hint = _strip_qualifiers(hint)
    if hint is Any or hint is None or hint in _JSON_SCALARS:
        return True

    origin = typing.get_origin(hint)
    args = typing.get_args(hint)

    if origin is typing.Annotated:
        return _is_json_type(args[0], seen)
    if origin is typing.Literal:
        return all(isinstance(a, _JSON_SCALARS) for a in args)
    if origin is Union or origin is types.UnionType:
        return all(_is_json_type(a, seen) for a in args)
    if origin in (list, Sequence, typing.List):
        return not args or _is_json_type(args[0], seen)
    if origin in (dict, Mapping, typing.Dict):
        return not args or (args[0] is str and _is_json_type(args[1], seen))
    if hint in (list, dict):
        return True
    if hint is JsonValue:
        return True

    # Nested TypedDict
    if isinstance(hint, type) and hasattr(hint, "__total__") and hasattr(hint, "__annotations__"):
        if id(hint) in seen:
            return True
        seen.add(id(hint))
        return all(_is_json_type(h, seen) for h in _schema_hints(hint).values())

    return False


def non_serializable_fields(schema: Optional[type]) -> list[str]:
    """Return schema fields whose declared type cannot be stored as JSON.

    Checkpoints persist state as JSON values (maps, lists and scalars), so a
    graph with a checkpointer may only declare fields of those shapes.
    """
    if schema is None:
        return []
    return [
        key for key, hint in _schema_hints(schema).items() if not _is_json_type(hint, {id(schema)})
    ]


class StateReducer:
    """Folds partial node updates into the running state."""

    def __init__(self, reducers: Optional[Mapping[str, Reducer]] = None):
        self._reducers: dict[str, Reducer] = dict(reducers or {})

    @property
    def reducers(self) -> Mapping[str, Reducer]:
        return types.MappingProxyType(self._reducers)

    def has_reducer(self, key: str) -> bool:
        return key in self._reducers

    def apply(self, state: Mapping[str, Any], update: Mapping[str, Any]) -> dict[str, Any]:
        """Return a new state with ``update`` folded into ``state``."""
        merged = dict(state)
        for key, value in update.items():
            reducer = self._reducers.get(key)
            if reducer is None:
                merged[key] = value
            else:
                merged[key] = reducer(merged.get(key), value)
        return merged

    def combine(
        self,
        updates: Sequence[Mapping[str, Any]],
        *,
        node_id: str,
        step: int,
    ) -> dict[str, Any]:
        """Combine updates produced concurrently against the same snapshot.

        Disjoint keys are unioned. A key written by more than one update
        needs a declared reducer, which folds the values in branch order.

        Raises:
            StateConflictError: If overlapping keys have no reducer
        """
        writers: dict[str, int] = {}
        for update in updates:
            for key in update:
                writers[key] = writers.get(key, 0) + 1

        conflicts = sorted(k for k, n in writers.items() if n > 1 and k not in self._reducers)
        if conflicts:
            raise StateConflictError(
                f"Parallel branches of node '{node_id}' wrote overlapping keys "
                f"without a reducer: {conflicts}",
                node_id=node_id,
                step=step,
                keys=conflicts,
            )

        combined: dict[str, Any] = {}
        for update in updates:
            for key, value in update.items():
                if writers[key] > 1 and key in combined:
                    combined[key] = self._reducers[key](combined[key], value)
                else:
                    combined[key] = value
        return combined


__all__ = [
    "Reducer",
    "REDUCERS",
    "replace",
    "append",
    "merge_dicts",
    "add",
    "union",
    "get_reducer",
    "extract_reducers",
    "non_serializable_fields",
    "StateReducer",
    "MessagesState",
]
