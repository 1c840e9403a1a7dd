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

"""RunnableConfig - the execution context propagated through a call tree.

A config is immutable. Deriving a new one never touches the parent:

    parent = RunnableConfig(tags=["api"], metadata={"user": "u1"})
    child = parent.child(callbacks=[MetricsCallback()], metadata={"step": 1})

    len(child.callbacks) == len(parent.callbacks) + 1
    child.metadata == {"user": "u1", "step": 1}

Derivation shares structure with the parent instead of copying it: callback
lists are persistent linked segments and metadata/configurable mappings are
read-only ``ChainMap`` views.

``child()`` expresses nesting (the parent is the base, overrides win).
``merge()`` combines two independently-built peers (the argument's keys win).
"""

from __future__ import annotations

import time
from collections import ChainMap
from collections.abc import Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass, field, fields, replace
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Optional, Union

from weft.core.errors import RunCancelledError

if TYPE_CHECKING:
    from weft.runnables.callbacks import BaseCallback


_EMPTY: Mapping[str, Any] = MappingProxyType({})


class CallbackList(Sequence["BaseCallback"]):
    """Persistent, append-only sequence of callback handlers.

    Each instance owns only the handlers appended at its level and points at
    the list it was derived from, so ``extend`` is O(k) in the number of new
    handlers and never copies or mutates the parent.
    """

    __slots__ = ("_parent", "_items", "_len")

    def __init__(
        self,
        items: Iterable["BaseCallback"] = (),
        parent: Optional["CallbackList"] = None,
    ):
        self._items: tuple["BaseCallback", ...] = tuple(items)
        if parent is not None and not parent:
            parent = None
        self._parent = parent
        self._len = len(self._items) + (len(parent) if parent is not None else 0)

    def extend(self, items: Iterable["BaseCallback"]) -> "CallbackList":
        """Return a new list with ``items`` appended after this one's handlers."""
        items = tuple(items)
        if not items:
            return self
        if not self:
            return CallbackList(items)
        return CallbackList(items, parent=self)

    def _segments(self) -> list[tuple["BaseCallback", ...]]:
        segments = []
        node: Optional[CallbackList] = self
        while node is not None:
            segments.append(node._items)
            node = node._parent
        segments.reverse()
        return segments

    def __iter__(self) -> Iterator["BaseCallback"]:
        for segment in self._segments():
            yield from segment

    def __len__(self) -> int:
        return self._len

    def __getitem__(self, index):  # type: ignore[override]
        return tuple(self)[index]

    def __eq__(self, other: object) -> bool:
        if isinstance(other, CallbackList):
            return tuple(self) == tuple(other)
        if isinstance(other, (list, tuple)):
            return tuple(self) == tuple(other)
        return NotImplemented

    def __hash__(self) -> int:
        return hash(tuple(self))

    def __repr__(self) -> str:
        return f"CallbackList({list(self)!r})"


class CancellationToken:
    """Cooperative cancellation signal shared by a call tree.

    The executor and ``Runnable.invoke`` call :meth:`raise_if_cancelled` at
    every step and await point they control. A ``timeout`` turns into a
    deadline measured from construction.
    """

    def __init__(self, timeout: Optional[float] = None):
        self._deadline = time.monotonic() + timeout if timeout is not None else None
        self._reason: Optional[str] = None
        self._cancelled = False

    def cancel(self, reason: Optional[str] = None) -> None:
        """Request cancellation. Idempotent; the first reason wins."""
        if not self._cancelled:
            self._cancelled = True
            self._reason = reason

    @property
    def cancelled(self) -> bool:
        if self._cancelled:
            return True
        return self._deadline is not None and time.monotonic() >= self._deadline

    @property
    def reason(self) -> Optional[str]:
        if self._cancelled:
            return self._reason
        if self.cancelled:
            return "deadline exceeded"
        return None

    def remaining(self) -> Optional[float]:
        """Seconds until the deadline, or None when there is no deadline."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise RunCancelledError(self.reason)

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self.cancelled}, remaining={self.remaining()})"


def _dedupe(tags: Iterable[str]) -> tuple[str, ...]:
    return tuple(dict.fromkeys(tags))


def _layer(base: Mapping[str, Any], overrides: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    """Read-only view of ``overrides`` shadowing ``base``."""
    if not overrides:
        return base
    if not base:
        return MappingProxyType(dict(overrides))
    return MappingProxyType(ChainMap(dict(overrides), base))  # type: ignore[arg-type]


@dataclass(frozen=True)
class RunnableConfig:
    """Immutable bag of callbacks, tags, metadata and runtime overrides.

    Attributes:
        callbacks: Handlers notified at each lifecycle point (append-only)
        tags: Labels accumulated along the call tree (ordered set)
        metadata: Arbitrary key/values, child keys shadow parent keys
        configurable: Runtime overrides consulted by concrete units
        recursion_limit: Step ceiling for graphs run under this context
        max_concurrency: Upper bound for ``batch`` fan-out
        run_name: Display name for the current call
        run_id: Identifier of the current call (assigned by ``invoke``)
        parent_run_id: Identifier of the enclosing call
        cancellation: Shared cancellation token
    """

    callbacks: CallbackList = field(default_factory=CallbackList)
    tags: tuple[str, ...] = ()
    metadata: Mapping[str, Any] = field(default_factory=lambda: _EMPTY)
    configurable: Mapping[str, Any] = field(default_factory=lambda: _EMPTY)
    recursion_limit: Optional[int] = None
    max_concurrency: Optional[int] = None
    run_name: Optional[str] = None
    run_id: Optional[str] = None
    parent_run_id: Optional[str] = None
    cancellation: Optional[CancellationToken] = None

    def __post_init__(self) -> None:
        # Normalise constructor arguments into their immutable forms
        if not isinstance(self.callbacks, CallbackList):
            object.__setattr__(self, "callbacks", CallbackList(self.callbacks or ()))
        object.__setattr__(self, "tags", _dedupe(self.tags or ()))
        if not isinstance(self.metadata, MappingProxyType):
            object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata or {})))
        if not isinstance(self.configurable, MappingProxyType):
            object.__setattr__(
                self, "configurable", MappingProxyType(dict(self.configurable or {}))
            )
        if self.recursion_limit is not None and self.recursion_limit < 1:
            raise ValueError(f"recursion_limit must be >= 1, got {self.recursion_limit}")
        if self.max_concurrency is not None and self.max_concurrency < 1:
            raise ValueError(f"max_concurrency must be >= 1, got {self.max_concurrency}")

    def child(
        self,
        overrides: Union["RunnableConfig", Mapping[str, Any], None] = None,
        **fields_: Any,
    ) -> "RunnableConfig":
        """Derive a nested context.

        Callbacks are appended after the parent's, tags are unioned, and
        metadata/configurable entries from ``overrides`` shadow the parent's.
        Scalar fields are replaced only when the override sets them.

        Args:
            overrides: A RunnableConfig or a mapping of config fields
            **fields_: Config fields, combined with ``overrides``

        Returns:
            A new RunnableConfig; ``self`` is unchanged
        """
        updates = _as_field_mapping(overrides)
        updates.update(fields_)
        _check_fields(updates)
        if not updates:
            return self

        return replace(
            self,
            callbacks=self.callbacks.extend(updates.pop("callbacks", None) or ()),
            tags=self.tags + tuple(updates.pop("tags", None) or ()),
            metadata=_layer(self.metadata, updates.pop("metadata", None)),
            configurable=_layer(self.configurable, updates.pop("configurable", None)),
            **{k: v for k, v in updates.items() if v is not None},
        )

    def merge(self, other: Union["RunnableConfig", Mapping[str, Any]]) -> "RunnableConfig":
        """Combine two peer contexts.

        Tags are the union of both sides and callbacks run ``self``'s first.
        On key collisions ``other``'s metadata and configurable values win,
        and ``other``'s scalar fields win wherever it sets them.
        """
        other = ensure_config(other)
        return RunnableConfig(
            callbacks=self.callbacks.extend(other.callbacks),
            tags=self.tags + other.tags,
            metadata={**self.metadata, **other.metadata},
            configurable={**self.configurable, **other.configurable},
            recursion_limit=_pick(other.recursion_limit, self.recursion_limit),
            max_concurrency=_pick(other.max_concurrency, self.max_concurrency),
            run_name=_pick(other.run_name, self.run_name),
            run_id=_pick(other.run_id, self.run_id),
            parent_run_id=_pick(other.parent_run_id, self.parent_run_id),
            cancellation=_pick(other.cancellation, self.cancellation),
        )

    def get_configurable(self, key: str, default: Any = None) -> Any:
        """Look up a runtime override."""
        return self.configurable.get(key, default)

    def raise_if_cancelled(self) -> None:
        if self.cancellation is not None:
            self.cancellation.raise_if_cancelled()

    def to_dict(self) -> dict[str, Any]:
        """Plain-dict view, used for logging and callback payloads."""
        return {
            "callbacks": [type(cb).__name__ for cb in self.callbacks],
            "tags": list(self.tags),
            "metadata": dict(self.metadata),
            "configurable": dict(self.configurable),
            "recursion_limit": self.recursion_limit,
            "max_concurrency": self.max_concurrency,
            "run_name": self.run_name,
            "run_id": self.run_id,
            "parent_run_id": self.parent_run_id,
        }


_FIELD_NAMES = frozenset(f.name for f in fields(RunnableConfig))


def _pick(preferred: Any, fallback: Any) -> Any:
    return preferred if preferred is not None else fallback


def _as_field_mapping(
    value: Union[RunnableConfig, Mapping[str, Any], None],
) -> dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, RunnableConfig):
        return {
            "callbacks": tuple(value.callbacks),
            "tags": value.tags,
            "metadata": dict(value.metadata),
            "configurable": dict(value.configurable),
            "recursion_limit": value.recursion_limit,
            "max_concurrency": value.max_concurrency,
            "run_name": value.run_name,
            "run_id": value.run_id,
            "parent_run_id": value.parent_run_id,
            "cancellation": value.cancellation,
        }
    return dict(value)


def _check_fields(updates: Mapping[str, Any]) -> None:
    unknown = set(updates) - _FIELD_NAMES
    if unknown:
        raise TypeError(f"Unknown RunnableConfig fields: {sorted(unknown)}")


def ensure_config(config: Union[RunnableConfig, Mapping[str, Any], None] = None) -> RunnableConfig:
    """Normalise ``None``, a mapping, or a RunnableConfig into a RunnableConfig."""
    if config is None:
        return RunnableConfig()
    if isinstance(config, RunnableConfig):
        return config
    if isinstance(config, Mapping):
        updates = dict(config)
        _check_fields(updates)
        return RunnableConfig(**updates)
    raise TypeError(f"Expected RunnableConfig or mapping, got {type(config).__name__}")


__all__ = [
    "CallbackList",
    "CancellationToken",
    "RunnableConfig",
    "ensure_config",
]
