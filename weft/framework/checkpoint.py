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

"""Checkpoint records and the checkpointer contract.

A checkpoint is an immutable, step-indexed snapshot of one thread's state
together with the node the thread will run next. The checkpoints of a thread
form an append-only chain linked through ``parent_step``:

    step 0 (parent None) -> step 1 (parent 0) -> step 2 (parent 1) ...

Backends:
    - MemoryCheckpointer: process-lifetime storage (tests, ephemeral runs)
    - FileCheckpointer / SQLiteCheckpointer: durable, see ``checkpointer``
"""

from __future__ import annotations

import builtins
import logging
import uuid
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, JsonValue
from pydantic import ValidationError as PydanticValidationError

from weft.core.errors import CheckpointError, ThreadBusyError

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class Checkpoint(BaseModel):
    """Immutable snapshot of a thread after one executed step.

    Attributes:
        thread_id: Thread the checkpoint belongs to
        step: Step index, strictly increasing within a thread
        state: JSON-compatible state after the step's update was merged
        next_node_id: Node to run next, or END
        timestamp: ISO-8601 creation time
        parent_step: Step of the previous checkpoint in the chain
        metadata: Executor bookkeeping (node_id, run_id, run_start)
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    thread_id: str = Field(min_length=1)
    step: int = Field(ge=0)
    state: dict[str, JsonValue]
    next_node_id: str
    timestamp: str = Field(default_factory=_now_iso)
    parent_step: Optional[int] = None
    metadata: dict[str, JsonValue] = Field(default_factory=dict)

    def __init__(self, **data: Any) -> None:
        try:
            super().__init__(**data)
        except PydanticValidationError as e:
            raise CheckpointError(
                f"Invalid checkpoint (state must be JSON-serialisable): {e}",
                thread_id=data.get("thread_id"),
                step=data.get("step"),
                cause=e,
            ) from e

    def to_dict(self) -> dict[str, Any]:
        """Convert to the persisted representation."""
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: Any) -> "Checkpoint":
        """Rebuild a checkpoint from its persisted representation.

        Raises:
            CheckpointError: If ``data`` is not a valid checkpoint record
        """
        if not isinstance(data, dict):
            raise CheckpointError(f"Corrupt checkpoint record: expected an object, got {data!r}")
        return cls(**data)


class BaseCheckpointer(ABC):
    """Persistence contract used by the graph executor.

    ``put`` is append-only: a checkpoint whose step is not greater than the
    thread's latest stored step is rejected. ``lease`` grants a single
    writer per thread; this base implementation enforces it within the
    process, durable backends extend it across processes.
    """

    def __init__(self) -> None:
        self._leases: dict[str, str] = {}

    @abstractmethod
    async def put(self, thread_id: str, checkpoint: Checkpoint) -> None:
        """Append ``checkpoint`` to the thread's chain.

        Raises:
            CheckpointError: On step regression, thread mismatch or I/O failure
        """

    @abstractmethod
    async def get(self, thread_id: str, step: Optional[int] = None) -> Optional[Checkpoint]:
        """Return the checkpoint at ``step``, or the latest one; None if absent."""

    @abstractmethod
    def list(self, thread_id: str) -> AsyncIterator[Checkpoint]:
        """Iterate the thread's checkpoints in ascending step order."""

    @abstractmethod
    async def delete_thread(self, thread_id: str) -> int:
        """Delete a thread's history. Returns the number of checkpoints removed."""

    async def latest_step(self, thread_id: str) -> Optional[int]:
        latest = await self.get(thread_id)
        return latest.step if latest is not None else None

    @staticmethod
    def _check_append(thread_id: str, checkpoint: Checkpoint, latest: Optional[int]) -> None:
        if checkpoint.thread_id != thread_id:
            raise CheckpointError(
                f"Checkpoint belongs to thread {checkpoint.thread_id!r}, not {thread_id!r}",
                thread_id=thread_id,
                step=checkpoint.step,
            )
        if latest is not None and checkpoint.step <= latest:
            raise CheckpointError(
                f"Checkpoint history is append-only: step {checkpoint.step} <= "
                f"latest step {latest} for thread {thread_id!r}",
                thread_id=thread_id,
                step=checkpoint.step,
            )

    @asynccontextmanager
    async def lease(self, thread_id: str) -> AsyncIterator[str]:
        """Hold the single-writer lease on ``thread_id``.

        Yields:
            The owner token of the lease

        Raises:
            ThreadBusyError: If another holder owns the thread
        """
        owner = self._leases.get(thread_id)
        if owner is not None:
            raise ThreadBusyError(thread_id, owner)
        token = uuid.uuid4().hex
        self._leases[thread_id] = token
        try:
            yield token
        finally:
            if self._leases.get(thread_id) == token:
                del self._leases[thread_id]


class MemoryCheckpointer(BaseCheckpointer):
    """In-memory checkpointer. History is lost when the process exits."""

    def __init__(self) -> None:
        super().__init__()
        self._threads: dict[str, builtins.list[Checkpoint]] = {}

    async def put(self, thread_id: str, checkpoint: Checkpoint) -> None:
        chain = self._threads.get(thread_id)
        self._check_append(thread_id, checkpoint, chain[-1].step if chain else None)
        self._threads.setdefault(thread_id, []).append(checkpoint)
        logger.debug(f"Stored checkpoint {thread_id}@{checkpoint.step}")

    async def get(self, thread_id: str, step: Optional[int] = None) -> Optional[Checkpoint]:
        chain = self._threads.get(thread_id)
        if not chain:
            return None
        if step is None:
            return chain[-1]
        for checkpoint in chain:
            if checkpoint.step == step:
                return checkpoint
        return None

    async def list(self, thread_id: str) -> AsyncIterator[Checkpoint]:
        for checkpoint in builtins.list(self._threads.get(thread_id, ())):
            yield checkpoint

    async def delete_thread(self, thread_id: str) -> int:
        return len(self._threads.pop(thread_id, []))

    def threads(self) -> builtins.list[str]:
        return sorted(self._threads)


__all__ = ["Checkpoint", "BaseCheckpointer", "MemoryCheckpointer"]
