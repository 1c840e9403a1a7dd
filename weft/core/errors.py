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

"""Error taxonomy for weft.

Every error raised by the library derives from :class:`WeftError`, which
carries a category, structured details and an optional recovery hint so
callers can log or report failures uniformly.

Graph errors:
    - ValidationError: malformed graph, raised by ``StateGraph.compile()``
    - ExecutionError: a node's transformation failed (wraps the cause)
    - RoutingError: a router returned an undeclared target
    - StateConflictError: parallel branches wrote the same key without a reducer
    - StepLimitExceededError: the step ceiling was reached
    - CheckpointError: persistence failed or a stored checkpoint is unreadable
    - ThreadBusyError: another writer owns the thread
    - RunCancelledError: the run's cancellation token fired
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCategory(Enum):
    """Categories of errors for classification and handling."""

    VALIDATION = "validation"
    EXECUTION = "execution"
    ROUTING = "routing"
    STATE_CONFLICT = "state_conflict"
    STEP_LIMIT = "step_limit"
    CHECKPOINT = "checkpoint"
    CONCURRENCY = "concurrency"
    CANCELLED = "cancelled"
    CONFIG_INVALID = "config_invalid"
    UNKNOWN = "unknown"


class WeftError(Exception):
    """Base exception for all weft errors.

    Provides structured error information including:
    - Error category
    - Correlation ID for tracking
    - Recovery suggestion
    - Original exception (also chained via ``raise ... from``)
    """

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        details: Optional[Dict[str, Any]] = None,
        recovery_hint: Optional[str] = None,
        correlation_id: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category
        self.details = details or {}
        self.recovery_hint = recovery_hint
        self.correlation_id = correlation_id or str(uuid.uuid4())[:8]
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "error": self.message,
            "type": type(self).__name__,
            "category": self.category.value,
            "correlation_id": self.correlation_id,
            "recovery_hint": self.recovery_hint,
            "details": self.details,
            "cause": repr(self.cause) if self.cause is not None else None,
            "timestamp": self.timestamp.isoformat(),
        }

    def __str__(self) -> str:
        result = self.message
        if self.recovery_hint:
            result += f"\nRecovery hint: {self.recovery_hint}"
        return result


class ConfigurationError(WeftError):
    """Invalid settings or runtime configuration."""

    def __init__(self, message: str, config_key: Optional[str] = None, **kwargs: Any):
        super().__init__(message, category=ErrorCategory.CONFIG_INVALID, **kwargs)
        self.config_key = config_key
        self.details["config_key"] = config_key


class ValidationError(WeftError):
    """Structural problem in a graph definition.

    Always raised before any node executes. ``node`` and ``edge`` identify
    the offending definition where one applies.
    """

    def __init__(
        self,
        message: str,
        node: Optional[str] = None,
        edge: Optional[tuple[str, str]] = None,
        **kwargs: Any,
    ):
        super().__init__(message, category=ErrorCategory.VALIDATION, **kwargs)
        self.node = node
        self.edge = edge
        self.details["node"] = node
        self.details["edge"] = list(edge) if edge else None


class ExecutionError(WeftError):
    """A node's transformation function failed.

    Attributes:
        node_id: Node that was executing
        step: Step number of the failed step
        thread_id: Thread the run belongs to
    """

    def __init__(
        self,
        message: str,
        node_id: str,
        step: int,
        thread_id: Optional[str] = None,
        category: ErrorCategory = ErrorCategory.EXECUTION,
        **kwargs: Any,
    ):
        super().__init__(message, category=category, **kwargs)
        self.node_id = node_id
        self.step = step
        self.thread_id = thread_id
        self.details.update({"node_id": node_id, "step": step, "thread_id": thread_id})


class RoutingError(ExecutionError):
    """A conditional edge produced a target it did not declare."""

    def __init__(
        self,
        message: str,
        node_id: str,
        step: int,
        target: Any = None,
        declared: Optional[list[str]] = None,
        **kwargs: Any,
    ):
        super().__init__(message, node_id, step, category=ErrorCategory.ROUTING, **kwargs)
        self.target = target
        self.declared = declared or []
        self.details["target"] = repr(target)
        self.details["declared"] = self.declared


class StateConflictError(ExecutionError):
    """Parallel branches of one step wrote the same key and no reducer is declared."""

    def __init__(self, message: str, node_id: str, step: int, keys: list[str], **kwargs: Any):
        super().__init__(
            message,
            node_id,
            step,
            category=ErrorCategory.STATE_CONFLICT,
            recovery_hint="Declare a reducer for the key when building the graph",
            **kwargs,
        )
        self.keys = keys
        self.details["keys"] = keys


class StepLimitExceededError(WeftError):
    """The run reached its step ceiling before routing to END.

    The last good checkpoint stays valid, so the thread can be resumed once
    the routing logic (or the ceiling) is fixed.
    """

    def __init__(
        self,
        max_steps: int,
        node_id: str,
        step: int,
        thread_id: Optional[str] = None,
        **kwargs: Any,
    ):
        super().__init__(
            f"Step limit of {max_steps} exceeded before reaching END "
            f"(next node: {node_id!r}, step: {step})",
            category=ErrorCategory.STEP_LIMIT,
            recovery_hint="Check that conditional edges can reach END, or raise recursion_limit",
            **kwargs,
        )
        self.max_steps = max_steps
        self.node_id = node_id
        self.step = step
        self.thread_id = thread_id
        self.details.update(
            {"max_steps": max_steps, "node_id": node_id, "step": step, "thread_id": thread_id}
        )


class CheckpointError(WeftError):
    """Checkpoint persistence failed or a stored checkpoint is unreadable."""

    def __init__(
        self,
        message: str,
        thread_id: Optional[str] = None,
        step: Optional[int] = None,
        category: ErrorCategory = ErrorCategory.CHECKPOINT,
        **kwargs: Any,
    ):
        super().__init__(message, category=category, **kwargs)
        self.thread_id = thread_id
        self.step = step
        self.details.update({"thread_id": thread_id, "step": step})


class ThreadBusyError(CheckpointError):
    """Another step loop or process already owns the thread."""

    def __init__(self, thread_id: str, owner: Optional[str] = None, **kwargs: Any):
        message = f"Thread {thread_id!r} is already being executed"
        if owner:
            message += f" (lease held by {owner})"
        super().__init__(message, thread_id=thread_id, category=ErrorCategory.CONCURRENCY, **kwargs)
        self.owner = owner


class RunCancelledError(WeftError):
    """The run's cancellation token was cancelled or its deadline passed."""

    def __init__(self, reason: Optional[str] = None, **kwargs: Any):
        super().__init__(
            f"Run cancelled: {reason}" if reason else "Run cancelled",
            category=ErrorCategory.CANCELLED,
            **kwargs,
        )
        self.reason = reason


__all__ = [
    "ErrorCategory",
    "WeftError",
    "ConfigurationError",
    "ValidationError",
    "ExecutionError",
    "RoutingError",
    "StateConflictError",
    "StepLimitExceededError",
    "CheckpointError",
    "ThreadBusyError",
    "RunCancelledError",
]
