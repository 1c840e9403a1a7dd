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

"""
Weft - composable async runnables and checkpointed state graphs.

Package Structure:
    - weft.runnables: Runnable contract, RunnableConfig, callbacks, sequences
    - weft.framework: StateGraph compiler/executor and checkpointers
    - weft.core: Error taxonomy and retry strategies
    - weft.config: Settings and logging configuration

Simple API:
    from weft import RunnableLambda, StateGraph, END

    chain = RunnableLambda(lambda x: x * 2) | (lambda x: x + 1)
    await chain.invoke(3)   # 7
"""

from weft.config import GraphSettings, configure_logging, load_settings
from weft.core import (
    CheckpointError,
    ExecutionError,
    RoutingError,
    RunCancelledError,
    StateConflictError,
    StepLimitExceededError,
    ThreadBusyError,
    ValidationError,
    WeftError,
)
from weft.framework import (
    END,
    Checkpoint,
    CompiledGraph,
    FileCheckpointer,
    GraphExecutionResult,
    MemoryCheckpointer,
    MessageGraph,
    SQLiteCheckpointer,
    StateGraph,
)
from weft.runnables import (
    BaseCallback,
    CancellationToken,
    Runnable,
    RunnableConfig,
    RunnableLambda,
    RunnableParallel,
    RunnablePassthrough,
    RunnableSequence,
)

__version__ = "0.1.0"

__all__ = [
    "__version__",
    "Runnable",
    "RunnableLambda",
    "RunnablePassthrough",
    "RunnableSequence",
    "RunnableParallel",
    "RunnableConfig",
    "CancellationToken",
    "BaseCallback",
    "StateGraph",
    "MessageGraph",
    "CompiledGraph",
    "GraphExecutionResult",
    "END",
    "Checkpoint",
    "MemoryCheckpointer",
    "FileCheckpointer",
    "SQLiteCheckpointer",
    "GraphSettings",
    "load_settings",
    "configure_logging",
    "WeftError",
    "ValidationError",
    "ExecutionError",
    "RoutingError",
    "StateConflictError",
    "StepLimitExceededError",
    "CheckpointError",
    "ThreadBusyError",
    "RunCancelledError",
]
