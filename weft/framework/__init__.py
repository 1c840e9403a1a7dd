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

"""Stateful graph workflows with checkpointing.

Example:
    from weft.framework import END, MemoryCheckpointer, StateGraph

    graph = StateGraph()
    graph.add_node("a", lambda state: {"x": 1})
    graph.add_node("b", lambda state: {"x": state["x"] + 1})
    graph.add_edge("a", "b")
    graph.set_finish_point("b")
    graph.set_entry_point("a")

    app = graph.compile(checkpointer=MemoryCheckpointer())
    state = await app.invoke({}, thread_id="demo")   # {"x": 2}
"""

from weft.framework.checkpoint import BaseCheckpointer, Checkpoint, MemoryCheckpointer
from weft.framework.checkpointer import FileCheckpointer, SQLiteCheckpointer
from weft.framework.compiled import (
    CompiledGraph,
    GraphCheckpointManager,
    GraphExecutionResult,
    GraphStep,
)
from weft.framework.graph import END, ConditionalEdge, Edge, MessageGraph, Node, StateGraph
from weft.framework.state import (
    REDUCERS,
    MessagesState,
    Reducer,
    StateReducer,
    add,
    append,
    get_reducer,
    merge_dicts,
    replace,
    union,
)

__all__ = [
    "END",
    "StateGraph",
    "MessageGraph",
    "MessagesState",
    "CompiledGraph",
    "GraphExecutionResult",
    "GraphStep",
    "GraphCheckpointManager",
    "Node",
    "Edge",
    "ConditionalEdge",
    "Reducer",
    "REDUCERS",
    "StateReducer",
    "get_reducer",
    "replace",
    "append",
    "merge_dicts",
    "add",
    "union",
    "Checkpoint",
    "BaseCheckpointer",
    "MemoryCheckpointer",
    "FileCheckpointer",
    "SQLiteCheckpointer",
]
