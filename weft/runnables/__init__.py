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

"""Composable execution units.

Exports the Runnable contract, its context, the callback dispatcher and the
composite units built on top of them.
"""

from weft.runnables.base import Runnable, RunnableLambda, RunnablePassthrough, coerce_to_runnable
from weft.runnables.binding import RunnableBinding, RunnableRetry
from weft.runnables.callbacks import (
    BaseCallback,
    CallbackManager,
    FileCallback,
    LoggingCallback,
    MetricsCallback,
)
from weft.runnables.config import CallbackList, CancellationToken, RunnableConfig, ensure_config
from weft.runnables.sequence import RunnableParallel, RunnableSequence

__all__ = [
    "Runnable",
    "RunnableLambda",
    "RunnablePassthrough",
    "RunnableSequence",
    "RunnableParallel",
    "RunnableBinding",
    "RunnableRetry",
    "coerce_to_runnable",
    "RunnableConfig",
    "CallbackList",
    "CancellationToken",
    "ensure_config",
    "BaseCallback",
    "CallbackManager",
    "LoggingCallback",
    "MetricsCallback",
    "FileCallback",
]
