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

"""Core building blocks shared by runnables and graphs: errors and retry."""

from weft.core.errors import (
    CheckpointError,
    ConfigurationError,
    ErrorCategory,
    ExecutionError,
    RoutingError,
    RunCancelledError,
    StateConflictError,
    StepLimitExceededError,
    ThreadBusyError,
    ValidationError,
    WeftError,
)
from weft.core.retry import (
    BaseRetryStrategy,
    ExponentialBackoffStrategy,
    FixedDelayStrategy,
    LinearBackoffStrategy,
    NoRetryStrategy,
    RetryContext,
    retry_async,
)

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
    "RetryContext",
    "BaseRetryStrategy",
    "ExponentialBackoffStrategy",
    "LinearBackoffStrategy",
    "FixedDelayStrategy",
    "NoRetryStrategy",
    "retry_async",
]
