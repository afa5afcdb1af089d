# Copyright The OpenTelemetry Authors
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
Run the decorated function's body and report its outcome.

The blocking and the suspending shim return the same :class:`Outcome`,
so span handling does not depend on the calling convention. Only
:class:`Exception` is treated as the function's failure; other
``BaseException`` subclasses (``KeyboardInterrupt``, ``SystemExit``,
``asyncio.CancelledError``) propagate out of the shim unchanged.
"""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Optional, Tuple


@dataclass(frozen=True)
class Outcome:
    value: Any = None
    exception: Optional[Exception] = None

    @classmethod
    def success(cls, value: Any) -> "Outcome":
        return cls(value=value)

    @classmethod
    def failure(cls, exception: Exception) -> "Outcome":
        return cls(exception=exception)

    @property
    def succeeded(self) -> bool:
        return self.exception is None

    def unwrap(self) -> Any:
        """Return the value, or raise the original exception."""
        if self.exception is not None:
            raise self.exception
        return self.value


def run_blocking(
    func: Callable[..., Any],
    args: Tuple[Any, ...],
    kwargs: Mapping[str, Any],
) -> Outcome:
    try:
        return Outcome.success(func(*args, **kwargs))
    except Exception as exc:  # pylint: disable=broad-except
        return Outcome.failure(exc)


async def run_suspending(
    func: Callable[..., Awaitable[Any]],
    args: Tuple[Any, ...],
    kwargs: Mapping[str, Any],
) -> Outcome:
    try:
        return Outcome.success(await func(*args, **kwargs))
    except Exception as exc:  # pylint: disable=broad-except
        return Outcome.failure(exc)
