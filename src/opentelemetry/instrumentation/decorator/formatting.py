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
Rendering of parameter, field, return and error values to attribute strings.

``format_value`` dispatches on the value type and can be extended:

.. code:: python

    from opentelemetry.instrumentation.decorator import format_value

    @format_value.register
    def _(value: User) -> str:
        return f"User({value.id})"
"""

import functools
import logging
from typing import Any, Callable, Optional

_logger = logging.getLogger(__name__)

FORMAT_PLACEHOLDER = "<unformattable>"

Formatter = Callable[[Any], str]


@functools.singledispatch
def format_value(value: Any) -> str:
    return str(value)


@format_value.register
def _format_str(value: str) -> str:
    return value


@format_value.register
def _format_exception(value: BaseException) -> str:
    # ``str()`` of an exception raised without arguments is empty
    return str(value) or type(value).__name__


def safe_format(
    value: Any,
    formatter: Formatter = format_value,
    key: Optional[str] = None,
) -> str:
    """Format ``value`` with ``formatter``, never raising.

    When the formatter fails or does not return a string the failure is
    logged and :data:`FORMAT_PLACEHOLDER` is returned instead.
    """
    try:
        formatted = formatter(value)
    except Exception:  # pylint: disable=broad-except
        _logger.warning(
            "Failed to format %s value for attribute %r, recording %r instead",
            type(value).__name__,
            key,
            FORMAT_PLACEHOLDER,
            exc_info=True,
        )
        return FORMAT_PLACEHOLDER
    if not isinstance(formatted, str):
        _logger.warning(
            "Formatter returned %s instead of str for attribute %r, "
            "recording %r instead",
            type(formatted).__name__,
            key,
            FORMAT_PLACEHOLDER,
        )
        return FORMAT_PLACEHOLDER
    return formatted
