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
Errors raised while an ``@instrument`` directive is parsed or bound.

All of them are raised when the decorator is applied, never when the
decorated function is called.
"""

from typing import Optional


class DirectiveError(ValueError):
    """Base class for every decoration-time directive failure."""


class InvalidDirective(DirectiveError):
    """The directive text is malformed or uses an unknown clause."""

    def __init__(self, message: str, clause: Optional[str] = None):
        super().__init__(message)
        self.clause = clause


class DuplicateField(InvalidDirective):
    """The same key appears more than once inside ``fields(...)``."""

    def __init__(self, key: str):
        super().__init__(
            f"Field {key!r} is declared more than once in fields(...)",
            clause="fields",
        )
        self.key = key


class ReservedFieldKey(InvalidDirective):
    """A ``fields(...)`` key collides with the ``ret`` or ``err`` attribute."""

    def __init__(self, key: str, clause: str):
        super().__init__(
            f"Field key {key!r} is reserved while the {clause!r} clause is used",
            clause="fields",
        )
        self.key = key


class UnknownParameter(DirectiveError):
    """A ``skip`` or ``parent`` clause names a parameter that does not exist."""

    def __init__(self, name: str, function_name: str, clause: str):
        super().__init__(
            f"{clause}({name}) does not match any parameter of {function_name}()"
        )
        self.name = name
        self.function_name = function_name
        self.clause = clause


class InvalidParentSource(DirectiveError):
    """The ``parent`` parameter does not carry a tracing context."""

    def __init__(self, name: str, function_name: str):
        super().__init__(
            f"Parameter {name!r} of {function_name}() cannot be used as parent: "
            "annotate it as opentelemetry.context.Context, "
            "opentelemetry.trace.Span or opentelemetry.trace.SpanContext"
        )
        self.name = name
        self.function_name = function_name
