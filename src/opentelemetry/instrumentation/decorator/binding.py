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
Binding of a parsed :class:`Directive` against a function signature.

Binding runs once, when the decorator is applied, and produces a frozen
:class:`BindingPlan` that every call of the decorated function reads.
"""

import inspect
import logging
import re
import types
import typing
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Tuple

from opentelemetry.context import Context
from opentelemetry.instrumentation.decorator.directive import Directive
from opentelemetry.instrumentation.decorator.errors import (
    InvalidParentSource,
    UnknownParameter,
)
from opentelemetry.trace import Span, SpanContext

_logger = logging.getLogger(__name__)

_CONTEXT_TYPES = (Context, Span, SpanContext)
_CONTEXT_TYPE_NAMES = frozenset(
    ("Context", "Span", "SpanContext", "NonRecordingSpan")
)
_OPTIONAL_PATTERN = re.compile(r"^(?:typing\.)?Optional\[(.*)\]$")
_UNION_TYPES = tuple(
    union
    for union in (typing.Union, getattr(types, "UnionType", None))
    if union is not None
)
_RECEIVER_NAMES = ("self", "cls")
_POSITIONAL = (
    inspect.Parameter.POSITIONAL_ONLY,
    inspect.Parameter.POSITIONAL_OR_KEYWORD,
)


@dataclass(frozen=True)
class ParameterBinding:
    name: str
    position: int
    kind: Any
    recorded: bool
    is_parent_source: bool = False
    context_carrying: bool = False


@dataclass(frozen=True)
class BindingPlan:
    """Everything a call needs to know about the decorated function."""

    directive: Directive
    parameters: Tuple[ParameterBinding, ...]
    is_async: bool
    span_name: str
    signature: inspect.Signature
    function: Callable[..., Any]

    @property
    def recorded_parameters(self) -> Tuple[ParameterBinding, ...]:
        return tuple(
            parameter for parameter in self.parameters if parameter.recorded
        )

    def bind_arguments(
        self, args: Tuple[Any, ...], kwargs: Mapping[str, Any]
    ) -> Dict[str, Any]:
        """Map call arguments to parameter names, defaults applied.

        Arguments that do not fit the signature are left to the function
        itself to reject; no parameter is recorded for such a call.
        """
        try:
            bound = self.signature.bind(*args, **kwargs)
        except TypeError:
            _logger.debug(
                "Arguments do not match the signature of %s, "
                "no parameter will be recorded",
                self.span_name,
            )
            return {}
        bound.apply_defaults()
        return dict(bound.arguments)

    def evaluation_scope(self, arguments: Mapping[str, Any]) -> Dict[str, Any]:
        """Namespace for evaluating directive expressions.

        A copy of the function's globals, overlaid with its closure
        variables and then with the call arguments.
        """
        target = inspect.unwrap(self.function)
        scope: Dict[str, Any] = dict(getattr(target, "__globals__", None) or {})
        code = getattr(target, "__code__", None)
        closure = getattr(target, "__closure__", None)
        if code is not None and closure:
            for name, cell in zip(code.co_freevars, closure):
                try:
                    scope[name] = cell.cell_contents
                except ValueError:
                    # cell not yet assigned
                    continue
        scope.update(arguments)
        return scope


def _is_context_type_name(annotation: str) -> bool:
    text = annotation.strip()
    match = _OPTIONAL_PATTERN.match(text)
    if match:
        text = match.group(1)
    members = [
        member.strip()
        for member in text.split("|")
        if member.strip() != "None"
    ]
    return bool(members) and all(
        member.rsplit(".", 1)[-1] in _CONTEXT_TYPE_NAMES for member in members
    )


def is_context_carrying(annotation: Any) -> bool:
    """Whether a parameter annotation denotes a tracing context carrier."""
    if annotation is inspect.Parameter.empty:
        return False
    if isinstance(annotation, str):
        return _is_context_type_name(annotation)
    if typing.get_origin(annotation) in _UNION_TYPES:
        members = [
            member
            for member in typing.get_args(annotation)
            if member is not type(None)
        ]
        return bool(members) and all(
            is_context_carrying(member) for member in members
        )
    return isinstance(annotation, type) and issubclass(
        annotation, _CONTEXT_TYPES
    )


def _resolved_annotations(func: Callable[..., Any]) -> Dict[str, Any]:
    try:
        return typing.get_type_hints(func)
    except Exception:  # pylint: disable=broad-except
        _logger.debug(
            "Could not resolve annotations of %r, using them unevaluated",
            func,
            exc_info=True,
        )
        return {}


def bind(directive: Directive, func: Callable[..., Any]) -> BindingPlan:
    """Validate ``directive`` against ``func`` and build its plan.

    Raises:
        UnknownParameter: ``skip`` or ``parent`` names a missing parameter.
        InvalidParentSource: the ``parent`` parameter is not annotated with
            a context carrying type.
        TypeError: ``func`` is a generator or async generator function.
    """
    function_name = getattr(func, "__name__", repr(func))
    if inspect.isgeneratorfunction(func) or inspect.isasyncgenfunction(func):
        raise TypeError(
            f"@instrument does not support generator function {function_name}()"
        )

    signature = inspect.signature(func)
    hints = _resolved_annotations(func)

    for name in sorted(directive.skip):
        if name not in signature.parameters:
            raise UnknownParameter(name, function_name, "skip")

    parent_name = None
    if directive.parent is not None and directive.parent.parameter is not None:
        parent_name = directive.parent.parameter
        if parent_name not in signature.parameters:
            raise UnknownParameter(parent_name, function_name, "parent")

    bindings = []
    for position, parameter in enumerate(signature.parameters.values()):
        context_carrying = is_context_carrying(
            hints.get(parameter.name, parameter.annotation)
        )
        is_parent_source = parameter.name == parent_name
        if is_parent_source and not context_carrying:
            raise InvalidParentSource(parameter.name, function_name)
        receiver = (
            position == 0
            and parameter.name in _RECEIVER_NAMES
            and parameter.kind in _POSITIONAL
        )
        recorded = not (
            directive.skip_all
            or parameter.name in directive.skip
            or is_parent_source
            or context_carrying
            or receiver
        )
        bindings.append(
            ParameterBinding(
                name=parameter.name,
                position=position,
                kind=parameter.kind,
                recorded=recorded,
                is_parent_source=is_parent_source,
                context_carrying=context_carrying,
            )
        )

    return BindingPlan(
        directive=directive,
        parameters=tuple(bindings),
        is_async=inspect.iscoroutinefunction(func),
        span_name=directive.span_name or function_name,
        signature=signature,
        function=func,
    )
