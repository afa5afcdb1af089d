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
The opentelemetry-instrumentation-decorator package traces individual
functions, synchronous or ``async def``, with the ``@instrument`` decorator.
Every call runs inside its own span, named after the function, with the
call arguments recorded as span attributes.

Usage
-----

.. code:: python

    from opentelemetry.instrumentation.decorator import instrument, tracer_name

    tracer_name("my-service")

    @instrument
    def get_user(user_id: int, name: str):
        ...

    @instrument("skip(password), ret, err, fields(operation = 'login')")
    async def login(username: str, password: str) -> str:
        ...

Directive clauses
-----------------

The optional directive is a comma separated list of clauses, in any order:

* ``skip(a, b)`` - do not record parameters ``a`` and ``b``
* ``skip_all`` - do not record any parameter
* ``fields(key = expr, other)`` - record custom attributes; ``other`` is
  shorthand for ``other = other``. Expressions see the function's globals,
  closure variables and arguments, and are evaluated on every call.
* ``ret`` - record the return value as attribute ``return``
* ``err`` / ``err = expr`` - on exception, record attribute ``error``, set
  the span status to error and add an exception event for ``e`` (or for the
  exception produced by ``expr``, evaluated with ``e`` bound)
* ``parent = ctx`` - start the span under the context given by parameter
  ``ctx`` (annotated as ``Context``, ``Span`` or ``SpanContext``) or by any
  other expression, e.g. ``parent = get_parent_context()``
* ``name = "span name"`` - span name instead of the function name

Mistakes in a directive (unknown clause, ``skip`` of a missing parameter,
duplicated field ...) raise a
:class:`~opentelemetry.instrumentation.decorator.errors.DirectiveError`
when the decorator is applied.

Parameters annotated with a context type and the ``self``/``cls``
receiver of methods are never recorded. Values are rendered with
:func:`~opentelemetry.instrumentation.decorator.formatting.format_value`,
which can be extended per type or replaced with ``formatter=``.

Tracer name
-----------

Spans are created with ``trace.get_tracer(name)`` on every call. The name
is, in order of precedence, the ``tracer_name=`` argument of the decorator,
the module's ``tracer_name(...)`` declaration, the
``OTEL_PYTHON_DECORATOR_TRACER_NAME`` environment variable or
``"otel-instrument"``.

API
---
"""

import functools
import sys
from typing import Any, Callable, Optional, Union

from opentelemetry import trace
from opentelemetry.instrumentation.decorator.binding import (
    BindingPlan,
    ParameterBinding,
    bind,
)
from opentelemetry.instrumentation.decorator.directive import (
    Directive,
    parse_directive,
)
from opentelemetry.instrumentation.decorator.errors import (
    DirectiveError,
    DuplicateField,
    InvalidDirective,
    InvalidParentSource,
    ReservedFieldKey,
    UnknownParameter,
)
from opentelemetry.instrumentation.decorator.formatting import (
    FORMAT_PLACEHOLDER,
    Formatter,
    format_value,
)
from opentelemetry.instrumentation.decorator.lifecycle import (
    SpanExecution,
    SpanState,
)
from opentelemetry.instrumentation.decorator.shim import (
    Outcome,
    run_blocking,
    run_suspending,
)
from opentelemetry.instrumentation.decorator.utils import (
    DEFAULT_TRACER_NAME,
    TRACER_NAME_GLOBAL,
    resolve_tracer_name,
)
from opentelemetry.instrumentation.decorator.version import __version__
from opentelemetry.instrumentation.utils import is_instrumentation_enabled
from opentelemetry.trace import TracerProvider


def tracer_name(name: str = "") -> str:
    """Declare the tracer name used by ``@instrument`` in the calling module.

    Call it once at module level. Without a name the library default
    ``"otel-instrument"`` is declared.

    Raises:
        ValueError: the module already declared a different name.
    """
    name = name or DEFAULT_TRACER_NAME
    module_globals = sys._getframe(1).f_globals  # pylint: disable=protected-access
    declared = module_globals.get(TRACER_NAME_GLOBAL)
    if declared is not None and declared != name:
        raise ValueError(
            f"Module {module_globals.get('__name__')!r} already declared "
            f"tracer name {declared!r}"
        )
    module_globals[TRACER_NAME_GLOBAL] = name
    return name


def instrument(
    directive: Union[str, Callable[..., Any], None] = None,
    *,
    tracer_name: Optional[str] = None,  # pylint: disable=redefined-outer-name
    tracer_provider: Optional[TracerProvider] = None,
    formatter: Formatter = format_value,
):
    """Trace every call of the decorated function in its own span.

    Usable bare (``@instrument``) or with a directive
    (``@instrument("skip(password), ret")``).

    Args:
        directive: clauses controlling what is recorded, see the module
            documentation.
        tracer_name: name of the tracer creating the spans.
        tracer_provider: provider to get the tracer from instead of the
            global one.
        formatter: renders recorded values to strings.

    Raises:
        DirectiveError: the directive is invalid for the decorated function.
    """
    if callable(directive):
        return instrument()(directive)
    if directive is not None and not isinstance(directive, str):
        raise TypeError(
            f"instrument() directive must be a string, got "
            f"{type(directive).__name__}"
        )
    parsed = parse_directive(directive)

    def decorator(func):
        plan = bind(parsed, func)

        def _execution():
            tracer = trace.get_tracer(
                resolve_tracer_name(func, tracer_name),
                tracer_provider=tracer_provider,
            )
            return SpanExecution(plan, tracer, formatter)

        if plan.is_async:

            @functools.wraps(func)
            async def async_wrapper(*args, **kwargs):
                if not is_instrumentation_enabled():
                    return await func(*args, **kwargs)
                execution = _execution()
                with execution.activate(plan.bind_arguments(args, kwargs)):
                    outcome = await run_suspending(func, args, kwargs)
                    execution.complete(outcome)
                return outcome.unwrap()

            return async_wrapper

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            if not is_instrumentation_enabled():
                return func(*args, **kwargs)
            execution = _execution()
            with execution.activate(plan.bind_arguments(args, kwargs)):
                outcome = run_blocking(func, args, kwargs)
                execution.complete(outcome)
            return outcome.unwrap()

        return wrapper

    return decorator


__all__ = [
    "BindingPlan",
    "Directive",
    "DirectiveError",
    "DuplicateField",
    "FORMAT_PLACEHOLDER",
    "InvalidDirective",
    "InvalidParentSource",
    "Outcome",
    "ParameterBinding",
    "ReservedFieldKey",
    "SpanExecution",
    "SpanState",
    "UnknownParameter",
    "__version__",
    "bind",
    "format_value",
    "instrument",
    "parse_directive",
    "run_blocking",
    "run_suspending",
    "tracer_name",
]
