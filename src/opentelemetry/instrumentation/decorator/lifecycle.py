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
Per-call span handling for ``@instrument``.

A :class:`SpanExecution` moves through::

    NOT_STARTED -> STARTED -> RECORDING -> SUCCEEDED | FAILED -> CLOSED

``RECORDING -> CLOSED`` is taken when the body exits with a
``BaseException`` that is not an ``Exception`` (cancellation, interpreter
exit); no outcome is recorded in that case. :meth:`SpanExecution.activate`
guarantees the span is ended exactly once on every path.
"""

import enum
import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Mapping, Optional

from opentelemetry import trace
from opentelemetry.context import Context
from opentelemetry.instrumentation.decorator.binding import BindingPlan
from opentelemetry.instrumentation.decorator.directive import (
    ERROR_KEY,
    RETURN_KEY,
    FieldEntry,
)
from opentelemetry.instrumentation.decorator.formatting import (
    FORMAT_PLACEHOLDER,
    Formatter,
    format_value,
    safe_format,
)
from opentelemetry.instrumentation.decorator.shim import Outcome
from opentelemetry.trace import (
    NonRecordingSpan,
    Span,
    SpanContext,
    Tracer,
)
from opentelemetry.trace.status import Status, StatusCode

_logger = logging.getLogger(__name__)


class SpanState(enum.Enum):
    NOT_STARTED = "not_started"
    STARTED = "started"
    RECORDING = "recording"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CLOSED = "closed"


_TRANSITIONS = {
    SpanState.NOT_STARTED: frozenset((SpanState.STARTED,)),
    SpanState.STARTED: frozenset((SpanState.RECORDING, SpanState.CLOSED)),
    SpanState.RECORDING: frozenset(
        (SpanState.SUCCEEDED, SpanState.FAILED, SpanState.CLOSED)
    ),
    SpanState.SUCCEEDED: frozenset((SpanState.CLOSED,)),
    SpanState.FAILED: frozenset((SpanState.CLOSED,)),
    SpanState.CLOSED: frozenset(),
}


def as_parent_context(carrier: Any) -> Optional[Context]:
    """Turn a ``parent`` value into a context, ``None`` meaning "current".

    Accepts a :class:`~opentelemetry.context.Context`, a
    :class:`~opentelemetry.trace.Span` or a
    :class:`~opentelemetry.trace.SpanContext`.
    """
    if carrier is None:
        return None
    if isinstance(carrier, Context):
        return carrier
    if isinstance(carrier, Span):
        return trace.set_span_in_context(carrier)
    if isinstance(carrier, SpanContext):
        return trace.set_span_in_context(NonRecordingSpan(carrier))
    _logger.warning(
        "Unsupported parent of type %s, using the current context",
        type(carrier).__name__,
    )
    return None


class SpanExecution:
    """The span of one call of an instrumented function.

    Never shared between calls: each invocation creates its own.
    """

    def __init__(
        self,
        plan: BindingPlan,
        tracer: Tracer,
        formatter: Formatter = format_value,
    ):
        self.plan = plan
        self.span: Optional[Span] = None
        self.state = SpanState.NOT_STARTED
        self.captured_attributes: Dict[str, str] = {}
        self.outcome: Optional[Outcome] = None
        self._tracer = tracer
        self._formatter = formatter
        self._arguments: Mapping[str, Any] = {}

    def _transition(self, state: SpanState) -> None:
        if state not in _TRANSITIONS[self.state]:
            raise RuntimeError(
                f"Invalid span transition {self.state.name} -> {state.name} "
                f"for {self.plan.span_name}"
            )
        self.state = state

    @contextmanager
    def activate(self, arguments: Mapping[str, Any]) -> Iterator["SpanExecution"]:
        """Start the span, record the arguments and make the span current.

        The span is ended when the block exits, however it exits.
        """
        self._arguments = arguments
        span = self.start()
        try:
            with trace.use_span(
                span,
                end_on_exit=True,
                record_exception=False,
                set_status_on_exception=False,
            ):
                self.record()
                yield self
        finally:
            self._transition(SpanState.CLOSED)

    def start(self) -> Span:
        self.span = self._tracer.start_span(
            self.plan.span_name, context=self._parent_context()
        )
        self._transition(SpanState.STARTED)
        return self.span

    def record(self) -> None:
        self._transition(SpanState.RECORDING)
        if not self.span.is_recording():
            _logger.debug(
                "Span %s is not recording, skipping attributes",
                self.plan.span_name,
            )
            return
        for parameter in self.plan.recorded_parameters:
            if parameter.name in self._arguments:
                self.captured_attributes[parameter.name] = safe_format(
                    self._arguments[parameter.name],
                    self._formatter,
                    parameter.name,
                )
        fields = self.plan.directive.fields
        if fields:
            scope = self.plan.evaluation_scope(self._arguments)
            for entry in fields:
                # a field may overwrite a parameter of the same name
                self.captured_attributes[entry.key] = self._evaluate_field(
                    entry, scope
                )
        if self.captured_attributes:
            self.span.set_attributes(dict(self.captured_attributes))

    def complete(self, outcome: Outcome) -> None:
        self.outcome = outcome
        directive = self.plan.directive
        if outcome.succeeded:
            self._transition(SpanState.SUCCEEDED)
            if not self.span.is_recording():
                return
            if directive.record_return:
                self._capture(
                    RETURN_KEY,
                    safe_format(outcome.value, self._formatter, RETURN_KEY),
                )
            self.span.set_status(Status(StatusCode.OK))
            return

        self._transition(SpanState.FAILED)
        if not directive.record_error or not self.span.is_recording():
            return
        description = safe_format(
            outcome.exception, self._formatter, ERROR_KEY
        )
        self._capture(ERROR_KEY, description)
        self.span.set_status(Status(StatusCode.ERROR, description))
        self.span.record_exception(
            self._error_event(outcome.exception), escaped=True
        )

    def _capture(self, key: str, value: str) -> None:
        self.captured_attributes[key] = value
        self.span.set_attribute(key, value)

    def _parent_context(self) -> Optional[Context]:
        source = self.plan.directive.parent
        if source is None:
            return None
        if source.parameter is not None:
            return as_parent_context(self._arguments.get(source.parameter))
        scope = self.plan.evaluation_scope(self._arguments)
        try:
            carrier = source.expression.evaluate(scope)
        except Exception:  # pylint: disable=broad-except
            _logger.warning(
                "parent = %s failed for %s, using the current context",
                source.expression.source,
                self.plan.span_name,
                exc_info=True,
            )
            return None
        return as_parent_context(carrier)

    def _evaluate_field(
        self,
        entry: FieldEntry,
        scope: Dict[str, Any],
    ) -> str:
        try:
            value = entry.expression.evaluate(scope)
        except Exception:  # pylint: disable=broad-except
            _logger.warning(
                "Field %s = %s failed for %s, recording %r instead",
                entry.key,
                entry.expression.source,
                self.plan.span_name,
                FORMAT_PLACEHOLDER,
                exc_info=True,
            )
            return FORMAT_PLACEHOLDER
        return safe_format(value, self._formatter, entry.key)

    def _error_event(self, exception: Exception) -> BaseException:
        expression = self.plan.directive.error_expression
        if expression is None:
            return exception
        scope = self.plan.evaluation_scope(self._arguments)
        scope["e"] = exception
        try:
            value = expression.evaluate(scope)
        except Exception:  # pylint: disable=broad-except
            _logger.warning(
                "err = %s failed for %s, recording the raised exception",
                expression.source,
                self.plan.span_name,
                exc_info=True,
            )
            return exception
        if isinstance(value, BaseException):
            return value
        _logger.warning(
            "err = %s produced %s instead of an exception for %s, "
            "recording the raised exception",
            expression.source,
            type(value).__name__,
            self.plan.span_name,
        )
        return exception
