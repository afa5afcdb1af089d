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
from unittest import TestCase, mock

from opentelemetry import trace
from opentelemetry.context import Context
from opentelemetry.instrumentation.decorator.binding import bind
from opentelemetry.instrumentation.decorator.directive import parse_directive
from opentelemetry.instrumentation.decorator.lifecycle import (
    SpanExecution,
    SpanState,
    as_parent_context,
)
from opentelemetry.instrumentation.decorator.shim import Outcome
from opentelemetry.trace import (
    NonRecordingSpan,
    Span,
    SpanContext,
    TraceFlags,
)
from opentelemetry.trace.status import StatusCode


def login(username, password):
    return f"Hello, {username}"


def _execution(text="skip(password), ret, err", recording=True):
    span = mock.Mock(spec=Span)
    span.is_recording.return_value = recording
    tracer = mock.Mock()
    tracer.start_span.return_value = span
    plan = bind(parse_directive(text), login)
    return SpanExecution(plan, tracer), tracer, span


class TestSpanExecution(TestCase):
    def test_success(self):
        execution, tracer, span = _execution()
        self.assertEqual(execution.state, SpanState.NOT_STARTED)

        with execution.activate({"username": "admin", "password": "x"}):
            self.assertEqual(execution.state, SpanState.RECORDING)
            self.assertIs(trace.get_current_span(), span)
            execution.complete(Outcome.success("Hello, admin"))
            self.assertEqual(execution.state, SpanState.SUCCEEDED)

        self.assertEqual(execution.state, SpanState.CLOSED)
        tracer.start_span.assert_called_once_with("login", context=None)
        span.set_attributes.assert_called_once_with({"username": "admin"})
        (recorded,), _ = span.set_attributes.call_args
        self.assertIsNot(recorded, execution.captured_attributes)
        span.set_attribute.assert_called_once_with("return", "Hello, admin")
        (status,), _ = span.set_status.call_args
        self.assertEqual(status.status_code, StatusCode.OK)
        span.end.assert_called_once_with()
        self.assertEqual(
            execution.captured_attributes,
            {"username": "admin", "return": "Hello, admin"},
        )

    def test_failure(self):
        execution, _, span = _execution()
        error = PermissionError("Access denied")

        with execution.activate({"username": "user", "password": "x"}):
            execution.complete(Outcome.failure(error))
            self.assertEqual(execution.state, SpanState.FAILED)

        self.assertEqual(execution.state, SpanState.CLOSED)
        self.assertIs(execution.outcome.exception, error)
        span.set_attribute.assert_called_once_with("error", "Access denied")
        (status,), _ = span.set_status.call_args
        self.assertEqual(status.status_code, StatusCode.ERROR)
        self.assertEqual(status.description, "Access denied")
        span.record_exception.assert_called_once_with(error, escaped=True)
        span.end.assert_called_once_with()

    def test_failure_without_err_clause(self):
        execution, _, span = _execution("ret")
        with execution.activate({"username": "user", "password": "x"}):
            execution.complete(Outcome.failure(ValueError("bad")))

        span.set_attribute.assert_not_called()
        span.set_status.assert_not_called()
        span.record_exception.assert_not_called()
        span.end.assert_called_once_with()

    def test_abnormal_exit_closes_without_outcome(self):
        execution, _, span = _execution()

        with self.assertRaises(KeyboardInterrupt):
            with execution.activate({"username": "admin", "password": "x"}):
                raise KeyboardInterrupt()

        self.assertEqual(execution.state, SpanState.CLOSED)
        self.assertIsNone(execution.outcome)
        span.set_status.assert_not_called()
        span.record_exception.assert_not_called()
        span.end.assert_called_once_with()

    def test_not_recording_span(self):
        execution, _, span = _execution(recording=False)

        with execution.activate({"username": "admin", "password": "x"}):
            execution.complete(Outcome.success("Hello, admin"))

        self.assertEqual(execution.state, SpanState.CLOSED)
        self.assertEqual(execution.captured_attributes, {})
        span.set_attributes.assert_not_called()
        span.set_attribute.assert_not_called()
        span.set_status.assert_not_called()
        span.end.assert_called_once_with()

    def test_illegal_transition(self):
        execution, _, _ = _execution()
        with self.assertRaises(RuntimeError):
            execution.complete(Outcome.success(None))

        with execution.activate({"username": "admin", "password": "x"}):
            execution.complete(Outcome.success(None))
            with self.assertRaises(RuntimeError):
                execution.complete(Outcome.success(None))

    def test_parent_parameter(self):
        span = mock.Mock(spec=Span)
        span.is_recording.return_value = True
        tracer = mock.Mock()
        tracer.start_span.return_value = span

        def child(param: str, ctx: Context):
            pass

        plan = bind(parse_directive("parent = ctx"), child)
        parent_ctx = Context({"key": "value"})
        execution = SpanExecution(plan, tracer)
        with execution.activate({"param": "a", "ctx": parent_ctx}):
            pass

        tracer.start_span.assert_called_once_with("child", context=parent_ctx)
        span.set_attributes.assert_called_once_with({"param": "a"})


class TestAsParentContext(TestCase):
    def test_carriers(self):
        span_context = SpanContext(
            trace_id=0x1,
            span_id=0x2,
            is_remote=True,
            trace_flags=TraceFlags(TraceFlags.SAMPLED),
        )
        span = NonRecordingSpan(span_context)
        context = trace.set_span_in_context(span)

        self.assertIsNone(as_parent_context(None))
        self.assertIs(as_parent_context(context), context)
        self.assertIs(
            trace.get_current_span(as_parent_context(span)), span
        )
        self.assertEqual(
            trace.get_current_span(
                as_parent_context(span_context)
            ).get_span_context(),
            span_context,
        )

    def test_unsupported_carrier(self):
        with self.assertLogs(
            "opentelemetry.instrumentation.decorator.lifecycle",
            level="WARNING",
        ):
            self.assertIsNone(as_parent_context("not a context"))
