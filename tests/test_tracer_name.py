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
from unittest import mock

from opentelemetry.instrumentation.decorator import instrument, tracer_name
from opentelemetry.instrumentation.decorator.environment_variables import (
    OTEL_PYTHON_DECORATOR_TRACER_NAME,
)
from opentelemetry.test.test_base import TestBase

from .common_test_func import TEST_TRACER_NAME, greet


@instrument
def undeclared():
    return "ok"


@instrument(tracer_name="explicit-tracer")
def explicit():
    return "ok"


class TestTracerName(TestBase):
    def scope_name(self):
        (span,) = self.memory_exporter.get_finished_spans()
        return span.instrumentation_scope.name

    def test_module_declaration(self):
        self.assertEqual(TEST_TRACER_NAME, "otel-instrument-tests")
        greet("world")
        self.assertEqual(self.scope_name(), "otel-instrument-tests")

    def test_default(self):
        with mock.patch.dict("os.environ", clear=False) as environ:
            environ.pop(OTEL_PYTHON_DECORATOR_TRACER_NAME, None)
            undeclared()
        self.assertEqual(self.scope_name(), "otel-instrument")

    def test_environment_variable(self):
        with mock.patch.dict(
            "os.environ", {OTEL_PYTHON_DECORATOR_TRACER_NAME: "from-env"}
        ):
            undeclared()
        self.assertEqual(self.scope_name(), "from-env")

    def test_declaration_wins_over_environment_variable(self):
        with mock.patch.dict(
            "os.environ", {OTEL_PYTHON_DECORATOR_TRACER_NAME: "from-env"}
        ):
            greet("world")
        self.assertEqual(self.scope_name(), "otel-instrument-tests")

    def test_explicit_name_wins(self):
        with mock.patch.dict(
            "os.environ", {OTEL_PYTHON_DECORATOR_TRACER_NAME: "from-env"}
        ):
            explicit()
        self.assertEqual(self.scope_name(), "explicit-tracer")

    def test_declaration_after_decoration(self):
        module_globals = {"instrument": instrument, "tracer_name": tracer_name}
        exec(  # pylint: disable=exec-used
            "@instrument\n"
            "def late():\n"
            "    return 'ok'\n"
            "tracer_name('late-tracer')\n",
            module_globals,
        )
        module_globals["late"]()
        self.assertEqual(self.scope_name(), "late-tracer")

    def test_declaration(self):
        module_globals = {"tracer_name": tracer_name}
        exec("declared = tracer_name()", module_globals)  # pylint: disable=exec-used
        self.assertEqual(module_globals["declared"], "otel-instrument")
        self.assertEqual(module_globals["_OTEL_TRACER_NAME"], "otel-instrument")

        exec("tracer_name('otel-instrument')", module_globals)  # pylint: disable=exec-used
        with self.assertRaises(ValueError):
            exec("tracer_name('other')", module_globals)  # pylint: disable=exec-used
        self.assertEqual(module_globals["_OTEL_TRACER_NAME"], "otel-instrument")

    def test_tracer_provider(self):
        tracer_provider, memory_exporter = self.create_tracer_provider()

        @instrument(tracer_provider=tracer_provider)
        def isolated():
            return "ok"

        isolated()
        self.assertEqual(len(self.memory_exporter.get_finished_spans()), 0)
        (span,) = memory_exporter.get_finished_spans()
        self.assertEqual(span.name, "isolated")
