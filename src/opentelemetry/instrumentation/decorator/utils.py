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
import inspect
import os
from typing import Any, Callable, Optional

# pylint: disable=no-name-in-module
from opentelemetry.instrumentation.decorator.environment_variables import (
    OTEL_PYTHON_DECORATOR_TRACER_NAME,
)

DEFAULT_TRACER_NAME = "otel-instrument"

# Module global written by tracer_name() and read for every call
TRACER_NAME_GLOBAL = "_OTEL_TRACER_NAME"


def get_default_tracer_name() -> str:
    """
    Function to get the tracer name from the environment variable,
    falling back to the library default
    """
    return os.getenv(OTEL_PYTHON_DECORATOR_TRACER_NAME) or DEFAULT_TRACER_NAME


def get_module_tracer_name(func: Callable[..., Any]) -> Optional[str]:
    """
    Function to get the tracer name declared in the module defining func
    """
    module_globals = getattr(inspect.unwrap(func), "__globals__", None) or {}
    return module_globals.get(TRACER_NAME_GLOBAL)


def resolve_tracer_name(
    func: Callable[..., Any], explicit: Optional[str] = None
) -> str:
    """
    Function to get the tracer name for func: the explicit name, then the
    module declaration, then the environment variable or library default
    """
    return (
        explicit or get_module_tracer_name(func) or get_default_tracer_name()
    )


__all__ = [
    "get_default_tracer_name",
    "get_module_tracer_name",
    "resolve_tracer_name",
]
