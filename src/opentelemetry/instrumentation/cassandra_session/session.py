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

import threading
from concurrent.futures import Executor, ThreadPoolExecutor
from typing import Optional

import wrapt

from opentelemetry import trace
from opentelemetry.instrumentation.cassandra_session.name_provider import (
    CustomStringSpanName,
    QuerySpanNameProvider,
)
from opentelemetry.instrumentation.cassandra_session.utils import (
    COMPONENT,
    COMPONENT_NAME,
    DB_SYSTEM_CASSANDRA,
    end_span,
    end_span_with_error,
    get_extract_query_params,
    get_query,
    set_query_params_attributes,
)
from opentelemetry.instrumentation.cassandra_session.version import (
    __version__,
)
from opentelemetry.instrumentation.utils import is_instrumentation_enabled
from opentelemetry.semconv.trace import SpanAttributes
from opentelemetry.trace import Span, SpanKind, TracerProvider

_INSTRUMENTING_MODULE_NAME = "opentelemetry.instrumentation.cassandra_session"
_EXECUTOR_THREAD_NAME_PREFIX = "otel-cassandra-session"


class _SpanCompletion:
    """Ends the span of an asynchronous query once its future settles.

    The driver calls back again for every page fetched afterwards, only
    the first call ends the span.
    """

    def __init__(self, span: Span, future, executor: Executor):
        self._span = span
        self._future = future
        self._executor = executor
        self._lock = threading.Lock()
        self._completed = False

    def on_success(self, _rows):
        self._dispatch(end_span, self._span, self._future)

    def on_error(self, exc):
        self._dispatch(end_span_with_error, self._span, exc)

    def _dispatch(self, func, *args):
        with self._lock:
            if self._completed:
                return
            self._completed = True
        try:
            self._executor.submit(func, *args)
        except RuntimeError:
            # executor already shut down
            func(*args)


class TracingSession(wrapt.ObjectProxy):
    """Proxy for a :class:`cassandra.cluster.Session` that traces queries.

    ``execute`` and ``execute_async`` are traced, everything else is
    forwarded to the wrapped session untouched, so a ``TracingSession`` can
    be used wherever a ``Session`` is expected.

    Args:
        session: The session to trace. It stays owned by the caller.
        tracer_provider: The TracerProvider to use, the global one if not
            specified.
        query_span_name_provider: Names the span of each query. Defaults
            to naming every span ``"execute"``.
        executor: Runs the completion callbacks of asynchronous queries.
            If not specified the session creates its own, which is shut
            down along with the session.
        extract_query_params: Whether bound values are recorded as span
            attributes. Defaults to the
            ``OTEL_PYTHON_CASSANDRA_EXTRACT_QUERY_PARAMS`` environment
            variable, itself defaulting to true.
    """

    def __init__(
        self,
        session,
        tracer_provider: Optional[TracerProvider] = None,
        query_span_name_provider: Optional[QuerySpanNameProvider] = None,
        executor: Optional[Executor] = None,
        extract_query_params: Optional[bool] = None,
    ):
        super().__init__(session)
        self._self_tracer = trace.get_tracer(
            _INSTRUMENTING_MODULE_NAME,
            __version__,
            tracer_provider,
            schema_url="https://opentelemetry.io/schemas/1.11.0",
        )
        self._self_query_span_name_provider = (
            query_span_name_provider or CustomStringSpanName()
        )
        if extract_query_params is None:
            extract_query_params = get_extract_query_params()
        self._self_extract_query_params = extract_query_params
        self._self_owns_executor = executor is None
        self._self_executor = executor or ThreadPoolExecutor(
            thread_name_prefix=_EXECUTOR_THREAD_NAME_PREFIX
        )

    def execute(self, query, parameters=None, *args, **kwargs):
        if not is_instrumentation_enabled():
            return self.__wrapped__.execute(query, parameters, *args, **kwargs)

        span = self._start_span(query, parameters)
        try:
            with trace.use_span(
                span,
                record_exception=False,
                set_status_on_exception=False,
            ):
                result = self.__wrapped__.execute(
                    query, parameters, *args, **kwargs
                )
        except BaseException as exc:
            end_span_with_error(span, exc)
            raise

        end_span(span, getattr(result, "response_future", None))
        return result

    def execute_async(self, query, parameters=None, *args, **kwargs):
        if not is_instrumentation_enabled():
            return self.__wrapped__.execute_async(
                query, parameters, *args, **kwargs
            )

        span = self._start_span(query, parameters)
        try:
            with trace.use_span(
                span,
                record_exception=False,
                set_status_on_exception=False,
            ):
                future = self.__wrapped__.execute_async(
                    query, parameters, *args, **kwargs
                )
        except BaseException as exc:
            end_span_with_error(span, exc)
            raise

        completion = _SpanCompletion(span, future, self._self_executor)
        future.add_callbacks(completion.on_success, completion.on_error)
        return future

    def shutdown(self):
        try:
            self.__wrapped__.shutdown()
        finally:
            self._shutdown_executor()

    def _shutdown_executor(self, wait=True):
        if self._self_owns_executor:
            self._self_executor.shutdown(wait=wait)

    def _start_span(self, query, parameters) -> Span:
        statement = get_query(query)
        span = self._self_tracer.start_span(
            self._self_query_span_name_provider.query_span_name(statement),
            kind=SpanKind.CLIENT,
        )
        try:
            if span.is_recording():
                self._set_span_attributes(span, statement, query, parameters)
        except BaseException:
            span.end()
            raise
        return span

    def _set_span_attributes(self, span, statement, query, parameters):
        span.set_attribute(COMPONENT, COMPONENT_NAME)
        span.set_attribute(SpanAttributes.DB_STATEMENT, statement)
        span.set_attribute(SpanAttributes.DB_SYSTEM, DB_SYSTEM_CASSANDRA)
        keyspace = getattr(self.__wrapped__, "keyspace", None)
        if keyspace:
            span.set_attribute(SpanAttributes.DB_NAME, keyspace)
        if self._self_extract_query_params:
            set_query_params_attributes(span, query, parameters)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.shutdown()
