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
Cassandra session tracing for `cassandra-driver`_. Every query executed
through a traced session, synchronously or asynchronously, reports a span
carrying the statement, its bound values and the coordinator that served it.

.. _cassandra-driver: https://pypi.org/project/cassandra-driver/

Usage
-----

Instrument every session created by ``Cluster.connect()``:

.. code:: python

    import cassandra.cluster
    from opentelemetry.instrumentation.cassandra_session import (
        CassandraSessionInstrumentor,
    )

    CassandraSessionInstrumentor().instrument()

    cluster = cassandra.cluster.Cluster()
    session = cluster.connect("test")
    rows = session.execute("SELECT * FROM users WHERE id = %s", [42])

Or a single session that is already connected:

.. code:: python

    from opentelemetry.instrumentation.cassandra_session import (
        CassandraSessionInstrumentor,
    )

    session = CassandraSessionInstrumentor.instrument_session(session)

Span names
----------

By default every query span is named ``execute``. A
``query_span_name_provider`` changes this, e.g. to use the query text:

.. code:: python

    from opentelemetry.instrumentation.cassandra_session import (
        CassandraSessionInstrumentor,
        FullQuerySpanName,
    )

    CassandraSessionInstrumentor().instrument(
        query_span_name_provider=FullQuerySpanName()
    )

Query parameters
----------------

Values bound to a query are recorded as ``db.statement.<name>`` or
``db.statement.value_<index>`` attributes. Pass
``extract_query_params=False`` or set
``OTEL_PYTHON_CASSANDRA_EXTRACT_QUERY_PARAMS=false`` to turn this off.

API
---
"""

import logging
from typing import Collection

import cassandra.cluster
from wrapt import wrap_function_wrapper

from opentelemetry.instrumentation.cassandra_session.name_provider import (
    CustomStringSpanName,
    FullQuerySpanName,
    QuerySpanNameProvider,
)
from opentelemetry.instrumentation.cassandra_session.package import (
    _instruments,
)
from opentelemetry.instrumentation.cassandra_session.session import (
    TracingSession,
)
from opentelemetry.instrumentation.cassandra_session.version import (
    __version__,
)
from opentelemetry.instrumentation.instrumentor import BaseInstrumentor
from opentelemetry.instrumentation.utils import unwrap

_logger = logging.getLogger(__name__)


class CassandraSessionInstrumentor(BaseInstrumentor):
    """Traces the sessions returned by ``cassandra.cluster.Cluster.connect``.

    ``instrument()`` accepts ``tracer_provider``,
    ``query_span_name_provider``, ``executor`` and
    ``extract_query_params``, which are handed to every
    :class:`TracingSession` it creates.
    """

    def instrumentation_dependencies(self) -> Collection[str]:
        return _instruments

    def _instrument(self, **kwargs):
        tracer_provider = kwargs.get("tracer_provider")
        query_span_name_provider = kwargs.get("query_span_name_provider")
        executor = kwargs.get("executor")
        extract_query_params = kwargs.get("extract_query_params")

        def _traced_connect(func, instance, args, kwargs):
            session = func(*args, **kwargs)
            return TracingSession(
                session,
                tracer_provider=tracer_provider,
                query_span_name_provider=query_span_name_provider,
                executor=executor,
                extract_query_params=extract_query_params,
            )

        wrap_function_wrapper(
            "cassandra.cluster", "Cluster.connect", _traced_connect
        )

    def _uninstrument(self, **kwargs):
        unwrap(cassandra.cluster.Cluster, "connect")

    @staticmethod
    def instrument_session(
        session,
        tracer_provider=None,
        query_span_name_provider=None,
        executor=None,
        extract_query_params=None,
    ):
        """Enable tracing on a single, already connected session.

        Args:
            session: cassandra.cluster.Session
                The session to trace.
            tracer_provider: opentelemetry.trace.TracerProvider, optional
                The TracerProvider to use. If not specified, the global
                TracerProvider is used.
            query_span_name_provider: QuerySpanNameProvider, optional
                Names the query spans, ``"execute"`` if not specified.
            executor: concurrent.futures.Executor, optional
                Runs the completion callbacks of asynchronous queries.
            extract_query_params: bool, optional
                Whether bound values are recorded as span attributes.

        Returns:
            A TracingSession wrapping ``session``.
        """
        if isinstance(session, TracingSession):
            _logger.warning(
                "Attempting to instrument Cassandra session while already instrumented"
            )
            return session

        return TracingSession(
            session,
            tracer_provider=tracer_provider,
            query_span_name_provider=query_span_name_provider,
            executor=executor,
            extract_query_params=extract_query_params,
        )

    @staticmethod
    def uninstrument_session(session):
        """Returns the session wrapped by a TracingSession."""
        if not isinstance(session, TracingSession):
            _logger.warning("Cassandra session is not instrumented")
            return session

        # pylint: disable=protected-access
        session._shutdown_executor(wait=False)
        return session.__wrapped__


__all__ = [
    "CassandraSessionInstrumentor",
    "CustomStringSpanName",
    "FullQuerySpanName",
    "QuerySpanNameProvider",
    "TracingSession",
    "__version__",
]
