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

import ipaddress
import logging
import os
import re
from collections import Counter

from cassandra.query import BoundStatement

from opentelemetry.instrumentation.cassandra_session.environment_variables import (
    OTEL_PYTHON_CASSANDRA_EXTRACT_QUERY_PARAMS,
)
from opentelemetry.semconv.trace import SpanAttributes
from opentelemetry.trace import Span, Status, StatusCode

_logger = logging.getLogger(__name__)

COMPONENT = "component"
COMPONENT_NAME = "python-cassandra"
DB_SYSTEM_CASSANDRA = "cassandra"
# IPv4 addresses are reported as an unsigned 32-bit integer
PEER_HOST_IPV4 = "peer.ipv4"
PEER_HOST_IPV6 = "peer.ipv6"

# map values bound through ``m[?] = ?`` are named ``value(m)``
_MAP_VALUE_NAME = re.compile(r"value\((.*)\)")


def get_extract_query_params() -> bool:
    """
    Reads the extract query params flag from the environment variable,
    default value is True
    """
    return (
        os.getenv(OTEL_PYTHON_CASSANDRA_EXTRACT_QUERY_PARAMS, "true").lower()
        == "true"
    )


def get_query(query) -> str:
    """Returns the CQL text of a query string or statement.

    Statements without a query string of their own, such as batches,
    yield an empty string.
    """
    if isinstance(query, str):
        return query
    if isinstance(query, BoundStatement):
        query = query.prepared_statement
    return getattr(query, "query_string", None) or ""


def _normalize_name(name: str) -> str:
    match = _MAP_VALUE_NAME.fullmatch(name)
    if match:
        return match.group(1)
    return name


def _value_name_key(name: str) -> str:
    return f"{SpanAttributes.DB_STATEMENT}.{_normalize_name(name)}"


def _value_index_key(index: int) -> str:
    return f"{SpanAttributes.DB_STATEMENT}.value_{index}"


def _set_param_attribute(span: Span, key: str, resolve) -> None:
    try:
        span.set_attribute(key, str(resolve()))
    except Exception:  # pylint: disable=broad-exception-caught
        # ill-described parameters cannot be resolved, skip them
        pass


def _resolve_bound_value(statement: BoundStatement, index: int, column):
    prepared = statement.prepared_statement
    return column.type.from_binary(
        statement.values[index], prepared.protocol_version
    )


def _set_bound_statement_attributes(
    span: Span, statement: BoundStatement
) -> None:
    columns = statement.prepared_statement.column_metadata or ()
    name_counts = Counter(column.name for column in columns)

    for index, column in enumerate(columns):
        if name_counts[column.name] > 1:
            key = _value_index_key(index)
        else:
            key = _value_name_key(column.name)
        _set_param_attribute(
            span,
            key,
            lambda index=index, column=column: _resolve_bound_value(
                statement, index, column
            ),
        )


def set_query_params_attributes(span: Span, query, parameters) -> None:
    """Records the values bound to a query as ``db.statement.*`` attributes.

    Bound statements are keyed by variable name, unless the name is used
    more than once in the statement, in which case they are keyed by
    position like plain positional parameters. Named parameters passed as
    a ``dict`` are keyed by name.
    """
    if isinstance(query, BoundStatement):
        _set_bound_statement_attributes(span, query)
    elif isinstance(parameters, dict):
        for name, value in parameters.items():
            _set_param_attribute(
                span, _value_name_key(str(name)), lambda value=value: value
            )
    elif isinstance(parameters, (list, tuple)):
        for index, value in enumerate(parameters):
            _set_param_attribute(
                span, _value_index_key(index), lambda value=value: value
            )


def _host_address(host):
    endpoint = getattr(host, "endpoint", None)
    if endpoint is not None:
        return endpoint.address, endpoint.port
    if isinstance(host, str):
        return host, None
    return getattr(host, "address", None), getattr(host, "port", None)


def set_peer_attributes(span: Span, response_future) -> None:
    """Sets the coordinator that served a query as the span's peer."""
    host = getattr(response_future, "coordinator_host", None)
    if host is None:
        return

    address, port = _host_address(host)
    if not address:
        return

    span.set_attribute(SpanAttributes.NET_PEER_NAME, str(address))
    if port:
        span.set_attribute(SpanAttributes.NET_PEER_PORT, int(port))

    try:
        ip_address = ipaddress.ip_address(address)
    except ValueError:
        # resolved by name, no address to report
        return
    if ip_address.version == 4:
        span.set_attribute(PEER_HOST_IPV4, int(ip_address))
    else:
        span.set_attribute(PEER_HOST_IPV6, str(ip_address))


def end_span(span: Span, response_future=None) -> None:
    """Ends the span of a successful query."""
    try:
        if response_future is not None and span.is_recording():
            set_peer_attributes(span, response_future)
    except Exception:  # pylint: disable=broad-exception-caught
        _logger.debug(
            "Failed to read execution info from the response", exc_info=True
        )
    finally:
        span.end()


def end_span_with_error(span: Span, exc: BaseException) -> None:
    """Ends the span of a failed query, recording ``exc`` on it."""
    if span.is_recording():
        span.set_status(Status(StatusCode.ERROR, str(exc)))
        span.record_exception(exc)
    span.end()
