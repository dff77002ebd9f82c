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

from types import SimpleNamespace
from unittest import TestCase, mock

from cassandra.cqltypes import Int32Type, UTF8Type
from cassandra.query import BatchStatement, BoundStatement, SimpleStatement

from opentelemetry.instrumentation.cassandra_session.environment_variables import (
    OTEL_PYTHON_CASSANDRA_EXTRACT_QUERY_PARAMS,
)
from opentelemetry.instrumentation.cassandra_session.utils import (
    PEER_HOST_IPV4,
    PEER_HOST_IPV6,
    end_span,
    get_extract_query_params,
    get_query,
    set_peer_attributes,
    set_query_params_attributes,
)

PROTOCOL_VERSION = 4


class Unprintable:
    def __str__(self):
        raise ValueError("no text form")


def make_bound_statement(query_string, columns, values):
    prepared = SimpleNamespace(
        query_string=query_string,
        column_metadata=columns,
        protocol_version=PROTOCOL_VERSION,
    )
    statement = mock.Mock(spec=BoundStatement)
    statement.prepared_statement = prepared
    statement.values = values
    return statement


def column(name, cql_type):
    return SimpleNamespace(name=name, type=cql_type)


def attributes_of(span):
    return {
        call.args[0]: call.args[1] for call in span.set_attribute.call_args_list
    }


class TestGetQuery(TestCase):
    def test_string(self):
        self.assertEqual(get_query("SELECT * FROM t"), "SELECT * FROM t")

    def test_simple_statement(self):
        self.assertEqual(
            get_query(SimpleStatement("SELECT * FROM t")), "SELECT * FROM t"
        )

    def test_bound_statement(self):
        statement = make_bound_statement("SELECT * FROM t WHERE a = ?", [], [])
        self.assertEqual(get_query(statement), "SELECT * FROM t WHERE a = ?")

    def test_batch_statement(self):
        self.assertEqual(get_query(BatchStatement()), "")

    def test_none(self):
        self.assertEqual(get_query(None), "")


class TestQueryParams(TestCase):
    def test_positional_parameters(self):
        span = mock.Mock()
        set_query_params_attributes(span, "INSERT ...", ["v0", 1])

        self.assertEqual(
            attributes_of(span),
            {"db.statement.value_0": "v0", "db.statement.value_1": "1"},
        )

    def test_named_parameters(self):
        span = mock.Mock()
        set_query_params_attributes(
            span, "INSERT ...", {"name": "Athena", "age": 100}
        )

        self.assertEqual(
            attributes_of(span),
            {"db.statement.name": "Athena", "db.statement.age": "100"},
        )

    def test_unprintable_parameter_is_skipped(self):
        span = mock.Mock()
        set_query_params_attributes(span, "INSERT ...", [Unprintable(), 2])
        set_query_params_attributes(
            span, "INSERT ...", {"name": Unprintable(), "age": 100}
        )

        self.assertEqual(
            attributes_of(span),
            {"db.statement.value_1": "2", "db.statement.age": "100"},
        )

    def test_no_parameters(self):
        span = mock.Mock()
        set_query_params_attributes(span, "SELECT ...", None)
        self.assertFalse(span.set_attribute.called)

    def test_bound_statement_unique_names(self):
        statement = make_bound_statement(
            "INSERT INTO t (a, b) VALUES (?, ?)",
            [column("a", UTF8Type), column("b", Int32Type)],
            [
                UTF8Type.serialize("first", PROTOCOL_VERSION),
                Int32Type.serialize(42, PROTOCOL_VERSION),
            ],
        )
        span = mock.Mock()
        set_query_params_attributes(span, statement, None)

        self.assertEqual(
            attributes_of(span),
            {"db.statement.a": "first", "db.statement.b": "42"},
        )

    def test_bound_statement_duplicate_names(self):
        statement = make_bound_statement(
            "SELECT * FROM t WHERE a > ? AND a < ? AND b = ?",
            [
                column("a", Int32Type),
                column("a", Int32Type),
                column("b", Int32Type),
            ],
            [
                Int32Type.serialize(1, PROTOCOL_VERSION),
                Int32Type.serialize(9, PROTOCOL_VERSION),
                Int32Type.serialize(5, PROTOCOL_VERSION),
            ],
        )
        span = mock.Mock()
        set_query_params_attributes(span, statement, None)

        self.assertEqual(
            attributes_of(span),
            {
                "db.statement.value_0": "1",
                "db.statement.value_1": "9",
                "db.statement.b": "5",
            },
        )

    def test_bound_statement_map_value_name(self):
        statement = make_bound_statement(
            "UPDATE t SET m[?] = ? WHERE id = ?",
            [
                column("key(m)", UTF8Type),
                column("value(m)", UTF8Type),
                column("id", Int32Type),
            ],
            [
                UTF8Type.serialize("k", PROTOCOL_VERSION),
                UTF8Type.serialize("v", PROTOCOL_VERSION),
                Int32Type.serialize(7, PROTOCOL_VERSION),
            ],
        )
        span = mock.Mock()
        set_query_params_attributes(span, statement, None)

        self.assertEqual(
            attributes_of(span),
            {
                "db.statement.key(m)": "k",
                "db.statement.m": "v",
                "db.statement.id": "7",
            },
        )

    def test_unresolvable_parameter_is_skipped(self):
        broken_type = SimpleNamespace(
            from_binary=mock.Mock(side_effect=ValueError("cannot decode"))
        )
        statement = make_bound_statement(
            "INSERT INTO t (a, b, c) VALUES (?, ?, ?)",
            [
                column("a", Int32Type),
                column("b", broken_type),
                column("c", Int32Type),
            ],
            [
                Int32Type.serialize(1, PROTOCOL_VERSION),
                b"\x00",
                Int32Type.serialize(3, PROTOCOL_VERSION),
            ],
        )
        span = mock.Mock()
        set_query_params_attributes(span, statement, None)

        self.assertEqual(
            attributes_of(span),
            {"db.statement.a": "1", "db.statement.c": "3"},
        )

    def test_unbound_parameter_is_skipped(self):
        statement = make_bound_statement(
            "INSERT INTO t (a, b) VALUES (?, ?)",
            [column("a", Int32Type), column("b", Int32Type)],
            [Int32Type.serialize(1, PROTOCOL_VERSION)],
        )
        span = mock.Mock()
        set_query_params_attributes(span, statement, None)

        self.assertEqual(attributes_of(span), {"db.statement.a": "1"})


class TestPeerAttributes(TestCase):
    def test_ipv4_host(self):
        future = SimpleNamespace(
            coordinator_host=SimpleNamespace(
                endpoint=SimpleNamespace(address="127.0.0.1", port=9042)
            )
        )
        span = mock.Mock()
        set_peer_attributes(span, future)

        self.assertEqual(
            attributes_of(span),
            {
                "net.peer.name": "127.0.0.1",
                "net.peer.port": 9042,
                PEER_HOST_IPV4: 2130706433,
            },
        )

    def test_ipv6_host(self):
        future = SimpleNamespace(
            coordinator_host=SimpleNamespace(
                endpoint=SimpleNamespace(address="::1", port=9042)
            )
        )
        span = mock.Mock()
        set_peer_attributes(span, future)

        self.assertEqual(attributes_of(span)[PEER_HOST_IPV6], "::1")
        self.assertNotIn(PEER_HOST_IPV4, attributes_of(span))

    def test_host_name(self):
        future = SimpleNamespace(
            coordinator_host=SimpleNamespace(
                endpoint=SimpleNamespace(address="cassandra-0", port=9042)
            )
        )
        span = mock.Mock()
        set_peer_attributes(span, future)

        self.assertEqual(
            attributes_of(span),
            {"net.peer.name": "cassandra-0", "net.peer.port": 9042},
        )

    def test_no_host(self):
        span = mock.Mock()
        set_peer_attributes(span, SimpleNamespace(coordinator_host=None))
        self.assertFalse(span.set_attribute.called)

    def test_end_span_survives_broken_metadata(self):
        future = mock.Mock()
        type(future).coordinator_host = mock.PropertyMock(
            side_effect=RuntimeError("no host")
        )
        span = mock.Mock()
        span.is_recording.return_value = True

        end_span(span, future)

        span.end.assert_called_once_with()


class TestExtractQueryParamsConfig(TestCase):
    def test_default(self):
        with mock.patch.dict("os.environ", {}, clear=True):
            self.assertTrue(get_extract_query_params())

    def test_disabled(self):
        with mock.patch.dict(
            "os.environ", {OTEL_PYTHON_CASSANDRA_EXTRACT_QUERY_PARAMS: "False"}
        ):
            self.assertFalse(get_extract_query_params())
