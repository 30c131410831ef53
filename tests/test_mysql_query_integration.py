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

import os
from unittest import TestCase, mock

import pymysql
import pymysql.connections

import opentelemetry.instrumentation.mysql_query
from opentelemetry import trace as trace_api
from opentelemetry.instrumentation.mysql_query import (
    MySQLQueryInstrumentor,
    QueryOutcome,
    with_attributes,
)
from opentelemetry.instrumentation.mysql_query.environment_variables import (
    OTEL_PYTHON_INSTRUMENTATION_MYSQL_QUERY_CONFIG_OPTS,
)
from opentelemetry.instrumentation.utils import suppress_instrumentation
from opentelemetry.sdk import resources
from opentelemetry.test.test_base import TestBase
from opentelemetry.trace import SpanKind, StatusCode

SQL = "SELECT * from users where users.id = 1 and users.email = 'test@test.com'"
OBFUSCATED_SQL = "SELECT * from users where users.id = ? and users.email = ?"


def make_connection(database="mysql"):
    return pymysql.connections.Connection(
        host="127.0.0.1",
        port=3306,
        user="root",
        password="root",
        database=database,
        defer_connect=True,
    )


class TestMySQLQueryIntegration(TestBase):
    def setUp(self):
        super().setUp()
        self.env_patch = mock.patch.dict("os.environ")
        self.env_patch.start()
        os.environ.pop(OTEL_PYTHON_INSTRUMENTATION_MYSQL_QUERY_CONFIG_OPTS, None)

        # The driver never reaches a server: sending the command is mocked
        # and every query reports one affected row.
        self.execute_patch = mock.patch.object(
            pymysql.connections.Connection, "_execute_command"
        )
        self.read_patch = mock.patch.object(
            pymysql.connections.Connection,
            "_read_query_result",
            return_value=1,
        )
        self.mock_execute = self.execute_patch.start()
        self.read_patch.start()
        self.client = make_connection()

    def tearDown(self):
        super().tearDown()
        self.read_patch.stop()
        self.execute_patch.stop()
        self.env_patch.stop()
        with self.disable_logging():
            MySQLQueryInstrumentor().uninstrument()

    def instrument(self, environ=None, **options):
        # Uninstrument first so that every call rebuilds the configuration.
        with self.disable_logging():
            MySQLQueryInstrumentor().uninstrument()
        if environ is not None:
            os.environ[OTEL_PYTHON_INSTRUMENTATION_MYSQL_QUERY_CONFIG_OPTS] = (
                environ
            )
        MySQLQueryInstrumentor().instrument(**options)

    def fail_queries(self):
        self.mock_execute.side_effect = pymysql.err.ProgrammingError(
            1064, "You have an error in your SQL syntax"
        )

    def query_and_get_span(self, sql, expect_error=False):
        if expect_error:
            with self.assertRaises(pymysql.err.ProgrammingError):
                self.client.query(sql)
        else:
            self.client.query(sql)
        spans = self.memory_exporter.get_finished_spans()
        self.assertEqual(len(spans), 1)
        return spans[0]

    def assert_connection_attributes(self, span, database="mysql"):
        self.assertEqual(span.attributes["db.system"], "mysql")
        self.assertEqual(span.attributes["db.name"], database)
        self.assertEqual(span.attributes["net.peer.name"], "127.0.0.1")
        self.assertEqual(span.attributes["net.peer.port"], "3306")

    def assert_exception_event(self, span):
        self.assertIs(span.status.status_code, StatusCode.ERROR)
        self.assertEqual(len(span.events), 1)
        event = span.events[0]
        self.assertEqual(event.name, "exception")
        self.assertIn("ProgrammingError", event.attributes["exception.type"])
        self.assertTrue(event.attributes["exception.message"])
        self.assertTrue(event.attributes["exception.stacktrace"])

    def test_before_request(self):
        self.instrument()
        self.assertEqual(len(self.memory_exporter.get_finished_spans()), 0)

    def test_after_request(self):
        self.instrument(db_statement="include")
        self.assertEqual(self.client.query("SELECT 1"), 1)

        span = self.memory_exporter.get_finished_spans()[0]
        self.assertEqual(span.name, "select")
        self.assertIs(span.kind, SpanKind.CLIENT)
        self.assertEqual(span.attributes["db.statement"], "SELECT 1")
        self.assert_connection_attributes(span)
        self.assertIs(span.status.status_code, StatusCode.OK)
        self.assertEqual(len(span.events), 0)
        self.assertNotIn("peer.service", span.attributes)
        self.assertEqualSpanInstrumentationScope(
            span, opentelemetry.instrumentation.mysql_query
        )

    def test_obfuscates_by_default(self):
        self.instrument()
        span = self.query_and_get_span("SELECT 1")
        self.assertEqual(span.attributes["db.statement"], "SELECT ?")

    def test_after_error(self):
        self.fail_queries()
        self.instrument(db_statement="include")
        span = self.query_and_get_span("SELECT INVALID", expect_error=True)

        self.assertEqual(span.name, "select")
        self.assertEqual(span.attributes["db.statement"], "SELECT INVALID")
        self.assert_connection_attributes(span)
        self.assert_exception_event(span)

    def test_error_is_raised_unchanged(self):
        error = pymysql.err.OperationalError(2013, "Lost connection")
        self.mock_execute.side_effect = error
        self.instrument()
        with self.assertRaises(pymysql.err.OperationalError) as raised:
            self.client.query("SELECT 1")
        self.assertIs(raised.exception, error)

    def test_extracts_statement_type(self):
        self.instrument(db_statement="include")
        span = self.query_and_get_span("EXPLAIN SELECT 1")
        self.assertEqual(span.name, "explain")
        self.assertEqual(span.attributes["db.statement"], "EXPLAIN SELECT 1")
        self.assert_connection_attributes(span)

    def test_fallback_span_name_with_invalid_sql(self):
        self.fail_queries()
        self.instrument(db_statement="include")
        span = self.query_and_get_span("DESELECT 1", expect_error=True)

        self.assertEqual(span.name, "mysql")
        self.assertEqual(span.attributes["db.statement"], "DESELECT 1")
        self.assert_connection_attributes(span)
        self.assert_exception_event(span)

    def test_peer_service(self):
        self.instrument(peer_service="readonly:mysql")
        span = self.query_and_get_span("SELECT 1")
        self.assertEqual(span.attributes["peer.service"], "readonly:mysql")

    def test_obfuscate(self):
        self.fail_queries()
        self.instrument(db_statement="obfuscate")
        span = self.query_and_get_span(SQL, expect_error=True)

        self.assertEqual(span.name, "select")
        self.assertEqual(span.attributes["db.statement"], OBFUSCATED_SQL)
        self.assert_connection_attributes(span)

    def test_obfuscate_invalid_byte_sequence(self):
        self.fail_queries()
        self.instrument(db_statement="obfuscate")
        sql = SQL[:-1].encode() + b"\xad'"
        span = self.query_and_get_span(sql, expect_error=True)

        self.assertEqual(span.name, "select")
        self.assertEqual(span.attributes["db.statement"], OBFUSCATED_SQL)

    def test_omit(self):
        self.fail_queries()
        self.instrument(db_statement="omit")
        span = self.query_and_get_span(SQL, expect_error=True)

        self.assertEqual(span.name, "select")
        self.assertNotIn("db.statement", span.attributes)
        self.assert_connection_attributes(span)

    def test_environment_omit(self):
        self.instrument(environ="db_statement=omit;")
        span = self.query_and_get_span(SQL)
        self.assertNotIn("db.statement", span.attributes)
        self.assert_connection_attributes(span)

    def test_environment_obfuscate(self):
        self.instrument(environ="db_statement=obfuscate;")
        span = self.query_and_get_span(SQL)
        self.assertEqual(span.attributes["db.statement"], OBFUSCATED_SQL)

    def test_environment_overrides_options(self):
        self.instrument(environ="db_statement=obfuscate", db_statement="omit")
        span = self.query_and_get_span(SQL)
        self.assertEqual(span.name, "select")
        self.assertEqual(span.attributes["db.statement"], OBFUSCATED_SQL)

    def test_span_name_statement_type(self):
        self.instrument(environ="span_name=statement_type")
        self.assertEqual(self.query_and_get_span(SQL).name, "select")

        self.memory_exporter.clear()
        self.fail_queries()
        span = self.query_and_get_span("DESELECT 1", expect_error=True)
        self.assertEqual(span.name, "mysql")

    def test_span_name_db_name(self):
        self.client = make_connection(database="shop")
        self.instrument(environ="span_name=db_name")
        self.assertEqual(self.query_and_get_span(SQL).name, "shop")

    def test_span_name_db_name_without_database(self):
        self.client = make_connection(database=None)
        self.instrument(environ="span_name=db_name")
        span = self.query_and_get_span(SQL)
        self.assertEqual(span.name, "mysql")
        self.assertEqual(span.attributes["db.name"], "")

    def test_span_name_db_operation_and_name(self):
        self.instrument(environ="span_name=db_operation_and_name")
        with with_attributes({"db.operation": "foo"}):
            span = self.query_and_get_span(SQL)
        self.assertEqual(span.name, "foo mysql")
        self.assertEqual(span.attributes["db.operation"], "foo")

    def test_span_name_db_operation_and_name_without_operation(self):
        self.instrument(environ="span_name=db_operation_and_name")
        self.assertEqual(self.query_and_get_span(SQL).name, "mysql")

    def test_span_name_db_operation_without_database(self):
        self.client = make_connection(database=None)
        self.instrument(environ="span_name=db_operation_and_name")
        with with_attributes({"db.operation": "foo"}):
            span = self.query_and_get_span(SQL)
        self.assertEqual(span.name, "foo")

    def test_with_attributes_overrides_span_attributes(self):
        self.instrument(db_statement="include")
        with with_attributes({"db.statement": "foobar"}):
            span = self.query_and_get_span("SELECT 1")
        self.assertEqual(span.attributes["db.statement"], "foobar")

    def test_with_attributes_apply_to_omitted_statement(self):
        self.instrument(db_statement="omit")
        with with_attributes({"db.statement": "foobar"}):
            span = self.query_and_get_span("SELECT 1")
        self.assertEqual(span.attributes["db.statement"], "foobar")

    def test_attributes_do_not_leak_out_of_scope(self):
        self.instrument(db_statement="include")
        with with_attributes({"db.statement": "foobar"}):
            pass
        span = self.query_and_get_span("SELECT 1")
        self.assertEqual(span.attributes["db.statement"], "SELECT 1")

    def test_reinstall_rebuilds_configuration(self):
        self.instrument(db_statement="omit")
        self.assertNotIn(
            "db.statement", self.query_and_get_span("SELECT 1").attributes
        )

        self.memory_exporter.clear()
        self.instrument()
        self.assertEqual(
            self.query_and_get_span("SELECT 1").attributes["db.statement"],
            "SELECT ?",
        )

    def test_query_tracer_handle(self):
        self.instrument(db_statement="include", span_name="db_name")
        query_tracer = MySQLQueryInstrumentor().query_tracer
        self.assertEqual(query_tracer.config.db_statement.value, "include")
        self.assertEqual(query_tracer.config.span_name.value, "db_name")

        MySQLQueryInstrumentor().uninstrument()
        self.assertIsNone(MySQLQueryInstrumentor().query_tracer)

    def test_uninstrument(self):
        self.instrument()
        self.client.query("SELECT 1")
        self.assertEqual(len(self.memory_exporter.get_finished_spans()), 1)

        MySQLQueryInstrumentor().uninstrument()
        self.client.query("SELECT 1")
        self.assertEqual(len(self.memory_exporter.get_finished_spans()), 1)

    def test_suppress_instrumentation(self):
        self.instrument()
        with suppress_instrumentation():
            self.assertEqual(self.client.query("SELECT 1"), 1)
        self.assertEqual(len(self.memory_exporter.get_finished_spans()), 0)

    def test_custom_tracer_provider(self):
        resource = resources.Resource.create({})
        tracer_provider, exporter = self.create_tracer_provider(
            resource=resource
        )
        self.instrument(tracer_provider=tracer_provider)
        self.client.query("SELECT 1")

        spans = exporter.get_finished_spans()
        self.assertEqual(len(spans), 1)
        self.assertIs(spans[0].resource, resource)

    def test_no_op_tracer_provider(self):
        self.fail_queries()
        self.instrument(tracer_provider=trace_api.NoOpTracerProvider())
        with self.assertRaises(pymysql.err.ProgrammingError):
            self.client.query("SELECT 1")
        self.assertEqual(len(self.memory_exporter.get_finished_spans()), 0)

    def test_traceparent_propagation(self):
        self.instrument(db_statement="include", propagator="tracecontext")
        span = self.query_and_get_span("SELECT 1")

        span_id = format(span.get_span_context().span_id, "016x")
        trace_id = format(span.get_span_context().trace_id, "032x")
        trace_flags = format(span.get_span_context().trace_flags, "02x")
        sent_sql = self.mock_execute.call_args[0][1]
        self.assertIn(
            f"traceparent='00-{trace_id}-{span_id}-{trace_flags}'".encode(),
            sent_sql,
        )
        self.assertTrue(sent_sql.startswith(b"SELECT 1 /*"))
        self.assertEqual(span.attributes["db.statement"], "SELECT 1")

    def test_no_propagation_by_default(self):
        self.instrument()
        self.client.query("SELECT 1")
        self.assertEqual(self.mock_execute.call_args[0][1], b"SELECT 1")

    def test_instrument_connection(self):
        self.client.query("SELECT 1")
        self.assertEqual(len(self.memory_exporter.get_finished_spans()), 0)

        client = MySQLQueryInstrumentor().instrument_connection(
            self.client, db_statement="include"
        )
        self.assertIs(client, self.client)
        client.query("SELECT 1")
        other = make_connection()
        other.query("SELECT 2")

        spans = self.memory_exporter.get_finished_spans()
        self.assertEqual(len(spans), 1)
        self.assertEqual(spans[0].attributes["db.statement"], "SELECT 1")

    def test_instrument_connection_twice(self):
        MySQLQueryInstrumentor().instrument_connection(self.client)
        with self.assertLogs(level="WARNING"):
            MySQLQueryInstrumentor().instrument_connection(self.client)
        self.client.query("SELECT 1")
        self.assertEqual(len(self.memory_exporter.get_finished_spans()), 1)

    def test_uninstrument_connection(self):
        MySQLQueryInstrumentor().instrument_connection(self.client)
        self.client.query("SELECT 1")
        self.assertEqual(len(self.memory_exporter.get_finished_spans()), 1)

        client = MySQLQueryInstrumentor().uninstrument_connection(self.client)
        client.query("SELECT 1")
        self.assertEqual(len(self.memory_exporter.get_finished_spans()), 1)


class TestQueryOutcome(TestCase):
    def test_success(self):
        outcome = QueryOutcome(result=3)
        self.assertTrue(outcome.succeeded)
        self.assertEqual(outcome.unwrap(), 3)
        self.assertIsNone(outcome.error_type)
        self.assertIsNone(outcome.error_message)
        self.assertIsNone(outcome.stacktrace)

    def test_failure(self):
        try:
            raise pymysql.err.ProgrammingError(1064, "syntax error")
        except pymysql.err.ProgrammingError as exc:
            outcome = QueryOutcome(exception=exc)

        self.assertFalse(outcome.succeeded)
        self.assertEqual(outcome.error_type, "ProgrammingError")
        self.assertIn("syntax error", outcome.error_message)
        self.assertIn("Traceback", outcome.stacktrace)
        with self.assertRaises(pymysql.err.ProgrammingError):
            outcome.unwrap()
