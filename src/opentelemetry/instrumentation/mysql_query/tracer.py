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
Query tracing: builds the span for one ``Connection.query`` call and
records its outcome.
"""

from __future__ import annotations

import logging
import traceback
from dataclasses import dataclass
from typing import Any, Callable

from opentelemetry.instrumentation.mysql_query.attributes import (
    get_attributes,
)
from opentelemetry.instrumentation.mysql_query.config import (
    DbStatementPolicy,
    EffectiveConfig,
    Propagator,
    resolve_config,
)
from opentelemetry.instrumentation.mysql_query.sql_utils import (
    classify_statement,
    decode_statement,
    obfuscate_sql,
)
from opentelemetry.instrumentation.mysql_query.utils import (
    build_span_name,
    extract_connection_attributes,
    get_database_name,
)
from opentelemetry.instrumentation.mysql_query.version import __version__
from opentelemetry.instrumentation.sqlcommenter_utils import _add_sql_comment
from opentelemetry.instrumentation.utils import (
    _get_opentelemetry_values,
    is_instrumentation_enabled,
)
from opentelemetry.semconv._incubating.attributes.db_attributes import (
    DB_OPERATION,
    DB_STATEMENT,
)
from opentelemetry.trace import (
    SpanKind,
    Status,
    StatusCode,
    Tracer,
    TracerProvider,
    get_tracer,
)

_logger = logging.getLogger(__name__)

_INSTRUMENTATION_NAME = "opentelemetry.instrumentation.mysql_query"


@dataclass(frozen=True)
class QueryOutcome:
    """The result of a traced query, or the exception it raised."""

    result: Any = None
    exception: Exception | None = None

    @property
    def succeeded(self) -> bool:
        return self.exception is None

    @property
    def error_type(self) -> str | None:
        if self.exception is None:
            return None
        return type(self.exception).__qualname__

    @property
    def error_message(self) -> str | None:
        if self.exception is None:
            return None
        return str(self.exception)

    @property
    def stacktrace(self) -> str | None:
        if self.exception is None:
            return None
        return "".join(
            traceback.format_exception(
                type(self.exception),
                self.exception,
                self.exception.__traceback__,
            )
        )

    def unwrap(self) -> Any:
        """Returns the query result or raises the original exception."""
        if self.exception is not None:
            raise self.exception
        return self.result


class QueryTracer:
    """Traces MySQL queries with one immutable configuration.

    Instances are created by :func:`install`. Every wrapped connection keeps
    a reference to the tracer it was wrapped with, so re-installing never
    changes the behaviour of wrappers created earlier.
    """

    def __init__(self, tracer: Tracer, config: EffectiveConfig):
        self.tracer = tracer
        self.config = config

    def _get_statement(self, sql: str | bytes) -> str | None:
        policy = self.config.db_statement
        if policy is DbStatementPolicy.OMIT:
            return None
        if policy is DbStatementPolicy.OBFUSCATE:
            return obfuscate_sql(sql, self.config.obfuscation_limit)
        return decode_statement(sql)

    def _populate_span(self, span, connection, sql, ambient_attributes):
        if not span.is_recording():
            return
        attributes = extract_connection_attributes(connection, self.config)
        statement = self._get_statement(sql)
        if statement is not None:
            attributes[DB_STATEMENT] = statement
        attributes.update(ambient_attributes)
        span.set_attributes(attributes)

    @staticmethod
    def _add_traceparent(sql):
        if not isinstance(sql, str):
            return sql
        try:
            return _add_sql_comment(sql, **_get_opentelemetry_values())
        except Exception as exc:  # pylint: disable=broad-except
            _logger.exception(
                "Exception while generating sql comment: %s", exc
            )
            return sql

    def trace_query(
        self,
        connection: Any,
        sql: str | bytes,
        query_method: Callable[..., Any],
        *args: Any,
        **kwargs: Any,
    ) -> QueryOutcome:
        """Runs ``query_method(sql, *args, **kwargs)`` inside a client span.

        The span is always ended before this returns. A driver error is
        recorded on the span and returned in the outcome, not raised.
        """
        ambient_attributes = get_attributes()
        name = build_span_name(
            classify_statement(sql),
            self.config,
            get_database_name(connection),
            ambient_attributes.get(DB_OPERATION),
        )
        with self.tracer.start_as_current_span(
            name, kind=SpanKind.CLIENT
        ) as span:
            self._populate_span(span, connection, sql, ambient_attributes)
            if self.config.propagator is Propagator.TRACECONTEXT:
                sql = self._add_traceparent(sql)
            try:
                result = query_method(sql, *args, **kwargs)
            except Exception as exc:  # pylint: disable=broad-exception-caught
                if span.is_recording():
                    span.set_status(
                        Status(
                            StatusCode.ERROR,
                            f"{type(exc).__qualname__}: {exc}",
                        )
                    )
                    span.record_exception(exc)
                return QueryOutcome(exception=exc)
            if span.is_recording():
                span.set_status(Status(StatusCode.OK))
            return QueryOutcome(result=result)

    def traced_query(self, wrapped, instance, args, kwargs):
        """``wrapt`` wrapper for ``pymysql.connections.Connection.query``."""
        if not is_instrumentation_enabled():
            return wrapped(*args, **kwargs)
        if args:
            sql, args = args[0], args[1:]
        elif "sql" in kwargs:
            kwargs = dict(kwargs)
            sql = kwargs.pop("sql")
        else:
            return wrapped(*args, **kwargs)
        outcome = self.trace_query(instance, sql, wrapped, *args, **kwargs)
        return outcome.unwrap()


def install(
    tracer_provider: TracerProvider | None = None,
    environ_value: str | None = None,
    **options: Any,
) -> QueryTracer:
    """Creates a :class:`QueryTracer` from freshly resolved configuration.

    Args:
        tracer_provider: The TracerProvider to use, defaults to global.
        environ_value: Overrides the value of
            ``OTEL_PYTHON_INSTRUMENTATION_MYSQL_QUERY_CONFIG_OPTS``.
        **options: ``db_statement``, ``span_name``, ``peer_service``,
            ``obfuscation_limit`` and ``propagator``. Other keys are kept as
            passthrough options.
    """
    config = resolve_config(options, environ_value=environ_value)
    tracer = get_tracer(
        _INSTRUMENTATION_NAME,
        __version__,
        tracer_provider=tracer_provider,
        schema_url="https://opentelemetry.io/schemas/1.11.0",
    )
    _logger.debug("MySQL query tracing installed with %s", config)
    return QueryTracer(tracer, config)
