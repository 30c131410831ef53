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
MySQL query instrumentation supporting `PyMySQL`_, it can be enabled by
using ``MySQLQueryInstrumentor``.

Every call to ``pymysql.connections.Connection.query``, which is what
``Cursor.execute`` and friends use, produces one client span carrying the
``db.system``, ``db.name``, ``db.statement``, ``net.peer.name`` and
``net.peer.port`` attributes. A failing query still produces a span, with an
error status and an ``exception`` event, and the driver error is re-raised
unchanged.

.. _PyMySQL: https://pypi.org/project/PyMySQL/

Usage
-----

.. code:: python

    import pymysql
    from opentelemetry.instrumentation.mysql_query import MySQLQueryInstrumentor

    # Call instrument() to trace the queries of all connections
    MySQLQueryInstrumentor().instrument()

    cnx = pymysql.connect(database="MySQL_Database")
    cursor = cnx.cursor()
    cursor.execute("INSERT INTO test (testField) VALUES (123)")
    cursor.close()
    cnx.close()

.. code:: python

    import pymysql
    from opentelemetry.instrumentation.mysql_query import MySQLQueryInstrumentor

    # Alternatively, use instrument_connection for an individual connection
    cnx = pymysql.connect(database="MySQL_Database")
    cnx = MySQLQueryInstrumentor().instrument_connection(
        cnx, db_statement="include"
    )

Configuration
-------------

The following options can be passed to ``instrument()`` and
``instrument_connection()``:

+-----------------------+----------------------------------------------------+--------------------+
| Option                | Values                                             | Default            |
+=======================+====================================================+====================+
| ``db_statement``      | ``include``, ``obfuscate``, ``omit``               | ``obfuscate``      |
+-----------------------+----------------------------------------------------+--------------------+
| ``span_name``         | ``default``, ``statement_type``, ``db_name``,      | ``default``        |
|                       | ``db_operation_and_name``                          |                    |
+-----------------------+----------------------------------------------------+--------------------+
| ``peer_service``      | value of the ``peer.service`` attribute            | unset              |
+-----------------------+----------------------------------------------------+--------------------+
| ``obfuscation_limit`` | longest query, in characters, that is obfuscated   | ``2000``           |
+-----------------------+----------------------------------------------------+--------------------+
| ``propagator``        | ``none``, ``tracecontext``                         | ``none``           |
+-----------------------+----------------------------------------------------+--------------------+

``obfuscate`` replaces every literal of ``db.statement`` with ``?``, so
``SELECT * FROM users WHERE id = 1 AND email = 'a@b.c'`` is reported as
``SELECT * FROM users WHERE id = ? AND email = ?``.

``tracecontext`` appends a sqlcommenter ``traceparent`` comment to the query
sent to the server. The ``db.statement`` attribute does not include it.

Options can also be set with the environment variable
``OTEL_PYTHON_INSTRUMENTATION_MYSQL_QUERY_CONFIG_OPTS``, using ``key=value``
pairs separated by semicolons. Values from the environment take precedence
over options passed in code.

::

    export OTEL_PYTHON_INSTRUMENTATION_MYSQL_QUERY_CONFIG_OPTS="db_statement=omit;span_name=db_name"

Span names
**********

With ``default`` and ``statement_type`` spans are named after the statement
type (``select``, ``insert``, ...). ``db_name`` uses the database name and
``db_operation_and_name`` combines the ``db.operation`` attribute set through
:func:`with_attributes` with the database name, e.g. ``"load_user mydb"``.
``mysql`` is used when the selected value is not available.

Span attributes
***************

.. code:: python

    from opentelemetry.instrumentation.mysql_query import with_attributes

    with with_attributes({"db.operation": "load_user"}):
        cursor.execute("SELECT * FROM users WHERE id = %s", (user_id,))

API
---
"""

from __future__ import annotations

import logging
from typing import Any, Collection

import pymysql.connections
import wrapt
from wrapt import wrap_function_wrapper

from opentelemetry.instrumentation.instrumentor import BaseInstrumentor
from opentelemetry.instrumentation.mysql_query.attributes import (
    get_attributes,
    with_attributes,
)
from opentelemetry.instrumentation.mysql_query.package import _instruments
from opentelemetry.instrumentation.mysql_query.tracer import (
    QueryOutcome,
    QueryTracer,
    install,
)
from opentelemetry.instrumentation.mysql_query.version import __version__
from opentelemetry.instrumentation.utils import unwrap

_logger = logging.getLogger(__name__)

__all__ = [
    "MySQLQueryInstrumentor",
    "QueryOutcome",
    "QueryTracer",
    "get_attributes",
    "install",
    "with_attributes",
]


class MySQLQueryInstrumentor(BaseInstrumentor):
    _query_tracer: QueryTracer | None = None

    def instrumentation_dependencies(self) -> Collection[str]:
        return _instruments

    @property
    def query_tracer(self) -> QueryTracer | None:
        """The handle created by the last ``instrument()`` call."""
        return self._query_tracer

    def _instrument(self, **kwargs: Any):
        """Integrate with the PyMySQL library.
        https://github.com/PyMySQL/PyMySQL/
        """
        self._query_tracer = install(**kwargs)
        wrap_function_wrapper(
            pymysql.connections,
            "Connection.query",
            self._query_tracer.traced_query,
        )

    def _uninstrument(self, **kwargs: Any):
        """ "Disable MySQL query instrumentation"""
        unwrap(pymysql.connections.Connection, "query")
        self._query_tracer = None

    @staticmethod
    def instrument_connection(connection, tracer_provider=None, **options):
        """Enable instrumentation in a PyMySQL connection.

        Args:
            connection:
                The existing PyMySQL connection instance to instrument.
            tracer_provider:
                An optional `TracerProvider` instance to use for tracing. If not provided, the globally
                configured tracer provider will be automatically used.
            **options:
                The configuration options described above, resolved for this connection only.

        Returns:
            The connection, with its queries traced.
        """
        if isinstance(getattr(connection, "query", None), wrapt.ObjectProxy):
            _logger.warning("Connection already instrumented")
            return connection

        query_tracer = install(tracer_provider=tracer_provider, **options)
        try:
            wrap_function_wrapper(
                connection, "query", query_tracer.traced_query
            )
        except Exception as ex:  # pylint: disable=broad-except
            _logger.warning("Failed to instrument connection. %s", str(ex))
        return connection

    @staticmethod
    def uninstrument_connection(connection):
        """Disable instrumentation in a PyMySQL connection.

        Args:
            connection: The connection to uninstrument.

        Returns:
            An uninstrumented connection.
        """
        if not isinstance(
            getattr(connection, "query", None), wrapt.ObjectProxy
        ):
            _logger.warning("Connection is not instrumented")
            return connection
        unwrap(connection, "query")
        return connection
