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
Some utils used by the MySQL query integration
"""

from __future__ import annotations

from typing import Any

from opentelemetry.instrumentation.mysql_query.config import (
    EffectiveConfig,
    SpanNamePolicy,
)
from opentelemetry.semconv._incubating.attributes.db_attributes import (
    DB_NAME,
    DB_SYSTEM,
)
from opentelemetry.semconv._incubating.attributes.net_attributes import (
    NET_PEER_NAME,
    NET_PEER_PORT,
)
from opentelemetry.semconv._incubating.attributes.peer_attributes import (
    PEER_SERVICE,
)

DATABASE_SYSTEM = "mysql"

# Used as span name whenever nothing more specific is known.
DEFAULT_SPAN_NAME = DATABASE_SYSTEM


def _as_text(value: Any) -> str | None:
    # PyMySQL encodes some connection settings once it has authenticated
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        value = bytes(value).decode("utf-8", "ignore")
    return str(value)


def get_database_name(connection: Any) -> str | None:
    """Returns the database selected by ``connection``, if any."""
    return _as_text(getattr(connection, "db", None)) or None


def extract_connection_attributes(
    connection: Any, config: EffectiveConfig
) -> dict[str, str]:
    """Transform PyMySQL connection settings into span attributes"""
    attributes = {
        DB_SYSTEM: DATABASE_SYSTEM,
        DB_NAME: get_database_name(connection) or "",
        NET_PEER_NAME: _as_text(getattr(connection, "host", None)) or "",
        NET_PEER_PORT: _as_text(getattr(connection, "port", None)) or "",
    }
    if config.peer_service:
        attributes[PEER_SERVICE] = config.peer_service
    return attributes


def build_span_name(
    statement_type: str | None,
    config: EffectiveConfig,
    db_name: str | None = None,
    operation: str | None = None,
) -> str:
    """Computes the span name according to ``config.span_name``.

    +---------------------------+----------------------------------------------+
    | Policy                    | Span name                                    |
    +===========================+==============================================+
    | ``default``               | statement type, e.g. ``select``              |
    +---------------------------+----------------------------------------------+
    | ``statement_type``        | statement type, e.g. ``select``              |
    +---------------------------+----------------------------------------------+
    | ``db_name``               | database name                                |
    +---------------------------+----------------------------------------------+
    | ``db_operation_and_name`` | ``"{operation} {db_name}"`` or either part   |
    +---------------------------+----------------------------------------------+

    ``"mysql"`` is returned whenever the selected source is empty.
    """
    policy = config.span_name
    if policy is SpanNamePolicy.DB_NAME:
        name = db_name
    elif policy is SpanNamePolicy.DB_OPERATION_AND_NAME:
        name = " ".join(
            str(part) for part in (operation, db_name) if part
        )
    else:
        name = statement_type
    return name or DEFAULT_SPAN_NAME
