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
Resolution of the effective instrumentation configuration.

Three sources are merged key by key, highest precedence first:

1. the ``OTEL_PYTHON_INSTRUMENTATION_MYSQL_QUERY_CONFIG_OPTS`` environment
   variable, a ``key=value`` list separated by semicolons,
2. options passed to ``instrument()``,
3. built-in defaults.

An invalid value is logged and ignored, so that key falls back to the next
source. Configuration problems never prevent instrumentation.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping

from opentelemetry.instrumentation.mysql_query.environment_variables import (
    OTEL_PYTHON_INSTRUMENTATION_MYSQL_QUERY_CONFIG_OPTS,
)
from opentelemetry.instrumentation.mysql_query.sql_utils import (
    DEFAULT_OBFUSCATION_LIMIT,
)

_logger = logging.getLogger(__name__)


class DbStatementPolicy(Enum):
    INCLUDE = "include"
    OBFUSCATE = "obfuscate"
    OMIT = "omit"


class SpanNamePolicy(Enum):
    DEFAULT = "default"
    STATEMENT_TYPE = "statement_type"
    DB_NAME = "db_name"
    DB_OPERATION_AND_NAME = "db_operation_and_name"


class Propagator(Enum):
    NONE = "none"
    TRACECONTEXT = "tracecontext"


@dataclass(frozen=True)
class EffectiveConfig:
    db_statement: DbStatementPolicy = DbStatementPolicy.OBFUSCATE
    span_name: SpanNamePolicy = SpanNamePolicy.DEFAULT
    peer_service: str | None = None
    obfuscation_limit: int = DEFAULT_OBFUSCATION_LIMIT
    propagator: Propagator = Propagator.NONE
    options: Mapping[str, Any] = field(
        default_factory=lambda: MappingProxyType({})
    )


_DEFAULTS: Mapping[str, Any] = MappingProxyType(
    {
        "db_statement": DbStatementPolicy.OBFUSCATE,
        "span_name": SpanNamePolicy.DEFAULT,
        "peer_service": None,
        "obfuscation_limit": DEFAULT_OBFUSCATION_LIMIT,
        "propagator": Propagator.NONE,
    }
)


def _enum_parser(enum_type):
    def _parse(value):
        if isinstance(value, enum_type):
            return value
        return enum_type(str(value).strip().lower())

    return _parse


def _parse_limit(value) -> int:
    if isinstance(value, bool):
        raise ValueError(value)
    limit = int(value)
    if limit < 0:
        raise ValueError(value)
    return limit


def _parse_peer_service(value) -> str | None:
    if value is None:
        return None
    return str(value).strip() or None


_PARSERS = {
    "db_statement": _enum_parser(DbStatementPolicy),
    "span_name": _enum_parser(SpanNamePolicy),
    "peer_service": _parse_peer_service,
    "obfuscation_limit": _parse_limit,
    "propagator": _enum_parser(Propagator),
}


def parse_config_opts(value: str | None) -> dict[str, str]:
    """Parses ``"key1=value1;key2=value2"`` into a dict.

    Empty segments, segments without ``=`` and unknown keys are skipped.
    """
    parsed = {}
    if not value:
        return parsed
    for pair in value.split(";"):
        key, sep, item = pair.partition("=")
        key = key.strip()
        if not sep or not key:
            if pair.strip():
                _logger.debug("Ignoring malformed config option %r", pair)
            continue
        if key not in _PARSERS:
            _logger.debug("Ignoring unknown config option %r", key)
            continue
        parsed[key] = item.strip()
    return parsed


def _first_valid(key: str, candidates):
    parser = _PARSERS[key]
    for source, value in candidates:
        try:
            parsed = parser(value)
        except (TypeError, ValueError):
            _logger.warning(
                "Invalid value %r for %s from %s, ignoring it",
                value,
                key,
                source,
            )
            continue
        if parsed is not None:
            return parsed
    return None


def resolve_config(
    options: Mapping[str, Any] | None = None,
    environ_value: str | None = None,
    defaults: Mapping[str, Any] = _DEFAULTS,
) -> EffectiveConfig:
    """Merges defaults, explicit options and the environment override.

    Args:
        options: Options given at install time. Keys that are not
            configuration settings are kept as passthrough options.
        environ_value: The raw environment override. If omitted it is read
            from ``OTEL_PYTHON_INSTRUMENTATION_MYSQL_QUERY_CONFIG_OPTS``.
        defaults: Built-in values used when no other source sets a key.
    """
    options = dict(options or {})
    if environ_value is None:
        environ_value = os.environ.get(
            OTEL_PYTHON_INSTRUMENTATION_MYSQL_QUERY_CONFIG_OPTS
        )
    environ_options = parse_config_opts(environ_value)

    resolved = {}
    for key in _PARSERS:
        candidates = []
        if key in environ_options:
            candidates.append(("environment", environ_options[key]))
        if options.get(key) is not None:
            candidates.append(("options", options[key]))
        if defaults.get(key) is not None:
            candidates.append(("defaults", defaults[key]))
        value = _first_valid(key, candidates)
        if value is not None:
            resolved[key] = value

    passthrough = {
        key: value for key, value in options.items() if key not in _PARSERS
    }
    return EffectiveConfig(
        options=MappingProxyType(passthrough),
        **resolved,
    )
