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
Ambient span attributes.

Attributes set with :func:`with_attributes` are added to every query span
started inside the ``with`` block and override the computed values on
collision. They are stored in the OpenTelemetry context, so each thread and
each asyncio task only sees its own scope.

.. code:: python

    from opentelemetry.instrumentation.mysql_query import with_attributes

    with with_attributes({"db.operation": "load_user"}):
        cursor.execute("SELECT * FROM users WHERE id = %s", (user_id,))
"""

from __future__ import annotations

from contextlib import contextmanager
from types import MappingProxyType
from typing import Any, Iterator, Mapping

from opentelemetry import context

_ATTRIBUTES_KEY = context.create_key("mysql-query-span-attributes")

_EMPTY: Mapping[str, Any] = MappingProxyType({})


def get_attributes() -> dict[str, Any]:
    """Returns the attributes of the innermost active scope, or ``{}``."""
    return dict(context.get_value(_ATTRIBUTES_KEY) or _EMPTY)


@contextmanager
def with_attributes(attributes: Mapping[str, Any]) -> Iterator[dict]:
    """Makes ``attributes`` visible to queries run inside the block.

    An inner scope replaces the attributes of an enclosing one. The previous
    scope is restored on exit, including when the block raises.
    """
    scoped = MappingProxyType(dict(attributes))
    token = context.attach(context.set_value(_ATTRIBUTES_KEY, scoped))
    try:
        yield dict(scoped)
    finally:
        context.detach(token)
