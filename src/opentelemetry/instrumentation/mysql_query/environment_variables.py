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
Options for the MySQL query instrumentation, encoded as ``key=value`` pairs
separated by semicolons, e.g. ``db_statement=omit;span_name=db_name``.
Values set here override the options passed to ``instrument()``.
"""
OTEL_PYTHON_INSTRUMENTATION_MYSQL_QUERY_CONFIG_OPTS = (
    "OTEL_PYTHON_INSTRUMENTATION_MYSQL_QUERY_CONFIG_OPTS"
)
