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

"""Strategies for naming the span of a traced query."""

from abc import ABC, abstractmethod
from typing import Optional

_NOT_AVAILABLE = "N/A"
_DEFAULT_SPAN_NAME = "execute"


class QuerySpanNameProvider(ABC):
    """Given the text of a Cassandra query, returns a name for its span.

    Providers are shared by every query of a session, so implementations
    must not keep per-call state.
    """

    @abstractmethod
    def query_span_name(self, query: Optional[str]) -> str:
        """Returns the span name for ``query``"""


class FullQuerySpanName(QuerySpanNameProvider):
    """Uses the full query text as the span name.

    An empty or missing query is named ``"N/A"``.
    """

    def query_span_name(self, query: Optional[str]) -> str:
        if not query:
            return _NOT_AVAILABLE
        return query


class CustomStringSpanName(QuerySpanNameProvider):
    """Uses the same name for every query span, whatever the query text.

    Keeps span names low-cardinality when queries embed literal values.
    """

    def __init__(self, name: Optional[str] = _DEFAULT_SPAN_NAME):
        self._name = name or _DEFAULT_SPAN_NAME

    def query_span_name(self, query: Optional[str]) -> str:
        return self._name

    def __repr__(self):
        return f"{type(self).__name__}({self._name!r})"
