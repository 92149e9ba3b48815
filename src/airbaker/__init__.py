"""
airbaker: rate-limit aware client toolkit for Airtable-style record APIs.

Adds two capabilities on top of a plain records client:

- Structured filters: `where` expressions compiled into formulas.
- Distributed rate limiting: processes sharing a Redis instance stay under the
  per-base request quota, retrying transparently until admitted.

Quick Start:
    >>> import redis
    >>> from airbaker import Airbaker, RedisSharedStore
    >>> client = Airbaker(
    ...     api_key="pat-123",
    ...     store=RedisSharedStore(redis.Redis.from_url("redis://localhost:6379/0")),
    ... )
    >>> tasks = client.table("appXXXXXXXXXXXXXX", "Tasks")
    >>> record = client.find_one(tasks, where={"Name": "Write docs"})
    >>> client.upsert(tasks, where={"Name": "Write docs"}, fields={"Status": "Done"})

Formulas only:
    >>> from airbaker import compile_formula
    >>> compile_formula({"OR": [{"Id": 1}, {"Id": 2}]})
    'OR({Id}="1",{Id}="2")'

Main Classes:
    - Airbaker: Client facade (reads, writes, upsert).
    - Table / Record / Page: Data models.

Formulas:
    - compile_formula / FormulaCompiler: Compile where expressions.
    - Rule, AnyOf, NoneOf, AnyOfExcept: Where expression variants.
    - Match, NotMatch, Includes, NotIncludes: Filter variants.
    - CompileError: Raised on unrecognized where shapes.

Rate Limiting:
    - AdmissionController: Sliding-window admission check.
    - RetryOrchestrator: Retries calls until admitted.
    - SharedStore / RedisSharedStore: Shared atomic store.
    - ConfigurationError: Rate limiting enabled without a store.

Transport:
    - TableTransport / RequestsTableTransport: API calls.
    - TransportError / ServerSideRateLimitError: Call failures.

Configuration:
    - AirbakerConfig / RateLimitConfig: Per-client configuration.
    - ConfigEnvVarError / ConfigValidationError: Invalid configuration.
"""

from importlib.metadata import version as _get_version

__version__ = _get_version("airbaker")

from airbaker._client import Airbaker, EmptyBatchError
from airbaker._config import (
    AirbakerConfig,
    ConfigEnvVarError,
    ConfigValidationError,
    RateLimitConfig,
)
from airbaker._formula import (
    AnyOf,
    AnyOfExcept,
    CompileError,
    FormulaCompiler,
    Includes,
    Match,
    NoneOf,
    NotIncludes,
    NotMatch,
    Rule,
    Where,
    compile_formula,
    parse_where,
)
from airbaker._models import Page, Record, Table
from airbaker._rate_limit import AdmissionController, ConfigurationError
from airbaker._retry import AttemptOutcome, AttemptStatus, RetryOrchestrator
from airbaker._store import RedisSharedStore, SharedStore
from airbaker._transport import (
    RequestsTableTransport,
    ServerSideRateLimitError,
    TableTransport,
    TransportError,
)

__all__ = [
    "__version__",
    # Client
    "Airbaker",
    "EmptyBatchError",
    # Models
    "Table",
    "Record",
    "Page",
    # Configuration
    "AirbakerConfig",
    "RateLimitConfig",
    "ConfigEnvVarError",
    "ConfigValidationError",
    # Formulas
    "compile_formula",
    "parse_where",
    "FormulaCompiler",
    "CompileError",
    "Where",
    "Rule",
    "AnyOf",
    "NoneOf",
    "AnyOfExcept",
    "Match",
    "NotMatch",
    "Includes",
    "NotIncludes",
    # Rate Limiting
    "AdmissionController",
    "ConfigurationError",
    "RetryOrchestrator",
    "AttemptOutcome",
    "AttemptStatus",
    "SharedStore",
    "RedisSharedStore",
    # Transport
    "TableTransport",
    "RequestsTableTransport",
    "TransportError",
    "ServerSideRateLimitError",
]
