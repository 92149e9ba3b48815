"""
High-level client for the records API.

`Airbaker` composes a transport, a formula compiler, an admission controller
and a retry orchestrator. Every request it issues (including every page of a
multi-page read) goes through the orchestrator, so when a shared store is
configured all processes using the same base stay under its rate limit.

Example:
    >>> import redis
    >>> from airbaker import Airbaker, RedisSharedStore
    >>> client = Airbaker(
    ...     api_key="pat-123",
    ...     store=RedisSharedStore(redis.Redis.from_url("redis://localhost:6379/0")),
    ... )
    >>> tasks = client.table("appXXXXXXXXXXXXXX", "Tasks")
    >>> client.find_many(tasks, where={"Status": ["Todo", "Doing"], "Owner": {"not": None}})
"""

import json
import logging
from collections.abc import Callable, Mapping, Sequence
from functools import partial
from typing import Any

from airbaker._config import AirbakerConfig
from airbaker._formula import FormulaCompiler, Where
from airbaker._models import Record, Table
from airbaker._rate_limit import AdmissionController
from airbaker._retry import RetryOrchestrator
from airbaker._store import SharedStore
from airbaker._transport import RequestsTableTransport, TableTransport, check_select_options
from airbaker._utils import DiagnosticLogger, chunked, generate_correlation_id, omit_none


# ======================
# Errors and exceptions
# ======================

class EmptyBatchError(ValueError):
    """Raised when a bulk write receives no records. Nothing is sent."""

    pass


# ======================
# Client
# ======================

class Airbaker:
    """
    Rate-limit aware client for the records API.

    Rate limiting is active when a shared store is given and
    `no_retry_if_rate_limited` is False. While active, calls wait for
    admission and HTTP 429 answers are retried (forever, with a flat jittered
    delay). Otherwise calls go straight to the transport and 429 answers are
    raised as ServerSideRateLimitError.

    Args:
        api_key: Personal access token. Overrides `config.api_key`.
        request_timeout: HTTP timeout in seconds. Overrides `config.request_timeout`.
        no_retry_if_rate_limited: Opt out of managed throttling.
            Overrides `config.no_retry_if_rate_limited`.
        store: Shared store coordinating rate limits across processes.
        logger: Optional diagnostic sink called with every log message.
        config: Base configuration. Defaults to AirbakerConfig().
        transport: Custom transport. Defaults to RequestsTableTransport.

    Attributes:
        compiler: Compiles `where` expressions into formulas.
        admission: Decides whether a call may proceed now.
        orchestrator: Runs calls once admitted, retrying on backoff.
    """

    def __init__(
        self,
        api_key: str | None = None,
        request_timeout: int | None = None,
        no_retry_if_rate_limited: bool | None = None,
        store: SharedStore | None = None,
        logger: Callable[..., Any] | None = None,
        config: AirbakerConfig | None = None,
        transport: TableTransport | None = None,
    ):
        self.config = (config or AirbakerConfig()).with_overrides({
            "api_key": api_key,
            "request_timeout": request_timeout,
            "no_retry_if_rate_limited": no_retry_if_rate_limited,
        }).validate()

        self.store = store
        self.rate_limited = bool(not self.config.no_retry_if_rate_limited and store is not None)
        self.log = DiagnosticLogger(logging.getLogger(__name__), sink=logger)

        if transport is None:
            assert self.config.api_key, "API key is required when no transport is given."
            transport = RequestsTableTransport(
                api_key=self.config.api_key,
                base_url=self.config.base_url,
                request_timeout=self.config.request_timeout,
            )

        self.transport = transport
        self.compiler = FormulaCompiler()
        self.admission = AdmissionController(
            enabled=self.rate_limited,
            store=store,
            config=self.config.rate_limit,
        )
        self.orchestrator = RetryOrchestrator(
            admission=self.admission,
            min_delay=self.config.rate_limit.min_delay,
            max_delay=self.config.rate_limit.max_delay,
            log=self.log,
        )

    @classmethod
    def from_env(cls, **kwargs: Any) -> "Airbaker":
        """Create a client whose configuration is read from AIRBAKER_* env vars."""
        config = kwargs.pop("config", None) or AirbakerConfig()
        return cls(config=config.with_env_vars(), **kwargs)

    def table(self, base_id: str, name: str) -> Table:
        """Return a reference to table `name` in base `base_id`."""
        return Table(base_id=base_id, name=name)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def fetch_all(self, table: Table, **options: Any) -> list[Record]:
        """
        Fetch every record of a table.

        The page size is forced to the configured maximum to reduce round
        trips; `offset` and `filter_by_formula` are ignored.

        Args:
            table: Table to read.
            **options: Select options (`fields`, `sort`, `view`, ...).
        """
        cid = generate_correlation_id()

        options.pop("offset", None)
        options.pop("filter_by_formula", None)
        select_options = omit_none({**options, "page_size": self.config.page_size})
        check_select_options(select_options)

        self.log(f"[{cid}] Fetching all records from {table} with {_dumps(select_options)}")
        records = self._read_pages(table, select_options, cid)
        self.log(f"[{cid}] Found {len(records)} record(s)")
        return records

    def find_one(
        self,
        table: Table,
        where: Where | Mapping[str, Any] | None = None,
        **options: Any,
    ) -> Record | None:
        """
        Find the first record matching `where`.

        Args:
            table: Table to read.
            where: Filter expression. Takes precedence over `filter_by_formula`.
            **options: Select options. `max_records` is forced to 1.

        Returns:
            The first matching record, or None.

        Raises:
            CompileError: If `where` has an unrecognized shape.
            ValueError: If an option is not a select option.
        """
        return self._find_one(table, where, options, generate_correlation_id())

    def _find_one(
        self,
        table: Table,
        where: Where | Mapping[str, Any] | None,
        options: dict[str, Any],
        cid: str,
    ) -> Record | None:
        select_options = omit_none({
            **options,
            "max_records": 1,
            "filter_by_formula": self._resolve_formula(where, options.get("filter_by_formula")),
        })
        check_select_options(select_options)

        self.log(f"[{cid}] Find first record from {table} with {_dumps(select_options)}")
        page = self.orchestrator.run_when_allowed(
            table.base_id,
            partial(self.transport.select_page, table, select_options),
            cid,
        )
        self.log(f"[{cid}] Page 1 records fetched")
        self.log(f"[{cid}] Found {len(page.records)} record(s)")

        return page.records[0] if page.records else None

    def find_many(
        self,
        table: Table,
        where: Where | Mapping[str, Any] | None = None,
        **options: Any,
    ) -> list[Record]:
        """
        Find every record matching `where`, reading all pages.

        Args:
            table: Table to read.
            where: Filter expression. Takes precedence over `filter_by_formula`.
            **options: Select options. `page_size` defaults to the configured maximum.

        Raises:
            CompileError: If `where` has an unrecognized shape.
            ValueError: If an option is not a select option.
        """
        cid = generate_correlation_id()

        select_options = omit_none({
            "page_size": self.config.page_size,
            **options,
            "filter_by_formula": self._resolve_formula(where, options.get("filter_by_formula")),
        })
        check_select_options(select_options)

        self.log(f"[{cid}] Find multiple records from {table} with {_dumps(select_options)}")
        records = self._read_pages(table, select_options, cid)
        self.log(f"[{cid}] Found {len(records)} record(s)")
        return records

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def create_one(self, table: Table, fields: Mapping[str, Any]) -> Record:
        """Create one record (with typecast)."""
        return self._create_one(table, fields, generate_correlation_id())

    def _create_one(self, table: Table, fields: Mapping[str, Any], cid: str) -> Record:
        self.log(f"[{cid}] Creating record for {table} with {_dumps(fields)}")
        records = self.orchestrator.run_when_allowed(
            table.base_id,
            partial(self.transport.create, table, [dict(fields)], True),
            cid,
        )
        record = records[0]
        self.log(f"[{cid}] Created record: {record.id}")
        return record

    def create_many(self, table: Table, records: Sequence[Mapping[str, Any]]) -> list[Record]:
        """
        Create records in batches of `create_batch_size` (the API accepts at most 10).

        Args:
            table: Table to write.
            records: Field mappings, one per record.

        Raises:
            EmptyBatchError: If `records` is empty. The transport is not called.
        """
        if not records:
            raise EmptyBatchError("Empty list provided when creating records")

        cid = generate_correlation_id()
        self.log(f"[{cid}] Creating records for {table} with {_dumps(list(records))}")

        created: list[Record] = []
        for batch in chunked([dict(r) for r in records], self.config.create_batch_size):
            created.extend(self.orchestrator.run_when_allowed(
                table.base_id,
                partial(self.transport.create, table, batch, True),
                cid,
            ))

        self.log(f"[{cid}] Created records: {','.join(r.id for r in created)}")
        return created

    def update_one(self, table: Table, record_id: str, fields: Mapping[str, Any]) -> Record:
        """Patch one record (with typecast)."""
        return self._update_one(table, record_id, fields, generate_correlation_id())

    def _update_one(self, table: Table, record_id: str, fields: Mapping[str, Any], cid: str) -> Record:
        assert record_id, "Record ID can not be empty."

        self.log(f"[{cid}] Updating record {record_id} for {table} with {_dumps(fields)}")
        records = self.orchestrator.run_when_allowed(
            table.base_id,
            partial(self.transport.update, table, [{"id": record_id, "fields": dict(fields)}], True),
            cid,
        )
        record = records[0]
        self.log(f"[{cid}] Updated record: {record.id}")
        return record

    def update_many(self, table: Table, records: Sequence[Mapping[str, Any]]) -> list[Record]:
        """
        Patch records in batches of `update_batch_size`.

        Args:
            table: Table to write.
            records: Mappings with `id` and `fields`.

        Raises:
            EmptyBatchError: If `records` is empty. The transport is not called.
        """
        if not records:
            raise EmptyBatchError("Empty list provided when updating records")

        for r in records:
            assert r.get("id"), f"Record to update has no id: {r!r}"

        cid = generate_correlation_id()
        self.log(f"[{cid}] Updating records for {table} with {_dumps(list(records))}")

        batches = chunked(
            [{"id": r["id"], "fields": dict(r.get("fields") or {})} for r in records],
            self.config.update_batch_size,
        )
        updated: list[Record] = []
        for batch in batches:
            updated.extend(self.orchestrator.run_when_allowed(
                table.base_id,
                partial(self.transport.update, table, batch, True),
                cid,
            ))

        self.log(f"[{cid}] Updated records: {','.join(r.id for r in updated)}")
        return updated

    def upsert(
        self,
        table: Table,
        where: Where | Mapping[str, Any],
        fields: Mapping[str, Any],
    ) -> Record:
        """
        Update the first record matching `where`, or create one.

        Fields that already hold a value on the existing record are kept:
        only blank fields are written.

        Raises:
            CompileError: If `where` has an unrecognized shape.
        """
        cid = generate_correlation_id()
        self.log(f"[{cid}] Upsert record for {table} with {_dumps(fields)}")

        existing = self._find_one(table, where, {}, cid)
        if existing is None:
            self.log(f"[{cid}] Existing record not found for upsert with {_dumps(where)}")
            return self._create_one(table, fields, cid)

        self.log(f"[{cid}] Existing record {existing.id} found for upsert with {_dumps(where)}")
        writable = {name: value for name, value in fields.items() if name not in existing.fields}
        return self._update_one(table, existing.id, writable, cid)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _resolve_formula(
        self,
        where: Where | Mapping[str, Any] | None,
        filter_by_formula: str | None,
    ) -> str | None:
        compiled = self.compiler.compile(where) if where is not None else ""
        return compiled or filter_by_formula

    def _read_pages(self, table: Table, options: dict[str, Any], cid: str) -> list[Record]:
        records: list[Record] = []
        offset: str | None = None
        page_number = 0

        while True:
            page = self.orchestrator.run_when_allowed(
                table.base_id,
                partial(self.transport.select_page, table, options, offset),
                cid,
            )
            page_number += 1
            self.log(f"[{cid}] Page {page_number} records fetched")
            records.extend(page.records)

            if not page.has_next:
                return records
            offset = page.offset


def _dumps(data: Any) -> str:
    try:
        return json.dumps(data, default=str, ensure_ascii=False)
    except (TypeError, ValueError):
        return repr(data)
