"""Tests for the Airbaker client facade."""

import threading
from unittest.mock import MagicMock, patch

import pytest

from airbaker import (
    Airbaker,
    AirbakerConfig,
    CompileError,
    EmptyBatchError,
    Page,
    Record,
    RequestsTableTransport,
    ServerSideRateLimitError,
    SharedStore,
    Table,
    TableTransport,
    TransportError,
)

TABLE = Table(base_id="app1", name="Tasks")


class MockTableTransport(TableTransport):
    """Transport recording calls and serving canned pages."""

    def __init__(self, pages=None, errors=None):
        self.pages = list(pages or [Page(records=[])])
        self.errors = list(errors or [])
        self.select_calls = []
        self.create_calls = []
        self.update_calls = []
        self._next_id = 0

    def _maybe_fail(self):
        if self.errors:
            raise self.errors.pop(0)

    def select_page(self, table, options=None, offset=None):
        self.select_calls.append({"table": table, "options": dict(options or {}), "offset": offset})
        self._maybe_fail()
        return self.pages.pop(0)

    def create(self, table, records, typecast=True):
        self.create_calls.append({"table": table, "records": records, "typecast": typecast})
        self._maybe_fail()
        created = []
        for fields in records:
            self._next_id += 1
            created.append(Record(id=f"rec{self._next_id}", fields=dict(fields)))
        return created

    def update(self, table, records, typecast=True):
        self.update_calls.append({"table": table, "records": records, "typecast": typecast})
        self._maybe_fail()
        return [Record(id=r["id"], fields=dict(r["fields"])) for r in records]


class AlwaysAdmitStore(SharedStore):
    """Store admitting every call and recording override writes."""

    def __init__(self):
        self.checks = 0
        self.flags = []
        self._lock = threading.Lock()

    def check_and_admit(self, log_key, override_key, limit, window_microseconds):
        with self._lock:
            self.checks += 1
            return True

    def set_with_expiry(self, key, seconds, value):
        self.flags.append((key, seconds, value))

    def server_time_microseconds(self):
        return 0


def make_client(transport=None, store=None, **kwargs):
    return Airbaker(api_key="pat", transport=transport or MockTableTransport(), store=store, **kwargs)


# =============================================================================
# Construction
# =============================================================================


class TestAirbakerInit:
    """Tests for client construction and rate limiting mode."""

    def test_rate_limited_with_store(self):
        client = make_client(store=AlwaysAdmitStore())

        assert client.rate_limited is True
        assert client.admission.enabled is True

    def test_not_rate_limited_without_store(self):
        client = make_client()

        assert client.rate_limited is False
        assert client.admission.enabled is False

    def test_opt_out_disables_rate_limiting(self):
        client = make_client(store=AlwaysAdmitStore(), no_retry_if_rate_limited=True)

        assert client.rate_limited is False

    def test_constructor_values_override_config(self):
        config = AirbakerConfig(api_key="from-config", request_timeout=10)

        client = Airbaker(api_key="explicit", request_timeout=60, config=config, transport=MockTableTransport())

        assert client.config.api_key == "explicit"
        assert client.config.request_timeout == 60

    def test_default_transport_uses_config(self):
        client = Airbaker(api_key="pat", request_timeout=12)

        assert isinstance(client.transport, RequestsTableTransport)
        assert client.transport.api_key == "pat"
        assert client.transport.request_timeout == 12

    def test_default_transport_requires_api_key(self):
        with pytest.raises(AssertionError, match="API key is required"):
            Airbaker()

    def test_rate_limit_config_reaches_orchestrator(self):
        config = AirbakerConfig().with_overrides({
            "rate_limit": {"min_delay": 0.2, "max_delay": 0.3, "namespace": "{tenant}"},
        })

        client = Airbaker(api_key="pat", config=config, transport=MockTableTransport())

        assert client.admission.log_key("app1") == "{tenant}:app1"
        assert client.orchestrator.min_delay == 0.2
        assert client.orchestrator.max_delay == 0.3

    def test_instances_do_not_share_diagnostic_sinks(self):
        sink_a, sink_b = MagicMock(), MagicMock()
        client_a = make_client(logger=sink_a)
        make_client(logger=sink_b)

        client_a.find_one(TABLE)

        assert sink_a.called
        sink_b.assert_not_called()

    @patch.dict("os.environ", {"AIRBAKER_API_KEY": "env-key", "AIRBAKER_REQUEST_TIMEOUT": "45"})
    def test_from_env(self):
        client = Airbaker.from_env(transport=MockTableTransport())

        assert client.config.api_key == "env-key"
        assert client.config.request_timeout == 45

    def test_table_helper(self):
        assert make_client().table("app1", "Tasks") == TABLE


# =============================================================================
# Reads
# =============================================================================


class TestFindOne:
    """Tests for find_one()."""

    def test_compiles_where_into_formula(self):
        transport = MockTableTransport(pages=[Page(records=[Record(id="rec1")])])

        record = make_client(transport).find_one(TABLE, where={"Name": "a"})

        assert record == Record(id="rec1")
        assert transport.select_calls[0]["options"] == {
            "max_records": 1,
            "filter_by_formula": '{Name}="a"',
        }

    def test_where_takes_precedence_over_raw_formula(self):
        transport = MockTableTransport()

        make_client(transport).find_one(TABLE, where={"Name": "a"}, filter_by_formula="{Other}=1")

        assert transport.select_calls[0]["options"]["filter_by_formula"] == '{Name}="a"'

    def test_empty_where_falls_back_to_raw_formula(self):
        transport = MockTableTransport()

        make_client(transport).find_one(TABLE, where={}, filter_by_formula="{Other}=1")

        assert transport.select_calls[0]["options"]["filter_by_formula"] == "{Other}=1"

    def test_returns_none_when_nothing_matches(self):
        assert make_client().find_one(TABLE, where={"Name": "a"}) is None

    def test_invalid_where_raises_before_any_call(self):
        transport = MockTableTransport()

        with pytest.raises(CompileError):
            make_client(transport).find_one(TABLE, where={"Name": {"unknown": 1}})

        assert transport.select_calls == []


class TestFindMany:
    """Tests for find_many()."""

    def test_reads_every_page(self):
        transport = MockTableTransport(pages=[
            Page(records=[Record(id="rec1")], offset="o1"),
            Page(records=[Record(id="rec2")], offset="o2"),
            Page(records=[Record(id="rec3")]),
        ])

        records = make_client(transport).find_many(TABLE, where={"Done": None})

        assert [r.id for r in records] == ["rec1", "rec2", "rec3"]
        assert [c["offset"] for c in transport.select_calls] == [None, "o1", "o2"]
        assert transport.select_calls[0]["options"] == {
            "page_size": 100,
            "filter_by_formula": "{Done}=BLANK()",
        }

    def test_caller_page_size_wins(self):
        transport = MockTableTransport()

        make_client(transport).find_many(TABLE, page_size=10)

        assert transport.select_calls[0]["options"] == {"page_size": 10}

    def test_every_page_is_admitted(self):
        store = AlwaysAdmitStore()
        transport = MockTableTransport(pages=[
            Page(records=[], offset="o1"),
            Page(records=[], offset="o2"),
            Page(records=[]),
        ])

        make_client(transport, store=store).find_many(TABLE)

        assert store.checks == 3

    def test_pages_share_correlation_id(self):
        sink = MagicMock()
        transport = MockTableTransport(pages=[Page(records=[], offset="o1"), Page(records=[])])

        make_client(transport, logger=sink).find_many(TABLE)

        ids = {c.args[0].split("]")[0] for c in sink.call_args_list}
        assert len(ids) == 1


class TestSelectOptionChecks:
    """Unknown select options fail before any admission is spent."""

    def test_find_many_rejects_offset(self):
        store = AlwaysAdmitStore()
        transport = MockTableTransport()

        with pytest.raises(ValueError, match="Unknown select options"):
            make_client(transport, store=store).find_many(TABLE, offset="itr1")

        assert store.checks == 0
        assert transport.select_calls == []

    def test_fetch_all_rejects_where(self):
        store = AlwaysAdmitStore()

        with pytest.raises(ValueError, match="where"):
            make_client(store=store).fetch_all(TABLE, where={"Name": "a"})

        assert store.checks == 0

    def test_find_one_rejects_typo(self):
        store = AlwaysAdmitStore()

        with pytest.raises(ValueError) as ctx:
            make_client(store=store).find_one(TABLE, pagesize=1)

        assert not isinstance(ctx.value, TransportError)
        assert store.checks == 0


class TestFetchAll:
    """Tests for fetch_all()."""

    def test_forces_page_size_and_drops_offset_and_formula(self):
        transport = MockTableTransport()

        make_client(transport).fetch_all(
            TABLE, page_size=5, offset="x", filter_by_formula="{a}=1", view="Grid", sort=None
        )

        assert transport.select_calls[0]["options"] == {"page_size": 100, "view": "Grid"}
        assert transport.select_calls[0]["offset"] is None


# =============================================================================
# Writes
# =============================================================================


class TestCreate:
    """Tests for create_one() and create_many()."""

    def test_create_one(self):
        transport = MockTableTransport()

        record = make_client(transport).create_one(TABLE, {"Name": "a"})

        assert record.id == "rec1"
        assert transport.create_calls == [{"table": TABLE, "records": [{"Name": "a"}], "typecast": True}]

    def test_create_many_empty_raises_without_transport(self):
        transport = MockTableTransport()

        with pytest.raises(EmptyBatchError):
            make_client(transport).create_many(TABLE, [])

        assert transport.create_calls == []

    def test_create_many_splits_in_batches_of_ten(self):
        transport = MockTableTransport()

        records = make_client(transport).create_many(TABLE, [{"n": i} for i in range(23)])

        assert len(records) == 23
        assert [len(c["records"]) for c in transport.create_calls] == [10, 10, 3]
        assert [r.fields["n"] for r in records] == list(range(23))

    def test_create_many_with_custom_batch_size(self):
        transport = MockTableTransport()
        config = AirbakerConfig(create_batch_size=4)

        make_client(transport, config=config).create_many(TABLE, [{"n": i} for i in range(9)])

        assert [len(c["records"]) for c in transport.create_calls] == [4, 4, 1]


class TestUpdate:
    """Tests for update_one() and update_many()."""

    def test_update_one(self):
        transport = MockTableTransport()

        record = make_client(transport).update_one(TABLE, "rec9", {"Name": "b"})

        assert record == Record(id="rec9", fields={"Name": "b"})
        assert transport.update_calls[0]["records"] == [{"id": "rec9", "fields": {"Name": "b"}}]

    def test_update_many_empty_raises_without_transport(self):
        transport = MockTableTransport()

        with pytest.raises(EmptyBatchError):
            make_client(transport).update_many(TABLE, [])

        assert transport.update_calls == []

    def test_update_many_uses_configured_batch_size(self):
        transport = MockTableTransport()
        config = AirbakerConfig(update_batch_size=3)
        records = [{"id": f"rec{i}", "fields": {"n": i}} for i in range(7)]

        updated = make_client(transport, config=config).update_many(TABLE, records)

        assert len(updated) == 7
        assert [len(c["records"]) for c in transport.update_calls] == [3, 3, 1]

    def test_update_many_requires_ids(self):
        with pytest.raises(AssertionError, match="has no id"):
            make_client().update_many(TABLE, [{"fields": {"n": 1}}])


class TestUpsert:
    """Tests for upsert()."""

    def test_creates_when_not_found(self):
        transport = MockTableTransport()

        record = make_client(transport).upsert(TABLE, {"Key": "k1"}, {"Key": "k1", "Value": 1})

        assert record.fields == {"Key": "k1", "Value": 1}
        assert transport.select_calls[0]["options"]["filter_by_formula"] == '{Key}="k1"'
        assert len(transport.create_calls) == 1
        assert transport.update_calls == []

    def test_updates_only_blank_fields_when_found(self):
        existing = Record(id="rec7", fields={"Key": "k1", "Value": 1})
        transport = MockTableTransport(pages=[Page(records=[existing])])

        make_client(transport).upsert(TABLE, {"Key": "k1"}, {"Key": "k1", "Value": 2, "Note": "n"})

        assert transport.update_calls[0]["records"] == [{"id": "rec7", "fields": {"Note": "n"}}]
        assert transport.create_calls == []

    @pytest.mark.parametrize("pages", [
        [Page(records=[])],
        [Page(records=[Record(id="rec7", fields={"Key": "k1"})])],
    ])
    def test_logs_under_one_correlation_id(self, pages):
        sink = MagicMock()
        transport = MockTableTransport(pages=pages)

        make_client(transport, logger=sink).upsert(TABLE, {"Key": "k1"}, {"Key": "k1", "Value": 1})

        messages = [c.args[0] for c in sink.call_args_list]
        assert len(messages) > 3
        assert len({m.split("]")[0] for m in messages}) == 1


# =============================================================================
# Throttling
# =============================================================================


class TestThrottling:
    """Tests for throttle handling through the client."""

    @patch("airbaker._retry.sleep_with_jitter", return_value=1.2)
    def test_throttle_is_retried_when_rate_limited(self, mock_sleep: MagicMock):
        store = AlwaysAdmitStore()
        transport = MockTableTransport(errors=[ServerSideRateLimitError()])

        record = make_client(transport, store=store).create_one(TABLE, {"Name": "a"})

        assert record.fields == {"Name": "a"}
        assert len(transport.create_calls) == 2
        assert store.flags == [("{airtable}:app1:is_rate_limited", 30, 1)]
        assert mock_sleep.call_count == 1

    @patch("airbaker._retry.sleep_with_jitter", return_value=1.2)
    def test_throttle_propagates_without_store(self, mock_sleep: MagicMock):
        transport = MockTableTransport(errors=[ServerSideRateLimitError()])

        with pytest.raises(ServerSideRateLimitError):
            make_client(transport).create_one(TABLE, {"Name": "a"})

        mock_sleep.assert_not_called()

    @patch("airbaker._retry.sleep_with_jitter", return_value=1.2)
    def test_throttle_propagates_when_opted_out(self, mock_sleep: MagicMock):
        store = AlwaysAdmitStore()
        transport = MockTableTransport(errors=[ServerSideRateLimitError()])
        client = make_client(transport, store=store, no_retry_if_rate_limited=True)

        with pytest.raises(ServerSideRateLimitError):
            client.create_one(TABLE, {"Name": "a"})

        assert store.checks == 0
        assert store.flags == []

    @patch("airbaker._retry.sleep_with_jitter", return_value=1.2)
    def test_other_errors_are_not_retried(self, mock_sleep: MagicMock):
        transport = MockTableTransport(errors=[TransportError("bad", status_code=422)])

        with pytest.raises(TransportError):
            make_client(transport, store=AlwaysAdmitStore()).find_many(TABLE)

        assert len(transport.select_calls) == 1
        mock_sleep.assert_not_called()
