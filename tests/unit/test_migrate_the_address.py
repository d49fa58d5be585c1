"""Unit tests for castdir_etl.migrate_the_address.

DB helpers are patched; FakeConn records SAVEPOINT traffic.
"""

import json
from unittest.mock import patch

import psycopg
import pytest

from castdir_etl.migrate_the_address import (
    FAILURE_NO_ADDRESS_ID,
    FAILURE_UNPARSEABLE,
    AddressMigrationCounters,
    AddressMigrationReport,
    _run_the_address,
    build_address_insert,
    build_the_address_report,
    migrate_contact,
    resolve_address_value,
    run_the_address_migration,
    write_address_report,
)

MOD = "castdir_etl.migrate_the_address"


class FakeConn:
    def __init__(self):
        self.statements: list[str] = []
        self.commits = 0
        self.rollbacks = 0
        self.closed = False

    def execute(self, query, params=None):
        self.statements.append(query)

    def commit(self):
        self.commits += 1

    def rollback(self):
        self.rollbacks += 1

    def close(self):
        self.closed = True


# ---------------------------------------------------------------------------
# resolve_address_value / build_address_insert
# ---------------------------------------------------------------------------

class TestResolveAddressValue:
    def test_json_object(self):
        out = resolve_address_value('{"city": "Burbank", "state": "CA"}', None)
        assert out["city"] == "Burbank"

    def test_double_encoded(self):
        raw = json.dumps(json.dumps({"street1": "1 Lot Rd", "city": "Burbank", "state": "CA"}))
        out = resolve_address_value(raw, None)
        assert out["street1"] == "1 Lot Rd"
        assert out["state"] == "CA"

    def test_falls_back_to_address_string(self):
        out = resolve_address_value("{}", "500 S Buena Vista St")
        assert out == {"street1": "500 S Buena Vista St"}

    def test_falls_back_to_raw(self):
        assert resolve_address_value("{}", None) == {"street1": "{}"}

    def test_free_text(self):
        assert resolve_address_value("1 Lot Rd, Burbank", None) == {"street1": "1 Lot Rd, Burbank"}

    def test_nothing_usable(self):
        assert resolve_address_value("   ", "  ") is None


class TestBuildAddressInsert:
    def test_city_state_default_empty(self):
        row = build_address_insert({"street1": "1 Lot Rd"})
        assert row["city"] == ""
        assert row["state"] == ""
        assert row["zip"] is None
        assert row["location"] is None


# ---------------------------------------------------------------------------
# migrate_contact
# ---------------------------------------------------------------------------

class TestMigrateContact:
    def test_reuses_existing_address(self):
        conn = FakeConn()
        ctrs = AddressMigrationCounters()
        result = AddressMigrationReport()
        with patch(f"{MOD}.find_address_id", return_value=7), \
                patch(f"{MOD}.insert_address") as insert_address, \
                patch(f"{MOD}.ensure_contact_address", return_value=True), \
                patch(f"{MOD}.mark_migrated") as mark:
            migrate_contact(conn, "c1", '{"city": "Burbank", "state": "CA"}', None, ctrs, result)
        insert_address.assert_not_called()
        mark.assert_called_once_with(conn, "c1")
        assert result.report[0]["addressId"] == 7
        assert result.report[0]["contactId"] == "c1"
        assert ctrs.addresses_reused == 1
        assert ctrs.links_inserted == 1

    def test_inserts_new_address(self):
        conn = FakeConn()
        ctrs = AddressMigrationCounters()
        result = AddressMigrationReport()
        with patch(f"{MOD}.find_address_id", return_value=None), \
                patch(f"{MOD}.insert_address", return_value=11), \
                patch(f"{MOD}.ensure_contact_address", return_value=False), \
                patch(f"{MOD}.mark_migrated"):
            migrate_contact(conn, "c1", "1 Lot Rd", None, ctrs, result)
        assert ctrs.addresses_inserted == 1
        assert ctrs.links_existing == 1
        assert result.report[0]["normalized"]["street1"] == "1 Lot Rd"

    def test_unparseable_still_marked(self):
        conn = FakeConn()
        ctrs = AddressMigrationCounters()
        result = AddressMigrationReport()
        with patch(f"{MOD}.find_address_id") as find, \
                patch(f"{MOD}.mark_migrated") as mark:
            migrate_contact(conn, "c1", "   ", None, ctrs, result)
        find.assert_not_called()
        mark.assert_called_once_with(conn, "c1")
        assert result.failures == [{"contactId": "c1", "reason": FAILURE_UNPARSEABLE, "raw": "   "}]
        assert result.report == []

    def test_no_address_id(self):
        conn = FakeConn()
        result = AddressMigrationReport()
        with patch(f"{MOD}.find_address_id", return_value=None), \
                patch(f"{MOD}.insert_address", return_value=None), \
                patch(f"{MOD}.mark_migrated") as mark:
            migrate_contact(conn, "c1", "1 Lot Rd", None, AddressMigrationCounters(), result)
        assert result.failures[0]["reason"] == FAILURE_NO_ADDRESS_ID
        mark.assert_called_once()

    def test_error_rolled_back_recorded_and_marked(self):
        conn = FakeConn()
        ctrs = AddressMigrationCounters()
        result = AddressMigrationReport()
        with patch(f"{MOD}.find_address_id", side_effect=RuntimeError("boom")), \
                patch(f"{MOD}.mark_migrated") as mark:
            migrate_contact(conn, "c1", "1 Lot Rd", None, ctrs, result)
        assert "ROLLBACK TO SAVEPOINT the_address_row" in conn.statements
        assert result.failures == [{"contactId": "c1", "reason": "boom"}]
        assert ctrs.failures_error == 1
        mark.assert_called_once_with(conn, "c1")


# ---------------------------------------------------------------------------
# run_the_address_migration
# ---------------------------------------------------------------------------

class TestRunTheAddressMigration:
    def test_keyset_pages_until_empty(self):
        conn = FakeConn()
        pages = [
            [("a", "1 Lot Rd", None), ("b", "2 Lot Rd", None)],
            [("c", "3 Lot Rd", None)],
            [],
        ]
        seen_after: list[str] = []

        def fake_fetch(conn, after_id, page_size):
            seen_after.append(after_id)
            return pages[len(seen_after) - 1]

        with patch(f"{MOD}.fetch_pending_contacts", side_effect=fake_fetch), \
                patch(f"{MOD}.migrate_contact") as migrate:
            ctrs = AddressMigrationCounters()
            run_the_address_migration(conn, ctrs, page_size=2, commit_every_page=True)
        assert seen_after == ["", "b", "c"]
        assert migrate.call_count == 3
        assert ctrs.contacts_read == 3
        assert ctrs.pages_read == 2
        assert conn.commits == 2

    def test_no_commit_by_default(self):
        conn = FakeConn()
        with patch(f"{MOD}.fetch_pending_contacts", return_value=[]):
            run_the_address_migration(conn, AddressMigrationCounters())
        assert conn.commits == 0


def _first_page_then_fail():
    calls: list[str] = []

    def fake_fetch(conn, after_id, page_size):
        calls.append(after_id)
        if len(calls) == 1:
            return [("a", "1 Lot Rd", None), ("b", "   ", None)]
        raise psycopg.OperationalError("connection lost")

    return fake_fetch


def _record_outcome(conn, contact_id, raw, address_string, counters, result):
    if raw.strip():
        result.report.append({"contactId": contact_id, "addressId": 1, "normalized": {}})
    else:
        result.failures.append({"contactId": contact_id, "reason": FAILURE_UNPARSEABLE, "raw": raw})


class TestRunTheAddressFailure:
    def test_per_page_failure_keeps_committed_outcomes(self, tmp_path):
        conn = FakeConn()
        with patch(f"{MOD}.psycopg.connect", return_value=conn), \
                patch(f"{MOD}.fetch_pending_contacts", side_effect=_first_page_then_fail()), \
                patch(f"{MOD}.migrate_contact", side_effect=_record_outcome):
            with pytest.raises(SystemExit) as exc:
                _run_the_address(
                    "run-1", "dsn", AddressMigrationCounters(),
                    output_dir=tmp_path, page_size=2, commit_every_page=True,
                )
        assert exc.value.code == 1
        assert conn.commits == 1
        assert conn.rollbacks == 1
        assert conn.closed
        data = json.loads((tmp_path / "addresses-migration-report.json").read_text(encoding="utf-8"))
        assert [r["contactId"] for r in data["report"]] == ["a"]
        assert [f["contactId"] for f in data["failures"]] == ["b"]

    def test_single_transaction_failure_writes_nothing(self, tmp_path):
        conn = FakeConn()
        with patch(f"{MOD}.psycopg.connect", return_value=conn), \
                patch(f"{MOD}.fetch_pending_contacts", side_effect=_first_page_then_fail()), \
                patch(f"{MOD}.migrate_contact", side_effect=_record_outcome):
            with pytest.raises(SystemExit):
                _run_the_address(
                    "run-1", "dsn", AddressMigrationCounters(),
                    output_dir=tmp_path, page_size=2,
                )
        assert conn.commits == 0
        assert not (tmp_path / "addresses-migration-report.json").exists()

    def test_uncommitted_page_not_in_result(self):
        conn = FakeConn()
        result = AddressMigrationReport()
        with patch(f"{MOD}.fetch_pending_contacts", side_effect=_first_page_then_fail()), \
                patch(f"{MOD}.migrate_contact", side_effect=_record_outcome):
            with pytest.raises(psycopg.OperationalError):
                run_the_address_migration(conn, AddressMigrationCounters(), result=result)
        assert result.report == [] and result.failures == []


# ---------------------------------------------------------------------------
# reports
# ---------------------------------------------------------------------------

class TestReports:
    def test_write_address_report(self, tmp_path):
        result = AddressMigrationReport(
            report=[{"contactId": "c1", "addressId": 1, "normalized": {}}],
            failures=[{"contactId": "c2", "reason": FAILURE_UNPARSEABLE, "raw": ""}],
        )
        path = write_address_report(tmp_path / "out", result)
        assert path.name == "addresses-migration-report.json"
        data = json.loads(path.read_text(encoding="utf-8"))
        assert set(data) == {"report", "failures"}
        assert data["failures"][0]["contactId"] == "c2"

    @pytest.mark.parametrize("dry_run", [True, False])
    def test_text_report(self, dry_run):
        report = build_the_address_report(AddressMigrationCounters(contacts_read=4), dry_run=dry_run)
        assert f"dry_run: {dry_run}" in report
        assert "contacts read:        4" in report
