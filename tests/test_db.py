"""Tests for the PostgreSQL access layer using a mocked psycopg2 connection."""
from unittest.mock import MagicMock, patch

import psycopg2
import pytest

from scrapequeue.db import Database, StorageError
from scrapequeue.models import DeadLetterEntry, InvalidTransition, QueueItemState

from conftest import make_item, make_record


@pytest.fixture
def cursor():
    return MagicMock()


@pytest.fixture
def conn(cursor):
    connection = MagicMock()
    connection.closed = False
    connection.cursor.return_value = cursor
    return connection


@pytest.fixture
def db(conn):
    database = Database(dsn="postgresql://test@localhost/test")
    database._conn = conn
    return database


def state_row(item, **overrides):
    row = QueueItemState.pending(item).to_dict()
    row.update(overrides)
    return row


class TestCursor:

    def test_commits_on_success(self, db, conn):
        with db.cursor() as cur:
            cur.execute("SELECT 1")
        conn.commit.assert_called_once()
        conn.rollback.assert_not_called()

    def test_wraps_psycopg2_errors(self, db, conn, cursor):
        cursor.execute.side_effect = psycopg2.OperationalError("server closed the connection")

        with pytest.raises(StorageError, match="server closed"):
            db.get_queue_item_state(make_item())

        conn.rollback.assert_called_once()
        conn.commit.assert_not_called()

    def test_connect_failure_is_storage_error(self):
        database = Database(dsn="postgresql://nowhere/none")
        with patch("scrapequeue.db.psycopg2.connect", side_effect=psycopg2.OperationalError("refused")):
            with pytest.raises(StorageError, match="Cannot connect"):
                database.conn


class TestQueueItemState:

    def test_get_returns_none_for_missing_row(self, db, cursor):
        cursor.fetchone.return_value = None
        assert db.get_queue_item_state(make_item()) is None

    def test_list_keys_by_cell(self, db, cursor):
        item = make_item()
        cursor.fetchall.return_value = [state_row(item)]

        states = db.list_queue_item_states("FL", "FL_DBPR", "real_estate")

        assert list(states) == ["33101"]

    def test_upsert_checks_stored_status(self, db, cursor, conn):
        item = make_item()
        cursor.fetchone.return_value = state_row(item, status="failed", terminal=True)
        processing = QueueItemState.pending(item).begin_attempt()

        with pytest.raises(InvalidTransition):
            db.upsert_queue_item_state(processing)

        assert cursor.execute.call_count == 1
        conn.rollback.assert_called_once()

    def test_upsert_writes_valid_transition(self, db, cursor, conn):
        item = make_item()
        cursor.fetchone.return_value = state_row(item)
        processing = QueueItemState.pending(item).begin_attempt()

        db.upsert_queue_item_state(processing)

        assert cursor.execute.call_count == 2
        values = cursor.execute.call_args[0][1]
        assert values["status"] == "processing"
        assert values["cell_id"] == "33101"
        conn.commit.assert_called_once()


class TestScrapedRecords:

    def test_batch_dedups_keeping_last(self, db):
        records = [
            make_record(native_id="BK1", phone="111"),
            make_record(native_id="BK2"),
            make_record(native_id="BK1", phone="222"),
        ]
        with patch("scrapequeue.db.execute_values") as execute_values:
            written = db.upsert_scraped_records(records)

        assert written == 2
        rows = execute_values.call_args[0][2]
        phones = {row[1]: row[6] for row in rows}
        assert phones["BK1"] == "222"

    def test_empty_batch_skips_database(self, db, conn):
        assert db.upsert_scraped_records([]) == 0
        conn.cursor.assert_not_called()


class TestDeadLetters:

    def _entry(self):
        item = make_item()
        return DeadLetterEntry(
            message_id="m1", message_body=item.to_message_body(), jurisdiction="FL", cell_id="33101",
            source="FL_DBPR", category="real_estate", error_message="timeout", retry_count=4,
        )

    def test_returns_new_id(self, db, cursor):
        cursor.fetchone.return_value = {"id": 7}
        assert db.write_dead_letter(self._entry()) == 7

    def test_returns_existing_open_entry(self, db, cursor):
        cursor.fetchone.side_effect = [None, {"id": 3}]
        assert db.write_dead_letter(self._entry()) == 3
        assert cursor.execute.call_count == 2

    def test_terminal_state_and_entry_share_one_commit(self, db, cursor, conn):
        item = make_item()
        cursor.fetchone.side_effect = [state_row(item, status="processing"), {"id": 9}]
        failed = QueueItemState.pending(item).begin_attempt().fail("timeout", 120, terminal=True)

        assert db.dead_letter_item(failed, self._entry()) == 9

        assert cursor.execute.call_count == 3
        conn.commit.assert_called_once()

    def test_rejected_terminal_state_writes_no_entry(self, db, cursor, conn):
        item = make_item()
        cursor.fetchone.return_value = state_row(item, status="completed")
        failed = QueueItemState.pending(item).begin_attempt().fail("timeout", 120, terminal=True)

        with pytest.raises(InvalidTransition):
            db.dead_letter_item(failed, self._entry())

        assert cursor.execute.call_count == 1
        conn.rollback.assert_called_once()
        conn.commit.assert_not_called()


class TestRateLimitConfig:

    def test_rejects_non_editable_fields(self, db, conn):
        with pytest.raises(ValueError, match="total_requests"):
            db.update_rate_limit_config("FL_DBPR", "FL", total_requests=0)
        conn.cursor.assert_not_called()

    def test_read_missing_config(self, db, cursor):
        cursor.fetchone.return_value = None
        assert db.read_rate_limit_config("FL_DBPR", "FL") is None


def test_init_schema_runs_schema_file(db, cursor):
    db.init_schema()
    sql_text = cursor.execute.call_args[0][0]
    assert "CREATE TABLE IF NOT EXISTS queue_item_state" in sql_text
