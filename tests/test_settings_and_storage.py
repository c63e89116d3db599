from pathlib import Path

import pytest

from fieldflow.shared.settings import PropagationSettings, get_settings
from fieldflow.store.db import PropagationDB, from_iso, to_iso, utc_now
from fieldflow.store.records import SQLiteRecordStore


def test_settings_defaults_and_directories(tmp_path: Path) -> None:
    env = {
        "FIELDFLOW_DATA_DIR": str(tmp_path / "data"),
        "FIELDFLOW_SQLITE_PATH": str(tmp_path / "data" / "db" / "fieldflow.sqlite"),
    }

    settings = get_settings(env)

    assert settings.data_dir.exists()
    assert settings.sqlite_path.parent.exists()
    assert settings.lease_seconds == 120
    assert settings.max_attempts == 8
    assert settings.plan_max_records == 10_000
    assert settings.log_level == "INFO"


def test_settings_read_overrides() -> None:
    settings = PropagationSettings.from_env(
        {
            "FIELDFLOW_DATA_DIR": "/tmp/fieldflow",
            "FIELDFLOW_LEASE_SECONDS": "30",
            "FIELDFLOW_MAX_ATTEMPTS": "3",
            "FIELDFLOW_BACKOFF_JITTER": "0",
            "FIELDFLOW_LOG_LEVEL": "debug",
        }
    )

    assert settings.sqlite_path == Path("/tmp/fieldflow/fieldflow.sqlite")
    assert settings.lease_seconds == 30
    assert settings.max_attempts == 3
    assert settings.backoff_jitter == 0.0
    assert settings.log_level == "DEBUG"


@pytest.mark.parametrize(
    ("key", "value"),
    [
        ("FIELDFLOW_LEASE_SECONDS", "soon"),
        ("FIELDFLOW_LEASE_SECONDS", "0"),
        ("FIELDFLOW_MAX_ATTEMPTS", "0"),
        ("FIELDFLOW_BACKOFF_JITTER", "1.5"),
        ("FIELDFLOW_PLAN_MAX_RECORDS", "-1"),
    ],
)
def test_settings_reject_invalid_values(key: str, value: str) -> None:
    with pytest.raises(ValueError, match=f"invalid_setting:{key}"):
        PropagationSettings.from_env({key: value})


def test_sqlite_connection_uses_wal_and_busy_timeout(tmp_path: Path) -> None:
    db = PropagationDB(tmp_path / "store" / "fieldflow.sqlite")

    journal_mode = db.conn.execute("PRAGMA journal_mode").fetchone()[0]
    busy_timeout = db.conn.execute("PRAGMA busy_timeout").fetchone()[0]

    assert str(journal_mode).lower() == "wal"
    assert int(busy_timeout) == 5000


def test_transaction_rolls_back_on_error() -> None:
    db = PropagationDB()
    records = SQLiteRecordStore(db)

    with pytest.raises(RuntimeError):
        with db.transaction():
            records.insert_record("T", "r1", {"a": 1})
            raise RuntimeError("boom")

    assert records.get_record("T", "r1") is None


def test_nested_transaction_failure_only_undoes_inner_writes() -> None:
    db = PropagationDB()
    records = SQLiteRecordStore(db)

    with db.transaction():
        records.insert_record("T", "r1", {"a": 1})
        with pytest.raises(RuntimeError):
            with db.transaction():
                records.insert_record("T", "r2", {"a": 2})
                raise RuntimeError("inner")

    assert records.list_record_ids("T") == ["r1"]


def test_rollback_only_discards_writes() -> None:
    db = PropagationDB()
    records = SQLiteRecordStore(db)
    records.insert_record("T", "r1", {"a": 1})

    with db.rollback_only():
        records.write_values("T", "r1", {"a": 2})
        assert records.get_record("T", "r1")["fields"] == {"a": 2}

    assert records.get_record("T", "r1")["fields"] == {"a": 1}


def test_record_store_writes_cells_and_follows_links() -> None:
    records = SQLiteRecordStore(PropagationDB())
    records.insert_record("Orders", "o1", {"items": ["r1", "r2"]})
    records.insert_record("Orders", "o2", {"items": "r2"})
    records.insert_record("Orders", "o3", {})

    assert records.write_values("Orders", "o1", {"total": 3, "note": None}) is True
    assert records.write_values("Orders", "missing", {"total": 1}) is False
    assert records.get_records("Orders", ["o1", "missing"]) == {
        "o1": {"items": ["r1", "r2"], "total": 3, "note": None}
    }
    assert records.find_linking_records("Orders", "items", ["r2"]) == ["o1", "o2"]
    assert records.find_linking_records("Orders", "items", ["r9"]) == []
    assert records.count_records("Orders") == 3
    with pytest.raises(LookupError, match="record_not_found"):
        records.update_record("Orders", "missing", {"total": 1})


def test_timestamps_round_trip_in_utc() -> None:
    now = utc_now()

    assert from_iso(to_iso(now)) == now
    assert to_iso(now).endswith("Z")
