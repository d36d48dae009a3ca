import json
import sqlite3
import unittest.mock as mock

import pytest

from livequery.canonical_json import record_key
from livequery.cli import main
from livequery.operation_log import OperationLog
from livequery.persistence import PersistSnapshot, SqliteCache
from livequery.record_store import Record


@pytest.fixture
def cache_db(tmp_path):
    db = tmp_path / "cache.db"
    op = OperationLog(clock=lambda: 5.0).new_operation("create", "task", {"title": "draft"})
    SqliteCache(db).write(PersistSnapshot(
        records={record_key("task", 1): Record("task", 1, {"title": "one"}).to_dict()},
        operations=[op.to_dict()],
    ))
    return db, op


def _corrupt(db):
    conn = sqlite3.connect(db)
    with conn:
        conn.execute("INSERT INTO records(key, body) VALUES('task:2', 'garbage')")
    conn.close()


def test_help(capsys):
    with pytest.raises(SystemExit) as e:
        main(["--help"])
    assert e.value.code == 0
    assert "livequery local cache maintenance" in capsys.readouterr().out


def test_inspect(cache_db, capsys):
    db, op = cache_db
    main(["inspect", str(db)])
    out = capsys.readouterr().out
    assert "records" in out
    assert "Pending operations: 1" in out
    assert op.correlation_id in out
    assert op.temp_identity in out


def test_verify_passes_on_clean_cache(cache_db, capsys):
    db, _ = cache_db
    main(["verify", str(db)])
    assert "PASS: 2 rows" in capsys.readouterr().out


def test_verify_fails_on_corrupt_row(cache_db, capsys):
    db, _ = cache_db
    _corrupt(db)
    with pytest.raises(SystemExit) as e:
        main(["verify", str(db)])
    assert e.value.code == 1
    out = capsys.readouterr().out
    assert "FAIL" in out
    assert "1 of 3 rows failed verification" in out


def test_purge_then_verify(cache_db, capsys):
    db, _ = cache_db
    _corrupt(db)
    main(["purge", str(db)])
    assert "Purged 1 corrupt row(s)." in capsys.readouterr().out
    main(["verify", str(db)])
    assert "PASS" in capsys.readouterr().out


def test_dump_table(cache_db, capsys):
    db, _ = cache_db
    main(["dump", str(db), "--table", "records"])
    rows = json.loads(capsys.readouterr().out)
    assert rows[record_key("task", 1)]["fields"] == {"title": "one"}


def test_keygen_and_encrypted_verify(tmp_path, capsys):
    key_file = tmp_path / "cache.key"
    main(["keygen", "--out", str(key_file)])
    db = tmp_path / "enc.db"
    SqliteCache(db, key_file.read_text().strip()).write(PersistSnapshot(
        records={record_key("task", 1): Record("task", 1, {}).to_dict()},
    ))
    main(["verify", str(db), "--key-file", str(key_file)])
    assert "PASS: 1 rows" in capsys.readouterr().out

    with pytest.raises(SystemExit):
        main(["verify", str(db)])


def test_keygen_refuses_overwrite(tmp_path, capsys):
    key_file = tmp_path / "cache.key"
    key_file.write_text("existing")
    with pytest.raises(SystemExit) as e:
        main(["keygen", "--out", str(key_file)])
    assert e.value.code == 1
    assert key_file.read_text() == "existing"


def test_missing_database(tmp_path, capsys):
    with pytest.raises(SystemExit) as e:
        main(["inspect", str(tmp_path / "absent.db")])
    assert e.value.code == 1
    assert "Cache database not found" in capsys.readouterr().out


def test_main_routes_to_command(tmp_path):
    with mock.patch("livequery.cli.cmd_dump") as mock_dump:
        main(["--log-level", "DEBUG", "dump", "some.db", "--table", "operation_log"])
        args = mock_dump.call_args[0][0]
        assert args.db == "some.db"
        assert args.table == "operation_log"
        assert args.log_level == "DEBUG"


def test_unreadable_database_file(tmp_path, capsys):
    db = tmp_path / "cache.db"
    db.write_bytes(b"not a database\x00" * 64)
    with pytest.raises(SystemExit) as e:
        main(["verify", str(db)])
    assert e.value.code == 1
    assert "LQ_E300" in capsys.readouterr().out
    # The maintenance tool reports the damage but leaves the file in place.
    assert db.read_bytes().startswith(b"not a database")
