"""Command-line entry points."""
from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from retooth.cli import _parse_metadata, main
from retooth.store import SqlTimestampStore


def test_schedule_without_history_is_due_now(tmp_path: Path, capsys):
    db = tmp_path / "state.sqlite3"

    assert main(["schedule", "--db", str(db), "--json"]) == 0

    payload = json.loads(capsys.readouterr().out)
    assert payload["last_connection"] is None
    assert payload["connect_now"] is True
    assert payload["next_connection"] - payload["early_start"] == pytest.approx(360)


def test_schedule_reads_the_persisted_timestamp(tmp_path: Path, capsys):
    db = tmp_path / "state.sqlite3"
    store = SqlTimestampStore(db)
    asyncio.run(store.set_last_connection_time(1_700_000_000.0))
    store.dispose()

    assert main(["schedule", "--db", str(db), "--json"]) == 0

    payload = json.loads(capsys.readouterr().out)
    assert payload["last_connection"] == 1_700_000_000.0
    assert payload["early_start"] == 1_700_000_350.0
    assert payload["next_connection"] == 1_700_000_360.0


def test_schedule_table_output(tmp_path: Path):
    assert main(["schedule", "--db", str(tmp_path / "state.sqlite3")]) == 0


def test_connect_rejects_a_malformed_address(tmp_path: Path):
    with pytest.raises(SystemExit) as excinfo:
        main(["connect", "not-an-address", "--db", str(tmp_path / "s.sqlite3"), "--log", str(tmp_path / "m.csv")])
    assert excinfo.value.code == 2


def test_connect_rejects_bad_metadata(tmp_path: Path):
    with pytest.raises(SystemExit) as excinfo:
        main(["connect", "AA:BB:CC:DD:EE:FF", "--metadata", "[1]", "--db", str(tmp_path / "s.sqlite3")])
    assert excinfo.value.code == 2


def test_parse_metadata():
    assert _parse_metadata(None) == {}
    assert _parse_metadata('{"role": "lab"}') == {"role": "lab"}
    with pytest.raises(ValueError):
        _parse_metadata("{oops")
