import os
import subprocess
import sys
import textwrap
from datetime import datetime, timedelta, timezone

import pytest

from conftest import DIGEST, DIGEST_2
from cwr import db
from cwr.history import HISTORY_FILE, HistoryConfigError, HistoryError, RunHistory


def _lines(data_dir):
    with open(os.path.join(data_dir, HISTORY_FILE), encoding="utf-8") as f:
        return f.read().splitlines()


def test_mark_then_has_run(data_dir):
    h = RunHistory(data_dir)
    assert h.has_run(DIGEST) is False
    h.mark_run(DIGEST)
    assert h.has_run(DIGEST) is True
    assert h.has_run(DIGEST_2) is False


def test_history_survives_new_instance(data_dir):
    RunHistory(data_dir).mark_run(DIGEST)
    assert RunHistory(data_dir).has_run(DIGEST) is True


def test_mark_twice_keeps_one_record_with_later_time(data_dir):
    h = RunHistory(data_dir)
    first = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
    h.mark_run(DIGEST, when=first)
    h.mark_run(DIGEST, when=first + timedelta(hours=1))

    lines = _lines(data_dir)
    assert lines == [f"{DIGEST},2024-01-01T13:00:00Z"]
    assert h.records()[DIGEST] == first + timedelta(hours=1)


def test_file_is_private(data_dir):
    RunHistory(data_dir).mark_run(DIGEST)
    mode = os.stat(os.path.join(data_dir, HISTORY_FILE)).st_mode & 0o777
    assert mode == 0o600


@pytest.mark.parametrize("location", [None, ""])
def test_unset_location_is_a_config_error(location):
    h = RunHistory(location)
    with pytest.raises(HistoryConfigError):
        h.has_run(DIGEST)
    with pytest.raises(HistoryConfigError):
        h.mark_run(DIGEST)


def test_unopenable_location_is_fatal(tmp_path):
    h = RunHistory(str(tmp_path / "does-not-exist"))
    with pytest.raises(HistoryError):
        h.has_run(DIGEST)


def test_malformed_records_are_skipped(data_dir):
    with open(os.path.join(data_dir, HISTORY_FILE), "w", encoding="utf-8") as f:
        f.write(f"{DIGEST},2024-01-01T00:00:00Z\n")
        f.write("only-one-field\n")
        f.write(f"{DIGEST_2},yesterday\n")
        f.write("sha256:cccc,2024-01-01T00:00:00+02:00,extra\n")

    h = RunHistory(data_dir)
    assert h.has_run(DIGEST) is True
    assert h.has_run(DIGEST_2) is False
    assert len(db.latest_events(level="WARN")) >= 3

    # A rewrite keeps the good record and drops the bad ones.
    h.mark_run(DIGEST_2)
    assert sorted(h.records()) == [DIGEST, DIGEST_2]


def test_unclosed_quote_does_not_hide_later_records(data_dir):
    with open(os.path.join(data_dir, HISTORY_FILE), "w", encoding="utf-8") as f:
        f.write('"broken,2024-01-01T00:00:00Z\n')
        f.write(f"{DIGEST},2024-01-01T00:00:00Z\n")

    h = RunHistory(data_dir)
    assert h.has_run(DIGEST) is True
    assert any("line 1" in e["message"] for e in db.latest_events(level="WARN"))


def test_undecodable_line_is_skipped(data_dir):
    with open(os.path.join(data_dir, HISTORY_FILE), "wb") as f:
        f.write(f"{DIGEST},2024-01-01T00:00:00Z\n".encode())
        f.write(b"\xff\xfe garbage,2024-01-01T00:00:00Z\n")
        f.write(f"{DIGEST_2},2024-01-02T00:00:00Z\n".encode())

    h = RunHistory(data_dir)
    assert h.has_run(DIGEST) is True
    assert h.has_run(DIGEST_2) is True
    assert any("line 2" in e["message"] for e in db.latest_events(level="WARN"))

    # The next rewrite leaves only valid UTF-8 behind.
    h.mark_run(DIGEST, when=datetime(2023, 6, 1, tzinfo=timezone.utc))
    assert _lines(data_dir) == [f"{DIGEST},2024-01-01T00:00:00Z", f"{DIGEST_2},2024-01-02T00:00:00Z"]


def test_concurrent_processes_do_not_lose_updates(data_dir, tmp_path):
    root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
    script = textwrap.dedent(
        """
        import sys
        from cwr.history import RunHistory

        h = RunHistory(sys.argv[1])
        for i in range(25):
            h.mark_run(f"{sys.argv[2]}-{i}")
        """
    )
    env = dict(os.environ, PYTHONPATH=root, CWR_DB_PATH=str(tmp_path / "child.db"))
    procs = [
        subprocess.Popen([sys.executable, "-c", script, data_dir, prefix], env=env)
        for prefix in ("sha256:one", "sha256:two")
    ]
    for p in procs:
        assert p.wait(timeout=60) == 0

    records = RunHistory(data_dir).records()
    assert len(records) == 50
    assert "sha256:one-24" in records and "sha256:two-24" in records
