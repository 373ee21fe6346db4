"""Run-history store.

Remembers, per key (a content digest, or digest#service for compose
services), when a workload was last started. The whole record set lives in a
single CSV file that is read, modified and rewritten under an exclusive
``flock`` for every call, so concurrent instances on the same host see a
consistent view and never lose an update.
"""
from __future__ import annotations

import csv
import fcntl
import io
import os
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import IO, Iterator

from .db import log_event

HISTORY_FILE = "has-run.status"
TS_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


class HistoryError(RuntimeError):
    pass


class HistoryConfigError(HistoryError):
    pass


def format_ts(ts: datetime) -> str:
    return ts.astimezone(timezone.utc).strftime(TS_FORMAT)


def parse_ts(raw: str) -> datetime:
    raw = raw.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    ts = datetime.fromisoformat(raw)
    if ts.tzinfo is None:
        raise ValueError(f"timestamp {raw!r} has no offset")
    return ts


class RunHistory:
    def __init__(self, data_dir: str | None):
        self.data_dir = data_dir

    @property
    def path(self) -> str:
        if not self.data_dir:
            raise HistoryConfigError("run-history location is not set (CWR_DATA_DIR)")
        return os.path.join(self.data_dir, HISTORY_FILE)

    @contextmanager
    def _locked(self) -> Iterator[IO[bytes]]:
        path = self.path
        try:
            fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o600)
        except OSError as e:
            raise HistoryError(f"unable to open {path}: {e}") from e
        with os.fdopen(fd, "r+b") as fh:
            try:
                fcntl.flock(fh.fileno(), fcntl.LOCK_EX)
            except OSError as e:
                raise HistoryError(f"unable to lock {path}: {e}") from e
            try:
                yield fh
            finally:
                fcntl.flock(fh.fileno(), fcntl.LOCK_UN)

    def _read(self, fh: IO[bytes]) -> dict[str, datetime]:
        fh.seek(0)
        try:
            content = fh.read()
        except OSError as e:
            raise HistoryError(f"unable to read {self.path}: {e}") from e

        # Each line is decoded and parsed on its own so one bad line cannot hide the rest.
        records: dict[str, datetime] = {}
        for lineno, raw in enumerate(content.split(b"\n"), start=1):
            raw = raw.rstrip(b"\r")
            if not raw.strip():
                continue
            try:
                line = raw.decode("utf-8")
                row = next(csv.reader([line], strict=True))
            except (UnicodeDecodeError, csv.Error) as e:
                log_event("WARN", f"Skipping unreadable run-history line {lineno}: {e}")
                continue
            if len(row) != 2 or not row[0]:
                log_event("WARN", f"Skipping malformed run-history record on line {lineno}: {row!r}")
                continue
            try:
                records[row[0]] = parse_ts(row[1])
            except ValueError:
                log_event("WARN", f"Skipping run-history record with bad timestamp {row[1]!r}", digest=row[0])
                continue
        return records

    def _write(self, fh: IO[bytes], records: dict[str, datetime]) -> None:
        buf = io.StringIO()
        writer = csv.writer(buf, lineterminator="\n")
        for key in sorted(records):
            writer.writerow([key, format_ts(records[key])])
        try:
            fh.seek(0)
            fh.truncate()
            fh.write(buf.getvalue().encode("utf-8"))
            fh.flush()
            os.fsync(fh.fileno())
        except OSError as e:
            raise HistoryError(f"unable to write {self.path}: {e}") from e

    def records(self) -> dict[str, datetime]:
        with self._locked() as fh:
            return self._read(fh)

    def has_run(self, key: str) -> bool:
        with self._locked() as fh:
            return key in self._read(fh)

    def mark_run(self, key: str, when: datetime | None = None) -> None:
        with self._locked() as fh:
            records = self._read(fh)
            when = when or datetime.now(timezone.utc)
            prev = records.get(key)
            records[key] = max(prev, when) if prev else when
            self._write(fh, records)
