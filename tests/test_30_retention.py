from __future__ import annotations

import logging
import os
from pathlib import Path

import pytest

from darkeye.models import Settings
from darkeye.retention import (
    RetentionEngine,
    RetentionFile,
    RetentionReport,
    apply_age_policy,
    apply_quota_policy,
    scan_files,
)
from darkeye.store import StoreError

NOW = 1_700_000_000.0
HOUR = 3600.0


def _write(path: Path, size: int, age_hours: float) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"\0" * size)
    mtime = NOW - age_hours * HOUR
    os.utime(path, (mtime, mtime))
    return path


def _engine(root, clock=lambda: NOW, **settings):
    values = dict(storage_path=str(root), max_storage_gb=0, retention_hours=72, cleanup_interval_min=60)
    values.update(settings)
    return RetentionEngine(lambda: Settings(**values), clock=clock)


def test_age_policy_deletes_only_expired_files(tmp_path):
    fresh = _write(tmp_path / "CAM1" / "a.mkv", 10, 10)
    old = _write(tmp_path / "CAM1" / "b.mkv", 10, 80)
    ancient = _write(tmp_path / "CAM2" / "timelapse" / "c.mkv", 10, 200)

    report = _engine(tmp_path).run_cycle()

    assert fresh.exists()
    assert not old.exists()
    assert not ancient.exists()
    assert sorted(report.deleted_by_age) == sorted([old, ancient])
    assert report.deleted_by_quota == []
    assert report.scanned == 3
    assert report.remaining_bytes == 10


def test_zero_retention_hours_disables_age_pass(tmp_path):
    old = _write(tmp_path / "CAM1" / "b.mkv", 10, 500)

    report = _engine(tmp_path, retention_hours=0).run_cycle()

    assert old.exists()
    assert not report.any_actions()


def test_quota_policy_deletes_oldest_first():
    gib = 1024 ** 3
    report = RetentionReport(root=Path("/rec"))
    files = [
        RetentionFile(Path("/rec/c.mkv"), gib, NOW - 1 * HOUR),
        RetentionFile(Path("/rec/a.mkv"), gib, NOW - 3 * HOUR),
        RetentionFile(Path("/rec/b.mkv"), gib, NOW - 2 * HOUR),
    ]
    removed = []

    remaining = apply_quota_policy(files, int(1.5 * gib), report=report, remove=removed.append)

    assert removed == [Path("/rec/a.mkv"), Path("/rec/b.mkv")]
    assert [f.path for f in remaining] == [Path("/rec/c.mkv")]
    assert report.deleted_by_quota == removed


def test_quota_policy_noop_when_under_limit():
    report = RetentionReport(root=Path("/rec"))
    files = [RetentionFile(Path("/rec/a.mkv"), 100, NOW)]
    removed = []

    assert apply_quota_policy(files, 100, report=report, remove=removed.append) == files
    assert removed == []


def test_quota_failure_is_logged_and_next_file_tried(caplog):
    caplog.set_level(logging.ERROR, logger="retention")
    report = RetentionReport(root=Path("/rec"))
    files = [
        RetentionFile(Path("/rec/a.mkv"), 100, NOW - 3 * HOUR),
        RetentionFile(Path("/rec/b.mkv"), 100, NOW - 2 * HOUR),
        RetentionFile(Path("/rec/c.mkv"), 100, NOW - 1 * HOUR),
    ]
    removed = []

    def remove(path):
        if path.name == "a.mkv":
            raise PermissionError("busy")
        removed.append(path)

    remaining = apply_quota_policy(files, 150, report=report, remove=remove)

    assert removed == [Path("/rec/b.mkv"), Path("/rec/c.mkv")]
    assert [f.path for f in remaining] == [Path("/rec/a.mkv")]
    assert report.errors == [(Path("/rec/a.mkv"), "busy")]
    assert "Failed to delete" in caplog.text


def test_age_failure_is_not_counted_as_survivor(caplog):
    caplog.set_level(logging.ERROR, logger="retention")
    report = RetentionReport(root=Path("/rec"))
    files = [
        RetentionFile(Path("/rec/old.mkv"), 100, NOW - 100 * HOUR),
        RetentionFile(Path("/rec/new.mkv"), 100, NOW - 1 * HOUR),
    ]

    def remove(path):
        raise OSError("read-only file system")

    survivors = apply_age_policy(files, 72 * HOUR, now=NOW, report=report, remove=remove)

    assert [f.path for f in survivors] == [Path("/rec/new.mkv")]
    assert report.deleted_by_age == []
    assert len(report.errors) == 1


def test_cycle_runs_quota_after_age(tmp_path):
    gib = 1024 ** 3
    _write(tmp_path / "CAM1" / "expired.mkv", 400, 100)
    oldest = _write(tmp_path / "CAM1" / "older.mkv", 400, 5)
    newest = _write(tmp_path / "CAM1" / "newer.mkv", 400, 1)

    # 600 bytes expressed in GB
    report = _engine(tmp_path, max_storage_gb=600 / gib).run_cycle()

    assert len(report.deleted_by_age) == 1
    assert report.deleted_by_quota == [oldest]
    assert newest.exists()
    assert report.remaining_bytes == 400


def test_missing_root_yields_empty_report(tmp_path):
    report = _engine(tmp_path / "missing").run_cycle()

    assert report.scanned == 0
    assert not report.any_actions()


def test_scan_ignores_symlinks(tmp_path):
    real = _write(tmp_path / "CAM1" / "a.mkv", 5, 1)
    (tmp_path / "CAM1" / "link.mkv").symlink_to(real)

    assert [f.path for f in scan_files(tmp_path)] == [real]


def test_interval_falls_back_when_settings_unreadable():
    def broken():
        raise StoreError("locked")

    assert RetentionEngine(broken).interval_seconds() == 3600.0


@pytest.mark.parametrize(("minutes", "expected"), [(30, 1800.0), (0, 3600.0), (-5, 3600.0)])
def test_interval_from_settings(tmp_path, minutes, expected):
    assert _engine(tmp_path, cleanup_interval_min=minutes).interval_seconds() == expected


def test_report_to_dict(tmp_path):
    old = _write(tmp_path / "CAM1" / "b.mkv", 10, 80)
    payload = _engine(tmp_path).run_cycle().to_dict()

    assert payload["deleted_by_age"] == [str(old)]
    assert payload["errors"] == []
    assert payload["root"] == str(tmp_path)
