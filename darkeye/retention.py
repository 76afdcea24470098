#!/usr/bin/env python3
"""Storage retention: age and quota enforcement over the recordings tree.

Every cycle rescans the storage root from scratch; there is no persisted
index, so files removed out of band are simply not seen again. Scan cost
grows with the file count (thousands of segments are fine).

Per cycle:
1. age pass: delete files older than ``retention_hours`` (if > 0)
2. quota pass: while the survivors exceed ``max_storage_gb`` (if > 0),
   delete the oldest first

Deletion errors are logged per file and never abort the cycle.
"""

from __future__ import annotations

import logging
import os
import stat
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable

from darkeye.models import Settings
from darkeye.scheduling import PeriodicWorker
from darkeye.store import StoreError

log = logging.getLogger("retention")

DEFAULT_INTERVAL_SEC = 3600.0
GIB = 1024 ** 3


@dataclass(frozen=True)
class RetentionFile:
    path: Path
    size: int
    mtime: float


@dataclass
class RetentionReport:
    root: Path
    scanned: int = 0
    total_bytes: int = 0
    remaining_bytes: int = 0
    deleted_by_age: list[Path] = field(default_factory=list)
    deleted_by_quota: list[Path] = field(default_factory=list)
    errors: list[tuple[Path, str]] = field(default_factory=list)

    @property
    def deleted(self) -> list[Path]:
        return self.deleted_by_age + self.deleted_by_quota

    def any_actions(self) -> bool:
        return bool(self.deleted_by_age or self.deleted_by_quota or self.errors)

    def to_dict(self) -> dict:
        return {
            "root": str(self.root),
            "scanned": self.scanned,
            "total_bytes": self.total_bytes,
            "remaining_bytes": self.remaining_bytes,
            "deleted_by_age": [str(p) for p in self.deleted_by_age],
            "deleted_by_quota": [str(p) for p in self.deleted_by_quota],
            "errors": [{"path": str(p), "error": msg} for p, msg in self.errors],
        }


def scan_files(root: Path) -> list[RetentionFile]:
    """Every regular file below ``root``, timelapse subdirectories included."""
    files: list[RetentionFile] = []

    def _scan_error(exc: OSError) -> None:
        log.warning("Error scanning %s: %s", exc.filename, exc.strerror or exc)

    for dirpath, _dirnames, filenames in os.walk(root, onerror=_scan_error):
        for name in filenames:
            path = Path(dirpath) / name
            try:
                st = path.lstat()
            except OSError as exc:
                # Rotated away or deleted between listing and stat.
                log.debug("Skipping %s: %s", path, exc)
                continue
            if not stat.S_ISREG(st.st_mode):
                continue
            files.append(RetentionFile(path=path, size=st.st_size, mtime=st.st_mtime))
    return files


def _delete(file: RetentionFile, remove: Callable[[Path], None], report: RetentionReport) -> bool:
    try:
        remove(file.path)
    except OSError as exc:
        log.error("Failed to delete %s: %s", file.path, exc)
        report.errors.append((file.path, str(exc)))
        return False
    return True


def apply_age_policy(
    files: Iterable[RetentionFile],
    max_age_seconds: float,
    *,
    now: float,
    report: RetentionReport,
    remove: Callable[[Path], None] = os.remove,
) -> list[RetentionFile]:
    """Delete files older than ``max_age_seconds``; return the survivors.

    Expired files that fail to delete are not carried into the survivors.
    """
    survivors: list[RetentionFile] = []
    for file in files:
        age = now - file.mtime
        if age <= max_age_seconds:
            survivors.append(file)
            continue
        log.info("Deleting old file: %s (%.1f hrs old)", file.path.name, age / 3600.0)
        if _delete(file, remove, report):
            report.deleted_by_age.append(file.path)
    return survivors


def apply_quota_policy(
    files: Iterable[RetentionFile],
    max_bytes: int,
    *,
    report: RetentionReport,
    remove: Callable[[Path], None] = os.remove,
) -> list[RetentionFile]:
    """Delete oldest-first until the total is at or below ``max_bytes``."""
    ordered = sorted(files, key=lambda f: f.mtime)
    total = sum(f.size for f in ordered)
    log.info("Current size: %.2f GB / Limit: %.2f GB", total / GIB, max_bytes / GIB)
    remaining: list[RetentionFile] = []
    for file in ordered:
        if total <= max_bytes:
            remaining.append(file)
            continue
        log.info("Quota exceeded. Deleting: %s", file.path.name)
        if _delete(file, remove, report):
            total -= file.size
            report.deleted_by_quota.append(file.path)
        else:
            remaining.append(file)
    return remaining


class RetentionEngine:
    def __init__(
        self,
        settings_loader: Callable[[], Settings],
        *,
        clock: Callable[[], float] = time.time,
        remove: Callable[[Path], None] = os.remove,
    ) -> None:
        self._settings_loader = settings_loader
        self._clock = clock
        self._remove = remove
        self._cycle_lock = threading.Lock()
        self._worker: PeriodicWorker | None = None
        self._worker_lock = threading.Lock()
        self.last_report: RetentionReport | None = None

    def run_cycle(self) -> RetentionReport:
        """Scan the storage root once and apply both passes."""
        settings = self._settings_loader()
        root = Path(settings.storage_path)
        report = RetentionReport(root=root)
        with self._cycle_lock:
            if not root.is_dir():
                log.info("Storage root %s does not exist; nothing to clean", root)
                self.last_report = report
                return report

            log.info("Running cleanup check on %s", root)
            files = scan_files(root)
            report.scanned = len(files)
            report.total_bytes = sum(f.size for f in files)

            if settings.retention_seconds > 0:
                files = apply_age_policy(
                    files,
                    settings.retention_seconds,
                    now=self._clock(),
                    report=report,
                    remove=self._remove,
                )
            if settings.max_storage_bytes > 0:
                files = apply_quota_policy(
                    files, settings.max_storage_bytes, report=report, remove=self._remove
                )

            report.remaining_bytes = sum(f.size for f in files)
            self.last_report = report
        if report.any_actions():
            log.info(
                "Cleanup removed %d files (%d by age, %d by quota, %d errors)",
                len(report.deleted), len(report.deleted_by_age),
                len(report.deleted_by_quota), len(report.errors),
            )
        return report

    def interval_seconds(self) -> float:
        try:
            interval = self._settings_loader().cleanup_interval_seconds
        except StoreError as exc:
            log.error("Cannot read cleanup interval; using default: %s", exc)
            return DEFAULT_INTERVAL_SEC
        return interval if interval > 0 else DEFAULT_INTERVAL_SEC

    # --- Scheduler ---
    def start(self) -> None:
        """Run a cycle now, then every ``cleanup_interval_min`` minutes."""
        with self._worker_lock:
            if self._worker is not None:
                return
            log.info("Starting cleanup scheduler (every %.0f mins)", self.interval_seconds() / 60.0)
            self._worker = PeriodicWorker(
                "retention", self.interval_seconds, self.run_cycle, run_immediately=True, logger=log
            )
            self._worker.start()

    def stop(self) -> None:
        with self._worker_lock:
            worker = self._worker
            self._worker = None
        if worker is not None:
            worker.stop()

    def restart(self) -> None:
        """Apply a changed interval setting."""
        self.stop()
        self.start()

    @property
    def running(self) -> bool:
        with self._worker_lock:
            return self._worker is not None and self._worker.running
