"""SQLite persistence for camera records and operator settings."""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import closing
from pathlib import Path
from typing import Any, Iterable, Mapping

from darkeye.models import CameraConfig, Settings

log = logging.getLogger("store")

_CAMERA_COLUMNS: list[tuple[str, str]] = [
    ("id", "TEXT PRIMARY KEY"),
    ("name", "TEXT NOT NULL"),
    ("type", "TEXT NOT NULL DEFAULT 'rtsp'"),
    ("url", "TEXT NOT NULL DEFAULT ''"),
    ("username", "TEXT NOT NULL DEFAULT ''"),
    ("password", "TEXT NOT NULL DEFAULT ''"),
    ("record_enabled", "INTEGER NOT NULL DEFAULT 1"),
    ("record_mode", "TEXT NOT NULL DEFAULT 'raw'"),
    ("segment_duration", "INTEGER NOT NULL DEFAULT 15"),
    ("timelapse_enabled", "INTEGER NOT NULL DEFAULT 0"),
    ("timelapse_interval", "INTEGER NOT NULL DEFAULT 5"),
    ("timelapse_duration", "INTEGER NOT NULL DEFAULT 60"),
    ("substream_url", "TEXT"),
    ("onvif_service_url", "TEXT"),
    ("ptz_enabled", "INTEGER NOT NULL DEFAULT 0"),
    ("audio_output_supported", "INTEGER NOT NULL DEFAULT 0"),
    ("created_at", "TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP"),
]

# Columns persisted from CameraConfig; "type" holds CameraConfig.kind.
_WRITABLE = [name for name, _ in _CAMERA_COLUMNS if name != "created_at"]


class StoreError(RuntimeError):
    """Raised when the database cannot be opened, migrated or queried."""


class CameraStore:
    """Camera records keyed by id plus string key/value settings.

    Every call opens its own short-lived connection, so the store can be
    shared between the scheduler threads and the HTTP executor.
    """

    def __init__(self, db_path: Path | str, *, settings_defaults: Settings) -> None:
        self._db_path = Path(db_path)
        self._defaults = settings_defaults
        self._mutex = threading.Lock()
        try:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StoreError(f"cannot create database directory {self._db_path.parent}: {exc}") from exc
        self._ensure_schema()

    @property
    def path(self) -> Path:
        return self._db_path

    # ------------------------------------------------------------------
    # Cameras
    def list_cameras(self) -> list[CameraConfig]:
        rows = self._query("SELECT * FROM cameras ORDER BY created_at, id")
        return [self._row_to_camera(row) for row in rows]

    def get_camera(self, camera_id: str) -> CameraConfig | None:
        rows = self._query("SELECT * FROM cameras WHERE id = ?", (camera_id,))
        if not rows:
            return None
        return self._row_to_camera(rows[0])

    def save_camera(self, camera: CameraConfig) -> CameraConfig:
        values = self._camera_values(camera)
        placeholders = ", ".join("?" for _ in _WRITABLE)
        updates = ", ".join(f"{name} = excluded.{name}" for name in _WRITABLE if name != "id")
        sql = (
            f"INSERT INTO cameras ({', '.join(_WRITABLE)}) VALUES ({placeholders}) "
            f"ON CONFLICT(id) DO UPDATE SET {updates}"
        )
        self._execute(sql, [values[name] for name in _WRITABLE])
        return camera

    def delete_camera(self, camera_id: str) -> bool:
        return self._execute("DELETE FROM cameras WHERE id = ?", (camera_id,)) > 0

    # ------------------------------------------------------------------
    # Settings
    def load_settings(self) -> Settings:
        rows = self._query("SELECT key, value FROM settings")
        values = {row["key"]: row["value"] for row in rows}
        return Settings.from_mapping(values, self._defaults)

    def update_settings(self, values: Mapping[str, Any]) -> Settings:
        unknown = set(values) - set(Settings.KEYS)
        if unknown:
            raise ValueError(f"unknown settings: {', '.join(sorted(unknown))}")
        self._executemany(
            "INSERT INTO settings (key, value) VALUES (?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
            [(key, str(value)) for key, value in values.items()],
        )
        return self.load_settings()

    # ------------------------------------------------------------------
    # Internal helpers
    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, timeout=5.0)
        conn.row_factory = sqlite3.Row
        return conn

    def _query(self, sql: str, params: Iterable[Any] = ()) -> list[sqlite3.Row]:
        try:
            with closing(self._connect()) as conn:
                return conn.execute(sql, tuple(params)).fetchall()
        except sqlite3.Error as exc:
            raise StoreError(f"query failed on {self._db_path}: {exc}") from exc

    def _execute(self, sql: str, params: Iterable[Any] = ()) -> int:
        with self._mutex:
            try:
                with closing(self._connect()) as conn, conn:
                    return conn.execute(sql, tuple(params)).rowcount
            except sqlite3.Error as exc:
                raise StoreError(f"write failed on {self._db_path}: {exc}") from exc

    def _executemany(self, sql: str, rows: list[tuple[Any, ...]]) -> None:
        with self._mutex:
            try:
                with closing(self._connect()) as conn, conn:
                    conn.executemany(sql, rows)
            except sqlite3.Error as exc:
                raise StoreError(f"write failed on {self._db_path}: {exc}") from exc

    def _ensure_schema(self) -> None:
        columns = ",\n".join(f"{name} {decl}" for name, decl in _CAMERA_COLUMNS)
        try:
            with closing(self._connect()) as conn, conn:
                conn.execute(f"CREATE TABLE IF NOT EXISTS cameras (\n{columns}\n)")
                conn.execute(
                    "CREATE TABLE IF NOT EXISTS settings (key TEXT PRIMARY KEY, value TEXT NOT NULL)"
                )
                existing = {row["name"] for row in conn.execute("PRAGMA table_info(cameras)")}
                for name, decl in _CAMERA_COLUMNS:
                    if name in existing:
                        continue
                    # SQLite cannot add PRIMARY KEY or non-constant defaults later.
                    decl = decl.replace("PRIMARY KEY", "").replace("DEFAULT CURRENT_TIMESTAMP", "DEFAULT ''")
                    log.info("Adding missing cameras column %s", name)
                    conn.execute(f"ALTER TABLE cameras ADD COLUMN {name} {decl}")
                conn.executemany(
                    "INSERT OR IGNORE INTO settings (key, value) VALUES (?, ?)",
                    [(key, str(value)) for key, value in self._defaults.to_dict().items()],
                )
        except sqlite3.Error as exc:
            raise StoreError(f"cannot open database {self._db_path}: {exc}") from exc

    @staticmethod
    def _camera_values(camera: CameraConfig) -> dict[str, Any]:
        values = camera.to_dict()
        values["type"] = values.pop("kind")
        for key in ("record_enabled", "timelapse_enabled", "ptz_enabled", "audio_output_supported"):
            values[key] = 1 if values[key] else 0
        return values

    @staticmethod
    def _row_to_camera(row: sqlite3.Row) -> CameraConfig:
        return CameraConfig.from_mapping(dict(row))
