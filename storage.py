# storage.py
import os
import shutil
import sqlite3
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path

ACCEPTED_EXTENSIONS = ("mp4", "mov")


class Storage:
    """Runtime configuration kept in a small sqlite table."""

    def __init__(self, db_path="silencectl.db"):
        self.conn = sqlite3.connect(db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row

        self.conn.execute("PRAGMA journal_mode=WAL;")
        self.conn.execute("PRAGMA synchronous=NORMAL;")

        self._init_schema()

    def _init_schema(self):
        self.conn.execute("""
        CREATE TABLE IF NOT EXISTS config (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """)
        self.conn.commit()

    # ---------------- Config helpers ----------------
    def get_config(self, key, default=None):
        """Config table first, then the upper-cased environment variable, then `default`."""
        cur = self.conn.cursor()
        cur.execute("SELECT value FROM config WHERE key=?", (key,))
        row = cur.fetchone()
        if row:
            return row["value"]
        return os.environ.get(key.upper(), default)

    def set_config(self, key, value):
        now = datetime.now(timezone.utc).isoformat()
        self.conn.execute("""
            INSERT INTO config (key, value, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at
        """, (key, str(value), now))
        self.conn.commit()

    def list_config(self):
        cur = self.conn.cursor()
        cur.execute("SELECT key, value, updated_at FROM config ORDER BY key")
        return cur.fetchall()

    def close(self):
        self.conn.close()


class FileStorage:
    """
    Locates uploaded and processed videos inside one directory:
    <root>/<id>.<mp4|mov> for originals, <root>/<id>_cut.mp4 for results.
    """

    def __init__(self, root="/tmp/videos"):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _find(self, base):
        for ext in ACCEPTED_EXTENSIONS:
            path = self.root / f"{base}.{ext}"
            if path.exists():
                return str(path)
        return str(self.root / f"{base}.mp4")

    def resolve_input_path(self, video_id):
        return self._find(video_id)

    def resolve_output_path(self, video_id):
        return str(self.root / f"{video_id}_cut.mp4")

    def path_exists(self, path):
        return os.path.isfile(path)

    def import_file(self, src, video_id=None):
        """Copy a local video into storage. Returns (video_id, stored path)."""
        src = Path(src)
        ext = src.suffix.lstrip(".").lower() or "mp4"
        if ext not in ACCEPTED_EXTENSIONS:
            raise ValueError(f"Unsupported extension .{ext} (accepted: {', '.join(ACCEPTED_EXTENSIONS)})")
        video_id = video_id or str(uuid.uuid4())
        dest = self.root / f"{video_id}.{ext}"
        shutil.copyfile(src, dest)
        return video_id, str(dest)

    def delete_files(self, video_id):
        removed = 0
        candidates = [self.root / f"{video_id}.{ext}" for ext in ACCEPTED_EXTENSIONS]
        candidates.append(Path(self.resolve_output_path(video_id)))
        for path in candidates:
            try:
                path.unlink()
                removed += 1
            except FileNotFoundError:
                pass
        return removed

    def cleanup_old_files(self, max_age_minutes=15):
        """Delete files whose mtime is older than `max_age_minutes`. Returns the count."""
        cutoff = time.time() - max_age_minutes * 60
        deleted = 0
        for path in self.root.iterdir():
            if not path.is_file():
                continue
            try:
                if path.stat().st_mtime < cutoff:
                    path.unlink()
                    deleted += 1
            except OSError as e:
                print(f"[cleanup] Failed to delete old file {path.name}: {e}")
        return deleted
