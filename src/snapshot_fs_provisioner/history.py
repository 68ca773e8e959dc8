from __future__ import annotations

from pathlib import Path
import sqlite3
from typing import Any

from .config import ProvisionerConfig
from .models import ProbeRecord


class ProbeHistoryStore:
    """Record of probe runs kept for the lifetime of the reconciling process.

    Callers create one store and hand it to each reconciler; nothing in this
    package keeps a module-level instance.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    @classmethod
    def from_config(cls, config: ProvisionerConfig) -> ProbeHistoryStore:
        store = cls(config.history_db_path)
        store.initialize()
        return store

    def initialize(self) -> None:
        with sqlite3.connect(self.db_path) as connection:
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS probe_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    namespace TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    pod_name TEXT NOT NULL,
                    status TEXT NOT NULL,
                    fingerprint TEXT,
                    message TEXT,
                    created_at TEXT NOT NULL
                )
                """
            )
            connection.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_probe_history_lookup
                ON probe_history(namespace, kind, status, created_at)
                """
            )
            connection.commit()

    def record(self, record: ProbeRecord) -> None:
        with sqlite3.connect(self.db_path) as connection:
            connection.execute(
                """
                INSERT INTO probe_history (
                    namespace,
                    kind,
                    pod_name,
                    status,
                    fingerprint,
                    message,
                    created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.namespace,
                    record.kind,
                    record.pod_name,
                    record.status,
                    record.fingerprint,
                    record.message,
                    record.created_at,
                ),
            )
            connection.commit()

    def last_marked_fingerprint(self, namespace: str) -> str | None:
        with sqlite3.connect(self.db_path) as connection:
            cursor = connection.execute(
                """
                SELECT fingerprint
                FROM probe_history
                WHERE namespace = ? AND kind = 'keys-sha' AND status = 'success'
                ORDER BY created_at DESC, id DESC
                LIMIT 1
                """,
                (namespace,),
            )
            row = cursor.fetchone()

        return row[0] if row else None

    def recent(self, namespace: str | None = None, limit: int = 50) -> list[dict[str, Any]]:
        if limit <= 0:
            return []

        query = """
            SELECT namespace, kind, pod_name, status, fingerprint, message, created_at
            FROM probe_history
        """
        params: tuple[Any, ...] = ()
        if namespace is not None:
            query += " WHERE namespace = ?"
            params = (namespace,)
        query += " ORDER BY created_at DESC, id DESC LIMIT ?"

        with sqlite3.connect(self.db_path) as connection:
            rows = connection.execute(query, (*params, limit)).fetchall()

        return [
            {
                "namespace": row[0],
                "kind": row[1],
                "pod_name": row[2],
                "status": row[3],
                "fingerprint": row[4],
                "message": row[5],
                "created_at": row[6],
            }
            for row in rows
        ]
