# storage/audit_sink.py
"""Append-only sinks for Guard Agent audit entries."""

from __future__ import annotations

import asyncio
import os
import threading
from typing import Protocol

from config import AUDIT_LOG_PATH
from core.errors import StorageError

from models import AuditEntry


class AuditSink(Protocol):
    async def append(self, entry: AuditEntry) -> None: ...


class JsonlAuditSink:
    """Write one JSON document per line and fsync before returning."""

    def __init__(self, path: str = AUDIT_LOG_PATH) -> None:
        self.path = path
        self._lock = threading.Lock()
        log_dir = os.path.dirname(self.path)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)

    async def append(self, entry: AuditEntry) -> None:
        line = entry.model_dump_json() + "\n"
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._append_sync, line)
        except OSError as exc:
            raise StorageError(f"Could not append audit entry to {self.path}: {exc}") from exc

    def _append_sync(self, line: str) -> None:
        with self._lock:
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(line)
                f.flush()
                os.fsync(f.fileno())

    def read_all(self) -> list[AuditEntry]:
        """Load every entry written so far."""
        if not os.path.exists(self.path):
            return []
        with open(self.path, encoding="utf-8") as f:
            return [AuditEntry.model_validate_json(line) for line in f if line.strip()]


class InMemoryAuditSink:
    """Keeps entries in a list; used by tests and embedded callers."""

    def __init__(self) -> None:
        self.entries: list[AuditEntry] = []

    async def append(self, entry: AuditEntry) -> None:
        self.entries.append(entry)

    def for_request(self, request_id: str) -> list[AuditEntry]:
        return [e for e in self.entries if e.request_id == request_id]
