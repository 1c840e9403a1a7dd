# Copyright 2025 Vijaykumar Singh <singhvjd@gmail.com>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Durable checkpointer implementations.

Implementations:
    - FileCheckpointer: one directory per thread, one JSON file per step
    - SQLiteCheckpointer: a single SQLite database

Both keep the append-only contract of :class:`BaseCheckpointer` and extend
its single-writer lease across processes, so two executors pointed at the
same storage can never interleave steps of one thread.

Example:
    from weft.framework import FileCheckpointer, StateGraph

    checkpointer = FileCheckpointer("~/.weft/checkpoints")
    app = graph.compile(checkpointer=checkpointer)

    result = await app.run({"n": 3}, thread_id="job-42")

    # After a crash, continue from the last persisted step
    result = await app.resume_run("job-42")
"""

from __future__ import annotations

import asyncio
import builtins
import json
import logging
import os
import shutil
import socket
import sqlite3
import tempfile
import threading
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from functools import partial
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar, Union
from urllib.parse import quote

import psutil

from weft.config.settings import GraphSettings, load_settings
from weft.core.errors import CheckpointError, ThreadBusyError
from weft.framework.checkpoint import BaseCheckpointer, Checkpoint

logger = logging.getLogger(__name__)

T = TypeVar("T")

LEASE_FILE = ".lease"

_HOSTNAME = socket.gethostname()


def _lease_is_live(lease: dict[str, Any]) -> bool:
    """A lease holds until it expires or, on this host, its process is gone."""
    if float(lease.get("expires_at") or 0) <= time.time():
        return False
    pid = lease.get("pid")
    if lease.get("host") == _HOSTNAME and isinstance(pid, int) and not psutil.pid_exists(pid):
        return False
    return True


async def _run_blocking(func: Callable[..., T], *args: Any) -> T:
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, partial(func, *args))


class FileCheckpointer(BaseCheckpointer):
    """Stores each checkpoint as ``<base_dir>/<thread>/<step>.json``.

    Writes are atomic: the record goes to a temp file in the thread
    directory, is fsynced, then renamed over its final name. Readers only
    look at ``[0-9]*.json`` names, so a half-written temp file is never
    visible.

    Attributes:
        base_dir: Root directory holding one subdirectory per thread
        fsync: Whether writes are fsynced before the rename
        lease_ttl: Seconds a lease stays valid without being renewed
    """

    def __init__(
        self,
        base_dir: Union[str, Path, None] = None,
        *,
        settings: Optional[GraphSettings] = None,
        fsync: Optional[bool] = None,
        lease_ttl: Optional[float] = None,
    ):
        super().__init__()
        if base_dir is None or fsync is None or lease_ttl is None:
            settings = settings or load_settings()
        self.base_dir = Path(base_dir).expanduser() if base_dir else settings.checkpoint_dir
        self.fsync = fsync if fsync is not None else settings.fsync_checkpoints
        self.lease_ttl = lease_ttl if lease_ttl is not None else settings.lease_ttl_seconds
        self._held: dict[str, str] = {}
        self._write_lock = threading.Lock()

    def _thread_dir(self, thread_id: str) -> Path:
        if not thread_id:
            raise CheckpointError("Thread id must be a non-empty string")
        return self.base_dir / quote(thread_id, safe="").replace(".", "%2E")

    @staticmethod
    def _step_file(thread_dir: Path, step: int) -> Path:
        return thread_dir / f"{step:012d}.json"

    @staticmethod
    def _steps(thread_dir: Path) -> builtins.list[int]:
        steps = []
        for path in thread_dir.glob("[0-9]*.json"):
            try:
                steps.append(int(path.stem))
            except ValueError:
                logger.warning(f"Ignoring unexpected file in checkpoint directory: {path}")
        return sorted(steps)

    def _write_atomic(self, target: Path, payload: str) -> None:
        fd, temp_path = tempfile.mkstemp(dir=target.parent, prefix=".", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                if self.fsync:
                    os.fsync(f.fileno())
            os.replace(temp_path, target)
        except BaseException:
            Path(temp_path).unlink(missing_ok=True)
            raise
        if self.fsync:
            self._fsync_dir(target.parent)

    @staticmethod
    def _fsync_dir(directory: Path) -> None:
        flags = getattr(os, "O_DIRECTORY", None)
        if flags is None:
            return
        dir_fd = os.open(directory, os.O_RDONLY | flags)
        try:
            os.fsync(dir_fd)
        finally:
            os.close(dir_fd)

    def _read(self, path: Path, thread_id: str) -> Checkpoint:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError, UnicodeDecodeError) as e:
            raise CheckpointError(
                f"Unreadable checkpoint file {path}: {e}", thread_id=thread_id, cause=e
            ) from e
        checkpoint = Checkpoint.from_dict(data)
        if checkpoint.thread_id != thread_id:
            raise CheckpointError(
                f"Checkpoint file {path} belongs to thread {checkpoint.thread_id!r}",
                thread_id=thread_id,
                step=checkpoint.step,
            )
        return checkpoint

    # Lease handling

    def _lease_path(self, thread_id: str) -> Path:
        return self._thread_dir(thread_id) / LEASE_FILE

    def _read_lease(self, path: Path) -> Optional[dict[str, Any]]:
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError, UnicodeDecodeError):
            # A lease being written right now, or garbage: treat as expired
            return {"owner": None, "expires_at": 0}

    def _lease_payload(self, token: str) -> str:
        return json.dumps(
            {
                "owner": token,
                "pid": os.getpid(),
                "host": _HOSTNAME,
                "expires_at": time.time() + self.lease_ttl,
            }
        )

    def _acquire_lease_sync(self, thread_id: str, token: str) -> None:
        path = self._lease_path(thread_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        for _ in range(2):
            try:
                fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                current = self._read_lease(path) or {}
                if _lease_is_live(current):
                    raise ThreadBusyError(thread_id, current.get("owner")) from None
                logger.info(f"Breaking stale lease on thread {thread_id!r}")
                path.unlink(missing_ok=True)
                continue
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(self._lease_payload(token))
            return
        raise ThreadBusyError(thread_id)

    def _release_lease_sync(self, thread_id: str, token: str) -> None:
        path = self._lease_path(thread_id)
        current = self._read_lease(path)
        if current is not None and current.get("owner") == token:
            path.unlink(missing_ok=True)

    def _check_lease_sync(self, thread_id: str) -> None:
        """Refuse writes while another owner holds a live lease; renew our own."""
        path = self._lease_path(thread_id)
        current = self._read_lease(path)
        if current is None:
            return
        token = self._held.get(thread_id)
        if token is not None and current.get("owner") == token:
            self._write_atomic(path, self._lease_payload(token))
            return
        if _lease_is_live(current):
            raise ThreadBusyError(thread_id, current.get("owner"))

    @asynccontextmanager
    async def lease(self, thread_id: str) -> AsyncIterator[str]:
        async with super().lease(thread_id) as token:
            try:
                await _run_blocking(self._acquire_lease_sync, thread_id, token)
            except OSError as e:
                raise CheckpointError(
                    f"Could not acquire lease for thread {thread_id!r}: {e}",
                    thread_id=thread_id,
                    cause=e,
                ) from e
            self._held[thread_id] = token
            try:
                yield token
            finally:
                self._held.pop(thread_id, None)
                await _run_blocking(self._release_lease_sync, thread_id, token)

    # Checkpoint storage

    def _put_sync(self, thread_id: str, checkpoint: Checkpoint) -> None:
        thread_dir = self._thread_dir(thread_id)
        with self._write_lock:
            thread_dir.mkdir(parents=True, exist_ok=True)
            self._check_lease_sync(thread_id)
            steps = self._steps(thread_dir)
            self._check_append(thread_id, checkpoint, steps[-1] if steps else None)
            target = self._step_file(thread_dir, checkpoint.step)
            self._write_atomic(target, json.dumps(checkpoint.to_dict(), indent=2))
        logger.debug(f"Saved checkpoint to: {target}")

    async def put(self, thread_id: str, checkpoint: Checkpoint) -> None:
        try:
            await _run_blocking(self._put_sync, thread_id, checkpoint)
        except OSError as e:
            raise CheckpointError(
                f"Failed to write checkpoint {thread_id}@{checkpoint.step}: {e}",
                thread_id=thread_id,
                step=checkpoint.step,
                cause=e,
            ) from e

    def _get_sync(self, thread_id: str, step: Optional[int]) -> Optional[Checkpoint]:
        thread_dir = self._thread_dir(thread_id)
        if not thread_dir.is_dir():
            return None
        if step is None:
            steps = self._steps(thread_dir)
            if not steps:
                return None
            step = steps[-1]
        path = self._step_file(thread_dir, step)
        if not path.exists():
            return None
        return self._read(path, thread_id)

    async def get(self, thread_id: str, step: Optional[int] = None) -> Optional[Checkpoint]:
        return await _run_blocking(self._get_sync, thread_id, step)

    async def list(self, thread_id: str) -> AsyncIterator[Checkpoint]:
        thread_dir = self._thread_dir(thread_id)
        if not thread_dir.is_dir():
            return
        for step in await _run_blocking(self._steps, thread_dir):
            path = self._step_file(thread_dir, step)
            yield await _run_blocking(self._read, path, thread_id)

    def _delete_thread_sync(self, thread_id: str) -> int:
        thread_dir = self._thread_dir(thread_id)
        if not thread_dir.is_dir():
            return 0
        count = len(self._steps(thread_dir))
        shutil.rmtree(thread_dir)
        return count

    async def delete_thread(self, thread_id: str) -> int:
        return await _run_blocking(self._delete_thread_sync, thread_id)


class SQLiteCheckpointer(BaseCheckpointer):
    """SQLite-based checkpointer.

    ``(thread_id, step)`` is the primary key and rows are only ever
    inserted, so the database itself rejects history rewrites. Leases live
    in a second table with an expiry time.

    Example:
        checkpointer = SQLiteCheckpointer("~/.weft/checkpoints.db")
        app = graph.compile(checkpointer=checkpointer)
    """

    def __init__(
        self,
        db_path: Union[str, Path, None] = None,
        *,
        settings: Optional[GraphSettings] = None,
        table_name: str = "checkpoints",
        lease_ttl: Optional[float] = None,
    ):
        super().__init__()
        if db_path is None or lease_ttl is None:
            settings = settings or load_settings()
        self.db_path = Path(db_path).expanduser() if db_path else settings.sqlite_path
        self.table_name = table_name
        self.lease_ttl = lease_ttl if lease_ttl is not None else settings.lease_ttl_seconds
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()
        self._held: dict[str, str] = {}

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create the database connection."""
        if self._conn is None:
            if str(self.db_path) != ":memory:":
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(
                str(self.db_path), isolation_level=None, check_same_thread=False
            )
            self._conn.row_factory = sqlite3.Row
            self._init_schema(self._conn)
        return self._conn

    def _init_schema(self, conn: sqlite3.Connection) -> None:
        conn.execute(f"""
            CREATE TABLE IF NOT EXISTS {self.table_name} (
                thread_id TEXT NOT NULL,
                step INTEGER NOT NULL,
                parent_step INTEGER,
                next_node_id TEXT NOT NULL,
                state TEXT NOT NULL,
                metadata TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                PRIMARY KEY (thread_id, step)
            )
        """)
        conn.execute(f"""
            CREATE TABLE IF NOT EXISTS {self.table_name}_leases (
                thread_id TEXT PRIMARY KEY,
                owner TEXT NOT NULL,
                expires_at REAL NOT NULL
            )
        """)
        logger.debug(f"Initialized checkpoint schema: {self.db_path}")

    def _execute(self, func: Callable[[sqlite3.Connection], T]) -> T:
        with self._lock:
            conn = self._get_connection()
            try:
                return func(conn)
            except sqlite3.Error as e:
                raise CheckpointError(f"SQLite checkpoint operation failed: {e}", cause=e) from e

    @staticmethod
    def _row_to_checkpoint(row: sqlite3.Row) -> Checkpoint:
        try:
            state = json.loads(row["state"])
            metadata = json.loads(row["metadata"])
        except json.JSONDecodeError as e:
            raise CheckpointError(
                f"Corrupt checkpoint row {row['thread_id']}@{row['step']}: {e}",
                thread_id=row["thread_id"],
                step=row["step"],
                cause=e,
            ) from e
        return Checkpoint(
            thread_id=row["thread_id"],
            step=row["step"],
            state=state,
            next_node_id=row["next_node_id"],
            timestamp=row["timestamp"],
            parent_step=row["parent_step"],
            metadata=metadata,
        )

    def _put_sync(self, thread_id: str, checkpoint: Checkpoint) -> None:
        def write(conn: sqlite3.Connection) -> None:
            conn.execute("BEGIN IMMEDIATE")
            try:
                lease = conn.execute(
                    f"SELECT owner, expires_at FROM {self.table_name}_leases WHERE thread_id = ?",
                    (thread_id,),
                ).fetchone()
                if lease is not None:
                    token = self._held.get(thread_id)
                    if lease["owner"] == token:
                        conn.execute(
                            f"UPDATE {self.table_name}_leases SET expires_at = ? "
                            f"WHERE thread_id = ?",
                            (time.time() + self.lease_ttl, thread_id),
                        )
                    elif lease["expires_at"] > time.time():
                        raise ThreadBusyError(thread_id, lease["owner"])

                row = conn.execute(
                    f"SELECT MAX(step) AS latest FROM {self.table_name} WHERE thread_id = ?",
                    (thread_id,),
                ).fetchone()
                self._check_append(thread_id, checkpoint, row["latest"])
                conn.execute(
                    f"""
                    INSERT INTO {self.table_name}
                    (thread_id, step, parent_step, next_node_id, state, metadata, timestamp)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        thread_id,
                        checkpoint.step,
                        checkpoint.parent_step,
                        checkpoint.next_node_id,
                        json.dumps(checkpoint.state),
                        json.dumps(checkpoint.metadata),
                        checkpoint.timestamp,
                    ),
                )
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

        self._execute(write)
        logger.debug(f"Saved checkpoint: {thread_id}@{checkpoint.step}")

    async def put(self, thread_id: str, checkpoint: Checkpoint) -> None:
        await _run_blocking(self._put_sync, thread_id, checkpoint)

    def _get_sync(self, thread_id: str, step: Optional[int]) -> Optional[Checkpoint]:
        def read(conn: sqlite3.Connection) -> Optional[sqlite3.Row]:
            if step is None:
                return conn.execute(
                    f"SELECT * FROM {self.table_name} WHERE thread_id = ? "
                    f"ORDER BY step DESC LIMIT 1",
                    (thread_id,),
                ).fetchone()
            return conn.execute(
                f"SELECT * FROM {self.table_name} WHERE thread_id = ? AND step = ?",
                (thread_id, step),
            ).fetchone()

        row = self._execute(read)
        return self._row_to_checkpoint(row) if row is not None else None

    async def get(self, thread_id: str, step: Optional[int] = None) -> Optional[Checkpoint]:
        return await _run_blocking(self._get_sync, thread_id, step)

    def _list_sync(self, thread_id: str) -> builtins.list[sqlite3.Row]:
        return self._execute(
            lambda conn: conn.execute(
                f"SELECT * FROM {self.table_name} WHERE thread_id = ? ORDER BY step ASC",
                (thread_id,),
            ).fetchall()
        )

    async def list(self, thread_id: str) -> AsyncIterator[Checkpoint]:
        for row in await _run_blocking(self._list_sync, thread_id):
            yield self._row_to_checkpoint(row)

    def _delete_thread_sync(self, thread_id: str) -> int:
        return self._execute(
            lambda conn: conn.execute(
                f"DELETE FROM {self.table_name} WHERE thread_id = ?", (thread_id,)
            ).rowcount
        )

    async def delete_thread(self, thread_id: str) -> int:
        return await _run_blocking(self._delete_thread_sync, thread_id)

    def _acquire_lease_sync(self, thread_id: str, token: str) -> None:
        def acquire(conn: sqlite3.Connection) -> None:
            now = time.time()
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute(
                    f"SELECT owner, expires_at FROM {self.table_name}_leases WHERE thread_id = ?",
                    (thread_id,),
                ).fetchone()
                if row is not None:
                    if row["expires_at"] > now:
                        raise ThreadBusyError(thread_id, row["owner"])
                    logger.info(f"Breaking stale lease on thread {thread_id!r}")
                    conn.execute(
                        f"DELETE FROM {self.table_name}_leases WHERE thread_id = ?", (thread_id,)
                    )
                conn.execute(
                    f"INSERT INTO {self.table_name}_leases (thread_id, owner, expires_at) "
                    f"VALUES (?, ?, ?)",
                    (thread_id, token, now + self.lease_ttl),
                )
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

        self._execute(acquire)

    def _release_lease_sync(self, thread_id: str, token: str) -> None:
        self._execute(
            lambda conn: conn.execute(
                f"DELETE FROM {self.table_name}_leases WHERE thread_id = ? AND owner = ?",
                (thread_id, token),
            )
        )

    @asynccontextmanager
    async def lease(self, thread_id: str) -> AsyncIterator[str]:
        async with super().lease(thread_id) as token:
            await _run_blocking(self._acquire_lease_sync, thread_id, token)
            self._held[thread_id] = token
            try:
                yield token
            finally:
                self._held.pop(thread_id, None)
                await _run_blocking(self._release_lease_sync, thread_id, token)

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None


__all__ = ["FileCheckpointer", "SQLiteCheckpointer"]
