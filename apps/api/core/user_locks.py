"""
Per-user write serialization.

Two completions for the same user must not interleave their streak
read-modify-write. Inside one process a lock per user id orders them;
across processes a PostgreSQL transaction-scoped advisory lock does the
same and is released automatically at commit or rollback.

Lock entries are reference counted and dropped once no caller holds or
waits on them, so the registry only ever contains users with a write in
flight.
"""
import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

from sqlalchemy import text
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)


class UserWriteLocks:
    """Registry of per-user locks for the completion write path."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._waiters: Dict[str, int] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def _checkout(self, user_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(user_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[user_id] = lock
            self._waiters[user_id] = self._waiters.get(user_id, 0) + 1
            return lock

    def _release(self, user_id: str) -> None:
        with self._guard:
            remaining = self._waiters[user_id] - 1
            if remaining:
                self._waiters[user_id] = remaining
            else:
                del self._waiters[user_id]
                del self._locks[user_id]

    @contextmanager
    def hold(self, user_id: str, db: Optional[Session] = None) -> Iterator[None]:
        """
        Serialize the enclosed block for user_id.

        The caller must commit or roll back before leaving the block so the
        advisory lock and the in-process lock are released together.
        """
        lock = self._checkout(user_id)
        try:
            with lock:
                if db is not None and _is_postgres(db):
                    db.execute(
                        text("SELECT pg_advisory_xact_lock(hashtext(:lock_key))"),
                        {"lock_key": f"progress:{user_id}"},
                    )
                yield
        finally:
            self._release(user_id)


def _is_postgres(db: Session) -> bool:
    bind = db.get_bind()
    return bind is not None and bind.dialect.name == "postgresql"
