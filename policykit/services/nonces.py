"""Single-use nonce stores backing replay protection."""
from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from policykit import db
from policykit.models.nonce import UsedNonce
from policykit.utils.time import ensure_utc, utcnow

logger = logging.getLogger(__name__)

DEFAULT_NONCE_TTL_SECONDS = 86400


class NonceStore(ABC):
    """Atomic check-and-set of spent nonces."""

    @abstractmethod
    def claim(self, nonce: str, ttl_seconds: int = DEFAULT_NONCE_TTL_SECONDS) -> bool:
        """Mark ``nonce`` as used. Returns ``False`` if it already was."""

    @abstractmethod
    def is_used(self, nonce: str) -> bool:
        ...

    @abstractmethod
    def purge_expired(self) -> int:
        """Drop expired entries and return how many were removed."""


class InMemoryNonceStore(NonceStore):
    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._expires: dict[str, datetime] = {}

    def claim(self, nonce: str, ttl_seconds: int = DEFAULT_NONCE_TTL_SECONDS) -> bool:
        now = self._clock()
        with self._lock:
            current = self._expires.get(nonce)
            if current is not None and current > now:
                return False
            self._expires[nonce] = now + timedelta(seconds=ttl_seconds)
            return True

    def is_used(self, nonce: str) -> bool:
        with self._lock:
            current = self._expires.get(nonce)
        return current is not None and current > self._clock()

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [nonce for nonce, expires in self._expires.items() if expires <= now]
            for nonce in expired:
                del self._expires[nonce]
        return len(expired)


def _transaction(session: Session):
    return session.begin_nested() if session.in_transaction() else session.begin()


class SqlNonceStore(NonceStore):
    """Nonce store over the ``used_nonces`` table.

    The unique constraint on ``nonce`` makes the claim atomic across workers.
    A conflicting row that has expired is reclaimed with a conditional update.
    """

    def __init__(self, db_session: Session | None = None) -> None:
        self._db_session = db_session

    def claim(self, nonce: str, ttl_seconds: int = DEFAULT_NONCE_TTL_SECONDS) -> bool:
        now = utcnow()
        expires_at = now + timedelta(seconds=ttl_seconds)

        with db.session_scope(self._db_session) as session:
            try:
                with _transaction(session):
                    session.add(UsedNonce(nonce=nonce, expires_at=expires_at))
                return True
            except IntegrityError:
                logger.debug("Nonce already present; trying to reclaim", extra={"nonce": nonce})

            with _transaction(session):
                result = session.execute(
                    update(UsedNonce)
                    .where(UsedNonce.nonce == nonce, UsedNonce.expires_at <= now)
                    .values(expires_at=expires_at, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
            return result.rowcount == 1

    def is_used(self, nonce: str) -> bool:
        with db.session_scope(self._db_session) as session:
            row = session.execute(select(UsedNonce).where(UsedNonce.nonce == nonce)).scalar_one_or_none()
            return row is not None and ensure_utc(row.expires_at) > utcnow()

    def purge_expired(self) -> int:
        now = utcnow()
        with db.session_scope(self._db_session) as session:
            with _transaction(session):
                result = session.execute(
                    delete(UsedNonce)
                    .where(UsedNonce.expires_at <= now)
                    .execution_options(synchronize_session=False)
                )
        if result.rowcount:
            logger.info("Purged expired nonces", extra={"count": result.rowcount})
        return result.rowcount


__all__ = [
    "DEFAULT_NONCE_TTL_SECONDS",
    "NonceStore",
    "InMemoryNonceStore",
    "SqlNonceStore",
]
