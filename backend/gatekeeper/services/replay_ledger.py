import hashlib
import threading
from datetime import UTC, datetime, timedelta

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from gatekeeper.models.consumed_challenge import ConsumedChallenge


def seed_digest(seed: bytes) -> str:
    return hashlib.sha256(seed).hexdigest()


def consume_challenge(db: Session, seed: bytes, retain_seconds: float) -> bool:
    """
    Record a challenge seed as consumed.

    Returns False if the seed was already consumed.
    """
    entry = ConsumedChallenge(
        seed_digest=seed_digest(seed),
        expires_at=datetime.now(UTC).replace(tzinfo=None) + timedelta(seconds=retain_seconds),
    )
    db.add(entry)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        return False
    return True


def is_consumed(db: Session, seed: bytes) -> bool:
    return db.get(ConsumedChallenge, seed_digest(seed)) is not None


def cleanup_consumed_challenges(db: Session) -> int:
    """Delete ledger entries past their retention. Returns count of deleted rows."""
    result = (
        db.query(ConsumedChallenge)
        .filter(ConsumedChallenge.expires_at < datetime.now(UTC).replace(tzinfo=None))
        .delete()
    )
    db.commit()
    return result


class ReplayLedger:
    """Ledger of consumed challenges, usable from worker threads."""

    def __init__(self, session_factory: sessionmaker, grace_seconds: float = 60.0):
        self._session_factory = session_factory
        self._grace_seconds = grace_seconds
        # One writer at a time; SQLite serialises writes anyway
        self._lock = threading.Lock()

    def consume(self, seed: bytes, remaining_ttl: float) -> bool:
        with self._lock:
            db = self._session_factory()
            try:
                return consume_challenge(db, seed, max(remaining_ttl, 0.0) + self._grace_seconds)
            finally:
                db.close()

    def cleanup(self) -> int:
        with self._lock:
            db = self._session_factory()
            try:
                return cleanup_consumed_challenges(db)
            finally:
                db.close()
