"""
Refresh token store: persistence and lifecycle of sessions.

State transitions that must be single-winner (verify, rotate, revoke) are
expressed as conditional UPDATEs so the database decides the outcome in one
statement: a revoked or expired row can never be observed as valid by a
concurrent caller. Session cap eviction reads then writes, so it is
additionally serialized per user with an in-process lock.

Lock order is always: per-user lock, then the database write lock.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from models.base_model import utcnow
from models.refresh_token import RefreshToken
from models.user import User
from utils.keyed_lock import KeyedLock
from utils.security import generate_refresh_secret, hash_refresh_token

logger = logging.getLogger(__name__)

MAX_TOKENS_PER_USER = 5
REFRESH_TOKEN_TTL = timedelta(days=30)


class RefreshTokenStore:
    def __init__(
        self,
        storage,
        max_tokens_per_user: int = MAX_TOKENS_PER_USER,
        ttl: timedelta = REFRESH_TOKEN_TTL,
        clock: Callable[[], datetime] = utcnow,
    ):
        if max_tokens_per_user < 1:
            raise ValueError("max_tokens_per_user must be at least 1")
        self._storage = storage
        self.max_tokens_per_user = max_tokens_per_user
        self.ttl = ttl
        self._clock = clock
        self._user_locks = KeyedLock()

    def _session(self):
        return self._storage.get_session()

    def _evict_surplus(self, session, user_id: str, now: datetime) -> int:
        """Revoke the oldest live sessions so one more fits under the cap."""
        live = (
            session.query(RefreshToken)
            .filter(RefreshToken.user_id == user_id, RefreshToken.revoked.is_(False))
            .order_by(RefreshToken.created_at.asc(), RefreshToken.id.asc())
            .all()
        )
        surplus = len(live) - self.max_tokens_per_user + 1
        if surplus <= 0:
            return 0
        for record in live[:surplus]:
            record.revoked = True
            record.updated_at = now
        logger.info("Evicted %d session(s) for user %s over the cap of %d",
                    surplus, user_id, self.max_tokens_per_user)
        return surplus

    def _insert(self, session, user_id: str, device_info: Optional[str], now: datetime) -> Tuple[str, RefreshToken]:
        raw = generate_refresh_secret()
        record = RefreshToken(
            user_id=user_id,
            token_hash=hash_refresh_token(raw),
            expires_at=now + self.ttl,
            revoked=False,
            device_info=device_info,
            created_at=now,
            updated_at=now,
        )
        session.add(record)
        return raw, record

    def create(self, user_id: str, device_info: Optional[str] = None) -> Tuple[str, RefreshToken]:
        """
        Admit a new session for user_id.
        Returns the plaintext secret (only chance to see it) and the stored record.
        """
        with self._user_locks.hold(user_id):
            session = self._session()
            now = self._clock()
            try:
                self._evict_surplus(session, user_id, now)
                raw, record = self._insert(session, user_id, device_info, now)
                session.commit()
            except SQLAlchemyError:
                session.rollback()
                raise
        return raw, record

    def _owner_is_active(self, session, user_id: str) -> bool:
        user = session.get(User, user_id, populate_existing=True)
        return user is not None and bool(user.is_active)

    def _live_filter(self, token_hash: str, now: datetime):
        return (
            RefreshToken.token_hash == token_hash,
            RefreshToken.revoked.is_(False),
            RefreshToken.expires_at > now,
        )

    def verify(self, raw_token: str) -> Optional[RefreshToken]:
        """
        Return the record if raw_token is live and its owner active, else None.

        Marking the row used is the validity check itself (conditional UPDATE),
        so there is no window between "looked valid" and "updated". If the owner
        has been deactivated the token is revoked in the same transaction.
        """
        if not raw_token:
            return None
        token_hash = hash_refresh_token(raw_token)
        session = self._session()
        now = self._clock()
        try:
            matched = (
                session.query(RefreshToken)
                .filter(*self._live_filter(token_hash, now))
                .update({"last_used_at": now, "updated_at": now}, synchronize_session=False)
            )
            if matched != 1:
                session.commit()
                return None
            record = (
                session.query(RefreshToken)
                .populate_existing()
                .filter(RefreshToken.token_hash == token_hash)
                .one()
            )
            if not self._owner_is_active(session, record.user_id):
                record.revoked = True
                record.updated_at = now
                session.commit()
                logger.info("Revoked session %s: owner is inactive", record.id)
                return None
            session.commit()
        except SQLAlchemyError:
            session.rollback()
            raise
        return record

    def rotate(self, raw_token: str, device_info: Optional[str] = None) -> Optional[Tuple[str, RefreshToken]]:
        """
        Consume raw_token and issue its replacement.

        The compare-and-swap on revoked picks exactly one winner when the same
        token is presented concurrently; losers get None.
        """
        if not raw_token:
            return None
        token_hash = hash_refresh_token(raw_token)
        session = self._session()
        owner = session.query(RefreshToken.user_id).filter(RefreshToken.token_hash == token_hash).first()
        session.commit()
        if owner is None:
            return None
        user_id = owner.user_id

        with self._user_locks.hold(user_id):
            now = self._clock()
            try:
                claimed = (
                    session.query(RefreshToken)
                    .filter(*self._live_filter(token_hash, now))
                    .update({"revoked": True, "last_used_at": now, "updated_at": now},
                            synchronize_session=False)
                )
                if claimed != 1:
                    session.commit()
                    return None
                old = (
                    session.query(RefreshToken)
                    .populate_existing()
                    .filter(RefreshToken.token_hash == token_hash)
                    .one()
                )
                if not self._owner_is_active(session, user_id):
                    # the CAS already revoked it; keep that and issue nothing
                    session.commit()
                    logger.info("Revoked session %s on rotation: owner is inactive", old.id)
                    return None
                self._evict_surplus(session, user_id, now)
                raw, record = self._insert(session, user_id, device_info or old.device_info, now)
                session.commit()
            except SQLAlchemyError:
                session.rollback()
                raise
        return raw, record

    def owner_of(self, raw_token: str) -> Optional[str]:
        """User id behind raw_token whatever its state; no side effects."""
        if not raw_token:
            return None
        session = self._session()
        row = (
            session.query(RefreshToken.user_id)
            .filter(RefreshToken.token_hash == hash_refresh_token(raw_token))
            .first()
        )
        session.commit()
        return row.user_id if row else None

    def revoke(self, raw_token: str) -> bool:
        """Idempotent; True when a record with this secret exists (revoked now or before)."""
        if not raw_token:
            return False
        token_hash = hash_refresh_token(raw_token)
        session = self._session()
        now = self._clock()
        try:
            session.query(RefreshToken).filter(
                RefreshToken.token_hash == token_hash, RefreshToken.revoked.is_(False)
            ).update({"revoked": True, "updated_at": now}, synchronize_session=False)
            exists = session.query(RefreshToken.id).filter(RefreshToken.token_hash == token_hash).first()
            session.commit()
        except SQLAlchemyError:
            session.rollback()
            raise
        return exists is not None

    def revoke_all(self, user_id: str) -> int:
        """Log out everywhere; returns the number of sessions that were still open."""
        with self._user_locks.hold(user_id):
            session = self._session()
            now = self._clock()
            try:
                count = (
                    session.query(RefreshToken)
                    .filter(RefreshToken.user_id == user_id, RefreshToken.revoked.is_(False))
                    .update({"revoked": True, "updated_at": now}, synchronize_session=False)
                )
                session.commit()
            except SQLAlchemyError:
                session.rollback()
                raise
        return count

    def revoke_session(self, user_id: str, session_id: str) -> bool:
        """Revoke one of user_id's own sessions by record id."""
        session = self._session()
        now = self._clock()
        try:
            count = (
                session.query(RefreshToken)
                .filter(
                    RefreshToken.id == session_id,
                    RefreshToken.user_id == user_id,
                    RefreshToken.revoked.is_(False),
                )
                .update({"revoked": True, "updated_at": now}, synchronize_session=False)
            )
            session.commit()
        except SQLAlchemyError:
            session.rollback()
            raise
        return count == 1

    def active_sessions(self, user_id: str) -> List[RefreshToken]:
        now = self._clock()
        session = self._session()
        rows = (
            session.query(RefreshToken)
            .populate_existing()
            .filter(
                RefreshToken.user_id == user_id,
                RefreshToken.revoked.is_(False),
                RefreshToken.expires_at > now,
            )
            .all()
        )
        session.commit()
        return sorted(rows, key=lambda r: r.last_used_at or r.created_at, reverse=True)

    def sweep_expired(self) -> int:
        """Periodic maintenance: mark expired but unrevoked sessions revoked."""
        session = self._session()
        now = self._clock()
        try:
            count = (
                session.query(RefreshToken)
                .filter(RefreshToken.revoked.is_(False), RefreshToken.expires_at <= now)
                .update({"revoked": True, "updated_at": now}, synchronize_session=False)
            )
            session.commit()
        except SQLAlchemyError:
            session.rollback()
            raise
        if count:
            logger.info("Swept %d expired refresh token(s)", count)
        return count


def get_refresh_store() -> RefreshTokenStore:
    return current_app.extensions["refresh_tokens"]
