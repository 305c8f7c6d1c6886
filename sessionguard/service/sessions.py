from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Protocol

from sessionguard.clock import Clock, SystemClock, ensure_utc
from sessionguard.logging import get_logger
from sessionguard.storage.models import ClientInfo, Session, TokenClaims, User

logger = get_logger(__name__)


class CredentialStore(Protocol):
    """Persistence the lifecycle service needs from the user store."""

    def create_user(
        self,
        email: str,
        password: str,
        username: Optional[str] = None,
        *,
        role: str = "user",
        is_active: bool = True,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def find_by_email_or_username(self, identity: str) -> Optional[User]: ...

    def email_taken(self, email: str) -> bool: ...

    def username_taken(self, username: str) -> bool: ...

    def verify_password(self, user_id: str, password: str) -> bool: ...

    def touch_last_login(self, user_id: str, when: datetime) -> None: ...

    def list_sessions(self, user_id: str) -> List[Session]: ...

    def append_session(self, user_id: str, session: Session) -> None: ...

    def remove_session(self, user_id: str, token_id: str) -> Optional[Session]: ...

    def remove_session_by_token(self, user_id: str, refresh_token: str) -> Optional[Session]: ...

    def clear_sessions(self, user_id: str) -> List[Session]: ...


class SessionStore:
    """Per-user refresh sessions on top of a credential store.

    A session exists exactly while its refresh token is unconsumed. Removal
    is compare-and-delete in the underlying store, so a token id can be
    consumed once.
    """

    def __init__(
        self,
        store: CredentialStore,
        *,
        clock: Optional[Clock] = None,
        max_sessions_per_user: int = 10,
    ) -> None:
        self.store = store
        self.clock: Clock = clock or SystemClock()
        self.max_sessions_per_user = max_sessions_per_user

    def open(
        self, refresh_token: str, claims: TokenClaims, client: ClientInfo
    ) -> List[Session]:
        """Record a new session; returns sessions evicted to stay under the cap."""
        session = Session(
            refresh_token=refresh_token,
            token_id=claims.token_id or "",
            created_at=claims.issued_at,
            expires_at=claims.expires_at,
            user_agent=client.user_agent,
            ip_address=client.ip_address,
        )
        self.store.append_session(claims.subject_id, session)
        return self._enforce_cap(claims.subject_id)

    def _enforce_cap(self, user_id: str) -> List[Session]:
        if self.max_sessions_per_user <= 0:
            return []
        sessions = self.store.list_sessions(user_id)
        excess = len(sessions) - self.max_sessions_per_user
        if excess <= 0:
            return []
        oldest = sorted(sessions, key=lambda s: ensure_utc(s.created_at))[:excess]
        evicted = []
        for sess in oldest:
            removed = self.store.remove_session(user_id, sess.token_id)
            if removed:
                evicted.append(removed)
        if evicted:
            logger.info("sessions_evicted_over_cap", user_id=user_id, evicted=len(evicted))
        return evicted

    def consume(self, user_id: str, token_id: str) -> Optional[Session]:
        return self.store.remove_session(user_id, token_id)

    def restore(self, user_id: str, session: Session) -> None:
        self.store.append_session(user_id, session)

    def remove_by_token(self, user_id: str, refresh_token: str) -> Optional[Session]:
        return self.store.remove_session_by_token(user_id, refresh_token)

    def clear(self, user_id: str) -> List[Session]:
        return self.store.clear_sessions(user_id)

    def for_user(self, user_id: str) -> List[Session]:
        return self.store.list_sessions(user_id)

    def prune_expired(self, user_id: str) -> List[Session]:
        now = self.clock.now()
        pruned = []
        for sess in self.store.list_sessions(user_id):
            if ensure_utc(sess.expires_at) <= now:
                removed = self.store.remove_session(user_id, sess.token_id)
                if removed:
                    pruned.append(removed)
        return pruned
