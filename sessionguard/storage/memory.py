from __future__ import annotations

import copy
import threading
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from sessionguard.logging import get_logger
from sessionguard.storage.errors import DuplicateUserError, UnknownUserError
from sessionguard.storage.models import Session, User

PASSWORD_ALGO = "argon2id"


class MemoryStore:
    """In-process credential store holding users, password hashes and sessions.

    Every mutation runs under one re-entrant lock, so session removal is a
    compare-and-delete: of two callers removing the same token id, exactly
    one gets the session back.
    """

    def __init__(self, *, password_hasher: PasswordHasher | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, Tuple[str, str]] = {}
        self._email_index: Dict[str, str] = {}
        self._username_index: Dict[str, str] = {}
        self._data_lock = threading.RLock()
        self._pwd_hasher = password_hasher or PasswordHasher(type=Type.ID)

    # -- users ---------------------------------------------------------------

    def create_user(
        self,
        email: str,
        password: str,
        username: Optional[str] = None,
        *,
        role: str = "user",
        is_active: bool = True,
    ) -> User:
        email_key = email.strip().lower()
        username_key = username.strip().lower() if username else None
        # Hash outside the lock; argon2 is deliberately slow.
        digest = self._pwd_hasher.hash(password)
        with self._data_lock:
            if email_key in self._email_index:
                raise DuplicateUserError("email already exists", {"field": "email"})
            if username_key and username_key in self._username_index:
                raise DuplicateUserError("username already exists", {"field": "username"})
            user = User.new(email.strip(), username, role=role, is_active=is_active)
            self.users[user.id] = user
            self.credentials[user.id] = (digest, PASSWORD_ALGO)
            self._email_index[email_key] = user.id
            if username_key:
                self._username_index[username_key] = user.id
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def find_by_email_or_username(self, identity: str) -> Optional[User]:
        key = (identity or "").strip().lower()
        if not key:
            return None
        with self._data_lock:
            user_id = self._email_index.get(key) or self._username_index.get(key)
            return self.users.get(user_id) if user_id else None

    def email_taken(self, email: str) -> bool:
        with self._data_lock:
            return email.strip().lower() in self._email_index

    def username_taken(self, username: str) -> bool:
        with self._data_lock:
            return username.strip().lower() in self._username_index

    def set_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                user.is_active = is_active
            return user

    def touch_last_login(self, user_id: str, when: datetime) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                user.last_login_at = when

    def verify_password(self, user_id: str, password: str) -> bool:
        """Verify a user's password against the stored hash."""
        with self._data_lock:
            record = self.credentials.get(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerificationError):
            return False

    # -- sessions ------------------------------------------------------------

    def list_sessions(self, user_id: str) -> List[Session]:
        with self._data_lock:
            user = self.users.get(user_id)
            return [copy.copy(s) for s in user.sessions] if user else []

    def append_session(self, user_id: str, session: Session) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise UnknownUserError("user does not exist", {"user_id": user_id})
            user.sessions.append(session)

    def remove_session(self, user_id: str, token_id: str) -> Optional[Session]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            for idx, sess in enumerate(user.sessions):
                if sess.token_id == token_id:
                    return user.sessions.pop(idx)
            return None

    def remove_session_by_token(self, user_id: str, refresh_token: str) -> Optional[Session]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            for idx, sess in enumerate(user.sessions):
                if sess.refresh_token == refresh_token:
                    return user.sessions.pop(idx)
            return None

    def clear_sessions(self, user_id: str) -> List[Session]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return []
            removed, user.sessions = user.sessions, []
            return removed
