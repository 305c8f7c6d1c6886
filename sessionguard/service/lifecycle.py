from __future__ import annotations

import asyncio
import weakref
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from sessionguard.clock import Clock, SystemClock
from sessionguard.config import Settings
from sessionguard.logging import get_logger
from sessionguard.service.activity import LOGIN, REGISTRATION, ActivityAnalyzer
from sessionguard.service.errors import (
    AuthenticationFailedError,
    ConflictError,
    InvalidPayloadError,
    RateLimitedError,
    SessionNotFoundError,
    TokenError,
    TokenMissingError,
    TokenRevokedError,
    ValidationError,
)
from sessionguard.service.revocation import RevocationStore, token_key
from sessionguard.service.sessions import CredentialStore, SessionStore
from sessionguard.service.throttle import LoginThrottle
from sessionguard.service.tokens import TokenCodec
from sessionguard.storage.errors import DuplicateUserError
from sessionguard.storage.models import ClientInfo, Session, TokenClaims, TokenKind, TokenPair, User

logger = get_logger(__name__)

TOKEN_REFRESH = "token_refresh"
LOGOUT = "logout"


@dataclass
class Credentials:
    identity: str
    password: str


@dataclass
class Registration:
    email: str
    username: str
    password: str


@dataclass
class SessionSummary:
    token_id: str
    created_at: datetime
    expires_at: datetime
    user_agent: str
    ip_address: str
    is_current: bool = False


class TokenLifecycleService:
    """Issues, rotates and revokes token pairs for a credential store.

    Refresh tokens are single use: rotation consumes the stored session and
    records the old token as revoked before a new pair is issued. Rotation and
    revocation of one subject are serialized on a per-subject lock, so of
    several callers presenting the same token exactly one succeeds, and a
    revocation never misses a session minted by a rotation in flight.
    """

    def __init__(
        self,
        settings: Settings,
        store: CredentialStore,
        revocations: RevocationStore,
        *,
        codec: Optional[TokenCodec] = None,
        throttle: Optional[LoginThrottle] = None,
        analyzer: Optional[ActivityAnalyzer] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.revocations = revocations
        self.clock: Clock = clock or SystemClock()
        self.codec = codec or TokenCodec(settings, clock=self.clock)
        self.throttle = throttle or LoginThrottle(
            max_attempts=settings.max_login_attempts,
            lockout=timedelta(seconds=settings.lockout_seconds),
            retention=timedelta(hours=settings.monitor_retention_hours),
            enabled=settings.security_monitoring_enabled,
            clock=self.clock,
        )
        self.analyzer = analyzer or ActivityAnalyzer(
            history_limit=settings.activity_history_limit,
            retention=timedelta(hours=settings.monitor_retention_hours),
            enabled=settings.security_monitoring_enabled,
            clock=self.clock,
        )
        self.sessions = SessionStore(
            store, clock=self.clock, max_sessions_per_user=settings.max_sessions_per_user
        )
        self._subject_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    def _subject_lock(self, subject_id: str) -> asyncio.Lock:
        lock = self._subject_locks.get(subject_id)
        if lock is None:
            lock = asyncio.Lock()
            self._subject_locks[subject_id] = lock
        return lock

    # -- issuance ------------------------------------------------------------

    async def _issue_pair(self, user: User, client: ClientInfo) -> TokenPair:
        access_token, _ = self.codec.issue_access(user.id, user.email, user.role)
        refresh_token, refresh_claims = self.codec.issue_refresh(user.id, user.email, user.role)
        evicted = self.sessions.open(refresh_token, refresh_claims, client)
        for sess in evicted:
            await self._revoke_session_token(sess)
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self.codec.expires_in(TokenKind.ACCESS),
        )

    async def _revoke_session_token(self, session: Session) -> None:
        await self.revocations.add(token_key(session.refresh_token), session.expires_at)

    async def register(
        self, registration: Registration, client: Optional[ClientInfo] = None
    ) -> Tuple[User, TokenPair]:
        client = client or ClientInfo()
        email = (registration.email or "").strip()
        username = (registration.username or "").strip()
        password = registration.password or ""
        if not email or not username or not password:
            raise InvalidPayloadError("email, username and password are required")
        if len(password) < self.settings.min_password_length:
            raise ValidationError(
                f"password must be at least {self.settings.min_password_length} characters",
                detail={"field": "password"},
            )
        if self.store.email_taken(email) or self.store.username_taken(username):
            raise ConflictError("User already exists")
        try:
            user = self.store.create_user(email, password, username)
        except DuplicateUserError as exc:
            raise ConflictError("User already exists", detail={"field": exc.field}) from exc

        pair = await self._issue_pair(user, client)
        self.analyzer.log_activity(user.id, REGISTRATION, client)
        logger.info("user_registered", user_id=user.id, ip_address=client.ip_address)
        return user, pair

    async def login(
        self, credentials: Credentials, client: Optional[ClientInfo] = None
    ) -> Tuple[User, TokenPair]:
        client = client or ClientInfo()
        identity = (credentials.identity or "").strip()
        logger.info("login_attempt", email=identity, ip_address=client.ip_address)

        status = self.throttle.check(client.ip_address, identity)
        if status.blocked:
            logger.warning(
                "login_blocked",
                email=identity,
                ip_address=client.ip_address,
                blocked_until=status.blocked_until.isoformat() if status.blocked_until else None,
            )
            raise RateLimitedError(
                retry_after=status.retry_after(self.clock.now()),
                blocked_until=status.blocked_until,
            )

        user = self.store.find_by_email_or_username(identity) if identity else None
        if user is None:
            self._login_failed(None, identity, client, "unknown_identity")
        if not credentials.password or not self.store.verify_password(user.id, credentials.password):
            self._login_failed(user, identity, client, "bad_password")
        if not user.is_active:
            self._login_failed(user, identity, client, "inactive")

        pair = await self._issue_pair(user, client)
        self.throttle.reset(client.ip_address, identity)
        self.store.touch_last_login(user.id, self.clock.now())
        self.analyzer.log_activity(user.id, LOGIN, client, success=True)
        logger.info("login_succeeded", user_id=user.id, ip_address=client.ip_address)
        return user, pair

    def _login_failed(
        self, user: Optional[User], identity: str, client: ClientInfo, reason: str
    ) -> None:
        status = self.throttle.record_failure(client.ip_address, identity)
        if user is not None:
            self.analyzer.log_activity(user.id, LOGIN, client, success=False)
        logger.info(
            "login_failed",
            reason=reason,
            email=identity,
            ip_address=client.ip_address,
            attempts_left=status.attempts_left,
            blocked=status.blocked,
        )
        raise AuthenticationFailedError()

    # -- rotation ------------------------------------------------------------

    async def refresh(
        self, refresh_token: Optional[str], client: Optional[ClientInfo] = None
    ) -> TokenPair:
        if not refresh_token:
            raise TokenMissingError()
        key = token_key(refresh_token)
        if await self.revocations.has(key):
            logger.warning("refresh_rejected_revoked")
            raise TokenRevokedError()
        claims = self.codec.verify(refresh_token, TokenKind.REFRESH)

        async with self._subject_lock(claims.subject_id):
            if await self.revocations.has(key):
                logger.warning("refresh_rejected_revoked", user_id=claims.subject_id)
                raise TokenRevokedError()
            user = self.store.get_user(claims.subject_id)
            if user is None or not user.is_active:
                raise SessionNotFoundError()
            session = self.sessions.consume(user.id, claims.token_id or "")
            if session is None:
                logger.warning("refresh_session_not_found", user_id=user.id)
                raise SessionNotFoundError()
            try:
                await self.revocations.add(key, claims.expires_at)
            except Exception:
                self.sessions.restore(user.id, session)
                raise
            client = client or ClientInfo(
                ip_address=session.ip_address, user_agent=session.user_agent
            )
            pair = await self._issue_pair(user, client)

        self.analyzer.log_activity(user.id, TOKEN_REFRESH, client)
        logger.info("token_refreshed", user_id=user.id)
        return pair

    # -- revocation ----------------------------------------------------------

    async def blacklist_token(self, token: Optional[str]) -> None:
        if not token:
            return
        ceiling = self.clock.now() + timedelta(seconds=self.settings.refresh_token_ttl_seconds)
        expires_at = self.codec.peek_expiry(token)
        if expires_at is None or expires_at > ceiling:
            expires_at = ceiling
        await self.revocations.add(token_key(token), expires_at)

    async def is_blacklisted(self, token: str) -> bool:
        try:
            return await self.revocations.has(token_key(token))
        except Exception as exc:
            logger.error("blacklist_check_failed_defaulting_to_revoked", error=str(exc))
            return True

    async def revoke_one(self, subject_id: str, refresh_token: str) -> bool:
        async with self._subject_lock(subject_id):
            removed = self.sessions.remove_by_token(subject_id, refresh_token)
            await self.blacklist_token(refresh_token)
        logger.info("session_revoked", user_id=subject_id, removed=removed is not None)
        return removed is not None

    async def revoke_session(self, subject_id: str, token_id: str) -> bool:
        async with self._subject_lock(subject_id):
            removed = self.sessions.consume(subject_id, token_id)
            if removed is None:
                return False
            await self._revoke_session_token(removed)
        logger.info("session_revoked", user_id=subject_id, removed=True)
        return True

    async def revoke_all(self, subject_id: str) -> int:
        # Waits out any rotation in flight, so its new session is cleared too
        async with self._subject_lock(subject_id):
            removed = self.sessions.clear(subject_id)
            for sess in removed:
                await self._revoke_session_token(sess)
        logger.info("all_sessions_revoked", user_id=subject_id, count=len(removed))
        return len(removed)

    async def logout(self, access_token: Optional[str], refresh_token: Optional[str] = None) -> None:
        claims = None
        if refresh_token:
            try:
                claims = self.codec.verify(refresh_token, TokenKind.REFRESH)
            except TokenError as exc:
                logger.info("logout_refresh_unverified", reason=exc.reason)
        if claims is None:
            await self.blacklist_token(refresh_token)
            await self.blacklist_token(access_token)
            logger.info("logout_completed", user_id=None)
            return

        subject_id = claims.subject_id
        async with self._subject_lock(subject_id):
            self.sessions.consume(subject_id, claims.token_id or "")
            await self.blacklist_token(refresh_token)
            await self.blacklist_token(access_token)
        self.analyzer.log_activity(subject_id, LOGOUT, ClientInfo())
        logger.info("logout_completed", user_id=subject_id)

    # -- verification and housekeeping ---------------------------------------

    async def authenticate(self, access_token: Optional[str]) -> TokenClaims:
        if not access_token:
            raise TokenMissingError()
        if await self.is_blacklisted(access_token):
            raise TokenRevokedError()
        return self.codec.verify(access_token, TokenKind.ACCESS)

    def list_sessions(
        self, subject_id: str, current_refresh_token: Optional[str] = None
    ) -> List[SessionSummary]:
        return [
            SessionSummary(
                token_id=sess.token_id,
                created_at=sess.created_at,
                expires_at=sess.expires_at,
                user_agent=sess.user_agent,
                ip_address=sess.ip_address,
                is_current=bool(current_refresh_token)
                and sess.refresh_token == current_refresh_token,
            )
            for sess in self.sessions.for_user(subject_id)
        ]

    async def prune_sessions(self, subject_id: str) -> int:
        async with self._subject_lock(subject_id):
            pruned = self.sessions.prune_expired(subject_id)
            for sess in pruned:
                await self._revoke_session_token(sess)
        if pruned:
            logger.info("expired_sessions_pruned", user_id=subject_id, count=len(pruned))
        return len(pruned)

    def cleanup_monitoring(self) -> int:
        return self.throttle.cleanup() + self.analyzer.cleanup()
