"""
SessionManager — single owner of the authentication session.

State machine:

    ANONYMOUS → AUTHENTICATING → AUTHENTICATED → REFRESHING → AUTHENTICATED
                                                            ↘ ANONYMOUS

Invariants:
  * memory and the persisted group change together: persist first, then
    swap the in-memory session, then notify (no await in between)
  * subscribers are notified exactly once per state change
  * concurrent refreshes collapse into one in-flight task
  * a refresh that fails leaves nothing behind (forced logout)

Network policy is deliberately asymmetric: login degrades to a local session,
refresh forces logout, validation assumes the previous answer.
"""

import time
import asyncio

from .config import log
from .constants import (
    DEGRADED_TOKEN_PREFIX, DEFAULT_ROLE, ROLE_KEYWORDS, DASHBOARD_ROUTE,
    KEY_CURRENT_USER, KEY_ACCESS_TOKEN, KEY_REFRESH_TOKEN,
)
from .errors import (
    InvalidCredentials, NetworkUnavailable, NoRefreshToken, NotAuthenticated,
    PortalError, RemoteRejection, SessionExpired,
)
from .events import EventEmitter
from .models import Session, SessionState, TokenPair
from . import api

PASSWORD_RESET_MESSAGE = "If the address is registered, a recovery email is on its way"


def role_for_email(email):
    """Role guessed from the email local part. Only used for degraded sessions."""
    local = (email or "").split("@", 1)[0].lower()
    for keyword, role in ROLE_KEYWORDS:
        if keyword in local:
            return role
    return DEFAULT_ROLE


class SessionManager:
    def __init__(self, client, store, events=None, allow_degraded_login=True):
        self._client = client
        self._store = store
        self.events = events if events is not None else EventEmitter("session")
        self.allow_degraded_login = allow_degraded_login
        self.state = SessionState.ANONYMOUS
        self._session = None
        self._refresh_task = None
        self._refresh_owner = None
        client.authenticator = self
        self.restore()

    # ─── Read-only view ──────────────────────────────────────

    @property
    def current_session(self):
        return self._session

    @property
    def is_authenticated(self):
        return self._session is not None

    @property
    def access_token(self):
        return self._session.access_token if self._session else None

    def user_role(self):
        """First role, lowercased, or None when anonymous / role-less."""
        return self._session.primary_role if self._session else None

    def dashboard_route(self):
        return DASHBOARD_ROUTE

    def subscribe(self, listener):
        """``listener(session_or_None)``. Returns the unsubscribe callable."""
        return self.events.subscribe(listener)

    # ─── Restore ─────────────────────────────────────────────

    def restore(self):
        """
        Load the persisted session. Anything partial, unparsable, or
        fabricated in degraded mode is wiped and we start anonymous.
        """
        try:
            data = self._store.load()
        except ValueError as e:
            log.warning("Discarding unreadable persisted session: %s", e)
            self._store.clear()
            return None

        if not data or not any(data.values()):
            return None

        profile = data[KEY_CURRENT_USER]
        access = data[KEY_ACCESS_TOKEN]
        refresh = data[KEY_REFRESH_TOKEN]
        if not (profile and access and refresh):
            log.warning("Discarding incomplete persisted session (profile=%s, access=%s, refresh=%s)",
                        bool(profile), bool(access), bool(refresh))
            self._store.clear()
            return None

        try:
            session = Session.from_record(profile, access, refresh)
        except (ValueError, TypeError) as e:
            log.warning("Discarding malformed persisted session: %s", e)
            self._store.clear()
            return None

        if session.looks_degraded:
            log.warning("Discarding persisted degraded session for %s", session.email)
            self._store.clear()
            return None

        self._session = session
        self.state = SessionState.AUTHENTICATED
        log.info("Restored session for %s", session.email)
        self.events.emit(session)
        return session

    # ─── Login / register / reset ────────────────────────────

    async def login(self, credentials):
        email = credentials.get("email", "")
        self.state = SessionState.AUTHENTICATING
        try:
            if not await self._client.health():
                log.warning("Auth service unreachable (health probe failed)")
                return self._degraded_login(email)

            try:
                access, refresh = await api.login(self._client, credentials)
                profile = await api.fetch_profile(self._client, token=access)
            except NetworkUnavailable:
                log.warning("Network failure during login for %s", email)
                return self._degraded_login(email)
            except RemoteRejection as e:
                log.warning("Login rejected for %s: HTTP %d — %s", email, e.status, e.message)
                raise InvalidCredentials(e.message) from e

            session = Session.build(profile, access, refresh)
            self._install(session)
            log.info("Logged in as %s (roles=%s)", session.email, ",".join(sorted(session.roles)) or "-")
            return session
        finally:
            self._settle_state()

    def _degraded_login(self, email):
        if not self.allow_degraded_login:
            raise NetworkUnavailable("Authentication service is unreachable")

        role = role_for_email(email)
        local = (email or "").split("@", 1)[0]
        stamp = int(time.time() * 1000)
        session = Session.build(
            {"id": f"degraded-{local}", "email": email, "first_name": local, "roles": [role]},
            f"{DEGRADED_TOKEN_PREFIX}access_{stamp}",
            f"{DEGRADED_TOKEN_PREFIX}refresh_{stamp}",
            degraded=True,
        )
        # Not server-verified. Kept so the UI stays usable during outages;
        # disable with allow_degraded_login=False.
        log.warning("DEGRADED login for %s (role=%s) — session is NOT verified by the server",
                    email, role)
        self._install(session)
        return session

    async def register(self, data):
        """Create an account. Never signs in; returns the server's message."""
        message = await api.register(self._client, data)
        log.info("Registration submitted for %s", data.get("email", "?"))
        return message

    async def reset_password(self, email):
        """Always reports success for a 4xx so callers learn nothing about the address."""
        try:
            await api.request_password_reset(self._client, email)
        except RemoteRejection as e:
            if e.status >= 500:
                raise
            log.info("Password reset answered HTTP %d — reporting success", e.status)
        return PASSWORD_RESET_MESSAGE

    async def update_profile(self, data):
        if self._session is None:
            raise NotAuthenticated()
        profile = await api.update_profile(self._client, data)
        if self._session is None:
            raise NotAuthenticated()
        session = self._session.with_profile(profile or data)
        self._install(session)
        return session

    # ─── Logout ──────────────────────────────────────────────

    async def logout(self):
        """Local logout first and unconditionally; the server is told best-effort."""
        previous = self._session
        self._clear()
        if previous is None or previous.looks_degraded:
            return

        try:
            if await self._client.health():
                await api.logout(self._client, previous.access_token)
            else:
                log.info("Backend not reachable — skipping logout notification")
        except PortalError as e:
            log.warning("Backend logout notification failed: %s", e)

    # ─── Refresh ─────────────────────────────────────────────

    async def refresh_token(self):
        """Refresh both tokens. Concurrent callers share one in-flight task."""
        task = self._refresh_task
        if task is None or task.done() or not self._is_current(self._refresh_owner):
            # A refresh started for an earlier session is left to finish on its own.
            self._refresh_owner = self._session
            self._refresh_task = asyncio.ensure_future(self._do_refresh())
            self._refresh_task.add_done_callback(_retrieve_exception)
        return await asyncio.shield(self._refresh_task)

    async def refresh_after_unauthorized(self, stale_token):
        """
        Called by ApiClient after a 401 with ``stale_token``. If the session
        already moved past that token, the caller just retries with ours.
        """
        if self._session is not None and self._session.access_token != stale_token:
            return self._session.access_token
        pair = await self.refresh_token()
        return pair.access_token

    async def _do_refresh(self):
        refresh = self._store.refresh_token()
        started_with = self._session
        if not refresh:
            log.warning("Token refresh requested without a refresh token")
            self._clear()
            raise NoRefreshToken()

        if started_with is not None and started_with.looks_degraded:
            log.warning("Degraded session cannot be refreshed — forcing logout")
            self._clear()
            raise SessionExpired()

        self.state = SessionState.REFRESHING
        try:
            access, new_refresh = await api.refresh(self._client, refresh)
        except PortalError as e:
            if started_with is None or self._is_current(started_with):
                log.error("Token refresh failed (%s) — forcing logout", e)
                self._clear()
            else:
                log.warning("Token refresh for a session that already ended failed (%s) — ignoring", e)
            raise SessionExpired() from e
        finally:
            if self._refresh_task in (None, asyncio.current_task()):
                self._settle_state()

        if not self._is_current(started_with):
            # Logged out (or logged in again) while the refresh was in flight.
            log.info("Session changed during refresh — discarding refreshed tokens")
            if self._session is None:
                raise SessionExpired()
            return TokenPair(self._session.access_token, self._session.refresh_token)

        session = self._session.with_tokens(access, new_refresh or refresh)
        self._install(session)
        log.info("Access token refreshed for %s", session.email)
        return TokenPair(session.access_token, session.refresh_token)

    # ─── Validation ──────────────────────────────────────────

    async def validate_token(self):
        """
        False without a token. Unreachable backend → trust the local flag.
        Any rejection → False (no logout; the caller decides).
        """
        token = self.access_token
        if not token:
            return False
        if not await self._client.health():
            log.info("Cannot validate token (backend unreachable) — assuming still valid")
            return self.is_authenticated
        try:
            await api.fetch_profile(self._client, token=token)
            return True
        except RemoteRejection as e:
            log.info("Token validation rejected: HTTP %d", e.status)
            return False
        except NetworkUnavailable:
            return self.is_authenticated

    # ─── Internals ───────────────────────────────────────────

    def _install(self, session):
        self._store.save(session.profile_record(), session.access_token, session.refresh_token)
        self._session = session
        self.state = SessionState.AUTHENTICATED
        self.events.emit(session)

    def _clear(self):
        had_session = self._session is not None
        self._store.clear()
        self._session = None
        self.state = SessionState.ANONYMOUS
        if had_session:
            self.events.emit(None)

    def _is_current(self, session):
        """True while ``session`` is still the signed-in one (profile edits included)."""
        current = self._session
        return current is not None and session is not None \
            and current.refresh_token == session.refresh_token

    def _settle_state(self):
        self.state = SessionState.AUTHENTICATED if self._session else SessionState.ANONYMOUS


def _retrieve_exception(task):
    # Mark the shared task's exception as retrieved; awaiters still get it.
    if not task.cancelled():
        task.exception()
