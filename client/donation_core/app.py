"""
PortalApp — wires the session core and the reconciliation layer together.

Views get the app (or just the pieces they need) handed to them; nothing
here is a module-level singleton. Ownership:

  ApiClient                   one HTTP session, bearer token, 401 → refresh
  SessionManager              only writer of the Session
  PaymentReconciliationLayer  only writer of the QueryCache

Logout (or a forced logout after a failed refresh) clears the cache, so the
next user never sees the previous user's donations.
"""

from .config import log, resolve_config, SESSION_FILE
from .constants import PORTAL_VERSION
from .events import EventEmitter
from .reconciliation import PaymentReconciliationLayer
from .session import SessionManager
from .storage import SessionStore
from .transport import ApiClient


class PortalApp:
    def __init__(self, config=None, http=None, store=None, navigate=None):
        self.config = config if config is not None else resolve_config()
        self.client = ApiClient(self.config, http=http)
        self.session_events = EventEmitter("session")
        self.notifications = EventEmitter("notifications")

        self.payments = PaymentReconciliationLayer(
            self.client, navigate=navigate, notifications=self.notifications,
        )
        self._unsubscribe = self.session_events.subscribe(self._on_session_change)
        self.session = SessionManager(
            self.client,
            store if store is not None else SessionStore(SESSION_FILE),
            events=self.session_events,
            allow_degraded_login=self.config.get("allowDegradedLogin", True),
        )
        log.info("Portal client v%s ready (server=%s, signed_in=%s)",
                 PORTAL_VERSION, self.config["serverUrl"], self.session.is_authenticated)

    # ─── Payment flow helpers ────────────────────────────────

    async def pay(self, donation_id):
        """Create the gateway payment with the configured return URLs."""
        return await self.payments.create_payment(
            donation_id,
            response_url=self.config.get("returnUrl"),
            confirmation_url=self.config.get("confirmationUrl"),
        )

    async def handle_payment_return(self, return_url):
        """Entry point for the gateway's redirect back to us."""
        return await self.payments.resume_from_return(return_url)

    # ─── Lifecycle ───────────────────────────────────────────

    def _on_session_change(self, session):
        if session is None:
            log.info("Signed out — clearing cached donations")
            self.payments.cache.clear()

    def close(self):
        self._unsubscribe()
        self.payments.cache.clear()
        self.client.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.close()
