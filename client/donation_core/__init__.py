"""
donation_core — session & payment-reconciliation core of the donation portal client
====================================================================================
Architecture: one asyncio event loop. Blocking HTTP runs in worker threads,
so every network call is a suspension point; state is only mutated on the loop.

  constants.py       → Version, timeouts, stale times, poll intervals, roles
  config.py          → Paths, logging, config load/save/resolve
  http_client.py     → requests.Session with retry/pooling + certifi CA bundle
  errors.py          → Failure taxonomy (InvalidCredentials, SessionExpired, ...)
  models.py          → Session, Donation, DonationPage, PaymentStatusResult, PaymentReturn
  storage.py         → SessionStore (the three persisted slots, written as a group)
  events.py          → EventEmitter (explicit pub-sub instances)
  network.py         → Health probe
  transport.py       → ApiClient (bearer token, 401 → one shared refresh → retry once)
  api.py             → Server API calls (auth, donations, payments)
  session.py         → SessionManager (login, degraded fallback, refresh, logout)
  cache.py           → QueryCache (shared fetches, invalidation, adaptive polling)
  reconciliation.py  → PaymentReconciliationLayer (donations + gateway status)
  app.py             → PortalApp (wiring, payment return handling)
  runner.py          → main() command line
"""

from .app import PortalApp
from .errors import (
    PortalError, InvalidCredentials, SessionExpired, NoRefreshToken,
    NetworkUnavailable, RemoteRejection, UsageError, NotAuthenticated,
)
from .models import Donation, PaymentStatus, Session, SessionState
