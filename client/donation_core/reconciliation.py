"""
PaymentReconciliationLayer — donations and gateway payment status, cached.

Reads go through QueryCache (shared in-flight fetches, staleness). Mutations
follow invalidate-on-success. Payment status answers from the gateway are
eventually consistent, so every status-bearing payload is merged with the
rule: terminal (APPROVED/DECLINED/EXPIRED) beats PENDING, never the reverse.

Side effects are injected: ``navigate(url)`` for the gateway redirect and a
``notifications`` EventEmitter that receives ``(level, message)``.
"""

import webbrowser
from collections.abc import Mapping

from .config import log
from .constants import (
    DONATION_STALE_SEC, DONATION_LIST_STALE_SEC, PAYMENT_STATUS_STALE_SEC,
    GATEWAY_CONFIG_STALE_SEC, STATS_STALE_SEC,
    LIST_POLL_INTERVAL_SEC, PAYMENT_STATUS_POLL_SEC,
)
from .cache import QueryCache, PollPolicy, freeze
from .errors import PortalError, UsageError
from .events import EventEmitter
from .models import PaymentReturn
from . import api

DONATIONS = ("donations",)
GATEWAY_CONFIG = ("gatewayConfig",)
DONATION_STATS = ("donationStats",)


def donation_key(donation_id):
    return ("donation", str(donation_id))


def donations_key(filters=None):
    return ("donations", freeze(filters))


def payment_status_key(donation_id=None, gateway_order_id=None):
    if donation_id:
        return ("paymentStatus", str(donation_id))
    return ("paymentStatus", "order", str(gateway_order_id))


def _merge_status(cached, fetched):
    if fetched.supersedes(cached):
        return fetched
    log.info("Discarding out-of-order %s status for donation %s (cached %s)",
             fetched.status.name if fetched.status else "unknown",
             cached.donation_id, cached.status.name)
    return cached


def _merge_donation(cached, fetched):
    if cached is None or fetched is None:
        return fetched
    merged = cached.merge(fetched)
    if merged is cached and fetched is not cached:
        log.info("Discarding PENDING copy of donation %s (cached %s)", cached.id, cached.status.name)
    return merged


def _merge_page(cached, fetched):
    return cached.merge(fetched)


class PaymentReconciliationLayer:
    def __init__(self, client, cache=None, navigate=None, notifications=None,
                 list_poll_interval=LIST_POLL_INTERVAL_SEC,
                 status_poll_interval=PAYMENT_STATUS_POLL_SEC):
        self._client = client
        self.cache = cache if cache is not None else QueryCache()
        self._navigate = navigate or webbrowser.open
        self.notifications = notifications if notifications is not None else EventEmitter("notifications")
        self.list_poll_interval = list_poll_interval
        self.status_poll_interval = status_poll_interval

    # ─── Polling policy ──────────────────────────────────────

    def list_poll_policy(self, page):
        """Poll a list while any donation on it waits for the gateway."""
        if page is not None and page.any_awaiting_gateway:
            return PollPolicy.every(self.list_poll_interval)
        return PollPolicy.disabled()

    def donation_poll_policy(self, donation):
        """Poll a single donation while it waits for the gateway."""
        if donation is not None and donation.awaiting_gateway:
            return PollPolicy.every(self.list_poll_interval)
        return PollPolicy.disabled()

    # ─── Reads ───────────────────────────────────────────────

    async def get_donation(self, donation_id, force=False):
        """The donation, or None if the server does not know it."""
        return await self.cache.fetch(
            donation_key(donation_id),
            lambda: api.fetch_donation(self._client, donation_id),
            stale_after=DONATION_STALE_SEC,
            policy=self.donation_poll_policy,
            merge=_merge_donation,
            force=force,
        )

    async def list_donations(self, filters=None, force=False):
        filters = dict(filters or {})
        api.donation_query_params(filters)  # unknown filters fail before any I/O
        return await self.cache.fetch(
            donations_key(filters),
            lambda: api.fetch_donations(self._client, filters),
            stale_after=DONATION_LIST_STALE_SEC,
            policy=self.list_poll_policy,
            merge=_merge_page,
            force=force,
        )

    async def get_payment_status(self, donation_id=None, gateway_order_id=None, poll=False, force=False):
        """
        Cached gateway status. Polling is the caller's call: pass ``poll=True``
        when the donation is known to be pending; it is never inferred here.
        """
        if not donation_id and not gateway_order_id:
            raise UsageError("Payment status needs a donation id or a gateway order id")
        policy = PollPolicy.every(self.status_poll_interval) if poll else PollPolicy.disabled()
        return await self.cache.fetch(
            payment_status_key(donation_id, gateway_order_id),
            lambda: self._fetch_status(donation_id, gateway_order_id),
            stale_after=PAYMENT_STATUS_STALE_SEC,
            policy=lambda _result: policy,
            merge=_merge_status,
            force=force,
        )

    async def get_gateway_config(self):
        return await self.cache.fetch(
            GATEWAY_CONFIG,
            lambda: api.fetch_gateway_config(self._client),
            stale_after=GATEWAY_CONFIG_STALE_SEC,
        )

    async def validate_gateway_config(self):
        """True when the gateway is configured without errors. False on any failure."""
        try:
            config = await self.get_gateway_config()
        except PortalError as e:
            log.warning("Gateway config check failed: %s", e)
            return False
        return bool(config.get("configured")) and not config.get("errors")

    async def donation_statistics(self):
        return await self.cache.fetch(
            DONATION_STATS,
            lambda: api.fetch_donation_stats(self._client),
            stale_after=STATS_STALE_SEC,
        )

    def subscribe(self, key, listener):
        """Follow a cache key (see donation_key / donations_key / payment_status_key)."""
        return self.cache.subscribe(key, listener)

    # ─── Payment mutations ───────────────────────────────────

    async def create_payment(self, donation_id, response_url=None, confirmation_url=None):
        """
        Open a gateway payment for ``donation_id`` and hand the browser over
        to the gateway. On failure nothing is invalidated and nobody navigates.
        """
        try:
            data = await api.create_payment(self._client, donation_id, response_url, confirmation_url)
        except PortalError as e:
            self._notify("error", "Could not create the payment. Please try again.")
            log.error("Payment creation failed for donation %s: %s", donation_id, e)
            raise

        self.cache.invalidate(DONATIONS)
        self.cache.invalidate(donation_key(donation_id))
        returned_id = data.get("donation_id")
        if returned_id is not None and str(returned_id) != str(donation_id):
            self.cache.invalidate(donation_key(returned_id))
        self._notify("success", "Payment created")

        payment_url = data.get("payment_url")
        if payment_url:
            log.info("Redirecting to payment gateway for donation %s", donation_id)
            self._navigate(payment_url)
        return data

    async def check_payment_status(self, donation_id=None, gateway_order_id=None):
        """
        Ask the gateway, fold the answer into every cached copy, invalidate.
        Returns the effective status (a late PENDING never replaces a terminal one).
        """
        if not donation_id and not gateway_order_id:
            raise UsageError("Payment status needs a donation id or a gateway order id")

        result = await self._fetch_status(donation_id, gateway_order_id)
        effective = self.cache.put(
            payment_status_key(donation_id, gateway_order_id), result, merge=_merge_status,
        )
        if result.donation_id is not None:
            self.cache.invalidate(donation_key(result.donation_id))
        self.cache.invalidate(DONATIONS)
        return effective

    async def resume_from_return(self, source):
        """
        Continue after the gateway redirects back. ``source`` is the return
        URL or its query mapping. Returns (PaymentReturn, effective status).
        """
        ret = PaymentReturn.from_query(source) if isinstance(source, Mapping) else PaymentReturn.from_url(source)
        if not ret.can_resume:
            raise UsageError("Gateway return carries neither a donation id nor an order id")
        log.info("Resuming payment check (reference=%s, transaction=%s)",
                 ret.reference_code or "?", ret.transaction_id or "?")
        status = await self.check_payment_status(ret.donation_id, ret.gateway_order_id)
        return ret, status

    # ─── Donation mutations ──────────────────────────────────

    async def create_donation(self, payload):
        donation = await self._mutate(api.create_donation(self._client, payload),
                                      "Could not create the donation")
        self.cache.invalidate(DONATIONS)
        self._notify("success", "Donation created")
        return donation

    async def update_donation(self, donation_id, payload):
        donation = await self._mutate(api.update_donation(self._client, donation_id, payload),
                                      "Could not update the donation")
        self.cache.invalidate(donation_key(donation_id))
        self.cache.invalidate(DONATIONS)
        self._notify("success", "Donation updated")
        return donation

    async def delete_donation(self, donation_id):
        await self._mutate(api.delete_donation(self._client, donation_id),
                           "Could not delete the donation")
        self.cache.invalidate(DONATIONS)
        self.cache.evict(donation_key(donation_id))
        self.cache.evict(payment_status_key(donation_id))
        self._notify("success", "Donation deleted")

    async def process_donation(self, donation_id):
        donation = await self._mutate(api.process_donation(self._client, donation_id),
                                      "Could not process the donation")
        self.cache.invalidate(donation_key(donation_id))
        self.cache.invalidate(DONATIONS)
        return donation

    async def cancel_donation(self, donation_id):
        donation = await self._mutate(api.cancel_donation(self._client, donation_id),
                                      "Could not cancel the donation")
        self.cache.invalidate(donation_key(donation_id))
        self.cache.invalidate(DONATIONS)
        return donation

    # ─── Internals ───────────────────────────────────────────

    async def _fetch_status(self, donation_id, gateway_order_id):
        result = await api.fetch_payment_status(self._client, donation_id, gateway_order_id)
        result = self._reconcile_status(result, payment_status_key(donation_id, gateway_order_id))
        self._apply_status(result, fallback_donation_id=donation_id)
        return result

    def _reconcile_status(self, result, asked_key):
        """
        One payment answers to both its donation id and its gateway order id.
        Merge the answer with whatever is cached under the identifiers it
        reveals, store the outcome there, and return it.
        """
        aliases = []
        if result.donation_id is not None:
            aliases.append(payment_status_key(result.donation_id))
        if result.gateway_order_id:
            aliases.append(payment_status_key(gateway_order_id=result.gateway_order_id))
        aliases = [key for key in dict.fromkeys(aliases) if key != asked_key]

        effective = result
        for key in aliases:
            cached = self.cache.peek(key)
            if cached is not None:
                effective = _merge_status(cached, effective)
        for key in aliases:
            self.cache.put(key, effective, merge=_merge_status)
        return effective

    def _apply_status(self, result, fallback_donation_id=None):
        """Fold a gateway status into cached donations (item + every list)."""
        if result.status is None:
            return
        target_id = result.donation_id if result.donation_id is not None else fallback_donation_id
        order_id = result.gateway_order_id

        def matches(donation):
            if target_id is not None and str(donation.id) == str(target_id):
                return True
            return order_id is not None and donation.gateway_order_id == order_id

        def patch(donation):
            if donation is None or not matches(donation):
                return donation
            return donation.with_status(result.status, gateway_order_id=order_id)

        if target_id is not None:
            self.cache.update(donation_key(target_id), patch)
        for key in self.cache.keys(DONATIONS):
            self.cache.update(key, lambda page: page.with_donations(patch))

    async def _mutate(self, coro, failure_message):
        try:
            return await coro
        except PortalError as e:
            self._notify("error", failure_message)
            log.error("%s: %s", failure_message, e)
            raise

    def _notify(self, level, message):
        self.notifications.emit(level, message)
