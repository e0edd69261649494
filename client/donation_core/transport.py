"""
ApiClient — the request/response glue every remote call goes through.

  * runs the blocking requests call in a worker thread (asyncio.to_thread),
    so every request is a suspension point on the event loop
  * attaches the current bearer token
  * maps transport failures to NetworkUnavailable and HTTP errors to
    RemoteRejection
  * on 401: asks the authenticator for a fresh token (concurrent callers
    share one refresh) and retries exactly once; a second 401 is raised
"""

import time
import asyncio

import requests

from .config import log
from .constants import (
    API_TIMEOUT, STATUS_MESSAGES, DEFAULT_ERROR_MESSAGE, DEFAULT_HEALTH_PATH, NETWORK_RESET_AFTER,
)
from .errors import NetworkUnavailable, RemoteRejection
from . import http_client
from . import network


def rejection_from_response(resp):
    """Build a RemoteRejection from an HTTP error response."""
    detail = None
    try:
        body = resp.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        detail = body.get("detail", body.get("message"))

    if isinstance(detail, str) and detail:
        message = detail
    elif isinstance(detail, dict) and detail.get("message"):
        message = detail["message"]
    else:
        message = STATUS_MESSAGES.get(resp.status_code, DEFAULT_ERROR_MESSAGE)
    return RemoteRejection(resp.status_code, message, detail)


class ApiClient:
    """
    One instance per process. ``authenticator`` is set by SessionManager and
    must provide ``access_token`` and ``refresh_after_unauthorized(token)``.
    """

    def __init__(self, config, http=None):
        self.server_url = config["serverUrl"].rstrip("/")
        self.api_prefix = config.get("apiPrefix", "")
        self.health_path = config.get("healthPath", DEFAULT_HEALTH_PATH)
        self._owns_http = http is None
        self.http = http if http is not None else http_client.create_session()
        self.authenticator = None
        self._network_failures = 0
        self._requests_in_flight = 0
        self._reset_pending = False

    def url_for(self, path):
        return f"{self.server_url}{self.api_prefix}{path}"

    async def health(self):
        """Reachability probe, outside the API prefix. Never raises."""
        self._requests_in_flight += 1
        try:
            return await network.probe(self.http, self.server_url, self.health_path)
        finally:
            self._release()

    # ─── Requests ────────────────────────────────────────────

    async def request(self, method, path, *, json=None, params=None, token=None, authenticate=True):
        """
        Send a request and return the decoded JSON body ({} when empty).

        token        explicit bearer token; used as-is, never refreshed
        authenticate False → no Authorization header at all
        """
        if not authenticate:
            return await self._send(method, path, json, params, None)
        if token is not None:
            return await self._send(method, path, json, params, token)

        used = self.authenticator.access_token if self.authenticator else None
        try:
            return await self._send(method, path, json, params, used)
        except RemoteRejection as e:
            if e.status != 401 or used is None:
                raise

        log.info("401 on %s %s — refreshing token and retrying once", method, path)
        fresh = await self.authenticator.refresh_after_unauthorized(used)
        return await self._send(method, path, json, params, fresh)

    async def get(self, path, **kwargs):
        return await self.request("GET", path, **kwargs)

    async def post(self, path, **kwargs):
        return await self.request("POST", path, **kwargs)

    async def put(self, path, **kwargs):
        return await self.request("PUT", path, **kwargs)

    async def delete(self, path, **kwargs):
        return await self.request("DELETE", path, **kwargs)

    def close(self):
        try:
            self.http.close()
        except requests.RequestException:
            pass

    # ─── Internals ───────────────────────────────────────────

    async def _send(self, method, path, json, params, token):
        self._requests_in_flight += 1
        try:
            result = await asyncio.to_thread(self._send_blocking, method, path, json, params, token)
        except NetworkUnavailable:
            self._note_network_failure()
            raise
        except RemoteRejection:
            self._network_failures = 0
            raise
        finally:
            self._release()
        self._network_failures = 0
        return result

    def _release(self):
        self._requests_in_flight -= 1
        if self._reset_pending and self._requests_in_flight == 0:
            self._reset_http()

    def _send_blocking(self, method, path, json, params, token):
        url = self.url_for(path)
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        started = time.monotonic()
        try:
            resp = self.http.request(
                method, url, json=json, params=params, headers=headers, timeout=API_TIMEOUT,
            )
        except requests.RequestException as e:
            log.warning("API %s %s network error: %s", method, path, e)
            raise NetworkUnavailable() from e

        log.debug("API %s %s → %d in %dms", method, path, resp.status_code,
                  (time.monotonic() - started) * 1000)

        if resp.status_code >= 400:
            rejection = rejection_from_response(resp)
            log.warning("API %s %s rejected: HTTP %d — %s", method, path,
                        resp.status_code, rejection.message)
            raise rejection

        if resp.status_code == 204 or not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError as e:
            raise RemoteRejection(resp.status_code, "Malformed response from server") from e

    def _note_network_failure(self):
        self._network_failures += 1
        if self._owns_http and self._network_failures >= NETWORK_RESET_AFTER:
            # Rebuild the pool after repeated transport errors, once no thread uses it
            self._reset_pending = True

    def _reset_http(self):
        log.warning("%d consecutive network errors — resetting HTTP session", self._network_failures)
        self._reset_pending = False
        self._network_failures = 0
        self.http = http_client.reset_session(self.http)
