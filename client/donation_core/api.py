"""
Server API calls — auth, donations, payment gateway.

All functions are coroutines taking the shared ApiClient. They return model
objects (or plain dicts where the payload has no model) and raise the
errors.py taxonomy; retry-on-401 is the ApiClient's job, not theirs.
"""

from .config import log
from .errors import RemoteRejection, UsageError
from .models import Donation, DonationPage, PaymentStatusResult


# ─── Auth ────────────────────────────────────────────────────────

async def login(client, credentials):
    """POST /auth/login → (access_token, refresh_token)."""
    data = await client.post("/auth/login", json=dict(credentials), authenticate=False)
    access, refresh = data.get("access_token"), data.get("refresh_token")
    if not access or not refresh:
        raise RemoteRejection(502, "Login response did not include a token pair")
    return access, refresh


async def fetch_profile(client, token=None):
    """GET /auth/me. With ``token`` the call is made with exactly that token."""
    if token is not None:
        return await client.get("/auth/me", token=token)
    return await client.get("/auth/me")


async def update_profile(client, data):
    return await client.put("/auth/me", json=dict(data))


async def refresh(client, refresh_token):
    """POST /auth/refresh → (access_token, refresh_token or None)."""
    data = await client.post(
        "/auth/refresh", json={"refresh_token": refresh_token}, authenticate=False,
    )
    access = data.get("access_token")
    if not access:
        raise RemoteRejection(502, "Refresh response did not include an access token")
    return access, data.get("refresh_token")


async def logout(client, token):
    await client.post("/auth/logout", token=token)


async def register(client, data):
    data = await client.post("/auth/register", json=dict(data), authenticate=False)
    return data.get("message", "Account created")


async def request_password_reset(client, email):
    await client.post("/auth/password-reset", json={"email": email}, authenticate=False)


# ─── Donations ───────────────────────────────────────────────────

_FILTER_PARAMS = {
    "limit": "limit",
    "offset": "offset",
    "status": "status",
    "donation_type": "donation_type",
    "donor_email": "donor_email",
}


def donation_query_params(filters):
    """Translate list filters to query params; None/empty values are dropped."""
    params = {}
    for key, value in (filters or {}).items():
        if key not in _FILTER_PARAMS:
            raise UsageError(f"Unknown donation filter: {key}")
        if value in (None, ""):
            continue
        params[_FILTER_PARAMS[key]] = value
    return params


async def fetch_donation(client, donation_id):
    """GET /donations/{id}. None when the server says 404."""
    try:
        data = await client.get(f"/donations/{donation_id}")
    except RemoteRejection as e:
        if e.status == 404:
            return None
        raise
    return Donation.from_api(data)


async def fetch_donations(client, filters=None):
    data = await client.get("/donations", params=donation_query_params(filters))
    page = DonationPage.from_api(data)
    log.debug("Fetched %d donations (total=%d)", len(page.donations), page.total)
    return page


async def create_donation(client, payload):
    data = await client.post("/donations", json=dict(payload))
    return Donation.from_api(data)


async def update_donation(client, donation_id, payload):
    data = await client.put(f"/donations/{donation_id}", json=dict(payload))
    return Donation.from_api(data)


async def delete_donation(client, donation_id):
    await client.delete(f"/donations/{donation_id}")


async def process_donation(client, donation_id):
    data = await client.post(f"/donations/{donation_id}/process")
    return Donation.from_api(data)


async def cancel_donation(client, donation_id):
    data = await client.post(f"/donations/{donation_id}/cancel")
    return Donation.from_api(data)


async def fetch_donation_stats(client):
    return await client.get("/donations/stats")


# ─── Payment gateway ─────────────────────────────────────────────

async def create_payment(client, donation_id, response_url=None, confirmation_url=None):
    """POST /payments/create → dict with at least ``payment_url``."""
    data = await client.post("/payments/create", json={
        "donation_id": donation_id,
        "response_url": response_url,
        "confirmation_url": confirmation_url,
    })
    log.info("Payment created for donation %s (order=%s)",
             donation_id, data.get("payu_order_id") or data.get("gateway_order_id") or "?")
    return data


async def fetch_payment_status(client, donation_id=None, gateway_order_id=None):
    """GET /payments/status. At least one identifier is required."""
    if not donation_id and not gateway_order_id:
        raise UsageError("Payment status needs a donation id or a gateway order id")
    params = {}
    if donation_id:
        params["donation_id"] = donation_id
    if gateway_order_id:
        params["payu_order_id"] = gateway_order_id
    data = await client.get("/payments/status", params=params)
    return PaymentStatusResult.from_api(data)


async def fetch_gateway_config(client):
    return await client.get("/config/status")
