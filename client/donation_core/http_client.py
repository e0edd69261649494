"""
HTTP session with connection pooling, automatic retry, and certifi CA bundle.

Only gateway-side 5xx hiccups are retried here. 401 handling (refresh and
retry once) lives in transport.ApiClient, one layer up.
"""

import certifi
import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

_retry_strategy = Retry(
    total=2,
    backoff_factor=0.5,                         # Wait 0.5s, 1s between retries
    status_forcelist=[502, 503, 504],
    allowed_methods=["HEAD", "GET"],            # Never replay a payment POST
    raise_on_status=False,
)


def create_session():
    """Create a new requests.Session with connection pooling, retry, and SSL."""
    session = requests.Session()
    adapter = HTTPAdapter(
        pool_connections=2,
        pool_maxsize=8,
        max_retries=_retry_strategy,
    )
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    session.verify = certifi.where()
    session.headers.update({"Content-Type": "application/json", "Accept": "application/json"})
    return session


def reset_session(session):
    """Close and recreate the HTTP session (fixes stale connections)."""
    try:
        session.close()
    except requests.RequestException:
        pass
    return create_session()
