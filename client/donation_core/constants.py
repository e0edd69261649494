"""
Constants, timeouts, polling intervals, storage keys, and role keywords.
"""

PORTAL_VERSION = "1.0.0"

# ─── Network ─────────────────────────────────────────────────────
API_TIMEOUT = 10               # Seconds, same budget the web client used
HEALTH_TIMEOUT = 4             # Health probe must stay cheap
NETWORK_RESET_AFTER = 3        # Consecutive transport failures before the HTTP session is rebuilt
DEFAULT_SERVER_URL = "http://localhost:8000"
DEFAULT_API_PREFIX = "/api/v1"
DEFAULT_HEALTH_PATH = "/health"

# ─── Cache freshness (seconds) ───────────────────────────────────
DONATION_STALE_SEC = 5 * 60
DONATION_LIST_STALE_SEC = 2 * 60
PAYMENT_STATUS_STALE_SEC = 30
GATEWAY_CONFIG_STALE_SEC = 5 * 60
STATS_STALE_SEC = 5 * 60

# ─── Polling (seconds) ───────────────────────────────────────────
LIST_POLL_INTERVAL_SEC = 30         # While any donation waits on the gateway
PAYMENT_STATUS_POLL_SEC = 10        # Caller-driven, after the gateway redirect
POLL_ERROR_BACKOFF_SEC = 5

# ─── Persisted session slots ─────────────────────────────────────
KEY_CURRENT_USER = "currentUser"
KEY_ACCESS_TOKEN = "accessToken"
KEY_REFRESH_TOKEN = "refreshToken"
SESSION_KEYS = (KEY_CURRENT_USER, KEY_ACCESS_TOKEN, KEY_REFRESH_TOKEN)

# ─── Degraded login ──────────────────────────────────────────────
DEGRADED_TOKEN_PREFIX = "degraded_"
DEFAULT_ROLE = "USER"

# Keyword in the email local part → role. First match wins.
ROLE_KEYWORDS = (
    ("admin", "ADMIN"),
    ("donor", "DONOR"),
    ("user", "USER"),
)

DASHBOARD_ROUTE = "/dashboard"

# ─── HTTP status → default user-facing message ──────────────────
STATUS_MESSAGES = {
    400: "Invalid request",
    401: "Unauthorized access",
    403: "Access forbidden",
    404: "Resource not found",
    429: "Too many requests. Please try again later.",
    500: "Server error. Please try again later.",
}
DEFAULT_ERROR_MESSAGE = "An error occurred"
