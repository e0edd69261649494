"""
Paths, logging setup, config load/save, safe_print.
"""

import os
import sys
import json
import logging
from pathlib import Path

from .constants import DEFAULT_SERVER_URL, DEFAULT_API_PREFIX, DEFAULT_HEALTH_PATH


# ─── Paths ───────────────────────────────────────────────────────
# One config/session per user profile. Override with DONATION_PORTAL_HOME.
_FOLDER_NAME = ".donation-portal"

BASE_DIR = Path(os.environ.get("DONATION_PORTAL_HOME") or Path.home() / _FOLDER_NAME)

CONFIG_FILE = BASE_DIR / "config.json"
SESSION_FILE = BASE_DIR / "session.json"
LOG_FILE = BASE_DIR / "portal.log"

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"

log = logging.getLogger("portal")


# ─── Safe print (no crash when stdout is gone) ───────────────────

def safe_print(*args, **kwargs):
    try:
        print(*args, **kwargs)
    except Exception:
        pass


# ─── Logging ─────────────────────────────────────────────────────

def setup_logging(level=logging.INFO):
    """File + console logging for the CLI. Library users configure their own."""
    BASE_DIR.mkdir(parents=True, exist_ok=True)
    try:
        if LOG_FILE.exists() and LOG_FILE.stat().st_size > 1_000_000:
            LOG_FILE.write_text("")
    except OSError:
        pass

    file_handler = logging.FileHandler(str(LOG_FILE), encoding="utf-8")
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT))

    log.setLevel(level)
    log.addHandler(file_handler)
    log.addHandler(console_handler)
    return log


# ─── Config Management ──────────────────────────────────────────

def load_config():
    """Load config from disk. Returns dict or None."""
    if CONFIG_FILE.exists():
        try:
            with open(CONFIG_FILE, "r") as f:
                return json.load(f)
        except (json.JSONDecodeError, IOError):
            return None
    return None


def save_config(config):
    """Save config dict to disk."""
    BASE_DIR.mkdir(parents=True, exist_ok=True)
    with open(CONFIG_FILE, "w") as f:
        json.dump(config, f, indent=2)
    log.info("Config saved to %s", CONFIG_FILE)


def resolve_config(overrides=None):
    """
    Defaults ← config file ← environment ← explicit overrides.
    Always returns a complete dict.
    """
    config = {
        "serverUrl": DEFAULT_SERVER_URL,
        "apiPrefix": DEFAULT_API_PREFIX,
        "healthPath": DEFAULT_HEALTH_PATH,
        "returnUrl": None,
        "confirmationUrl": None,
        "allowDegradedLogin": True,
    }
    config.update(load_config() or {})

    env_url = os.environ.get("DONATION_API_BASE_URL")
    if env_url:
        config["serverUrl"] = env_url

    if overrides:
        config.update({k: v for k, v in overrides.items() if v is not None})

    config["serverUrl"] = config["serverUrl"].rstrip("/")
    return config
