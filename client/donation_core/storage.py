"""
Durable session slots — current user profile, access token, refresh token.

The three slots live in one JSON document and are always written or cleared
together: writes go to a temp file that is then os.replace()d over the real
one, so a crash mid-write leaves either the old group or the new group.
"""

import os
import json
from pathlib import Path

from .config import log
from .constants import KEY_CURRENT_USER, KEY_ACCESS_TOKEN, KEY_REFRESH_TOKEN, SESSION_KEYS


class SessionStore:
    """File-backed store for the session group."""

    def __init__(self, path):
        self.path = Path(path)

    def load(self):
        """
        Returns a dict with all three slots (values may be None), or None
        when nothing is persisted. Raises ValueError if the file is corrupt.
        """
        if not self.path.exists():
            return None
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ValueError(f"Unparsable session file: {e}") from e
        if not isinstance(data, dict):
            raise ValueError("Session file is not a JSON object")
        return {key: data.get(key) for key in SESSION_KEYS}

    def save(self, profile, access_token, refresh_token):
        """Persist the whole group. Partial groups are refused."""
        if not (profile and access_token and refresh_token):
            raise ValueError("Session group must include profile and both tokens")
        payload = {
            KEY_CURRENT_USER: profile,
            KEY_ACCESS_TOKEN: access_token,
            KEY_REFRESH_TOKEN: refresh_token,
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        os.replace(tmp, self.path)

    def clear(self):
        """Remove the whole group. Safe to call when nothing is stored."""
        try:
            self.path.unlink(missing_ok=True)
        except OSError as e:
            # A file we cannot delete would resurrect the session on restart.
            log.error("Could not clear session file %s: %s", self.path, e)
            raise

    def refresh_token(self):
        """Persisted refresh token, or None if absent or unreadable."""
        try:
            data = self.load()
        except ValueError:
            return None
        return (data or {}).get(KEY_REFRESH_TOKEN)


class MemorySessionStore(SessionStore):
    """In-process store with the same contract. Used by tests and embedders."""

    def __init__(self, initial=None):
        self._data = dict(initial) if initial else None

    def load(self):
        if self._data is None:
            return None
        return {key: self._data.get(key) for key in SESSION_KEYS}

    def save(self, profile, access_token, refresh_token):
        if not (profile and access_token and refresh_token):
            raise ValueError("Session group must include profile and both tokens")
        self._data = {
            KEY_CURRENT_USER: profile,
            KEY_ACCESS_TOKEN: access_token,
            KEY_REFRESH_TOKEN: refresh_token,
        }

    def clear(self):
        self._data = None
