"""Durable client-side token storage with change notification.

The Python counterpart of the browser's ``localStorage`` slot the bridge page
writes to. Listeners are called synchronously on every change, so consumers
never need to poll.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

logger = logging.getLogger(__name__)

TOKEN_KEY = "token"
USERNAME_KEY = "username"


@dataclass(frozen=True)
class StorageChange:
    """One key's transition; ``new_value`` is None when the key was removed."""

    key: str
    old_value: Optional[str]
    new_value: Optional[str]


StorageListener = Callable[[StorageChange], None]


class TokenStorage:
    """In-memory storage; subclasses add persistence via ``_load``/``_save``."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._values: dict[str, str] = self._load()
        self._listeners: list[StorageListener] = []

    # Persistence hooks

    def _load(self) -> dict[str, str]:
        return {}

    def _save(self, values: dict[str, str]) -> None:
        pass

    # Public API

    @property
    def token(self) -> Optional[str]:
        return self.get(TOKEN_KEY)

    @property
    def username(self) -> Optional[str]:
        return self.get(USERNAME_KEY)

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._values.get(key)

    def set_token(self, token: str, username: Optional[str] = None) -> None:
        """Store a bearer token (and the username it was minted for)."""
        changes = [self._put(TOKEN_KEY, token)]
        if username is not None:
            changes.append(self._put(USERNAME_KEY, username))
        self._commit(changes)

    def set_username(self, username: str) -> None:
        self._commit([self._put(USERNAME_KEY, username)])

    def clear(self) -> None:
        """Forget the token and username."""
        self._commit([self._put(TOKEN_KEY, None), self._put(USERNAME_KEY, None)])

    def subscribe(self, listener: StorageListener) -> Callable[[], None]:
        """
        Register a change listener.

        Returns:
            A callable that removes the listener
        """
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    # Internals

    def _put(self, key: str, value: Optional[str]) -> Optional[StorageChange]:
        with self._lock:
            old = self._values.get(key)
            if old == value:
                return None
            if value is None:
                del self._values[key]
            else:
                self._values[key] = value
            return StorageChange(key=key, old_value=old, new_value=value)

    def _commit(self, changes: list[Optional[StorageChange]]) -> None:
        applied = [change for change in changes if change is not None]
        if not applied:
            return
        with self._lock:
            self._save(dict(self._values))
            listeners = list(self._listeners)
        for change in applied:
            for listener in listeners:
                listener(change)


class FileTokenStorage(TokenStorage):
    """JSON file storage, written atomically with owner-only permissions."""

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self.path = Path(path)
        super().__init__()

    def _load(self) -> dict[str, str]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Ignoring unreadable token file %s", self.path)
            return {}
        if not isinstance(data, dict):
            return {}
        return {k: v for k, v in data.items() if isinstance(k, str) and isinstance(v, str)}

    def _save(self, values: dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=".token-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(values, fh)
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
