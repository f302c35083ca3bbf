"""
Client session and session-scoped state.

``SessionManager`` owns the durable session id and its TTL; the other
helpers wrap keys kept in per-tab session storage. Storage is any
``MutableMapping[str, str]``; ``JsonFileStorage`` persists it to disk.
"""

import json
import logging
import secrets
import time
from collections.abc import MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator, Optional

from core.domain import Case, parse_case

logger = logging.getLogger(__name__)

SESSION_KEY = "ab_test_session"
SESSION_META_KEY = "ab_test_session_meta"
ACTIVE_TEST_KEY = "ab_test_active"
SESSION_TTL_SECONDS = 12 * 60 * 60

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _base36(value: int) -> str:
    if value <= 0:
        return "0"
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits))


def generate_session_id(now_ms: int) -> str:
    """``session_`` + 16 random base36 chars + creation time in base36."""
    random_part = "".join(secrets.choice(_BASE36) for _ in range(16))
    return f"session_{random_part}{_base36(now_ms)}"


def _now_ms() -> int:
    return int(time.time() * 1000)


class JsonFileStorage(MutableMapping):
    """String key/value storage persisted as a JSON object."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._data: dict[str, str] = {}
        if self.path.exists():
            try:
                loaded = json.loads(self.path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as e:
                logger.warning("Ignoring unreadable storage file %s: %s", self.path, e)
                loaded = {}
            if isinstance(loaded, dict):
                self._data = {str(k): str(v) for k, v in loaded.items()}

    def _flush(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(self._data), encoding="utf-8")

    def __getitem__(self, key: str) -> str:
        return self._data[key]

    def __setitem__(self, key: str, value: str) -> None:
        self._data[key] = value
        self._flush()

    def __delitem__(self, key: str) -> None:
        del self._data[key]
        self._flush()

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)


class SessionManager:
    """Get, create and expire the client session id."""

    def __init__(
        self,
        storage: MutableMapping,
        ttl_seconds: int = SESSION_TTL_SECONDS,
        clock: Callable[[], int] = _now_ms,
    ):
        self.storage = storage
        self.ttl_ms = ttl_seconds * 1000
        self.clock = clock

    def _metadata(self) -> Optional[dict]:
        raw = self.storage.get(SESSION_META_KEY)
        if not raw:
            return None
        try:
            metadata = json.loads(raw)
        except ValueError:
            logger.debug("Session metadata unreadable; resetting")
            return None
        if not isinstance(metadata, dict) or not metadata.get("id") or not metadata.get("createdAt"):
            return None
        return metadata

    def get(self) -> Optional[str]:
        """The current session id, or None if there is none or it expired."""
        now = self.clock()
        metadata = self._metadata()
        if metadata is None:
            legacy_id = self.storage.get(SESSION_KEY)
            if legacy_id:
                # Id stored without an envelope; start its TTL now
                self._store(legacy_id, now)
                return legacy_id
            return None

        try:
            age = now - int(metadata["createdAt"])
        except (TypeError, ValueError):
            return None
        if age >= self.ttl_ms:
            logger.debug("Session TTL exceeded; rotating session id")
            return None
        return str(metadata["id"])

    def create(self) -> str:
        now = self.clock()
        session_id = generate_session_id(now)
        self._store(session_id, now)
        logger.debug("New session created: %s", session_id)
        return session_id

    def get_or_create(self) -> str:
        return self.get() or self.create()

    def expire(self) -> None:
        self.storage.pop(SESSION_KEY, None)
        self.storage.pop(SESSION_META_KEY, None)

    def _store(self, session_id: str, created_at: int) -> None:
        self.storage[SESSION_KEY] = session_id
        self.storage[SESSION_META_KEY] = json.dumps({"id": session_id, "createdAt": created_at})


@dataclass
class ActiveTest:
    test_id: str
    product_id: str
    case: Case
    images: list[str]

    def to_dict(self) -> dict:
        return {
            "testId": self.test_id,
            "productId": self.product_id,
            "case": self.case.value,
            "images": self.images,
        }


class ActiveTestCache:
    """The test applied on this page, kept for the trackers."""

    def __init__(self, storage: MutableMapping):
        self.storage = storage

    def get(self) -> Optional[ActiveTest]:
        raw = self.storage.get(ACTIVE_TEST_KEY)
        if not raw:
            return None
        try:
            data = json.loads(raw)
        except ValueError:
            logger.debug("Active test data unreadable")
            return None
        if not isinstance(data, dict):
            return None
        case = parse_case(str(data.get("case") or ""))
        if not data.get("testId") or not data.get("productId") or case is None:
            return None
        return ActiveTest(
            test_id=data["testId"],
            product_id=data["productId"],
            case=case,
            images=list(data.get("images") or []),
        )

    def set(self, active: ActiveTest) -> None:
        self.storage[ACTIVE_TEST_KEY] = json.dumps(active.to_dict())

    def clear(self) -> None:
        self.storage.pop(ACTIVE_TEST_KEY, None)
