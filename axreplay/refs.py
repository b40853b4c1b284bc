"""RefID parsing and the process-wide RefID cache."""

import logging
import re
import threading
import time
from types import MappingProxyType
from typing import Mapping

from axreplay.models import RefData

logger = logging.getLogger(__name__)

# A snapshot's references are trusted for five minutes
REF_TTL = 300.0

_REF_RE = re.compile(r"^@?e(\d+)$")


def is_ref_id(identifier: str) -> bool:
    """``@e12``/``e12`` style references, plus anything else starting with ``@``."""
    identifier = identifier.strip()
    return bool(_REF_RE.match(identifier)) or identifier.startswith("@")


def normalize_ref_id(identifier: str) -> str:
    """``@e12`` and ``e12`` both map to the cache key ``e12``."""
    return identifier.strip().lstrip("@")


def format_ref_id(node_id: str) -> str:
    return f"@e{node_id}"


class RefCache:
    """Mapping RefID → RefData, replaced wholesale by each snapshot.

    Readers take a reference to the current immutable mapping and never block
    one another; ``replace`` swaps the mapping and its capture time together.
    """

    def __init__(self, ttl: float = REF_TTL):
        self.ttl = ttl
        self._lock = threading.Lock()
        self._refs: Mapping[str, RefData] = MappingProxyType({})
        self._captured_at: float | None = None

    def replace(self, refs: dict[str, RefData], captured_at: float | None = None):
        frozen = MappingProxyType(dict(refs))
        with self._lock:
            self._refs = frozen
            self._captured_at = time.monotonic() if captured_at is None else captured_at
        logger.debug(f"[Refs] Cache replaced with {len(frozen)} references")

    def clear(self):
        with self._lock:
            self._refs = MappingProxyType({})
            self._captured_at = None

    def age(self) -> float | None:
        captured_at = self._captured_at
        if captured_at is None:
            return None
        return time.monotonic() - captured_at

    def is_stale(self) -> bool:
        age = self.age()
        return age is None or age > self.ttl

    def get(self, ref_id: str) -> RefData | None:
        return self._refs.get(normalize_ref_id(ref_id))

    def __len__(self) -> int:
        return len(self._refs)
