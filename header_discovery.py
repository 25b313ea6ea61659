"""
HubSpot Header Discovery
Samples one live record per content type, infers each field's type and builds
a presence matrix (field x content type). Results are held in a TTL cache.
"""

import re
import time
import logging
import threading
from typing import Any, Callable, Dict, List, Optional, Tuple

from content_types import all_content_types

logger = logging.getLogger(__name__)

HEADERS_CACHE_TTL_SECONDS = 5 * 60
CONTENT_TYPES_CACHE_TTL_SECONDS = 30 * 60
DROPDOWN_CACHE_TTL_SECONDS = 10 * 60
HEADERS_CACHE_KEY = "hubspot_headers"

DATE_TIME_RE = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}")

# overridable fetch_first_object arguments
DISCOVERY_OPTIONS = ("timeout", "max_retries", "backoff_seconds")


class DiscoveryError(Exception):
    """Raised when no content type returned a sample record"""


class TtlCache:
    """Process-local cache with time-based staleness only"""

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[Any, float]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            data, stored_at = entry
            if self._clock() - stored_at >= self.ttl_seconds:
                del self._entries[key]
                return None
            return data

    def set(self, key: str, data: Any) -> None:
        with self._lock:
            self._entries[key] = (data, self._clock())

    def invalidate(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def get_or_load(self, key: str, loader: Callable[[], Any], force: bool = False) -> Any:
        """Return the cached value, calling loader on a miss. Loader errors are not cached."""
        if not force:
            cached = self.get(key)
            if cached is not None:
                logger.debug(f"Cache hit for {key}")
                return cached
        data = loader()
        self.set(key, data)
        return data


def detect_type(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    # bool is a subclass of int
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str) and DATE_TIME_RE.match(value):
        return "date-time"
    return "string"


def composite_key(name: str, data_type: str) -> str:
    return f"{name}||{data_type}"


class HeaderDiscovery:
    """Discovers the live HubSpot field set across every content type"""

    def __init__(self, client, cache: Optional[TtlCache] = None,
                 options: Optional[Dict[str, Any]] = None):
        self.client = client
        self.cache = cache or TtlCache(HEADERS_CACHE_TTL_SECONDS)
        self.options = {k: v for k, v in (options or {}).items() if k in DISCOVERY_OPTIONS}

    def fetch_samples(self) -> Dict[str, Dict[str, Any]]:
        """One sample record per content type, keyed by discovery label. Failing types are skipped."""
        samples: Dict[str, Dict[str, Any]] = {}
        for ct in all_content_types():
            sample = self.client.fetch_first_object(ct, **self.options)
            if sample:
                samples[ct.discovery_label] = sample
                logger.info(f"Fetched sample for {ct.discovery_label} ({len(sample)} fields)")
            else:
                logger.info(f"No sample available for {ct.discovery_label}, skipping")
        return samples

    def _build_headers(self, samples: Dict[str, Dict[str, Any]]) -> List[Dict[str, Any]]:
        labels = [ct.discovery_label for ct in all_content_types()]
        headers: Dict[str, Dict[str, Any]] = {}
        for label, sample in samples.items():
            for name, value in sample.items():
                key = composite_key(name, detect_type(value))
                if key not in headers:
                    headers[key] = {
                        "header": name,
                        "headerType": detect_type(value),
                        "presence": {lbl: False for lbl in labels},
                    }
                headers[key]["presence"][label] = True
        return list(headers.values())

    def _load(self) -> Dict[str, Any]:
        samples = self.fetch_samples()
        if not samples:
            raise DiscoveryError(
                "Could not fetch any headers from HubSpot API. "
                "Please check your HubSpot connection and try again."
            )
        headers = self._build_headers(samples)
        logger.info(f"Discovered {len(headers)} headers across {len(samples)} content types")
        return {"headers": headers}

    def refresh(self, force: bool = False) -> Dict[str, Any]:
        return self.cache.get_or_load(HEADERS_CACHE_KEY, self._load, force=force)
