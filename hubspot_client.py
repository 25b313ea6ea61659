"""
HubSpot CMS Integration Module
Handles all HubSpot CMS v3 API interactions: listing content, reading and
patching single records, publish actions and header discovery samples.
Uses requests only to avoid library dependency issues.
"""

import logging
import time
from typing import Any, Dict, List, Optional

import requests

from content_types import ContentType, archived_param, get_content_type

logger = logging.getLogger(__name__)

DISCOVERY_BACKOFF_SECONDS = 8
DISCOVERY_MAX_RETRIES = 3
DISCOVERY_TIMEOUT_SECONDS = 15


def parse_hubspot_error(response: Optional[requests.Response]) -> str:
    """Pull a human-readable message out of a HubSpot error response"""
    if response is None:
        return "Network error"
    status_text = f"HTTP Error {response.status_code}"
    if response.reason:
        status_text = f"{status_text}: {response.reason}"
    try:
        body = response.json()
    except ValueError:
        text = (response.text or "").strip()
        return text or status_text
    if not isinstance(body, dict):
        return status_text
    if body.get("message"):
        return str(body["message"])
    if body.get("error"):
        return str(body["error"])
    errors = body.get("errors")
    if isinstance(errors, list) and errors:
        messages = [str(e.get("message")) for e in errors if isinstance(e, dict) and e.get("message")]
        if messages:
            return "Validation errors: " + "; ".join(messages)
    return status_text


class HubSpotClient:
    """HubSpot CMS API integration using direct requests"""

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize HubSpot client with configuration

        Args:
            config: Configuration dictionary with access_token and optional
                base_url, timeout, max_retries, throttle_seconds
        """
        self.access_token = config.get("access_token", "")
        self.base_url = config.get("base_url", "https://api.hubapi.com").rstrip("/")
        self.timeout = config.get("timeout", 30)
        self.max_retries = config.get("max_retries", 5)
        self.throttle_seconds = config.get("throttle_seconds", 0.1)
        self.backoff_factor = 1.5
        self.session = requests.Session()
        self.session.headers.update({
            "Content-Type": "application/json",
            "Accept": "application/json",
        })
        if self.access_token:
            self.session.headers["Authorization"] = f"Bearer {self.access_token}"
            logger.info("HubSpot client initialized with Bearer token")
        else:
            logger.warning("HubSpot client initialized without API credentials")

    def _request_with_retry(self, method: str, path: str, **kwargs) -> requests.Response:
        """Make request with backoff on 429/5xx; 4xx errors raise immediately"""
        timeout = kwargs.pop("timeout", self.timeout)

        # HubSpot allows ~100 requests per 10 seconds
        if self.throttle_seconds:
            time.sleep(self.throttle_seconds)

        for attempt in range(self.max_retries):
            try:
                response = self.session.request(method, f"{self.base_url}{path}",
                                                timeout=timeout, **kwargs)

                if response.status_code == 429:
                    retry_after = response.headers.get("Retry-After")
                    if retry_after:
                        wait_time = float(retry_after)
                    else:
                        wait_time = min(self.backoff_factor ** attempt, 30)
                    logger.warning(f"Rate limited. Waiting {wait_time:.1f} seconds "
                                   f"(attempt {attempt + 1}/{self.max_retries})...")
                    time.sleep(wait_time)
                    continue

                if response.status_code >= 400:
                    logger.error(f"HubSpot error {response.status_code} on {method} {path}: {response.text}")

                    # 4xx won't change on retry
                    if response.status_code < 500:
                        response.raise_for_status()

                    if attempt < self.max_retries - 1:
                        time.sleep(min(self.backoff_factor ** attempt, 15))
                        continue
                    response.raise_for_status()

                return response

            except requests.exceptions.HTTPError:
                raise
            except requests.exceptions.RequestException as e:
                logger.error(f"HubSpot request failed (attempt {attempt + 1}): {e}")
                if attempt == self.max_retries - 1:
                    raise
                time.sleep(min(self.backoff_factor ** attempt, 15))

        raise requests.exceptions.RetryError(f"Max retries exceeded for {method} {path}")

    # ==================== LISTING ====================

    def list_page(self, content_type: Any, after: Optional[str] = None, limit: int = 100,
                  **filters) -> Dict[str, Any]:
        """Fetch one page of a content type listing"""
        ct = get_content_type(content_type)
        params: Dict[str, Any] = {"limit": limit}
        archived = archived_param()
        if archived is not None:
            params["archived"] = archived
        if after:
            params["after"] = after
        params.update({k: v for k, v in filters.items() if v is not None})
        response = self._request_with_retry("GET", ct.api_path, params=params)
        return response.json()

    def fetch_all(self, content_type: Any, limit: int = 100,
                  max_pages: Optional[int] = None, **filters) -> List[Dict[str, Any]]:
        """Follow paging.next.after until the listing is exhausted"""
        ct = get_content_type(content_type)
        results: List[Dict[str, Any]] = []
        after = None
        pages = 0
        while True:
            data = self.list_page(ct, after=after, limit=limit, **filters)
            results.extend(data.get("results", []))
            pages += 1

            after = (data.get("paging") or {}).get("next", {}).get("after")
            if not after or (max_pages and pages >= max_pages):
                break

        logger.info(f"Fetched {len(results)} {ct.label} from HubSpot")
        return results

    def count(self, content_type: Any, state: Optional[str] = None) -> int:
        """Total number of records for a content type (optionally by state)"""
        data = self.list_page(content_type, limit=1, state=state)
        return int(data.get("total") or 0)

    # ==================== RECORDS ====================

    def get_record(self, content_type: Any, record_id: str) -> Dict[str, Any]:
        ct = get_content_type(content_type)
        response = self._request_with_retry("GET", ct.record_path(record_id))
        return response.json()

    def update_record(self, content_type: Any, record_id: str,
                      payload: Dict[str, Any]) -> Dict[str, Any]:
        """PATCH only the given fields of a record"""
        ct = get_content_type(content_type)
        body = {k: v for k, v in payload.items() if k != "id"}
        response = self._request_with_retry("PATCH", ct.record_path(record_id), json=body)
        return response.json() if response.content else {}

    def publish_action(self, content_type: Any, record_id: str, action: str) -> Dict[str, Any]:
        """POST a push-live / unpublish publish action"""
        ct: ContentType = get_content_type(content_type)
        if not ct.supports_publish:
            raise ValueError(f"{ct.label} do not support publish actions")
        if action not in ("push-live", "unpublish"):
            raise ValueError(f"Unknown publish action: {action}")
        response = self._request_with_retry("POST", ct.publish_action_path(record_id, action))
        return response.json() if response.content else {}

    # ==================== DISCOVERY ====================

    def fetch_first_object(self, content_type: Any,
                           timeout: float = DISCOVERY_TIMEOUT_SECONDS,
                           max_retries: int = DISCOVERY_MAX_RETRIES,
                           backoff_seconds: float = DISCOVERY_BACKOFF_SECONDS) -> Optional[Dict[str, Any]]:
        """
        Fetch a single sample record for header discovery.

        Retries 429s and network errors with a linear backoff. Returns None
        when nothing could be fetched instead of raising.
        """
        ct = get_content_type(content_type)
        url = f"{self.base_url}{ct.api_path}"
        retry = 0
        while retry <= max_retries:
            try:
                response = self.session.get(url, params={"limit": 1}, timeout=timeout)
            except requests.exceptions.RequestException as e:
                logger.error(f"Error fetching sample from {url} (attempt {retry + 1}): {e}")
                if retry >= max_retries:
                    return None
                time.sleep(backoff_seconds * (retry + 1))
                retry += 1
                continue

            if response.status_code == 429:
                wait_time = backoff_seconds * (retry + 1)
                logger.warning(f"Rate limited (429) on {url}, waiting {wait_time}s before retry")
                time.sleep(wait_time)
                retry += 1
                continue

            if response.status_code != 200:
                logger.error(f"HTTP {response.status_code} error from {url}: {response.reason}")
                return None

            data = response.json()
            results = data.get("results") if isinstance(data, dict) else None
            if isinstance(results, list):
                return results[0] if results else None
            # single object responses
            return data if data else None

        return None

