"""
CMS Content Types
Closed set of HubSpot CMS content types and what each one supports.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from dateutil import parser as dtparser

logger = logging.getLogger(__name__)

HUBSPOT_CMS_BASE = "/cms/v3"

# Archived content is excluded from every listing call
INCLUDE_ARCHIVED_CONTENT = False

ARCHIVED_EPOCH_SENTINEL = "1970-01-01T00:00:00Z"


class ValidationError(ValueError):
    """Bad request input, rejected before any external call"""


class UnknownContentTypeError(ValidationError):
    """Raised when a value does not name a known content type"""


@dataclass(frozen=True)
class ContentType:
    slug: str
    label: str
    discovery_label: str
    page_type: str
    endpoint_path: str
    supports_publish: bool
    supports_state: bool

    @property
    def api_path(self) -> str:
        return f"{HUBSPOT_CMS_BASE}/{self.endpoint_path}"

    def record_path(self, record_id: str) -> str:
        return f"{self.api_path}/{record_id}"

    def publish_action_path(self, record_id: str, action: str) -> str:
        return f"{self.record_path(record_id)}/publish-actions/{action}"

    @property
    def snake(self) -> str:
        return self.slug.replace("-", "_")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "value": self.slug,
            "label": self.label,
            "pageType": self.page_type,
            "supportsPublish": self.supports_publish,
            "supportsState": self.supports_state,
        }


# Capability table, in display order
CONTENT_TYPES: List[ContentType] = [
    ContentType("landing-pages", "Landing Pages", "Landing Page", "Landing Page",
                "pages/landing-pages", True, True),
    ContentType("site-pages", "Website Pages", "Website Page", "Site Page",
                "pages/site-pages", True, True),
    ContentType("blog-posts", "Blog Posts", "Blog Post", "Blog Post",
                "blogs/posts", True, True),
    ContentType("blogs", "Blogs", "Blogs", "Blog",
                "blog-settings/settings", False, False),
    ContentType("tags", "Tags", "Tags", "Tag",
                "blogs/tags", False, False),
    ContentType("authors", "Authors", "Authors", "Author",
                "blogs/authors", False, False),
    ContentType("url-redirects", "URL Redirects", "URL Redirects", "URL Redirect",
                "url-redirects", False, False),
    ContentType("hubdb-tables", "HubDB Tables", "HubDB Tables", "HubDB Table",
                "hubdb/tables", False, False),
]


def _lookup_key(value: str) -> str:
    return " ".join(value.replace("-", " ").replace("_", " ").lower().split())


_LOOKUP: Dict[str, ContentType] = {}
for _ct in CONTENT_TYPES:
    for _name in (_ct.slug, _ct.label, _ct.discovery_label, _ct.page_type):
        _LOOKUP.setdefault(_lookup_key(_name), _ct)


def all_content_types() -> List[ContentType]:
    return list(CONTENT_TYPES)


def get_content_type(value: Any) -> ContentType:
    """Resolve a slug, label, discovery label or page type to a ContentType"""
    if isinstance(value, ContentType):
        return value
    if not value or not isinstance(value, str):
        raise UnknownContentTypeError(f"Invalid content type: {value!r}")
    ct = _LOOKUP.get(_lookup_key(value))
    if ct is None:
        raise UnknownContentTypeError(f"Invalid content type: {value}")
    return ct


def find_content_type(value: Any) -> Optional[ContentType]:
    try:
        return get_content_type(value)
    except UnknownContentTypeError:
        return None


def archived_param() -> Optional[str]:
    """Value for the `archived` query parameter on listing calls"""
    return None if INCLUDE_ARCHIVED_CONTENT else "false"


def archived_disclaimer() -> str:
    if INCLUDE_ARCHIVED_CONTENT:
        return "All counts include archived content."
    return "All counts exclude archived content."


def is_archived(record: Dict[str, Any]) -> bool:
    """True when archivedAt holds a real (non-epoch) timestamp"""
    archived_at = (record or {}).get("archivedAt")
    if not archived_at:
        return False
    if archived_at == ARCHIVED_EPOCH_SENTINEL:
        return False
    try:
        parsed = dtparser.isoparse(str(archived_at))
    except (ValueError, OverflowError):
        logger.warning(f"Unparseable archivedAt value: {archived_at}")
        return True
    return parsed.timestamp() > 0
