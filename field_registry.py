"""
Field Registry
Static table of known CMS fields per content type. This is the reference
configuration the header configuration store is compared and synced against.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from content_types import find_content_type

# --- Name conversions ---

def camel_to_display(name: str) -> str:
    """htmlTitle -> Html Title"""
    spaced = re.sub(r"([a-z0-9])([A-Z])", r"\1 \2", name or "")
    return " ".join(w[:1].upper() + w[1:] for w in spaced.split())


def display_to_camel(label: str) -> str:
    """Html Title -> htmlTitle (reverse of the export header naming)"""
    words = (label or "").split(" ")
    return "".join(
        w.lower() if i == 0 else w[:1].upper() + w[1:].lower()
        for i, w in enumerate(words)
    )


def to_camel(label: str) -> str:
    words = [w for w in re.split(r"[\s_]+", label or "") if w]
    return "".join(
        w.lower() if i == 0 else w[:1].upper() + w[1:].lower()
        for i, w in enumerate(words)
    )


def to_snake(name: str) -> str:
    s = re.sub(r"\s+", "_", name or "")
    s = re.sub(r"([A-Z])", r"_\1", s)
    s = re.sub(r"__+", "_", s).lower()
    return s[1:] if s.startswith("_") else s


# --- Registry ---

STATE_OPTIONS = ["DRAFT", "PUBLISHED_OR_SCHEDULED"]


@dataclass
class RegistryHeader:
    header: str
    content_types: List[str]
    data_type: str = "string"
    category: str = "Additional"
    read_only: bool = False
    in_app_edit: bool = False
    filters: bool = False
    options: Optional[List[str]] = field(default=None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "header": self.header,
            "contentType": list(self.content_types),
            "dataType": self.data_type,
            "category": self.category,
            "isReadOnly": self.read_only,
            "inAppEdit": self.in_app_edit,
            "filters": self.filters,
        }


LANDING = "Landing Pages"
SITE = "Website Pages"
POSTS = "Blog Posts"
BLOGS = "Blogs"
TAGS = "Tags"
AUTHORS = "Authors"
REDIRECTS = "URL Redirects"
HUBDB = "HubDB Tables"

PAGES = [LANDING, SITE]
PAGES_AND_POSTS = [LANDING, SITE, POSTS]
ALL_TYPES = [LANDING, SITE, POSTS, BLOGS, TAGS, AUTHORS, REDIRECTS, HUBDB]


def _h(header, content_types, data_type="string", category="Additional",
       read_only=False, in_app_edit=False, filters=False, options=None) -> RegistryHeader:
    return RegistryHeader(header, list(content_types), data_type, category,
                          read_only, in_app_edit, filters, options)


HUBSPOT_HEADERS: List[RegistryHeader] = [
    # Identity
    _h("id", ALL_TYPES, "string", "Required", read_only=True),
    _h("name", ALL_TYPES, "string", "Required", filters=True),
    _h("createdAt", ALL_TYPES, "date-time", "Recommended", read_only=True),
    _h("updatedAt", ALL_TYPES, "date-time", "Recommended", read_only=True),

    # Pages and posts
    _h("slug", PAGES_AND_POSTS + [BLOGS, TAGS], "string", "Recommended", filters=True),
    _h("htmlTitle", PAGES_AND_POSTS + [BLOGS], "string", "Recommended", filters=True),
    _h("metaDescription", PAGES_AND_POSTS, "string", "Recommended", filters=True),
    _h("url", PAGES_AND_POSTS, "string", "Recommended", read_only=True),
    _h("state", PAGES_AND_POSTS, "string", "Recommended", in_app_edit=True,
       filters=True, options=STATE_OPTIONS),
    _h("currentState", PAGES_AND_POSTS, "string", "Additional", read_only=True),
    _h("published", PAGES_AND_POSTS + [HUBDB], "boolean", "Recommended", read_only=True),
    _h("publishDate", PAGES_AND_POSTS, "date-time", "Additional", in_app_edit=True, filters=True),
    _h("language", PAGES_AND_POSTS + [BLOGS, TAGS], "string", "Additional",
       in_app_edit=True, filters=True),
    _h("domain", PAGES, "string", "Additional", in_app_edit=True, filters=True),
    _h("authorName", PAGES_AND_POSTS, "string", "Recommended", filters=True),
    _h("tagIds", [SITE, POSTS], "array", "Additional", in_app_edit=True, filters=True),
    _h("featuredImage", PAGES_AND_POSTS, "string", "Recommended"),
    _h("featuredImageAltText", PAGES_AND_POSTS, "string", "Recommended"),
    _h("useFeaturedImage", PAGES_AND_POSTS, "boolean", "Additional", in_app_edit=True),
    _h("linkRelCanonicalUrl", PAGES_AND_POSTS, "string", "Recommended"),
    _h("templatePath", PAGES_AND_POSTS, "string", "Recommended"),
    _h("pageRedirected", PAGES, "boolean", "Recommended", read_only=True),
    _h("archivedAt", PAGES_AND_POSTS, "date-time", "Additional", read_only=True),
    _h("archivedInDashboard", PAGES_AND_POSTS, "boolean", "Additional", in_app_edit=True),
    _h("createdById", PAGES_AND_POSTS, "string", "Additional", read_only=True),
    _h("updatedById", PAGES_AND_POSTS, "string", "Additional", read_only=True),
    _h("categoryId", PAGES_AND_POSTS, "number", "Additional", read_only=True),
    _h("subcategory", PAGES, "string", "Additional", in_app_edit=True),
    _h("campaign", PAGES_AND_POSTS, "string", "Additional", in_app_edit=True),
    _h("pageExpiryEnabled", PAGES, "boolean", "Additional", in_app_edit=True),
    _h("layoutSections", PAGES_AND_POSTS, "object", "Additional", read_only=True),
    _h("widgets", PAGES_AND_POSTS, "object", "Additional", read_only=True),
    _h("widgetContainers", PAGES_AND_POSTS, "object", "Additional", read_only=True),
    _h("translations", PAGES_AND_POSTS, "object", "Additional", read_only=True),
    _h("publicAccessRules", PAGES_AND_POSTS, "array", "Additional", read_only=True),
    _h("publicAccessRulesEnabled", PAGES_AND_POSTS, "boolean", "Additional", read_only=True),

    # Blog posts
    _h("contentGroupId", [POSTS], "string", "Additional", read_only=True),
    _h("blogAuthorId", [POSTS], "string", "Additional", in_app_edit=True),
    _h("postBody", [POSTS], "string", "Additional"),
    _h("postSummary", [POSTS], "string", "Additional"),
    _h("enableGoogleAmpOutputOverride", [POSTS], "boolean", "Additional", in_app_edit=True),

    # Blogs, tags, authors
    _h("publicTitle", [BLOGS, TAGS, AUTHORS], "string", "Recommended", filters=True),
    _h("allowComments", [BLOGS], "boolean", "Additional", in_app_edit=True),
    _h("absoluteUrl", [BLOGS], "string", "Recommended", read_only=True),
    _h("fullName", [AUTHORS], "string", "Recommended"),
    _h("displayName", [AUTHORS], "string", "Recommended"),
    _h("email", [AUTHORS], "string", "Recommended"),
    _h("bio", [AUTHORS], "string", "Additional"),
    _h("website", [AUTHORS], "string", "Additional"),

    # URL redirects
    _h("routePrefix", [REDIRECTS], "string", "Required", filters=True),
    _h("destination", [REDIRECTS], "string", "Required", filters=True),
    _h("redirectStyle", [REDIRECTS], "number", "Recommended", in_app_edit=True, filters=True),
    _h("precedence", [REDIRECTS], "number", "Additional", in_app_edit=True),
    _h("isOnlyAfterNotFound", [REDIRECTS], "boolean", "Additional", in_app_edit=True),
    _h("isMatchFullUrl", [REDIRECTS], "boolean", "Additional", in_app_edit=True),
    _h("isMatchQueryString", [REDIRECTS], "boolean", "Additional", in_app_edit=True),
    _h("isPattern", [REDIRECTS], "boolean", "Additional", in_app_edit=True),
    _h("isTrailingSlashOptional", [REDIRECTS], "boolean", "Additional", in_app_edit=True),
    _h("isProtocolAgnostic", [REDIRECTS], "boolean", "Additional", in_app_edit=True),

    # HubDB tables
    _h("label", [HUBDB], "string", "Recommended"),
    _h("columnCount", [HUBDB], "number", "Additional", read_only=True),
    _h("rowCount", [HUBDB], "number", "Additional", read_only=True),
    _h("allowPublicApiAccess", [HUBDB], "boolean", "Additional", in_app_edit=True),
    _h("allowChildTables", [HUBDB], "boolean", "Additional", in_app_edit=True),
    _h("enableChildTablePages", [HUBDB], "boolean", "Additional", in_app_edit=True),
    _h("useForPages", [HUBDB], "boolean", "Additional", in_app_edit=True),
    _h("dynamicMetaTags", [HUBDB], "object", "Additional", in_app_edit=True),
]

# (header, label) -> RegistryHeader
_HEADERS_MAP: Dict[str, Dict[str, RegistryHeader]] = {}
for _header in HUBSPOT_HEADERS:
    for _label in _header.content_types:
        _HEADERS_MAP.setdefault(_label, {})[_header.header] = _header


def _label_for(content_type: str) -> str:
    ct = find_content_type(content_type)
    return ct.label if ct else content_type


def headers_for(content_type: str) -> List[RegistryHeader]:
    label = _label_for(content_type)
    return [h for h in HUBSPOT_HEADERS if label in h.content_types]


def get_header(name: str, content_type: str) -> Optional[RegistryHeader]:
    return _HEADERS_MAP.get(_label_for(content_type), {}).get(name)


def find_registry_header(name: str) -> Optional[RegistryHeader]:
    for h in HUBSPOT_HEADERS:
        if h.header == name:
            return h
    return None


def is_read_only(name: str, content_type: str) -> bool:
    h = get_header(name, content_type)
    return h.read_only if h else False


def is_in_app_edit(name: str, content_type: str) -> bool:
    h = get_header(name, content_type)
    return h.in_app_edit if h else False


def editable_headers(content_type: str) -> List[str]:
    return [h.header for h in headers_for(content_type) if not h.read_only]


def read_only_headers(content_type: str) -> List[str]:
    return [h.header for h in headers_for(content_type) if h.read_only]


def in_app_edit_headers(content_type: str) -> List[str]:
    return [h.header for h in headers_for(content_type) if h.in_app_edit]


def recommended_headers(content_type: str) -> List[str]:
    return [h.header for h in headers_for(content_type)
            if h.category == "Recommended" and not h.in_app_edit]


# --- Filter availability per content type ---

_FILTER_KEYS = ["publishDate", "state", "language", "name", "slug", "htmlTitle",
                "authorName", "domain", "metaDescription", "tagIds", "publicTitle",
                "destination", "routePrefix", "redirectStyle"]


def _available(*keys: str) -> Dict[str, bool]:
    return {k: k in keys for k in _FILTER_KEYS}


FIELD_AVAILABILITY: Dict[str, Dict[str, bool]] = {
    "site-pages": _available("publishDate", "state", "language", "name", "slug", "htmlTitle",
                             "authorName", "domain", "metaDescription", "tagIds"),
    "landing-pages": _available("publishDate", "state", "language", "name", "slug",
                                "htmlTitle", "authorName", "domain"),
    "blog-posts": _available("publishDate", "state", "language", "name", "slug", "htmlTitle",
                             "metaDescription", "tagIds"),
    "blogs": _available("language", "name", "slug", "publicTitle"),
    "tags": _available("language", "name", "slug", "publicTitle"),
    "authors": _available("name", "publicTitle"),
    "url-redirects": _available("name", "destination", "routePrefix", "redirectStyle"),
    "hubdb-tables": _available("name"),
}

DEFAULT_FILTER_FIELDS = ["name", "slug", "language"]


def is_field_available(content_type: str, field_name: str) -> bool:
    ct = find_content_type(content_type)
    data = FIELD_AVAILABILITY.get(ct.slug) if ct else None
    if data is None:
        return field_name in DEFAULT_FILTER_FIELDS
    return data.get(field_name) is True


def available_filter_fields(content_type: str) -> List[str]:
    ct = find_content_type(content_type)
    data = FIELD_AVAILABILITY.get(ct.slug) if ct else None
    if data is None:
        return list(DEFAULT_FILTER_FIELDS)
    return [k for k, ok in data.items() if ok]


# --- In-app edit and filter field descriptors ---

EDITABLE_FIELDS: List[Dict[str, Any]] = [
    {"key": h.header, "label": camel_to_display(h.header), "type": h.data_type,
     **({"options": h.options} if h.options else {})}
    for h in HUBSPOT_HEADERS if h.in_app_edit
]

FILTER_FIELDS: List[Dict[str, Any]] = [
    {"key": key, "label": camel_to_display(key),
     "type": (find_registry_header(key).data_type if find_registry_header(key) else "string")}
    for key in _FILTER_KEYS
]

# Database column -> HubSpot API field name for sync-back payloads
HUBSPOT_FIELD_MAPPING: Dict[str, str] = {
    "name": "name",
    "html_title": "htmlTitle",
    "meta_description": "metaDescription",
    "slug": "slug",
    "body_content": "body",
    "state": "state",
    "publish_date": "publishDate",
    "language": "language",
    "domain": "domain",
}


def to_hubspot_field(db_field: str) -> str:
    """Map a database/snapshot field name to its API name, passing unknowns through"""
    return HUBSPOT_FIELD_MAPPING.get(db_field, db_field)
