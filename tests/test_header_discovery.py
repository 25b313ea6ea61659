"""
Tests for header discovery and its TTL cache
"""

import pytest

from header_discovery import DiscoveryError, HeaderDiscovery, TtlCache, composite_key, detect_type


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


def test_cache_expires_at_ttl(clock):
    cache = TtlCache(10, clock=clock)
    cache.set("k", {"v": 1})
    clock.now += 9
    assert cache.get("k") == {"v": 1}
    clock.now += 1
    assert cache.get("k") is None


def test_cache_invalidate_and_clear(clock):
    cache = TtlCache(10, clock=clock)
    cache.set("a", 1)
    cache.set("b", 2)
    cache.invalidate("a")
    assert cache.get("a") is None
    assert cache.get("b") == 2
    cache.clear()
    assert cache.get("b") is None


def test_get_or_load_calls_loader_once(clock):
    cache = TtlCache(60, clock=clock)
    calls = []

    def loader():
        calls.append(1)
        return {"n": len(calls)}

    assert cache.get_or_load("k", loader) == {"n": 1}
    assert cache.get_or_load("k", loader) == {"n": 1}
    assert cache.get_or_load("k", loader, force=True) == {"n": 2}
    clock.now += 60
    assert cache.get_or_load("k", loader) == {"n": 3}


def test_get_or_load_does_not_cache_failures(clock):
    cache = TtlCache(60, clock=clock)

    def failing():
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        cache.get_or_load("k", failing)
    assert cache.get("k") is None
    assert cache.get_or_load("k", lambda: "ok") == "ok"


@pytest.mark.parametrize("value,expected", [
    (None, "null"),
    (True, "boolean"),
    (3, "number"),
    (1.5, "number"),
    ("2024-01-01T10:00:00Z", "date-time"),
    ("2024-01-01", "string"),
    ("hello", "string"),
    ([1], "array"),
    ({"a": 1}, "object"),
])
def test_detect_type(value, expected):
    assert detect_type(value) == expected


def test_composite_key():
    assert composite_key("name", "string") == "name||string"


def test_refresh_builds_presence_matrix(hubspot):
    hubspot.samples = {
        "site-pages": {"id": "1", "name": "Home", "published": True},
        "blogs": {"id": "2", "name": "News"},
    }
    discovery = HeaderDiscovery(hubspot, TtlCache(300))
    headers = {composite_key(h["header"], h["headerType"]): h for h in discovery.refresh()["headers"]}

    assert set(headers) == {"id||string", "name||string", "published||boolean"}
    published = headers["published||boolean"]["presence"]
    assert published["Website Page"] is True
    assert published["Blogs"] is False
    assert published["Landing Page"] is False
    assert headers["id||string"]["presence"]["Blogs"] is True
    # every content type appears in the matrix
    assert len(published) == 8


def test_same_field_with_different_types_is_two_headers(hubspot):
    hubspot.samples = {
        "site-pages": {"id": "1", "language": "en"},
        "tags": {"id": "2", "language": None},
    }
    headers = HeaderDiscovery(hubspot, TtlCache(300)).refresh()["headers"]
    keys = {composite_key(h["header"], h["headerType"]) for h in headers}
    assert {"language||string", "language||null"} <= keys


def test_refresh_is_cached_until_forced(hubspot):
    hubspot.samples = {"site-pages": {"id": "1"}}
    discovery = HeaderDiscovery(hubspot, TtlCache(300))
    discovery.refresh()
    sampled = len(hubspot.calls)
    assert sampled == 8

    discovery.refresh()
    assert len(hubspot.calls) == sampled

    discovery.refresh(force=True)
    assert len(hubspot.calls) == sampled * 2


def test_refresh_with_no_samples_raises_and_is_not_cached(hubspot):
    discovery = HeaderDiscovery(hubspot, TtlCache(300))
    with pytest.raises(DiscoveryError):
        discovery.refresh()

    hubspot.samples = {"authors": {"id": "9"}}
    headers = discovery.refresh()["headers"]
    assert headers[0]["presence"]["Authors"] is True


def test_discovery_options_are_passed_to_client(hubspot):
    hubspot.samples = {"site-pages": {"id": "1"}}
    HeaderDiscovery(hubspot, TtlCache(300), {"timeout": 5, "backoff_seconds": 0, "unrelated": 1}).refresh()
    _, _, kwargs = hubspot.calls[0]
    assert kwargs == {"timeout": 5, "backoff_seconds": 0}
