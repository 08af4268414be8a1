"""
Tests for the TTL response cache.
"""

from services.crm_sync.cache import ResponseCache, make_cache_key


class TestCacheKey:

    def test_param_order_does_not_matter(self):
        assert make_cache_key("constituents", {"a": 1, "b": 2}) == make_cache_key("constituents", {"b": 2, "a": 1})

    def test_distinct_params_distinct_keys(self):
        assert make_cache_key("constituents", {"email": "a@x.org"}) != make_cache_key("constituents", {"email": "b@x.org"})

    def test_no_params_equals_empty_params(self):
        assert make_cache_key("funds.json") == make_cache_key("funds.json", {})
        assert make_cache_key("funds.json").startswith("api_request_")


class TestResponseCache:

    def test_set_and_get(self, clock):
        cache = ResponseCache(default_ttl=60, clock=clock)
        cache.set("constituents/1", None, {"id": 1})
        assert cache.get("constituents/1") == {"id": 1}

    def test_expiry(self, clock):
        cache = ResponseCache(default_ttl=60, clock=clock)
        cache.set("constituents/1", None, {"id": 1})
        clock.now += 60
        assert cache.get("constituents/1") is None
        assert cache.stats()["size"] == 0

    def test_per_entry_ttl(self, clock):
        cache = ResponseCache(default_ttl=60, clock=clock)
        cache.set("funds.json", None, ["fund"], ttl=86400)
        clock.now += 3600
        assert cache.get("funds.json") == ["fund"]

    def test_zero_ttl_is_not_stored(self, clock):
        cache = ResponseCache(clock=clock)
        cache.set("constituents", None, [], ttl=0)
        assert cache.stats()["size"] == 0

    def test_invalidate_exact(self, clock):
        cache = ResponseCache(clock=clock)
        cache.set("constituents", {"email": "a@x.org"}, [1])
        cache.set("constituents", {"email": "b@x.org"}, [2])

        assert cache.invalidate("constituents", {"email": "a@x.org"}) is True
        assert cache.invalidate("constituents", {"email": "a@x.org"}) is False
        assert cache.get("constituents", {"email": "b@x.org"}) == [2]

    def test_invalidate_prefix(self, clock):
        cache = ResponseCache(clock=clock)
        cache.set("constituents/42", None, "core")
        cache.set("constituents/42/phone_numbers", None, "phones")
        cache.set("/constituents/42/gifts.json", None, "gifts")
        cache.set("constituents/420", None, "other")

        assert cache.invalidate_prefix("constituents/42/") == 3
        assert cache.get("constituents/420") == "other"
        assert cache.get("constituents/42") is None

    def test_gifts_json_invalidated_by_collection_prefix(self, clock):
        cache = ResponseCache(clock=clock)
        cache.set("constituents/42/gifts.json", None, "gifts")
        assert cache.invalidate_prefix("constituents/42/gifts") == 1

    def test_stats_and_clear(self, clock):
        cache = ResponseCache(clock=clock)
        cache.set("a", None, 1)
        cache.get("a")
        cache.get("b")

        assert cache.stats() == {"hits": 1, "misses": 1, "size": 1}
        cache.clear()
        assert cache.stats()["size"] == 0
