# tests/test_cache_keys.py
from services.cache.keys import ai_key, scrape_key, search_key, stats_key, stats_prefix


def test_stats_key_normalizes_country():
    assert stats_key("12345", "us") == "advertiser:12345:US"
    assert stats_key(" 12345 ", "") == "advertiser:12345:ALL"
    assert stats_key("12345", "us").startswith(stats_prefix("12345"))


def test_search_key_ignores_pagination():
    base = {"query": "running shoes", "country": "US"}
    assert search_key({**base, "page": 1, "limit": 20}) == search_key({**base, "page": 7, "offset": 140})


def test_search_key_is_order_and_whitespace_insensitive():
    a = search_key({"query": " shoes ", "languages": ["en", "de"], "country": "US"})
    b = search_key({"country": "US", "languages": ["de", "en"], "query": "shoes"})
    assert a == b
    assert a.startswith("search:")


def test_search_key_drops_unset_values():
    assert search_key({"query": "shoes", "mediaType": None}) == search_key({"query": "shoes"})


def test_search_key_distinguishes_filters():
    assert search_key({"query": "shoes", "country": "US"}) != search_key({"query": "shoes", "country": "DE"})


def test_scrape_key_depends_on_render_mode():
    url = "https://example.com/"
    assert scrape_key(url) == scrape_key(url, False)
    assert scrape_key(url, True) != scrape_key(url, False)


def test_ai_key_is_case_insensitive():
    assert ai_key("  Vegan Snacks ") == ai_key("vegan snacks") == "ai:vegan snacks"
