from datetime import datetime

from wayfarer.src.exploration.identity import normalize_url, session_id_for, url_hash


def test_normalize_url_canonicalizes_scheme_host_port_and_slash():
    assert normalize_url("HTTPS://Example.COM:443/pricing/") == "https://example.com/pricing"
    assert normalize_url("http://example.com:8080/a") == "http://example.com:8080/a"
    assert normalize_url("https://example.com") == "https://example.com/"


def test_normalize_url_keeps_query_and_fragment():
    assert normalize_url("https://example.com/app/?tab=2#/settings") == "https://example.com/app?tab=2#/settings"


def test_normalize_url_leaves_non_urls_alone():
    assert normalize_url("about:blank") == "about:blank"
    assert normalize_url("") == ""


def test_url_hash_is_stable_across_equivalent_urls():
    assert url_hash("https://www.example.com/pricing/") == url_hash("https://WWW.example.com/pricing")


def test_url_hash_has_readable_prefix():
    key = url_hash("https://www.example.com/pricing")
    assert key.startswith("example-com_-pricing_")
    assert len(key.rsplit("_", 1)[1]) == 8


def test_url_hash_distinguishes_spa_fragments():
    home = url_hash("https://example.com/")
    settings = url_hash("https://example.com/#/settings")
    assert home != settings
    assert settings.startswith("example-com_home")


def test_session_id_for_uses_domain_and_timestamp():
    stamp = datetime(2025, 1, 2, 3, 4, 5)
    assert session_id_for("https://www.example.com/x", stamp) == "example-com_2025-01-02T03-04-05"
