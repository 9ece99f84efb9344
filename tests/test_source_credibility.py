import pytest

from feedsentry.source_credibility import (
    credibility_factor,
    extract_domain,
    get_source_tier,
    get_source_weight,
    is_high_credibility_source,
    is_known_reliable,
)


@pytest.mark.parametrize(
    "url,domain",
    [
        ("https://feeds.reuters.com/reuters/UKForeignExchange", "reuters.com"),
        ("www.ecb.europa.eu/rss/press.html", "europa.eu"),
        ("https://www.boj.or.jp/en/rss/whatsnew.xml", "boj.or.jp"),
        ("https://www.bankofengland.co.uk/rss/news", "bankofengland.co.uk"),
        ("invalid", ""),
        ("", ""),
    ],
)
def test_extract_domain(url, domain):
    assert extract_domain(url) == domain


def test_tiers_and_weights():
    assert get_source_tier("https://www.bloomberg.com/feed") == 1
    assert get_source_weight("https://www.bloomberg.com/feed") == 1.5
    assert get_source_tier("https://www.fxstreet.com/rss") == 2
    assert get_source_tier("https://unknown-blog.com/feed") == 3
    assert get_source_weight("https://unknown-blog.com/feed") == 0.5


def test_credibility_factor_is_normalized():
    assert credibility_factor("https://www.reuters.com/x") == pytest.approx(1.0)
    assert credibility_factor("https://www.cnbc.com/x") == pytest.approx(2 / 3)
    assert credibility_factor("https://blog.example.org") == pytest.approx(1 / 3)


def test_high_credibility_by_url_or_id():
    assert is_high_credibility_source("some_feed", "https://www.federalreserve.gov/feeds")
    assert is_high_credibility_source("ecb_press")
    assert not is_high_credibility_source("fxstreet", "https://www.fxstreet.com/rss")


def test_known_reliable():
    assert is_known_reliable("forexfactory")
    assert is_known_reliable("wire", "https://feeds.bloomberg.com/markets.rss")
    assert not is_known_reliable("local_blog", "https://blog.example.org/feed")
